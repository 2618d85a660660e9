from ragwright_backend.api.rag_chat import build_rag_chat_router
from ragwright_backend.api.sessions import build_sessions_router
from ragwright_backend.api.system import build_system_router

__all__ = [
    "build_rag_chat_router",
    "build_sessions_router",
    "build_system_router",
]
