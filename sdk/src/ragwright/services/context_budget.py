from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import cast

import tiktoken

from ragwright.schemas.rag_chat import ChatMessage, Reference

logger = logging.getLogger(__name__)

_FALLBACK_ENCODING = "o200k_base"


class _Tokenizer:
    """tiktoken encoding for a model, or whitespace words when it cannot load."""

    def __init__(self, model: str) -> None:
        self._encoding: tiktoken.Encoding | None
        try:
            try:
                self._encoding = tiktoken.encoding_for_model(model)
            except KeyError:
                self._encoding = tiktoken.get_encoding(_FALLBACK_ENCODING)
        except Exception:  # pragma: no cover
            logger.warning("tiktoken encoding unavailable for %s; counting words instead", model)
            self._encoding = None

    def encode(self, text: str) -> list[int] | list[str]:
        if self._encoding is None:
            return [token for token in text.split() if token]
        return list(self._encoding.encode(text))

    def decode(self, tokens: list[int] | list[str]) -> str:
        if self._encoding is None:
            return " ".join(str(token) for token in tokens)
        return str(self._encoding.decode(cast(list[int], tokens)))


@lru_cache(maxsize=16)
def _tokenizer(model: str) -> _Tokenizer:
    return _Tokenizer(model)


def estimate_tokens(text: str, *, model: str) -> int:
    if not text:
        return 0
    return len(_tokenizer(model).encode(text))


def trim_to_tokens(text: str, max_tokens: int, *, model: str) -> tuple[str, bool]:
    """Keep the first ``max_tokens`` tokens of ``text``; report whether it was cut."""

    tokenizer = _tokenizer(model)
    tokens = tokenizer.encode(text)
    if len(tokens) <= max_tokens:
        return text, False
    return tokenizer.decode(tokens[: max(0, max_tokens)]), True


@dataclass(frozen=True)
class HistoryContext:
    text: str
    tokens: int
    turns: int
    trimmed: bool


def latest_user_question(messages: Sequence[ChatMessage]) -> str | None:
    for message in reversed(messages):
        if message.role == "user" and message.content.strip():
            return message.content.strip()
    return None


def build_history_context(
    messages: Sequence[ChatMessage],
    *,
    model: str,
    max_turns: int,
    token_cap: int,
) -> HistoryContext:
    """Render earlier turns, newest kept first, within ``token_cap`` tokens.

    The final user message is the question itself and is not part of history.
    """

    turns = [message for message in messages if message.role != "system"]
    if turns and turns[-1].role == "user":
        turns = turns[:-1]
    recent = turns[-max(0, max_turns) :] if max_turns else []
    trimmed = len(recent) < len(turns)

    kept: list[str] = []
    used = 0
    for message in reversed(recent):
        line = f"{message.role.capitalize()}: {message.content.strip()}"
        cost = estimate_tokens(line, model=model)
        if used + cost > token_cap:
            trimmed = True
            break
        kept.append(line)
        used += cost

    kept.reverse()
    return HistoryContext(text="\n".join(kept), tokens=used, turns=len(kept), trimmed=trimmed)


def format_reference_context(references: Sequence[Reference]) -> str:
    blocks: list[str] = []
    for idx, reference in enumerate(references, start=1):
        header = reference.title or reference.id
        if reference.page_number is not None:
            header = f"{header} (page {reference.page_number})"
        if reference.url:
            header = f"{header} <{reference.url}>"
        blocks.append(f"[{idx}] {header}\n{(reference.content or '').strip()}")
    return "\n\n".join(blocks)
