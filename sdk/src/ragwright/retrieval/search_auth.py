from __future__ import annotations

import logging
from typing import Any, Final, Protocol

from azure.identity.aio import DefaultAzureCredential

from ragwright.services.token_cache import AccessToken, TokenRefresher

logger = logging.getLogger(__name__)

SEARCH_TOKEN_SCOPE: Final[str] = "https://search.azure.com/.default"


class AsyncTokenCredential(Protocol):
    async def get_token(self, *scopes: str, **kwargs: Any) -> Any: ...

    async def close(self) -> None: ...


def credential_refresher(
    credential: AsyncTokenCredential, scope: str = SEARCH_TOKEN_SCOPE
) -> TokenRefresher:
    """Adapt an azure-identity async credential to the token cache's refresher."""

    async def _refresh() -> AccessToken:
        token = await credential.get_token(scope)
        return AccessToken(token=token.token, expires_on=float(token.expires_on))

    return _refresh


def default_search_credential() -> AsyncTokenCredential:
    # Managed identity in Azure, developer logins (CLI, VS Code) locally.
    logger.info("AZURE_SEARCH_API_KEY is not set; authenticating with DefaultAzureCredential")
    return DefaultAzureCredential()
