"""
Credential providers for LLM endpoints with a TTL-aware token cache
"""
import asyncio
import time
from typing import Callable, Optional, Protocol

import httpx

from app.config import Settings
from app.core.exceptions import ConfigurationError, LLMError
from app.core.logging import get_logger
from app.core.retry import transient_retry

logger = get_logger(__name__)

AAD_TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"


class TokenProvider(Protocol):
    """Supplies the credential an LLM request authenticates with"""

    is_bearer: bool

    async def get_token(self) -> str:
        ...


class StaticKeyProvider:
    """Fixed API key from configuration"""

    def __init__(self, key: Optional[str], is_bearer: bool = True):
        self._key = key or ""
        self.is_bearer = is_bearer

    async def get_token(self) -> str:
        return self._key


class AzureAdTokenProvider:
    """
    OAuth2 client-credentials token for Azure OpenAI.

    The token is cached for ``min(cache_ttl, expires_in - 60)`` seconds and
    refreshed lazily on the first call after expiry. Concurrent callers share
    one refresh through the lock.
    """

    is_bearer = True

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        scope: str,
        cache_ttl_seconds: int = 3000,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._transport = transport
        self._lock = asyncio.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def _cached(self) -> Optional[str]:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    async def get_token(self) -> str:
        token = self._cached()
        if token:
            return token

        async with self._lock:
            token = self._cached()
            if token:
                return token

            token, expires_in = await self._fetch()
            ttl = min(self._cache_ttl, max(0, expires_in - 60))
            self._token = token
            self._expires_at = self._clock() + ttl
            logger.info("Azure AD token refreshed", ttl_seconds=ttl)
            return token

    @transient_retry(max_attempts=3, exceptions=(httpx.TransportError,))
    async def _fetch(self) -> tuple:
        url = AAD_TOKEN_URL.format(tenant=self._tenant_id)
        data = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "scope": self._scope,
        }
        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            response = await client.post(url, data=data)

        if response.status_code >= 400:
            raise LLMError(
                "Azure AD token request failed",
                {"status": response.status_code, "body": response.text[:500]},
            )

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise LLMError("Azure AD token response has no access_token")
        return token, int(payload.get("expires_in") or 3600)


def build_token_provider(settings: Settings) -> TokenProvider:
    """Pick the credential source for the configured provider"""
    if not settings.is_azure:
        return StaticKeyProvider(settings.openai_api_key, is_bearer=True)

    if settings.azure_tenant_id and settings.azure_client_id and settings.azure_client_secret:
        return AzureAdTokenProvider(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
            scope=settings.azure_token_scope,
            cache_ttl_seconds=settings.token_cache_ttl_seconds,
        )

    if not settings.azure_api_key:
        raise ConfigurationError("Azure provider needs AZURE_API_KEY or Azure AD client credentials")
    return StaticKeyProvider(settings.azure_api_key, is_bearer=False)
