import httpx
import pytest

from app.config import Settings
from app.core.exceptions import ConfigurationError, LLMError
from app.core.tokens import AzureAdTokenProvider, StaticKeyProvider, build_token_provider


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _provider(handler, clock, cache_ttl_seconds=3000) -> AzureAdTokenProvider:
    return AzureAdTokenProvider(
        tenant_id="tenant",
        client_id="client",
        client_secret="secret",
        scope="https://cognitiveservices.azure.com/.default",
        cache_ttl_seconds=cache_ttl_seconds,
        clock=clock,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.anyio
async def test_token_is_cached_until_ttl_passes():
    clock = FakeClock()
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"access_token": f"token-{len(requests)}", "expires_in": 3600})

    provider = _provider(handler, clock)

    assert await provider.get_token() == "token-1"
    clock.now += 2999
    assert await provider.get_token() == "token-1"
    clock.now += 2
    assert await provider.get_token() == "token-2"
    assert len(requests) == 2
    assert requests[0].url.path == "/tenant/oauth2/v2.0/token"
    assert b"grant_type=client_credentials" in requests[0].content


@pytest.mark.anyio
async def test_short_lived_token_expires_a_minute_early():
    clock = FakeClock()
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, json={"access_token": "short", "expires_in": 90})

    provider = _provider(handler, clock)

    await provider.get_token()
    clock.now += 31
    await provider.get_token()

    assert len(calls) == 2


@pytest.mark.anyio
async def test_error_response_raises_llm_error():
    provider = _provider(lambda request: httpx.Response(401, json={"error": "invalid_client"}), FakeClock())

    with pytest.raises(LLMError):
        await provider.get_token()


def test_openai_uses_bearer_key():
    provider = build_token_provider(Settings(openai_api_key="sk-1"))

    assert isinstance(provider, StaticKeyProvider)
    assert provider.is_bearer


def test_azure_api_key_uses_api_key_header():
    provider = build_token_provider(Settings(provider="azure", azure_endpoint="https://x", azure_api_key="k"))

    assert isinstance(provider, StaticKeyProvider)
    assert not provider.is_bearer


def test_azure_client_credentials_win_over_api_key():
    provider = build_token_provider(Settings(
        provider="azure", azure_api_key="k",
        azure_tenant_id="t", azure_client_id="c", azure_client_secret="s",
    ))

    assert isinstance(provider, AzureAdTokenProvider)


def test_azure_without_credentials_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        build_token_provider(Settings(provider="azure", azure_api_key=None))
