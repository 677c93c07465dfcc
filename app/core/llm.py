"""
Provider-agnostic chat completion client for OpenAI and Azure OpenAI
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
import json
import time

import httpx

from app.config import Settings
from app.core.exceptions import ConfigurationError, LLMError
from app.core.logging import get_logger, metrics_logger
from app.core.tokens import TokenProvider, build_token_provider

logger = get_logger(__name__)

Messages = List[Dict[str, Any]]

JSON_DECODE_ERROR = "Failed to decode JSON from model output"
MAX_DECODE_ATTEMPTS = 40


@dataclass(frozen=True)
class LlmResult:
    """Outcome of one chat completion; failures are encoded, never raised"""
    ok: bool
    status: int
    content: Optional[str] = None
    json: Optional[Dict[str, Any]] = None
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    raw: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.ok and self.json is not None:
            raise ValueError("A failed LlmResult cannot carry decoded JSON")


def is_reasoning_model(model: Optional[str]) -> bool:
    return bool(model) and model.strip().lower().startswith("o")


def decode_json_loose(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    First JSON object embedded in model text.

    Starts at the first ``{`` and retries with the slice ending at each
    earlier ``}`` so trailing commentary or a cut-off tail is tolerated.
    Only objects count; arrays and scalars decode to None.
    """
    if not content:
        return None
    start = content.find("{")
    if start < 0:
        return None

    candidate = content[start:]
    try:
        decoded = json.loads(candidate)
    except ValueError:
        decoded = None
    if isinstance(decoded, dict):
        return decoded

    end = len(candidate)
    for _ in range(MAX_DECODE_ATTEMPTS):
        pos = candidate.rfind("}", 0, end)
        if pos < 0:
            return None
        try:
            decoded = json.loads(candidate[:pos + 1])
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            return decoded
        end = pos
    return None


def extract_content(data: Dict[str, Any]) -> Optional[str]:
    """Assistant text from a completion body, string or segmented content"""
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    message = choice.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None

    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                text = item.get("text") if item.get("text") is not None else item.get("content")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    text = choice.get("text")
    return text if isinstance(text, str) else None


def normalize_response_format(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, dict) and "type" in value:
        return value
    if value in ("json", "json_object"):
        return {"type": "json_object"}
    return None


class LlmClient:
    """Chat completions over httpx against OpenAI or Azure OpenAI"""

    def __init__(
        self,
        settings: Settings,
        token_provider: Optional[TokenProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        if settings.is_azure and not settings.azure_endpoint:
            raise ConfigurationError("AZURE_ENDPOINT is required for the azure provider")
        self.tokens = token_provider or build_token_provider(settings)
        self._transport = transport

    # ------------------------------------------------------------------
    # Request shaping
    # ------------------------------------------------------------------

    def build_url(self, options: Dict[str, Any]) -> str:
        if not self.settings.is_azure:
            return self.settings.openai_base_url.rstrip("/") + "/chat/completions"

        endpoint = self.settings.azure_endpoint.rstrip("/")
        use_v1 = options.get("azure_use_v1", self.settings.azure_use_v1)
        if use_v1:
            return f"{endpoint}/openai/v1/chat/completions"

        deployment = options.get("azure_deployment") or options.get("model") or self.settings.azure_deployment
        api_version = options.get("azure_api_version") or self.settings.azure_api_version
        return f"{endpoint}/openai/deployments/{deployment}/chat/completions?api-version={api_version}"

    async def build_headers(self) -> Dict[str, str]:
        token = await self.tokens.get_token()
        headers = {"Content-Type": "application/json"}
        if self.tokens.is_bearer:
            headers["Authorization"] = f"Bearer {token}"
        else:
            headers["api-key"] = token
        return headers

    def build_payload(self, messages: Messages, options: Dict[str, Any]) -> Dict[str, Any]:
        model = options.get("model") or self.settings.chat_model
        reasoning = is_reasoning_model(model)

        payload: Dict[str, Any] = {"messages": messages}

        legacy_azure = self.settings.is_azure and not options.get("azure_use_v1", self.settings.azure_use_v1)
        if not legacy_azure:
            payload["model"] = model

        max_tokens = (
            options.get("max_output_tokens")
            or options.get("max_tokens")
            or options.get("max_completion_tokens")
            or 900
        )
        if reasoning or options.get("use_max_completion_tokens"):
            payload["max_completion_tokens"] = int(max_tokens)
        else:
            payload["max_tokens"] = int(max_tokens)

        temperature = options.get("temperature")
        if temperature is not None:
            if not reasoning or float(temperature) == 1.0:
                payload["temperature"] = float(temperature)

        if reasoning and options.get("reasoning_effort"):
            payload["reasoning_effort"] = options["reasoning_effort"]

        response_format = normalize_response_format(options.get("response_format"))
        if response_format:
            payload["response_format"] = response_format

        return payload

    def _timeout(self, options: Dict[str, Any]) -> httpx.Timeout:
        timeout = options.get("timeout") or self.settings.llm_timeout
        connect = options.get("connect_timeout") or self.settings.llm_connect_timeout
        return httpx.Timeout(float(timeout), connect=float(connect))

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def chat(self, messages: Messages, options: Optional[Dict[str, Any]] = None) -> LlmResult:
        options = dict(options or {})
        operation = options.pop("operation", "chat")
        payload = self.build_payload(messages, options)
        model = payload.get("model") or options.get("azure_deployment") or self.settings.azure_deployment
        url = self.build_url(options)
        start = time.time()

        try:
            headers = await self.build_headers()
            async with httpx.AsyncClient(timeout=self._timeout(options), transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except (httpx.HTTPError, LLMError) as e:
            metrics_logger.log_llm_complete(model, operation, time.time() - start, success=False)
            logger.warning("LLM transport failure",
                           model=model,
                           error=str(e),
                           error_type=type(e).__name__)
            return LlmResult(
                ok=False,
                status=0,
                error={"type": type(e).__name__, "message": str(e)},
            )

        body = self._decode_body(response)

        if not response.is_success:
            metrics_logger.log_llm_complete(model, operation, time.time() - start, success=False)
            error = body.get("error") if isinstance(body, dict) else None
            if not error:
                error = {"message": response.text[:2000]}
            elif not isinstance(error, dict):
                error = {"message": str(error)}
            logger.warning("LLM provider error",
                           model=model,
                           status=response.status_code,
                           error=error.get("message"))
            return LlmResult(
                ok=False,
                status=response.status_code,
                content=response.text[:2000],
                error=error,
                raw=body if isinstance(body, dict) else None,
            )

        body = body if isinstance(body, dict) else {}
        choices = body.get("choices") or [{}]
        finish_reason = choices[0].get("finish_reason") if isinstance(choices[0], dict) else None
        usage = body.get("usage") or {}
        metrics_logger.log_llm_complete(
            model, operation, time.time() - start,
            tokens_used=int(usage.get("total_tokens") or 0),
        )

        return LlmResult(
            ok=True,
            status=response.status_code,
            content=extract_content(body),
            finish_reason=finish_reason,
            usage=usage,
            raw=body,
        )

    async def chat_json(self, messages: Messages, options: Optional[Dict[str, Any]] = None) -> LlmResult:
        result = await self.chat(messages, options)
        if not result.ok:
            return result

        decoded = decode_json_loose(result.content)
        if decoded is None:
            return LlmResult(
                ok=True,
                status=result.status,
                content=result.content,
                json=None,
                finish_reason=result.finish_reason,
                usage=result.usage,
                error={"message": JSON_DECODE_ERROR},
                raw=result.raw,
            )

        return LlmResult(
            ok=True,
            status=result.status,
            content=result.content,
            json=decoded,
            finish_reason=result.finish_reason,
            usage=result.usage,
            raw=result.raw,
        )

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None
