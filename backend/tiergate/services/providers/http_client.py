"""
OpenAI-compatible HTTP provider client.

Design constraints:
- No provider SDKs; plain httpx against /chat/completions
- One pooled AsyncClient per process
- Errors are classified here so the resilience layer never inspects HTTP:
  timeouts, connection errors, 429 and 5xx → ProviderTransientError;
  other 4xx, missing credentials, unusable payloads → ProviderTerminalError

Confidence: the system prompt asks for a JSON object
{"answer": ..., "confidence": 0.0-1.0}. When the model ignores that, the raw
text is used as the answer and confidence is estimated from finish_reason.
"""
import json
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from tiergate.core.config import Settings, TierSettings
from tiergate.core.errors import ProviderTerminalError, ProviderTransientError
from tiergate.core.logging import get_logger
from tiergate.core.metrics import record_provider_call, record_provider_error
from tiergate.models.routing import ProviderResult

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are an expert spreadsheet assistant. Answer the user's request.\n"
    "You MUST respond with a single JSON object only, with keys:\n"
    '{"answer": "<your answer>", "confidence": 0.0-1.0}\n'
    "confidence is your honest estimate that the answer is correct and complete."
)

FINISH_REASON_CONFIDENCE = {
    "stop": 0.75,
    "length": 0.5,
    "content_filter": 0.3,
}
DEFAULT_CONFIDENCE = 0.6


def parse_completion(data: Dict[str, Any]) -> Tuple[Any, float]:
    """
    Extract (answer, confidence) from an OpenAI-style completion payload.

    Raises:
        ValueError if the payload has no usable message content.
    """
    choices = data.get("choices") or []
    if not choices:
        raise ValueError("completion has no choices")

    choice = choices[0]
    content = (choice.get("message") or {}).get("content")
    if content is None or (isinstance(content, str) and not content.strip()):
        raise ValueError("completion has empty content")

    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        parsed = None

    if isinstance(parsed, dict) and "answer" in parsed:
        confidence = parsed.get("confidence")
        try:
            confidence = min(max(float(confidence), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = FINISH_REASON_CONFIDENCE.get(choice.get("finish_reason"), DEFAULT_CONFIDENCE)
        return parsed["answer"], confidence

    return content, FINISH_REASON_CONFIDENCE.get(choice.get("finish_reason"), DEFAULT_CONFIDENCE)


def build_messages(prompt: str, context: Dict[str, Any]) -> List[Dict[str, str]]:
    """Chat messages; a previous tier's answer is passed along for refinement."""
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]

    previous_answer = context.get("previous_answer")
    if previous_answer is not None:
        messages.append({
            "role": "system",
            "content": (
                f"A smaller model (tier {context.get('previous_tier')}) answered with "
                f"confidence {context.get('previous_confidence')}. Improve on it if it "
                f"is wrong or incomplete:\n{previous_answer}"
            ),
        })

    messages.append({"role": "user", "content": prompt})
    return messages


class HttpProviderClient:
    """Async HTTP client implementing the ProviderClient capability."""

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        timeout_seconds: float = 30.0,
        max_tokens: int = 1024,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpProviderClient":
        return cls(
            api_base=settings.llm_api_base,
            api_key=settings.llm_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, json_payload: Dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return await self._client.post(f"{self.api_base}{path}", headers=headers, json=json_payload)

    async def invoke(
        self,
        prompt: str,
        context: Dict[str, Any],
        tier: TierSettings,
    ) -> ProviderResult:
        """
        Call chat completions for one tier.

        Returns:
            ProviderResult with answer, confidence, cost and token usage.
        """
        provider = tier.provider_id
        if not self.api_key:
            record_provider_error(provider, "terminal")
            raise ProviderTerminalError("LLM API key not configured", provider, tier.tier)

        payload = {
            "model": tier.model,
            "messages": build_messages(prompt, context),
            "temperature": 0.0,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }

        start = time.time()
        try:
            response = await self._post("/chat/completions", payload)
        except httpx.TimeoutException as exc:
            record_provider_error(provider, "timeout")
            logger.warning("provider_timeout", provider=provider, tier=tier.tier, error=str(exc))
            raise ProviderTransientError(f"timeout: {exc}", provider, tier.tier) from exc
        except httpx.TransportError as exc:
            record_provider_error(provider, "transient")
            logger.warning(
                "provider_transport_error",
                provider=provider,
                tier=tier.tier,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ProviderTransientError(str(exc), provider, tier.tier) from exc
        finally:
            duration = time.time() - start

        status = response.status_code
        if status == 429 or status >= 500:
            record_provider_error(provider, "transient")
            logger.warning("provider_http_error", provider=provider, tier=tier.tier, status_code=status)
            raise ProviderTransientError(f"HTTP {status}", provider, tier.tier, status_code=status)
        if status >= 400:
            record_provider_error(provider, "terminal")
            logger.error(
                "provider_http_rejected",
                provider=provider,
                tier=tier.tier,
                status_code=status,
                body=response.text[:500],
            )
            raise ProviderTerminalError(f"HTTP {status}", provider, tier.tier, status_code=status)

        try:
            data = response.json()
            answer, confidence = parse_completion(data)
        except ValueError as exc:
            record_provider_error(provider, "terminal")
            logger.error("provider_payload_invalid", provider=provider, tier=tier.tier, error=str(exc))
            raise ProviderTerminalError(f"invalid payload: {exc}", provider, tier.tier) from exc

        usage = data.get("usage") or {}
        input_tokens = int(usage.get("prompt_tokens") or 0)
        output_tokens = int(usage.get("completion_tokens") or 0)
        cost = ((input_tokens + output_tokens) / 1000.0) * tier.cost_per_1k_tokens

        record_provider_call(provider, tier.tier, duration, cost)

        return ProviderResult(
            content=answer,
            confidence=confidence,
            cost=cost,
            provider_id=provider,
            model=tier.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
