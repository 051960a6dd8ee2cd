"""Client for the external text-completion service.

One blocking POST per call. The response body is an envelope whose
``answer`` field is a JSON-encoded string carrying the actual
:class:`~calendarbot.models.CompletionResult`, so decoding happens twice.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from calendarbot.errors import NetworkError, ProtocolError, sanitize_message
from calendarbot.models import CompletionEnvelope, CompletionResult

if TYPE_CHECKING:
    from calendarbot.config import CompletionConfig

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_ENDPOINT = "https://api.dify.ai/v1/completion-messages"
DEFAULT_COMPLETION_USER = "calendarbot"
DEFAULT_TIMEOUT_SECONDS = 60.0
RESPONSE_MODE_BLOCKING = "blocking"


def _safe_service_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        for key in ("message", "error", "code"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return sanitize_message(value)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_message(raw_text)
    return "Request failed without an error payload"


def build_request_body(existed_events: str, plans: str, *, user: str) -> dict[str, Any]:
    return {
        "inputs": {
            "existed_events": existed_events,
            "plans": plans,
        },
        "response_mode": RESPONSE_MODE_BLOCKING,
        "user": user,
    }


def decode_completion_response(
    raw_body: bytes | str,
) -> tuple[CompletionEnvelope, CompletionResult]:
    """Decode the outer envelope, then the ``answer`` string inside it."""
    try:
        envelope = CompletionEnvelope.model_validate_json(raw_body)
    except (ValidationError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Completion envelope could not be decoded: {exc}") from exc

    try:
        result = CompletionResult.model_validate_json(envelope.answer)
    except ValidationError as exc:
        raise ProtocolError(f"Completion answer could not be decoded: {exc}") from exc

    return envelope, result


class CompletionClient:
    """Submits formatted calendar text and returns the decoded result."""

    def __init__(
        self,
        *,
        api_key: str,
        endpoint: str = DEFAULT_COMPLETION_ENDPOINT,
        user: str = DEFAULT_COMPLETION_USER,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key.strip():
            raise ValueError("api_key must be a non-empty string")
        self._api_key = api_key.strip()
        self.endpoint = endpoint
        self.user = user
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def __aenter__(self) -> CompletionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def submit(self, existed_events: str, plans: str) -> CompletionResult:
        """Send both text blocks and return the decoded result.

        Raises
        ------
        NetworkError
            The service could not be reached.
        ProtocolError
            Non-2xx status, or either decoding layer failed.
        """
        body = build_request_body(existed_events, plans, user=self.user)
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        logger.debug("Submitting completion request to %s: %s", self.endpoint, body)

        try:
            response = await self._http_client.post(self.endpoint, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(
                f"Completion request failed: {sanitize_message(str(exc)) or type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ProtocolError(
                f"Completion service returned HTTP {response.status_code}: "
                f"{_safe_service_error_message(response)}",
                status_code=response.status_code,
            )

        envelope, result = decode_completion_response(response.content)
        usage = envelope.metadata.usage
        logger.info(
            "Completion received: task_id=%s status=%d events=%d tokens=%d latency=%s",
            envelope.task_id,
            result.status,
            len(result.events or []),
            usage.total_tokens,
            usage.latency,
        )
        return result


def build_completion_client(
    config: CompletionConfig, *, http_client: httpx.AsyncClient | None = None
) -> CompletionClient:
    return CompletionClient(
        api_key=config.api_key,
        endpoint=config.endpoint,
        user=config.user,
        timeout_seconds=config.timeout_seconds,
        http_client=http_client,
    )
