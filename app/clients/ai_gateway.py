"""Client for the OpenAI-compatible AI gateway (chat completions + embeddings)."""

from __future__ import annotations

import logging
from typing import Any

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError

from app.config import Settings, settings

logger = logging.getLogger(__name__)


class AIGatewayError(RuntimeError):
    """Base error for AI gateway failures."""

    def __init__(self, message: str, code: str = "AI_GATEWAY_ERROR") -> None:
        super().__init__(message)
        self.code = code


class AIGatewayRateLimitError(AIGatewayError):
    """Raised when the gateway responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by AI gateway") -> None:
        super().__init__(message, code="AI_GATEWAY_429")


class AIGatewayTimeoutError(AIGatewayError):
    """Raised when a gateway request times out."""

    def __init__(self, message: str = "AI gateway request timed out") -> None:
        super().__init__(message, code="AI_GATEWAY_TIMEOUT")


class AIGatewaySchemaError(AIGatewayError):
    """Raised when the gateway response does not carry the expected payload."""

    def __init__(self, message: str = "Unexpected AI gateway response schema") -> None:
        super().__init__(message, code="AI_GATEWAY_SCHEMA_ERR")


class AIGatewayClient:
    """Thin async wrapper around the OpenAI SDK pointed at the AI gateway."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://ai.gateway.lovable.dev/v1",
        chat_model: str = "google/gemini-2.5-flash",
        embedding_model: str = "text-embedding-3-small",
        embedding_dimensions: int | None = 768,
        timeout: float = 30.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("AI_GATEWAY_API_KEY is required to create an AIGatewayClient.")
        self._chat_model = chat_model
        self._embedding_model = embedding_model
        self._embedding_dimensions = embedding_dimensions
        self._owns_client = client is None
        # Retries are disabled: a failed call is reported to the caller as-is.
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            max_retries=0,
        )

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "AIGatewayClient":
        """Instantiate the client from application settings."""
        source = source or settings
        return cls(
            source.ai_gateway_api_key or "",
            base_url=source.ai_gateway_base_url,
            chat_model=source.ai_chat_model,
            embedding_model=source.ai_embedding_model,
            embedding_dimensions=source.ai_embedding_dimensions,
            timeout=source.ai_request_timeout_seconds,
        )

    async def close(self) -> None:
        """Close the underlying SDK client."""
        if self._owns_client:
            await self._client.close()

    async def complete_json(self, *, system_prompt: str, user_prompt: str) -> str:
        """Request a JSON-object chat completion and return the raw message text."""
        try:
            response = await self._client.chat.completions.create(
                model=self._chat_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise _translate_error(exc) from exc

        choices = getattr(response, "choices", None) or []
        if not choices:
            raise AIGatewaySchemaError("AI gateway response did not include choices.")
        content = getattr(choices[0].message, "content", None)
        if isinstance(content, list):
            content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
        if not isinstance(content, str) or not content.strip():
            raise AIGatewaySchemaError("AI gateway response did not include text output.")
        return content.strip()

    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for ``text``."""
        if not text or not text.strip():
            raise ValueError("text must be non-empty to embed.")
        kwargs: dict[str, Any] = {"model": self._embedding_model, "input": text}
        if self._embedding_dimensions:
            kwargs["dimensions"] = self._embedding_dimensions
        try:
            response = await self._client.embeddings.create(**kwargs)
        except ValueError as exc:
            # The SDK raises a bare ValueError when the response carries no vectors.
            raise AIGatewaySchemaError(f"AI gateway embedding response was empty: {exc}") from exc
        except Exception as exc:
            raise _translate_error(exc) from exc

        data = getattr(response, "data", None) or []
        if not data:
            raise AIGatewaySchemaError("AI gateway embedding response was empty.")
        vector = getattr(data[0], "embedding", None)
        if not isinstance(vector, list) or not vector:
            raise AIGatewaySchemaError("AI gateway embedding payload was not a vector.")
        try:
            return [float(value) for value in vector]
        except (TypeError, ValueError) as exc:
            raise AIGatewaySchemaError("AI gateway embedding contained non-numeric values.") from exc

    async def __aenter__(self) -> "AIGatewayClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def _translate_error(exc: Exception) -> AIGatewayError:
    if isinstance(exc, APITimeoutError):
        return AIGatewayTimeoutError()
    if isinstance(exc, APIStatusError):
        if exc.status_code == 429:
            return AIGatewayRateLimitError()
        if exc.status_code in (408, 504):
            return AIGatewayTimeoutError()
        message = getattr(exc, "message", str(exc))
        return AIGatewayError(f"AI gateway request failed: {exc.status_code} - {message}")
    if isinstance(exc, APIConnectionError):
        return AIGatewayError(f"HTTP error calling AI gateway: {exc}")
    if isinstance(exc, OpenAIError):
        return AIGatewayError(f"AI gateway request failed: {exc}")
    logger.warning("ai_gateway.unexpected_error", extra={"error": type(exc).__name__})
    return AIGatewayError(f"Unexpected AI gateway failure: {exc}")
