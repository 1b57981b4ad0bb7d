"""Image generation backend for the Gemini generateContent API.

Responsibilities:
- Build the request body (reference images inline, image/thinking/search/safety config)
- Retry transient network and server errors with an escalating delay sequence
- Map HTTP failures onto typed errors (rate limited, permanent, transient)
- Extract the generated image, or explain why none came back
"""

import base64
import re
from typing import Any, Dict, List, Optional

import httpx
import structlog

from .models import BackendConfig, GenerationConfig
from .queue.backends import CancellationToken, GenerationBackend
from .queue.errors import (
    GenerationFailure,
    PermanentBackendError,
    RateLimitedError,
    TransientBackendError,
)
from .queue.models import GeneratedImage, RefImage
from .queue.retry import RetryPolicy, call_with_retry

logger = structlog.get_logger(__name__)

_SECONDS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*seconds?", re.IGNORECASE)

PERMANENT_STATUSES = (400, 401, 403, 404)


def build_request_body(
    prompt: str, config: GenerationConfig, ref_images: List[RefImage]
) -> Dict[str, Any]:
    """Build a generateContent request body."""
    parts: List[Dict[str, Any]] = [
        {"inlineData": {"mimeType": img.mime_type, "data": img.data}} for img in ref_images
    ]
    parts.append({"text": prompt})

    generation_config: Dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}

    image_config = {}
    if config.aspect_ratio:
        image_config["aspectRatio"] = config.aspect_ratio
    if config.resolution:
        image_config["imageSize"] = config.resolution
    if image_config:
        generation_config["imageConfig"] = image_config

    # -1 = let the model decide, so no thinkingConfig at all
    if config.thinking_budget >= 0:
        generation_config["thinkingConfig"] = {"thinkingBudget": config.thinking_budget}

    body: Dict[str, Any] = {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": generation_config,
    }
    if config.search_enabled:
        body["tools"] = [{"google_search": {}}]
    if config.safety_thresholds:
        body["safetySettings"] = [
            {"category": category, "threshold": threshold}
            for category, threshold in sorted(config.safety_thresholds.items())
        ]
    return body


def parse_retry_after(response: httpx.Response, message: str) -> Optional[float]:
    """Seconds to wait, from the Retry-After header or 'N seconds' in the message."""
    header = response.headers.get("retry-after")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    match = _SECONDS_RE.search(message or "")
    if match:
        return float(match.group(1))
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return data["error"].get("message") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


def raise_for_response(response: httpx.Response) -> None:
    """Translate an unsuccessful response into a typed error."""
    if response.is_success:
        return
    status = response.status_code
    message = _error_message(response)

    if status == 429:
        raise RateLimitedError(message, retry_after_s=parse_retry_after(response, message))
    if status in (401, 403):
        raise PermanentBackendError(
            f"Authentication failed. Check your credentials. ({message})", status_code=status
        )
    if status in PERMANENT_STATUSES:
        raise PermanentBackendError(message, status_code=status)
    if status == 408 or status >= 500:
        raise TransientBackendError(f"HTTP {status}: {message}")
    raise GenerationFailure(f"HTTP {status}: {message}")


def extract_image(data: Dict[str, Any]) -> GeneratedImage:
    """Pull the first non-thought inline image out of a response."""
    candidates = data.get("candidates") or []
    candidate = candidates[0] if candidates else {}
    parts = (candidate.get("content") or {}).get("parts") or []

    image_part = next((p for p in parts if p.get("inlineData") and not p.get("thought")), None)
    if image_part is None:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason or candidate.get("finishReason") in ("SAFETY", "PROHIBITED_CONTENT"):
            raise GenerationFailure("Prompt may contain restricted content. Try rephrasing.")
        text = next((p["text"] for p in parts if p.get("text")), None)
        raise GenerationFailure(text or "No image returned")

    inline = image_part["inlineData"]
    metadata = {}
    if candidate.get("groundingMetadata"):
        metadata["grounding"] = candidate["groundingMetadata"]
    return GeneratedImage(
        mime_type=inline.get("mimeType") or "image/png",
        data=base64.b64decode(inline["data"]),
        metadata=metadata,
    )


class GeminiImageBackend(GenerationBackend):
    """GenerationBackend over HTTP with bounded transient retry.

    Cancellation is checked before every attempt and during retry waits;
    a request already on the wire runs to completion and its result is
    discarded by the processor.
    """

    def __init__(self, config: BackendConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self.retry_policy = RetryPolicy(
            max_attempts=config.max_attempts, delays_ms=tuple(config.retry_delays_ms)
        )
        self._client = client or httpx.Client(timeout=config.timeout_s)

    def generate(
        self,
        prompt: str,
        config: GenerationConfig,
        ref_images: List[RefImage],
        token: CancellationToken,
    ) -> GeneratedImage:
        if not config.model:
            raise PermanentBackendError("No model selected")
        if not self.config.api_key:
            raise PermanentBackendError("No API key configured")

        body = build_request_body(prompt, config, ref_images)
        url = f"{self.config.base_url.rstrip('/')}/models/{config.model}:generateContent"

        def attempt() -> Dict[str, Any]:
            return self._post(url, body)

        data = call_with_retry(attempt, self.retry_policy, token)
        token.raise_if_cancelled()
        return extract_image(data)

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post(
                url,
                json=body,
                headers={"x-goog-api-key": self.config.api_key},
            )
        except httpx.TimeoutException as e:
            raise TransientBackendError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientBackendError(f"Network error: {e}") from e

        raise_for_response(response)
        try:
            return response.json()
        except ValueError as e:
            raise TransientBackendError(f"Malformed response: {e}") from e

    def close(self) -> None:
        self._client.close()
