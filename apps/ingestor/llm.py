"""
Language Model Backends

Thin async wrappers around the hosted model providers. Each backend turns a
prompt into raw response text and normalizes provider failures into
ModelCallError so the extraction client can apply one retry policy.

Providers:
- gemini: Google GenAI SDK (default)
- perplexity: OpenAI-style chat completions over httpx
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import orjson
from google import genai
from google.genai import errors as genai_errors

from utils.config import Settings
from utils.errors import ModelCallError

logger = logging.getLogger(__name__)

QUOTA_FAILURE_TYPE = "type.googleapis.com/google.rpc.QuotaFailure"
RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"


class ModelBackend(ABC):
    """A hosted language model that answers a single text prompt."""

    name: str

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Return the model's raw text response.

        Raises:
            ModelCallError: If the provider call fails
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release any held connections."""
        return None


def _parse_seconds(value: Any) -> Optional[float]:
    """Parse '37s' / '1.5s' / 12 into seconds."""
    if value is None:
        return None
    try:
        return float(str(value).strip().rstrip("s"))
    except ValueError:
        return None


def _gemini_error_details(details: Any) -> list[dict[str, Any]]:
    """Pull the google.rpc detail entries out of an APIError payload."""
    if isinstance(details, dict):
        error = details.get("error", details)
        entries = error.get("details") if isinstance(error, dict) else None
    else:
        entries = details
    if not isinstance(entries, list):
        return []
    return [entry for entry in entries if isinstance(entry, dict)]


class GeminiBackend(ModelBackend):
    """Google Gemini via the google-genai async client."""

    name = "gemini"

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash", client: Optional[genai.Client] = None) -> None:
        self.model = model
        self._client = client or genai.Client(api_key=api_key)

    async def generate(self, prompt: str) -> str:
        try:
            response = await self._client.aio.models.generate_content(model=self.model, contents=prompt)
        except genai_errors.APIError as e:
            raise self._normalize_error(e) from e
        except httpx.HTTPError as e:
            raise ModelCallError(f"Network error: {e}") from e
        return response.text or ""

    @staticmethod
    def _normalize_error(error: genai_errors.APIError) -> ModelCallError:
        entries = _gemini_error_details(getattr(error, "details", None))
        quota_exceeded = any(entry.get("@type") == QUOTA_FAILURE_TYPE for entry in entries)
        retry_after = None
        for entry in entries:
            if entry.get("@type") == RETRY_INFO_TYPE:
                retry_after = _parse_seconds(entry.get("retryDelay"))
                break
        return ModelCallError(
            getattr(error, "message", None) or str(error),
            status=getattr(error, "code", None),
            quota_exceeded=quota_exceeded,
            retry_after=retry_after,
        )


class PerplexityBackend(ModelBackend):
    """Perplexity chat completions API."""

    name = "perplexity"

    def __init__(
        self,
        api_key: str,
        model: str = "sonar-pro",
        api_url: str = "https://api.perplexity.ai/chat/completions",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.api_url = api_url
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def generate(self, prompt: str) -> str:
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.2,
            "max_tokens": 4000,
        }

        try:
            response = await self._client.post(self.api_url, content=orjson.dumps(body))
        except httpx.HTTPError as e:
            raise ModelCallError(f"Network error: {e}") from e

        if response.is_error:
            raise self._normalize_error(response)

        try:
            data = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise ModelCallError(f"Failed to parse API response: {e}", status=response.status_code) from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            logger.error("Unexpected response format: %s", response.text[:200])
            return ""

        content = (choices[0].get("message") or {}).get("content") or ""
        if not content:
            logger.error("Empty response from API")
        return content

    @staticmethod
    def _normalize_error(response: httpx.Response) -> ModelCallError:
        try:
            payload = orjson.loads(response.content)
        except orjson.JSONDecodeError:
            payload = {}

        message = ""
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                message = error.get("message") or ""
            message = message or payload.get("message") or ""
        message = message or f"HTTP {response.status_code}: {response.text[:100]}"

        lowered = message.lower()
        quota_exceeded = response.status_code == 429 and ("quota" in lowered or "limit" in lowered)

        return ModelCallError(
            message,
            status=response.status_code,
            quota_exceeded=quota_exceeded,
            retry_after=_parse_seconds(response.headers.get("retry-after")),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def build_backend(settings: Settings) -> ModelBackend:
    """Create the backend for MODEL_PROVIDER.

    Raises:
        ConfigurationError: If the provider's API key is missing
    """
    api_key = settings.require_model_api_key()

    if settings.MODEL_PROVIDER == "perplexity":
        return PerplexityBackend(
            api_key=api_key,
            model=settings.PERPLEXITY_MODEL,
            api_url=settings.PERPLEXITY_API_URL,
            timeout=settings.MODEL_TIMEOUT,
        )

    return GeminiBackend(api_key=api_key, model=settings.GEMINI_MODEL)
