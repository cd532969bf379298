"""Context window sizes per model."""

from typing import Any

import httpx

from toolpilot.config import AutoCompactConfig
from toolpilot.context.tokenization import normalize_model_name
from toolpilot.logging import get_logger

log = get_logger(__name__)

# Local model families whose limits are not published by a metadata service.
LOCAL_MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "llama3.2": 128000,
    "llama3.2:1b": 128000,
    "llama3.2:3b": 128000,
    "llama3.1": 128000,
    "llama3.1:8b": 128000,
    "llama3.1:70b": 128000,
    "llama3.1:405b": 128000,
    "llama3": 8192,
    "llama3:8b": 8192,
    "llama3:70b": 8192,
    "llama2": 4096,
    "llama2:7b": 4096,
    "llama2:13b": 4096,
    "llama2:70b": 4096,
    "mistral": 32000,
    "mistral:7b": 32000,
    "mistral-large": 256000,
    "mixtral": 32000,
    "mixtral:8x7b": 32000,
    "mixtral:8x22b": 64000,
    "ministral": 256000,
    "qwen": 32000,
    "qwen:7b": 32000,
    "qwen:14b": 32000,
    "qwen2": 32000,
    "qwen2:7b": 32000,
    "qwen2.5": 128000,
    "qwen2.5:7b": 128000,
    "qwen3": 128000,
    "qwen3-coder:480b": 256000,
    "gemma": 8192,
    "gemma:2b": 8192,
    "gemma:7b": 8192,
    "gemma2": 8192,
    "gemma2:9b": 8192,
    "gemma2:27b": 8192,
    "command-r": 128000,
    "command-r-plus": 128000,
    "deepseek-coder": 16000,
    "deepseek-coder-v2": 128000,
    "deepseek-v3.1": 128000,
    "phi3": 128000,
    "phi3:mini": 128000,
    "phi3:medium": 128000,
    "gpt-oss:120b": 128000,
    "gpt-oss:20b": 128000,
}

# Checked in order; more specific families first.
_FAMILY_FALLBACKS = (
    "llama3.2", "llama3.1", "llama3", "llama2", "mixtral:8x22b", "mixtral", "ministral",
    "mistral-large", "mistral", "qwen2.5", "qwen2", "qwen", "gemma2", "gemma",
    "command-r-plus", "command-r", "deepseek-coder-v2", "phi3",
)


def local_context_limit(model: str) -> int | None:
    """Limit from the local-model table, matching tags like ``llama3.1:8b-instruct``."""
    lower = model.lower()
    matches = [
        key
        for key in LOCAL_MODEL_CONTEXT_LIMITS
        if lower == key or lower.startswith(f"{key}-") or lower.startswith(f"{key}:")
    ]
    if matches:
        return LOCAL_MODEL_CONTEXT_LIMITS[max(matches, key=len)]
    for family in _FAMILY_FALLBACKS:
        if family in lower:
            return LOCAL_MODEL_CONTEXT_LIMITS[family]
    if "deepseek" in lower:
        return LOCAL_MODEL_CONTEXT_LIMITS["deepseek-coder"]
    return None


class ModelContextLookup:
    """Resolve a model's context limit.

    Order: configured overrides, the local-model table, then (when enabled)
    the models.dev catalogue fetched once over HTTP.
    """

    def __init__(
        self,
        config: AutoCompactConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or AutoCompactConfig()
        self._http_client = http_client
        self._catalogue: dict[str, Any] | None = None

    async def context_limit_for(self, model: str) -> int | None:
        if not model:
            return None
        overrides = self.config.context_limits
        normalized = normalize_model_name(model)
        for candidate in (model, normalized):
            if candidate in overrides:
                return overrides[candidate]

        limit = local_context_limit(model)
        if limit:
            return limit

        if self.config.models_dev_lookup:
            limit = await self._lookup_catalogue(normalized)
            if limit:
                return limit

        return local_context_limit(normalized)

    async def _lookup_catalogue(self, model: str) -> int | None:
        catalogue = await self._load_catalogue()
        if not catalogue:
            return None
        lower = model.lower()
        partial: int | None = None
        for provider in catalogue.values():
            models = provider.get("models", {}) if isinstance(provider, dict) else {}
            for model_id, info in models.items():
                limit = (info.get("limit") or {}).get("context") if isinstance(info, dict) else None
                if not isinstance(limit, int):
                    continue
                if model_id == model:
                    return limit
                name = str(info.get("name", "")).lower()
                if partial is None and (lower in model_id.lower() or lower in name):
                    partial = limit
        return partial

    async def _load_catalogue(self) -> dict[str, Any] | None:
        if self._catalogue is not None:
            return self._catalogue
        client = self._http_client or httpx.AsyncClient(timeout=10.0)
        try:
            response = await client.get(self.config.models_dev_url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("Failed to fetch model catalogue", url=self.config.models_dev_url, error=str(e))
            return None
        finally:
            if self._http_client is None:
                await client.aclose()
        self._catalogue = data if isinstance(data, dict) else {}
        return self._catalogue
