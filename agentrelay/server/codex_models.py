"""Model choices offered for the Codex backend.

Sources, first non-empty wins: the Codex CLI's local model cache, the
OpenAI-compatible ``/models`` endpoint, then a static default list.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import aiohttp

from agentrelay.shared.services.durable_write import read_json

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
_MODEL_ID_RE = re.compile(r"^(gpt|o\d|codex)", re.IGNORECASE)
_FETCH_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: str = "OpenAI"

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "provider": self.provider}


DEFAULT_CODEX_MODELS = [
    ModelInfo(id="gpt-5.3-codex", name="GPT-5.3 Codex"),
    ModelInfo(id="gpt-4.1", name="GPT-4.1"),
]


def codex_models_cache_path() -> Path:
    return Path.home() / ".codex" / "models_cache.json"


def load_codex_cached_models(path: Path | None = None) -> list[ModelInfo]:
    """Visible models from the Codex CLI cache; [] if absent or malformed."""
    data = read_json(path or codex_models_cache_path())
    if not isinstance(data, dict) or not isinstance(data.get("models"), list):
        return []
    models: list[ModelInfo] = []
    for entry in data["models"]:
        if not isinstance(entry, dict) or entry.get("visibility") == "hidden":
            continue
        slug = entry.get("slug") or ""
        if not isinstance(slug, str) or not slug:
            continue
        models.append(ModelInfo(id=slug, name=str(entry.get("display_name") or slug)))
    return models


def normalize_base_url(base_url: str | None) -> str:
    trimmed = (base_url or "").strip() or DEFAULT_OPENAI_BASE_URL
    return trimmed.rstrip("/")


def select_model_ids(payload: Any) -> list[str]:
    """Chat-capable model ids from a ``/models`` response, sorted."""
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        return []
    ids = {
        entry["id"] for entry in data
        if isinstance(entry, dict) and isinstance(entry.get("id"), str)
        and _MODEL_ID_RE.match(entry["id"])
    }
    return sorted(ids)


async def fetch_openai_models(
    session: aiohttp.ClientSession,
    api_key: str,
    base_url: str,
) -> list[ModelInfo]:
    async with session.get(
        f"{base_url}/models",
        headers={"Authorization": f"Bearer {api_key}"},
        timeout=aiohttp.ClientTimeout(total=_FETCH_TIMEOUT_SECONDS),
    ) as resp:
        if resp.status != 200:
            logger.info("Model listing at %s returned HTTP %d", base_url, resp.status)
            return []
        payload = await resp.json(content_type=None)
    return [ModelInfo(id=model_id, name=model_id) for model_id in select_model_ids(payload)]


async def list_codex_models(
    api_key: str | None = None,
    base_url: str | None = None,
    *,
    cache_path: Path | None = None,
    session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
) -> list[ModelInfo]:
    cached = load_codex_cached_models(cache_path)
    if cached:
        return cached

    key = api_key or os.environ.get("OPENAI_API_KEY")
    if not key:
        return list(DEFAULT_CODEX_MODELS)
    url = normalize_base_url(base_url or os.environ.get("OPENAI_BASE_URL"))

    try:
        async with session_factory() as session:
            models = await fetch_openai_models(session, key, url)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        logger.info("Model listing at %s failed: %s", url, exc)
        return list(DEFAULT_CODEX_MODELS)
    return models or list(DEFAULT_CODEX_MODELS)
