"""
Provider Manager — builds and caches the active analysis provider.

The provider is created lazily on first use from GOOGLE_API_KEY / GEMINI_MODEL.
Tests reset the cache with `manager._provider = None`.
"""
from __future__ import annotations

import logging
from typing import Optional

import config
from models import AnalysisRecord
from providers.base import AnalysisProvider

logger = logging.getLogger(__name__)

# Module-level cache
_provider: Optional[AnalysisProvider] = None


def _build_provider() -> AnalysisProvider:
    if not config.GOOGLE_API_KEY:
        raise RuntimeError(
            "No analysis provider available.\n"
            "Set GOOGLE_API_KEY in the environment or .env file."
        )
    from providers.gemini_provider import GeminiProvider
    provider = GeminiProvider(config.GOOGLE_API_KEY, config.GEMINI_MODEL)
    logger.info("Loaded provider: %s", provider.full_name)
    return provider


def get_provider() -> AnalysisProvider:
    global _provider
    if _provider is None:
        _provider = _build_provider()
    return _provider


def provider_name() -> str:
    try:
        return get_provider().full_name
    except RuntimeError:
        return "not configured"


# ── Core analysis functions ───────────────────────────────────────────────────

async def analyse_image(image_bytes: bytes, mime_type: Optional[str] = None) -> AnalysisRecord:
    """Identify the product in a photo. Raises ProviderError subclasses."""
    return await get_provider().analyse_image(image_bytes, mime_type)


async def analyse_url(url: str) -> AnalysisRecord:
    """Identify the product behind a product-page URL. Raises ProviderError subclasses."""
    return await get_provider().analyse_url(url)
