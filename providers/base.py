"""
Shared types, prompts and base class for analysis providers.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from models import AnalysisRecord

logger = logging.getLogger(__name__)

# ── Prompts (shared across all providers) ─────────────────────────────────────

IMAGE_PROMPT = (
    "Analyze this product image in detail. Extract information for a shopping search. "
    "Be specific and detailed. This information will be used to find similar products "
    "for purchase online."
)

URL_PROMPT_TEMPLATE = """You are an advanced AI shopping assistant. Analyze the product from this e-commerce URL: "{url}".
Based on the product details you can infer from this link, extract its key attributes for a shopping search engine, including the main product image URL.
Your response MUST be a valid JSON object that strictly adheres to the provided schema.

Provide details for:
- category (e.g., "clothing", "electronics")
- itemType (e.g., "men's leather boots", "wireless headphones")
- colors (list of primary colors)
- patterns (e.g., "solid", "plaid")
- materials (e.g., "leather", "cotton", "plastic")
- brand (the brand name, or "Generic" if not obvious)
- styleKeywords (e.g., "minimalist", "retro", "techwear")
- visibleText (any text on the product)
- description (a concise, compelling description for product listings)
- confidence (a score from 80-100 reflecting your confidence in the analysis based on the URL)
- imageUrl (The direct URL of the main product image from the page. If you cannot find one, omit this field.)

Do not include any text or markdown formatting before or after the JSON object."""

SEARCH_PROMPT_TEMPLATE = """Based on the following product analysis, find 15-20 similar items available for purchase from trusted e-commerce websites in {region}.

Analysis:
- Item Type: {item_type}
- Description: {description}
- Colors: {colors}
- Patterns: {patterns}
- Materials: {materials}
- Style Keywords: {style_keywords}

Prioritize searching on these e-commerce sites: {retailers}.

Use Google Search to find these products. For each product found, provide a detailed JSON object. The response MUST be a single, valid JSON array containing these objects, with no surrounding text or markdown.

Each JSON object must have this exact structure:
{{
  "id": "unique_product_id",
  "title": "Product Title",
  "imageUrl": "URL to a high-quality product image",
  "price": {{
    "current": 2499.00,
    "original": 3999.00,
    "currency": "₹"
  }},
  "retailer": {{
    "name": "E-commerce Site Name (e.g., Amazon.in, Myntra)"
  }},
  "affiliateLink": "Direct URL to the product page",
  "similarityScore": 95.5
}}"""


def build_url_prompt(url: str) -> str:
    return URL_PROMPT_TEMPLATE.format(url=url)


def build_search_prompt(analysis: AnalysisRecord, region: str, retailers: list[str]) -> str:
    return SEARCH_PROMPT_TEMPLATE.format(
        region=region,
        item_type=analysis.item_type,
        description=analysis.description,
        colors=", ".join(analysis.colors),
        patterns=", ".join(analysis.patterns),
        materials=", ".join(analysis.materials),
        style_keywords=", ".join(analysis.style_keywords),
        retailers=", ".join(retailers) or "any trusted store",
    )


# ── Classified errors ─────────────────────────────────────────────────────────
# Messages are shown to the user as-is.

class ProviderError(Exception):
    """Base for all upstream AI failures."""


class RateLimitedError(ProviderError):
    def __init__(self, message: str = "Too many requests. Please try again in a moment."):
        super().__init__(message)


class AnalysisFailedError(ProviderError):
    pass


class SearchFailedError(ProviderError):
    def __init__(self, message: str = "Failed to find similar products. Please try refining your search."):
        super().__init__(message)


# ── JSON helpers ──────────────────────────────────────────────────────────────

def parse_json_response(raw: str, provider_name: str) -> dict:
    """
    Parse JSON from a model response, handling markdown fences gracefully.
    Raises ValueError on parse failure.
    """
    text = raw.strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response: %s", provider_name, raw[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc


def extract_json_array(raw: str, provider_name: str) -> list[Any]:
    """
    Pull the outermost JSON array out of free text (search-grounded answers
    often wrap it in prose or markdown). Returns [] when there is none.
    """
    text = raw.strip()
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end == -1 or end < start:
        logger.warning("[%s] No JSON array in response: %s", provider_name, text[:300])
        return []
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        logger.error("[%s] Failed to parse JSON array: %s", provider_name, exc)
        return []
    if not isinstance(data, list):
        logger.warning("[%s] Parsed content was not a JSON array", provider_name)
        return []
    return data


# ── Abstract base ──────────────────────────────────────────────────────────────

class AnalysisProvider(ABC):
    """Base class all analysis providers must implement."""

    name: str           # e.g. "google"
    model_id: str       # e.g. "gemini-2.5-flash"

    @abstractmethod
    async def analyse_image(self, image_bytes: bytes, mime_type: Optional[str] = None) -> AnalysisRecord:
        """Raises RateLimitedError / AnalysisFailedError."""
        ...

    @abstractmethod
    async def analyse_url(self, url: str) -> AnalysisRecord:
        """Raises RateLimitedError / AnalysisFailedError."""
        ...

    @abstractmethod
    async def find_similar_products(self, analysis: AnalysisRecord) -> list[dict]:
        """
        Raw product objects as returned by the model (unvalidated).
        Empty list means no results, never an error.
        Raises RateLimitedError / SearchFailedError on transport failure.
        """
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"
