"""
Google Gemini provider — uses the google-genai SDK.

One model does all three jobs:
  • photo analysis     — image part + structured JSON output (response_schema)
  • URL analysis       — text prompt naming the page, same schema
  • similar products   — Google Search grounding tool, free-text answer that
                         contains a JSON array (response_schema cannot be
                         combined with tools, so the array is extracted)
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

import config
from image_service import detect_mime
from models import AnalysisRecord
from providers.base import (
    IMAGE_PROMPT,
    AnalysisFailedError,
    AnalysisProvider,
    ProviderError,
    RateLimitedError,
    SearchFailedError,
    build_search_prompt,
    build_url_prompt,
    extract_json_array,
    parse_json_response,
)

logger = logging.getLogger(__name__)

_STR = genai_types.Schema(type=genai_types.Type.STRING)

ANALYSIS_SCHEMA = genai_types.Schema(
    type=genai_types.Type.OBJECT,
    properties={
        "category":      genai_types.Schema(type=genai_types.Type.STRING, description='e.g., "clothing", "furniture", "electronics"'),
        "itemType":      genai_types.Schema(type=genai_types.Type.STRING, description='e.g., "denim jacket", "table lamp", "smartphone"'),
        "colors":        genai_types.Schema(type=genai_types.Type.ARRAY, items=_STR, description="All visible colors"),
        "patterns":      genai_types.Schema(type=genai_types.Type.ARRAY, items=_STR, description='e.g., "striped", "floral", "leather texture"'),
        "materials":     genai_types.Schema(type=genai_types.Type.ARRAY, items=_STR, description='e.g., "denim", "wood", "metal"'),
        "brand":         genai_types.Schema(type=genai_types.Type.STRING, nullable=True, description="Brand name if visible, otherwise null"),
        "styleKeywords": genai_types.Schema(type=genai_types.Type.ARRAY, items=_STR, description='e.g., "vintage", "modern", "casual"'),
        "visibleText":   genai_types.Schema(type=genai_types.Type.ARRAY, items=_STR, description="Any visible text, labels, or logos"),
        "description":   genai_types.Schema(type=genai_types.Type.STRING, description="A detailed description suitable for product search engines."),
        "confidence":    genai_types.Schema(type=genai_types.Type.INTEGER, description="A confidence score from 0-100 on the accuracy of the analysis."),
        "imageUrl":      genai_types.Schema(type=genai_types.Type.STRING, description="The direct URL of the main product image from the page."),
    },
    required=[
        "category", "itemType", "colors", "patterns", "materials", "brand",
        "styleKeywords", "visibleText", "description", "confidence",
    ],
)


def _is_rate_limit(exc: Exception) -> bool:
    if isinstance(exc, genai_errors.APIError) and exc.code == 429:
        return True
    return "429" in str(exc)


class GeminiProvider(AnalysisProvider):

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        region: str = config.SEARCH_REGION,
        retailers: Optional[list[str]] = None,
    ):
        self.name      = "google"
        self.model_id  = model
        self.region    = region
        self.retailers = list(config.PREFERRED_RETAILERS if retailers is None else retailers)
        self._client   = genai.Client(api_key=api_key)

    # ── Analysis ───────────────────────────────────────────────────────────────

    async def _analyse(self, contents: list, what: str) -> AnalysisRecord:
        gen_config = genai_types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=ANALYSIS_SCHEMA,
        )
        t0 = time.monotonic()
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model_id,
                contents=contents,
                config=gen_config,
            )
            data = parse_json_response(response.text or "", self.full_name)
            record = AnalysisRecord.from_dict(data)
        except ProviderError:
            raise
        except Exception as exc:
            logger.error("[%s] Error analyzing %s: %s", self.full_name, what, exc)
            if _is_rate_limit(exc):
                raise RateLimitedError() from exc
            if what == "url":
                raise AnalysisFailedError(
                    "Failed to analyze URL. The link might be broken or inaccessible."
                ) from exc
            raise AnalysisFailedError(
                "Failed to analyze image. The image might be unclear or unsupported."
            ) from exc

        logger.info(
            "[%s] %s analysed as '%s' (confidence=%d) in %dms",
            self.full_name, what, record.item_type, record.confidence,
            int((time.monotonic() - t0) * 1000),
        )
        return record

    async def analyse_image(self, image_bytes: bytes, mime_type: Optional[str] = None) -> AnalysisRecord:
        mime = mime_type or detect_mime(image_bytes)
        return await self._analyse(
            [IMAGE_PROMPT, genai_types.Part.from_bytes(data=image_bytes, mime_type=mime)],
            "image",
        )

    async def analyse_url(self, url: str) -> AnalysisRecord:
        return await self._analyse([build_url_prompt(url)], "url")

    # ── Product search ─────────────────────────────────────────────────────────

    async def find_similar_products(self, analysis: AnalysisRecord) -> list[dict]:
        prompt = build_search_prompt(analysis, self.region, self.retailers)
        gen_config = genai_types.GenerateContentConfig(
            tools=[genai_types.Tool(google_search=genai_types.GoogleSearch())],
        )
        t0 = time.monotonic()
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model_id,
                contents=prompt,
                config=gen_config,
            )
        except Exception as exc:
            logger.error("[%s] Error finding similar products: %s", self.full_name, exc)
            if _is_rate_limit(exc):
                raise RateLimitedError() from exc
            raise SearchFailedError() from exc

        items = extract_json_array(response.text or "", self.full_name)
        logger.info(
            "[%s] search for '%s' → %d raw items in %dms",
            self.full_name, analysis.item_type, len(items),
            int((time.monotonic() - t0) * 1000),
        )
        return items
