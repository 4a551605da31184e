"""
product_finder.py — public interface for similar-product search.

The rest of the bot imports only from here:
  from product_finder import find_similar_products, SortOption, ...

The provider returns raw, untrusted product objects. This module turns
them into validated Product values, drops duplicates, and provides the
sort / retailer-filter helpers used by the results view.
"""
from __future__ import annotations

import enum
import logging
from typing import Iterable

from models import AnalysisRecord, Product
from providers.manager import get_provider

logger = logging.getLogger(__name__)

__all__ = [
    "Product",
    "SortOption",
    "find_similar_products",
    "filter_by_retailers",
    "next_sort",
    "sort_products",
    "unique_retailers",
]


class SortOption(enum.Enum):
    RELEVANCE  = "relevance"
    PRICE_ASC  = "price_asc"
    PRICE_DESC = "price_desc"

    @property
    def label(self) -> str:
        return {
            SortOption.RELEVANCE:  "Relevance",
            SortOption.PRICE_ASC:  "Price Low-High",
            SortOption.PRICE_DESC: "Price High-Low",
        }[self]


_SORT_CYCLE = [SortOption.RELEVANCE, SortOption.PRICE_ASC, SortOption.PRICE_DESC]


def next_sort(option: SortOption) -> SortOption:
    """relevance → price asc → price desc → relevance …"""
    return _SORT_CYCLE[(_SORT_CYCLE.index(option) + 1) % len(_SORT_CYCLE)]


def normalise_products(raw_items: Iterable) -> list[Product]:
    """Validate raw model output; malformed items and repeated ids are dropped."""
    seen: dict[str, Product] = {}
    dropped = 0
    for raw in raw_items:
        product = Product.from_dict(raw)
        if product is None:
            dropped += 1
            continue
        if product.id not in seen:
            seen[product.id] = product
    if dropped:
        logger.info("Dropped %d malformed product(s)", dropped)
    return list(seen.values())


async def find_similar_products(analysis: AnalysisRecord) -> list[Product]:
    """
    Search for products similar to `analysis`.

    Returns:
        Products best-match first. Empty list when nothing was found.

    Raises:
        RateLimitedError / SearchFailedError from the provider,
        RuntimeError when no provider is configured.
    """
    provider = get_provider()
    raw_items = await provider.find_similar_products(analysis)
    products = sort_products(normalise_products(raw_items), SortOption.RELEVANCE)
    logger.info("[%s] '%s' → %d products", provider.full_name, analysis.item_type, len(products))
    return products


def sort_products(products: Iterable[Product], option: SortOption) -> list[Product]:
    if option is SortOption.PRICE_ASC:
        return sorted(products, key=lambda p: p.price.current)
    if option is SortOption.PRICE_DESC:
        return sorted(products, key=lambda p: p.price.current, reverse=True)
    return sorted(products, key=lambda p: p.similarity_score, reverse=True)


def unique_retailers(products: Iterable[Product]) -> list[str]:
    return sorted({p.retailer_name for p in products})


def filter_by_retailers(products: Iterable[Product], selected: set[str]) -> list[Product]:
    return [p for p in products if p.retailer_name in selected]
