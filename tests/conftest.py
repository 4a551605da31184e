"""
Shared pytest fixtures.

Every test that touches the database or config gets a clean
temporary DATA_DIR via the `tmp_data_dir` fixture so tests
are fully isolated from each other and from the real shoplens.db.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# config.py requires a bot token at import time
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST-TOKEN")

from models import AnalysisRecord, Price, Product  # noqa: E402


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """
    Redirect DATA_DIR to a fresh tmp directory for every test.
    This gives each test a clean SQLite file and prevents cross-test pollution.
    """
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))

    # Patch the module-level DB_PATH that was already computed at import time
    import database
    monkeypatch.setattr(database, "DB_PATH", str(data / "shoplens.db"))
    monkeypatch.setattr(database, "_DATA_DIR", data)

    # Also reset the internal lock so tests don't share state
    import asyncio
    monkeypatch.setattr(database, "_lock", asyncio.Lock())

    # Fresh per-user stores per test
    import saved_searches
    monkeypatch.setattr(saved_searches, "_stores", {})

    yield data


def make_analysis(**kwargs) -> AnalysisRecord:
    defaults = dict(
        category="clothing",
        item_type="denim jacket",
        colors=("blue",),
        patterns=("solid",),
        materials=("denim",),
        brand="Levi's",
        style_keywords=("casual", "vintage"),
        visible_text=("LEVI'S",),
        description="Classic blue denim trucker jacket with button front.",
        confidence=92,
    )
    defaults.update(kwargs)
    return AnalysisRecord(**defaults)


def make_product(**kwargs) -> Product:
    defaults = dict(
        id="p1",
        title="Blue Denim Jacket",
        image_url="https://img.example.com/p1.jpg",
        price=Price(current=2499.0, currency="₹", original=3999.0),
        retailer_name="Myntra",
        affiliate_link="https://www.myntra.com/p1",
        similarity_score=95.0,
    )
    defaults.update(kwargs)
    return Product(**defaults)


def raw_product(**kwargs) -> dict:
    d = {
        "id": "p1",
        "title": "Blue Denim Jacket",
        "imageUrl": "https://img.example.com/p1.jpg",
        "price": {"current": 2499.0, "original": 3999.0, "currency": "₹"},
        "retailer": {"name": "Myntra"},
        "affiliateLink": "https://www.myntra.com/p1",
        "similarityScore": 95.5,
    }
    d.update(kwargs)
    return d
