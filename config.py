"""
Central configuration — reads from .env file.

Everything here is read once at import time. Tests patch the module
attributes directly (monkeypatch.setattr(config, "X", ...)).
"""
import os
from dotenv import load_dotenv

load_dotenv()

# ── Telegram ──────────────────────────────────────────────────────────────────
TELEGRAM_BOT_TOKEN: str = os.environ["TELEGRAM_BOT_TOKEN"]

# ── Google Gemini ─────────────────────────────────────────────────────────────
# Used for both product analysis (photo / URL) and product search
# (Google Search grounding). Get a key at https://aistudio.google.com
GOOGLE_API_KEY: str | None = os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL: str          = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

# ── Storage ───────────────────────────────────────────────────────────────────
# SQLite file and bot.log both live here (mount ./data:/app/data in Docker)
DATA_DIR: str = os.getenv("DATA_DIR", "data")

# Saved searches: one JSON array stored under a single namespaced key
SAVED_SEARCHES_KEY: str = "shoplens_saved_searches"
MAX_SAVED_SEARCHES: int = int(os.getenv("MAX_SAVED_SEARCHES", "9"))

# ── Image upload ──────────────────────────────────────────────────────────────
MAX_IMAGE_DIMENSION: int = int(os.getenv("MAX_IMAGE_DIMENSION", "800"))
JPEG_QUALITY: int        = int(os.getenv("JPEG_QUALITY", "90"))
MAX_UPLOAD_BYTES: int    = int(os.getenv("MAX_UPLOAD_MB", "10")) * 1024 * 1024

# ── Product search ────────────────────────────────────────────────────────────
# Market the search prompt targets, and the stores the model should try first
SEARCH_REGION: str = os.getenv("SEARCH_REGION", "India")
PREFERRED_RETAILERS: list[str] = [
    x.strip()
    for x in os.getenv(
        "PREFERRED_RETAILERS", "Amazon.in,Flipkart,Myntra,Snapdeal,Limeroad"
    ).split(",")
    if x.strip()
]

# ── Bot behaviour ─────────────────────────────────────────────────────────────
RESULTS_PER_PAGE: int = int(os.getenv("RESULTS_PER_PAGE", "5"))
