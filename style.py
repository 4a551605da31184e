"""
style.py — Complete visual style system for the bot.

Design language:
  • Structured cards with consistent emoji icons
  • Unicode box-drawing dividers
  • Clear visual hierarchy: header → body → footer
  • MarkdownV2 throughout

All text that goes into Telegram messages should be formatted through this module.
"""
from __future__ import annotations

import random
from typing import Optional

import config

# ── Escape ────────────────────────────────────────────────────────────────────

def esc(text: str) -> str:
    """Escape all MarkdownV2 special characters."""
    for ch in r"\_*[]()~`>#+-=|{}.!":
        text = text.replace(ch, f"\\{ch}")
    return text


# ── Visual constants ──────────────────────────────────────────────────────────

DIV   = "━━━━━━━━━━━━━━━━━━━━━━━━━━"    # thick divider
SDIV  = "┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄┄"    # subtle divider

MAX_MESSAGE_LEN = 4050

PROCESSING_TIPS = [
    "We search 1000+ stores to find you the best deals.",
    "Our AI can identify clothing, furniture, electronics, and more!",
    "Clear, well-lit photos provide the best results.",
    "Finding the perfect match just for you...",
]


def confidence_icon(confidence: int) -> str:
    if confidence >= 80:
        return "🟢"
    if confidence >= 50:
        return "🟡"
    return "🔴"


def fmt_price(amount: float, currency: str) -> str:
    return f"{currency}{amount:,.2f}"


def _truncate(text: str) -> str:
    return text[:MAX_MESSAGE_LEN] + "\\.\\.\\." if len(text) > MAX_MESSAGE_LEN else text


# ══════════════════════════════════════════════════════════════════════════════
# START / WELCOME
# ══════════════════════════════════════════════════════════════════════════════

def welcome() -> str:
    return (
        f"🛍️ *SHOPLENS*\n"
        f"{DIV}\n\n"
        f"Send a product photo or paste a product link and I'll find\n"
        f"similar items you can buy, with prices\\.\n\n"
        f"✨  *What I can do*\n"
        f"▸ Recognise products from a photo\n"
        f"▸ Read a product page from its link\n"
        f"▸ Compare prices across {esc(config.SEARCH_REGION)} stores\n"
        f"▸ Save searches and re\\-run them later\n\n"
        f"{DIV}\n"
        f"_📸 Just send a photo or a link to get started_"
    )


def help_text() -> str:
    return (
        f"📖 *HOW TO USE*\n"
        f"{DIV}\n\n"
        f"*1️⃣  Send a photo or a product link*\n"
        f"_Clear, well\\-lit, one product per photo_\n\n"
        f"*2️⃣  AI analyses the product*\n"
        f"_Type, colours, materials and style extracted_\n\n"
        f"*3️⃣  Browse similar products*\n"
        f"_Sort by price, filter by store, ◀ ▶ to paginate_\n\n"
        f"*4️⃣  Save the search*\n"
        f"_Up to {config.MAX_SAVED_SEARCHES} recent searches, see /history_\n\n"
        f"{DIV}\n"
        f"✏️  *Refine a search*\n"
        f"`/refine colors red, navy`\n"
        f"`/refine type denim jacket`\n"
        f"_Fields: type · description · colors · style_\n\n"
        f"{DIV}\n"
        f"_Commands: /start · /help · /history · /new_"
    )


# ══════════════════════════════════════════════════════════════════════════════
# PROCESSING
# ══════════════════════════════════════════════════════════════════════════════

def processing(source: str, tip: Optional[str] = None) -> str:
    """source: 'photo' | 'link' | 'saved search'."""
    tip = tip or random.choice(PROCESSING_TIPS)
    return (
        f"🔍 *Analysing your {esc(source)}*\n"
        f"{SDIV}\n"
        f"⠋ Finding similar products…\n\n"
        f"💡 _{esc(tip)}_"
    )


def loading_search(item_type: str) -> str:
    return (
        f"🛒 *Searching stores*\n"
        f"{SDIV}\n"
        f"🏷️ _{esc(item_type)}_\n\n"
        f"⠙ Fetching results…"
    )


# ══════════════════════════════════════════════════════════════════════════════
# ANALYSIS + PRODUCT CARDS
# ══════════════════════════════════════════════════════════════════════════════

def analysis_summary(analysis) -> str:
    """Compact header block describing what the AI saw."""
    lines = [
        f"🏷️ *{esc(analysis.item_type)}*",
        f"🏢 {esc(analysis.brand or 'Unknown brand')}   📦 {esc(analysis.category)}",
        f"{confidence_icon(analysis.confidence)} *Confidence:* {analysis.confidence}%",
    ]
    if analysis.colors:
        lines.append(f"🎨 {esc(', '.join(analysis.colors))}")
    if analysis.style_keywords:
        lines.append(f"✦ {esc(' · '.join(analysis.style_keywords))}")
    return "\n".join(lines)


def product_card(product, index: int) -> str:
    """Format a single product as a rich card."""
    title = esc(product.title[:100])
    price = f"💰 *{esc(fmt_price(product.price.current, product.price.currency))}*"
    if product.price.original and product.price.original > product.price.current:
        price += f"  ~{esc(fmt_price(product.price.original, product.price.currency))}~"
        if product.price.discount_pct:
            price += f"  _\\-{product.price.discount_pct}%_"
    return (
        f"*{index}\\.*  {title}\n"
        f"{price}\n"
        f"🏪 {esc(product.retailer_name)}   🎯 {product.similarity_score:.0f}% match"
    )


def results_page(session) -> str:
    """Full results page with analysis header, cards, and footer."""
    visible = session.visible_products()
    p = session.page + 1
    t = session.total_pages

    header = (
        f"✨ *SIMILAR PRODUCTS*\n"
        f"{DIV}\n"
        f"{analysis_summary(session.analysis)}\n"
        f"{SDIV}\n"
        f"↕️ {esc(session.sort.label)}   🏪 {len(session.selected_retailers)}/{len(session.retailers)} stores   "
        f"📄 {p}/{t}\n"
        f"{SDIV}\n"
    )

    if not visible:
        body = "😔 _No products match the selected stores\\._"
    else:
        cards = [
            product_card(product, session.page * config.RESULTS_PER_PAGE + i + 1)
            for i, product in enumerate(session.current_page_products())
        ]
        body = f"\n\n{SDIV}\n\n".join(cards)

    footer = f"\n{SDIV}\n_🔍 Found {len(visible)} similar items_"
    return _truncate(header + body + footer)


def retailer_filter(session) -> str:
    return (
        f"🏪 *FILTER BY STORE*\n"
        f"{SDIV}\n"
        f"{len(session.selected_retailers)} of {len(session.retailers)} stores selected\\.\n"
        f"_Tap a store to include or exclude it\\._"
    )


# ══════════════════════════════════════════════════════════════════════════════
# SAVED SEARCHES
# ══════════════════════════════════════════════════════════════════════════════

def history(entries: list) -> str:
    if not entries:
        return (
            f"🗂 *SAVED SEARCHES*\n"
            f"{SDIV}\n"
            f"_Nothing saved yet\\. Tap 💾 on a results page to keep a search\\._"
        )
    lines = [f"🗂 *SAVED SEARCHES*\n{DIV}"]
    for i, entry in enumerate(entries, 1):
        a = entry.analysis
        brand = f" · {esc(a.brand)}" if a.brand else ""
        lines.append(f"*{i}\\.* {esc(a.item_type)}{brand}  _{esc(a.category)}_")
    lines.append(f"{SDIV}\n_🔁 re\\-run · 🗑 delete_")
    return "\n".join(lines)


def saved_notice(outcome) -> str:
    """Short plain-text callback answer for a save or delete (StoreOutcome)."""
    return {
        "saved":          "💾 Search saved",
        "duplicate":      "✅ Already saved",
        "deleted":        "🗑 Deleted",
        "not_found":      "Already removed",
        "persist_failed": "⚠️ Couldn't update saved searches right now",
    }.get(outcome.value, "")


# ══════════════════════════════════════════════════════════════════════════════
# ERROR MESSAGES
# ══════════════════════════════════════════════════════════════════════════════

def error_card(message: Optional[str]) -> str:
    return (
        f"❌ *Oops\\! Something went wrong\\.*\n"
        f"{DIV}\n\n"
        f"{esc(message or 'An unknown error occurred.')}\n\n"
        f"_Tap Try again or send a new photo\\._"
    )


def error_no_provider() -> str:
    return (
        f"⚠️ *AI Provider Not Configured*\n"
        f"{DIV}\n\n"
        f"The bot owner needs to set `GOOGLE\\_API\\_KEY`\\.\n\n"
        f"_Free keys available at aistudio\\.google\\.com_"
    )


def error_no_results() -> str:
    return (
        f"😔 *No Results Found*\n"
        f"{DIV}\n\n"
        f"Try:\n"
        f"▸ A clearer, better\\-lit photo\n"
        f"▸ A direct product page link\n"
        f"▸ /refine the item type or colours\n"
    )


def invalid_url() -> str:
    return (
        f"🔗 *That link doesn't look right*\n"
        f"{SDIV}\n"
        f"The entered URL is not valid\\. Please check and try again\\."
    )


def not_a_url() -> str:
    return (
        f"📸 *Send a Photo or Link*\n"
        f"{SDIV}\n"
        f"I need a product photo or a product page link \\(https://…\\)\\.\n"
        f"_Just take a pic and send it here\\!_"
    )


def session_expired() -> str:
    return "⚠️ Session expired\\. Please send a new photo or link\\."


def refine_usage() -> str:
    return (
        f"✏️ *Refine your search*\n"
        f"{SDIV}\n"
        f"`/refine <field> <value>`\n"
        f"_Fields: type · description · colors · style_\n"
        f"_Run a search first, then refine it\\._"
    )


def error_rate_limited(max_requests: int, window_secs: int) -> str:
    return (
        f"⏱ *Slow Down\\!*\n"
        f"{SDIV}\n"
        f"You can run up to *{max_requests} searches* every *{window_secs} seconds*\\.\n\n"
        f"_Please wait a moment before sending another one\\._"
    )
