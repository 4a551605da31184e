"""
bot.py — Telegram bot handlers.

All visual formatting is delegated to style.py.
Saved searches are persisted through saved_searches.py.
Session state is kept in-memory per user_id.

Each user's session is a small state machine:

  LANDING ──photo/link──▶ PROCESSING ──ok──▶ RESULTS
     ▲                        │                 │
     └──────── new ───────────┴──fail──▶ ERROR ─┘ (new / try again)
"""
from __future__ import annotations

import enum
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote, urlparse

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

import config
import database as db
import style
from image_service import ImageTooLargeError, InvalidImageError, prepare_image
from models import AnalysisRecord, Product
from product_finder import (
    SortOption,
    filter_by_retailers,
    find_similar_products,
    next_sort,
    sort_products,
    unique_retailers,
)
from providers.base import ProviderError
from providers.manager import analyse_image, analyse_url
from saved_searches import StoreOutcome, get_store

logger = logging.getLogger(__name__)

# ── Callback data ──────────────────────────────────────────────────────────────
CB_SORT        = "res:sort"
CB_FILTER      = "res:filter"
CB_FILTER_DONE = "res:done"
CB_SAVE        = "res:save"
CB_PREV        = "nav:prev"
CB_NEXT        = "nav:next"
CB_NOOP        = "nav:noop"
CB_NEW         = "nav:new"
CB_RETRY       = "nav:retry"
CB_RETAILER    = "rt:"              # + index into session.retailers
CB_ALL_STORES  = "rt:all"
CB_RERUN       = "hist:run:"        # + saved search id
CB_DELETE      = "hist:del:"        # + saved search id

PLACEHOLDER_IMAGE = "https://source.unsplash.com/400x400/?{query}"

# /refine <field> → AnalysisRecord attribute
REFINE_FIELDS = {
    "type":        "item_type",
    "itemtype":    "item_type",
    "description": "description",
    "colors":      "colors",
    "colours":     "colors",
    "style":       "style_keywords",
    "keywords":    "style_keywords",
}
_LIST_FIELDS = {"colors", "style_keywords"}


# ── Session ────────────────────────────────────────────────────────────────────

class AppState(enum.Enum):
    LANDING    = "landing"
    PROCESSING = "processing"
    RESULTS    = "results"
    ERROR      = "error"


class InvalidTransition(Exception):
    pass


@dataclass
class SearchSession:
    user_id: int = 0                        # owner; selects the saved-search history
    state: AppState = AppState.LANDING
    request_id: int = 0                     # bumped by begin(); stale pipelines compare it
    source: str = ""                        # photo | link | saved search
    image_preview: Optional[str] = None     # data URI or external URL
    analysis: Optional[AnalysisRecord] = None
    products: list[Product] = field(default_factory=list)
    error_message: Optional[str] = None

    retailers: list[str] = field(default_factory=list)
    selected_retailers: set[str] = field(default_factory=set)
    sort: SortOption = SortOption.RELEVANCE
    page: int = 0

    # Kept so "Try again" can re-run without a new upload
    image_bytes: Optional[bytes] = None
    source_url: Optional[str] = None

    # ── Transitions ────────────────────────────────────────────────────────────

    def begin(self, source: str, image_preview: Optional[str] = None) -> int:
        """Start a new search from any state. Returns the request id."""
        self.state         = AppState.PROCESSING
        self.request_id   += 1
        self.source        = source
        self.image_preview = image_preview
        self.analysis      = None
        self.products      = []
        self.error_message = None
        self.retailers     = []
        self.selected_retailers = set()
        self.sort          = SortOption.RELEVANCE
        self.page          = 0
        return self.request_id

    def show_results(self, analysis: AnalysisRecord, products: list[Product]) -> None:
        if self.state is not AppState.PROCESSING:
            raise InvalidTransition(f"show_results from {self.state.name}")
        self.state    = AppState.RESULTS
        self.analysis = analysis
        self._set_products(products)

    def update_results(self, analysis: AnalysisRecord, products: list[Product]) -> None:
        """Replace results after a refine, staying in RESULTS."""
        if self.state is not AppState.RESULTS:
            raise InvalidTransition(f"update_results from {self.state.name}")
        self.analysis = analysis
        self._set_products(products)

    def fail(self, message: str) -> None:
        if self.state is not AppState.PROCESSING:
            raise InvalidTransition(f"fail from {self.state.name}")
        self.state         = AppState.ERROR
        self.error_message = message

    def reset(self) -> None:
        request_id = self.request_id
        self.__init__(user_id=self.user_id)
        # Anything still in flight for the old search is now stale
        self.request_id = request_id + 1

    def can_retry(self) -> bool:
        return self.state is AppState.ERROR and (
            self.image_bytes is not None
            or self.source_url is not None
            or (self.source == "saved search" and self.analysis is not None)
        )

    def retry(self) -> int:
        """Re-run the failed search with the same input (ERROR → PROCESSING)."""
        if not self.can_retry():
            raise InvalidTransition(f"retry from {self.state.name}")
        saved = self.analysis if self.source == "saved search" else None
        request_id = self.begin(self.source, self.image_preview if saved else None)
        self.analysis = saved
        return request_id

    def _set_products(self, products: list[Product]) -> None:
        self.products           = list(products)
        self.retailers          = unique_retailers(products)
        self.selected_retailers = set(self.retailers)
        self.sort               = SortOption.RELEVANCE
        self.page               = 0

    # ── Results view ───────────────────────────────────────────────────────────

    def _require_results(self) -> None:
        if self.state is not AppState.RESULTS:
            raise InvalidTransition(f"results action in {self.state.name}")

    def cycle_sort(self) -> SortOption:
        self._require_results()
        self.sort = next_sort(self.sort)
        self.page = 0
        return self.sort

    def toggle_retailer(self, name: str) -> None:
        self._require_results()
        if name in self.selected_retailers:
            self.selected_retailers.discard(name)
        elif name in self.retailers:
            self.selected_retailers.add(name)
        self.page = 0

    def select_all_retailers(self) -> None:
        self._require_results()
        self.selected_retailers = set(self.retailers)
        self.page = 0

    def visible_products(self) -> list[Product]:
        return sort_products(filter_by_retailers(self.products, self.selected_retailers), self.sort)

    @property
    def total_pages(self) -> int:
        n = len(self.visible_products())
        return max(1, (n + config.RESULTS_PER_PAGE - 1) // config.RESULTS_PER_PAGE)

    def current_page_products(self) -> list[Product]:
        s = self.page * config.RESULTS_PER_PAGE
        return self.visible_products()[s : s + config.RESULTS_PER_PAGE]

    def go_to_page(self, page: int) -> None:
        self.page = max(0, min(page, self.total_pages - 1))

    def refine(self, field_name: str, value: str) -> AnalysisRecord:
        """Return the current analysis with one field edited (session unchanged)."""
        self._require_results()
        attr = REFINE_FIELDS.get(field_name.lower())
        if attr is None:
            raise ValueError(f"Unknown field: {field_name}")
        value = value.strip()
        if not value:
            raise ValueError("Value must not be empty")
        if attr in _LIST_FIELDS:
            items = [v.strip() for v in value.split(",") if v.strip()]
            return self.analysis.with_updates(**{attr: items})
        return self.analysis.with_updates(**{attr: value})


_sessions: dict[int, SearchSession] = {}


def get_session(user_id: int) -> SearchSession:
    if user_id not in _sessions:
        _sessions[user_id] = SearchSession(user_id=user_id)
    return _sessions[user_id]


# ── Rate limiter ───────────────────────────────────────────────────────────────
RATE_MAX_REQUESTS = 5
RATE_WINDOW_SECS  = 60
_rate_buckets: dict[int, deque] = defaultdict(deque)


def _is_rate_limited(user_id: int) -> bool:
    now    = time.monotonic()
    bucket = _rate_buckets[user_id]
    while bucket and now - bucket[0] > RATE_WINDOW_SECS:
        bucket.popleft()
    if len(bucket) >= RATE_MAX_REQUESTS:
        return True
    bucket.append(now)
    return False


def is_valid_url(text: str) -> bool:
    try:
        parsed = urlparse(text.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc) and " " not in text.strip()


def placeholder_preview(analysis: AnalysisRecord) -> str:
    return PLACEHOLDER_IMAGE.format(query=quote(analysis.item_type))


# ── Keyboards ──────────────────────────────────────────────────────────────────

def results_keyboard(session: SearchSession, is_saved: bool) -> InlineKeyboardMarkup:
    """Product links + nav + sort / filter / save row."""
    rows = [
        [InlineKeyboardButton(
            f"🛒  #{session.page * config.RESULTS_PER_PAGE + i + 1}  {product.retailer_name[:30]}",
            url=product.affiliate_link,
        )]
        for i, product in enumerate(session.current_page_products())
    ]

    nav = []
    if session.page > 0:
        nav.append(InlineKeyboardButton("◀", callback_data=CB_PREV))
    nav.append(InlineKeyboardButton(f"{session.page + 1} / {session.total_pages}", callback_data=CB_NOOP))
    if session.page < session.total_pages - 1:
        nav.append(InlineKeyboardButton("▶", callback_data=CB_NEXT))
    rows.append(nav)

    rows.append([
        InlineKeyboardButton(f"↕️  {session.sort.label}", callback_data=CB_SORT),
        InlineKeyboardButton("🏪  Stores", callback_data=CB_FILTER),
    ])
    rows.append([
        InlineKeyboardButton("✅  Saved" if is_saved else "💾  Save search", callback_data=CB_SAVE),
        InlineKeyboardButton("📸  New search", callback_data=CB_NEW),
    ])
    return InlineKeyboardMarkup(rows)


def retailer_keyboard(session: SearchSession) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(
            f"{'☑️' if name in session.selected_retailers else '⬜'}  {name[:40]}",
            callback_data=f"{CB_RETAILER}{i}",
        )]
        for i, name in enumerate(session.retailers)
    ]
    rows.append([
        InlineKeyboardButton("🔄  All stores", callback_data=CB_ALL_STORES),
        InlineKeyboardButton("✔️  Done", callback_data=CB_FILTER_DONE),
    ])
    return InlineKeyboardMarkup(rows)


def history_keyboard(entries: list) -> InlineKeyboardMarkup:
    rows = [
        [
            InlineKeyboardButton(f"🔁  {i}. {entry.analysis.item_type[:32]}", callback_data=f"{CB_RERUN}{entry.id}"),
            InlineKeyboardButton("🗑", callback_data=f"{CB_DELETE}{entry.id}"),
        ]
        for i, entry in enumerate(entries, 1)
    ]
    return InlineKeyboardMarkup(rows)


def error_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("🔄  Try again", callback_data=CB_RETRY),
        InlineKeyboardButton("📸  New search", callback_data=CB_NEW),
    ]])


# ── Search pipeline ────────────────────────────────────────────────────────────

async def _edit(message, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None) -> None:
    try:
        await message.edit_text(
            text,
            parse_mode="MarkdownV2",
            reply_markup=reply_markup,
            disable_web_page_preview=True,
        )
    except BadRequest as exc:
        # Re-rendering an unchanged page (e.g. tapping the page counter)
        if "not modified" not in str(exc).lower():
            raise


async def _render_results(message, session: SearchSession) -> None:
    if not session.products:
        await _edit(message, style.error_no_results(), InlineKeyboardMarkup([[
            InlineKeyboardButton("📸  New search", callback_data=CB_NEW),
        ]]))
        return
    is_saved = await get_store(session.user_id).contains(session.analysis)
    await _edit(message, style.results_page(session), results_keyboard(session, is_saved))


async def _render_error(message, session: SearchSession) -> None:
    await _edit(message, style.error_card(session.error_message), error_keyboard())


async def _run_search(message, session: SearchSession) -> None:
    """
    Drive one PROCESSING → RESULTS | ERROR cycle for the session's current
    source. Skips analysis when the session already carries one (rerun).
    """
    request_id = session.request_id
    try:
        if session.analysis is not None:
            analysis = session.analysis
        elif session.image_bytes is not None:
            prepared = prepare_image(session.image_bytes)
            session.image_preview = prepared.data_url
            analysis = await analyse_image(prepared.data, prepared.mime_type)
        elif session.source_url is not None:
            analysis = await analyse_url(session.source_url)
            session.image_preview = analysis.image_url or placeholder_preview(analysis)
        else:
            raise InvalidTransition("nothing to search for")

        if request_id != session.request_id:
            return
        await _edit(message, style.loading_search(analysis.item_type))
        products = await find_similar_products(analysis)
    except RuntimeError as exc:
        logger.error("Search pipeline not configured: %s", exc)
        if request_id == session.request_id:
            session.fail("The AI provider is not configured.")
            await _edit(message, style.error_no_provider())
        return
    except (ProviderError, ImageTooLargeError, InvalidImageError) as exc:
        logger.warning("Search failed (%s): %s", session.source, exc)
        if request_id == session.request_id:
            session.fail(str(exc))
            await _render_error(message, session)
        return
    except Exception as exc:
        logger.error("Unexpected search failure: %s", exc, exc_info=True)
        if request_id == session.request_id:
            session.fail("An unknown error occurred.")
            await _render_error(message, session)
        return

    # A newer photo / link arrived while this one was in flight
    if request_id != session.request_id:
        return
    session.show_results(analysis, products)
    await _render_results(message, session)


# ── Handlers ───────────────────────────────────────────────────────────────────

async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user_id = update.effective_user.id
    get_session(user_id).reset()
    await update.message.reply_text(style.welcome(), parse_mode="MarkdownV2")
    entries = await get_store(user_id).list()
    if entries:
        await update.message.reply_text(
            style.history(entries),
            parse_mode="MarkdownV2",
            reply_markup=history_keyboard(entries),
        )


async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(style.help_text(), parse_mode="MarkdownV2")


async def cmd_history(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user_id = update.effective_user.id
    entries = await get_store(user_id).list()
    await update.message.reply_text(
        style.history(entries),
        parse_mode="MarkdownV2",
        reply_markup=history_keyboard(entries) if entries else None,
    )


async def cmd_new(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    get_session(update.effective_user.id).reset()
    await update.message.reply_text(style.not_a_url(), parse_mode="MarkdownV2")


async def cmd_refine(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    session = get_session(update.effective_user.id)
    args = context.args or []
    if session.state is not AppState.RESULTS or len(args) < 2:
        await update.message.reply_text(style.refine_usage(), parse_mode="MarkdownV2")
        return

    try:
        refined = session.refine(args[0], " ".join(args[1:]))
    except ValueError:
        await update.message.reply_text(style.refine_usage(), parse_mode="MarkdownV2")
        return

    msg = await update.message.reply_text(
        style.loading_search(refined.item_type), parse_mode="MarkdownV2"
    )
    request_id = session.request_id
    try:
        products = await find_similar_products(refined)
    except Exception as exc:
        # Previous results stay on screen
        logger.error("Error refining search: %s", exc)
        await _edit(msg, style.error_card(str(exc) if isinstance(exc, ProviderError) else None))
        return

    if request_id != session.request_id or session.state is not AppState.RESULTS:
        return
    session.update_results(refined, products)
    await _render_results(msg, session)


async def handle_photo(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user_id = update.effective_user.id

    if _is_rate_limited(user_id):
        await update.message.reply_text(
            style.error_rate_limited(RATE_MAX_REQUESTS, RATE_WINDOW_SECS),
            parse_mode="MarkdownV2",
        )
        return

    session = get_session(user_id)
    session.reset()
    request_id = session.begin("photo")

    msg = await update.message.reply_text(style.processing("photo"), parse_mode="MarkdownV2")

    if update.message.photo:
        file_id = update.message.photo[-1].file_id
    else:
        file_id = update.message.document.file_id
    try:
        tg_file = await context.bot.get_file(file_id)
        image_bytes = bytes(await tg_file.download_as_bytearray())
    except TelegramError as exc:
        logger.error("Photo download failed for user %s: %s", user_id, exc)
        if request_id != session.request_id:
            return
        session.fail("Could not download the photo. Please send it again.")
        await _render_error(msg, session)
        return

    if request_id != session.request_id:
        return
    session.image_bytes = image_bytes
    await _run_search(msg, session)


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    text = (update.message.text or "").strip()
    if not text.lower().startswith(("http://", "https://")):
        await update.message.reply_text(style.not_a_url(), parse_mode="MarkdownV2")
        return
    if not is_valid_url(text):
        await update.message.reply_text(style.invalid_url(), parse_mode="MarkdownV2")
        return

    user_id = update.effective_user.id
    if _is_rate_limited(user_id):
        await update.message.reply_text(
            style.error_rate_limited(RATE_MAX_REQUESTS, RATE_WINDOW_SECS),
            parse_mode="MarkdownV2",
        )
        return

    session = get_session(user_id)
    session.reset()
    session.begin("link")
    session.source_url = text

    msg = await update.message.reply_text(style.processing("link"), parse_mode="MarkdownV2")
    await _run_search(msg, session)


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query   = update.callback_query
    data    = query.data or ""
    user_id = update.effective_user.id
    session = get_session(user_id)
    message = query.message

    # ── Saved searches ────────────────────────────────────────────────────────
    if data.startswith(CB_RERUN):
        await query.answer()
        entry = await get_store(user_id).get(int(data[len(CB_RERUN):]))
        if entry is None:
            await _edit(message, style.history(await get_store(user_id).list()))
            return
        session.reset()
        session.begin("saved search", entry.image_preview)
        session.analysis = entry.analysis
        await _edit(message, style.processing("saved search"))
        await _run_search(message, session)
        return

    if data.startswith(CB_DELETE):
        outcome = await get_store(user_id).delete(int(data[len(CB_DELETE):]))
        await query.answer(style.saved_notice(outcome))
        entries = await get_store(user_id).list()
        await _edit(message, style.history(entries), history_keyboard(entries) if entries else None)
        return

    # ── Navigation ────────────────────────────────────────────────────────────
    if data == CB_NEW:
        await query.answer()
        session.reset()
        await _edit(message, style.not_a_url())
        return

    if data == CB_RETRY:
        if not session.can_retry():
            await query.answer()
            session.reset()
            await _edit(message, style.not_a_url())
            return
        if _is_rate_limited(user_id):
            await query.answer("⏱ Too many requests, wait a moment", show_alert=True)
            return
        await query.answer()
        session.retry()
        await _edit(message, style.processing(session.source))
        await _run_search(message, session)
        return

    if data == CB_NOOP:
        await query.answer()
        return

    # ── Results actions (need a results session) ─────────────────────────────
    if session.state is not AppState.RESULTS:
        await query.answer()
        await _edit(message, style.session_expired())
        return

    if data == CB_SAVE:
        outcome = await get_store(user_id).save(session.analysis, session.image_preview or placeholder_preview(session.analysis))
        await query.answer(style.saved_notice(outcome))
        if outcome is StoreOutcome.SAVED:
            await _render_results(message, session)
        return

    await query.answer()

    if data == CB_SORT:
        session.cycle_sort()
        await _render_results(message, session)
        return

    if data == CB_PREV:
        session.go_to_page(session.page - 1)
        await _render_results(message, session)
        return

    if data == CB_NEXT:
        session.go_to_page(session.page + 1)
        await _render_results(message, session)
        return

    if data == CB_FILTER:
        await _edit(message, style.retailer_filter(session), retailer_keyboard(session))
        return

    if data == CB_ALL_STORES:
        session.select_all_retailers()
        await _edit(message, style.retailer_filter(session), retailer_keyboard(session))
        return

    if data.startswith(CB_RETAILER):
        idx = int(data[len(CB_RETAILER):])
        if 0 <= idx < len(session.retailers):
            session.toggle_retailer(session.retailers[idx])
        await _edit(message, style.retailer_filter(session), retailer_keyboard(session))
        return

    if data == CB_FILTER_DONE:
        await _render_results(message, session)
        return


# ── App factory ────────────────────────────────────────────────────────────────

async def _post_init(application: Application) -> None:
    await db.init_db()


def build_application() -> Application:
    app = (
        Application.builder()
        .token(config.TELEGRAM_BOT_TOKEN)
        .post_init(_post_init)
        .build()
    )

    app.add_handler(CommandHandler("start",   cmd_start))
    app.add_handler(CommandHandler("help",    cmd_help))
    app.add_handler(CommandHandler("history", cmd_history))
    app.add_handler(CommandHandler("new",     cmd_new))
    app.add_handler(CommandHandler("refine",  cmd_refine))
    app.add_handler(MessageHandler(filters.PHOTO | filters.Document.IMAGE, handle_photo))
    app.add_handler(CallbackQueryHandler(handle_callback))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))
    return app
