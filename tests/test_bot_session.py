"""
Tests for the search session state machine and helpers in bot.py.

Covers:
  - SearchSession transitions: LANDING → PROCESSING → RESULTS | ERROR
  - stale requests: a newer begin() / reset() invalidates in-flight work
  - retry(): same input re-run from ERROR
  - results view: sort cycle, retailer toggles, pagination, refine
  - is_valid_url() / placeholder_preview()
  - per-user rate limiter (sliding window)
  - _run_search(): success, classified failure, stale result dropped
  - history handlers: per-user histories, delete notice, expired session
"""
from __future__ import annotations

import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

import bot
import config
import database as db
import style
from bot import (
    RATE_MAX_REQUESTS,
    RATE_WINDOW_SECS,
    AppState,
    InvalidTransition,
    SearchSession,
    _is_rate_limited,
    _rate_buckets,
    is_valid_url,
    placeholder_preview,
)
from product_finder import SortOption
from models import Price
from providers.base import RateLimitedError
from saved_searches import StoreOutcome, get_store
from conftest import make_analysis, make_product


def results_session(products=None) -> SearchSession:
    session = SearchSession()
    session.begin("photo")
    session.show_results(make_analysis(), products if products is not None else [make_product()])
    return session


# ── Transitions ───────────────────────────────────────────────────────────────

class TestTransitions:
    def test_initial_state(self):
        assert SearchSession().state is AppState.LANDING

    def test_begin_enters_processing(self):
        session = SearchSession()
        rid = session.begin("link")
        assert session.state is AppState.PROCESSING
        assert rid == session.request_id == 1

    def test_show_results(self):
        session = results_session([make_product(retailer_name="Myntra"), make_product(id="p2", retailer_name="Flipkart")])
        assert session.state is AppState.RESULTS
        assert session.retailers == ["Flipkart", "Myntra"]
        assert session.selected_retailers == {"Flipkart", "Myntra"}
        assert session.sort is SortOption.RELEVANCE

    def test_fail(self):
        session = SearchSession()
        session.begin("photo")
        session.fail("Too many requests.")
        assert session.state is AppState.ERROR
        assert session.error_message == "Too many requests."

    def test_show_results_requires_processing(self):
        with pytest.raises(InvalidTransition):
            SearchSession().show_results(make_analysis(), [])

    def test_fail_requires_processing(self):
        with pytest.raises(InvalidTransition):
            results_session().fail("nope")

    def test_update_results_requires_results(self):
        session = SearchSession()
        session.begin("photo")
        with pytest.raises(InvalidTransition):
            session.update_results(make_analysis(), [])

    def test_begin_from_results_clears_view(self):
        session = results_session()
        session.begin("link")
        assert session.analysis is None
        assert session.products == []
        assert session.retailers == []

    def test_reset_invalidates_in_flight(self):
        session = SearchSession()
        rid = session.begin("photo")
        session.reset()
        assert session.state is AppState.LANDING
        assert session.request_id != rid

    def test_reset_keeps_owner(self):
        session = SearchSession(user_id=7)
        session.begin("photo")
        session.reset()
        assert session.user_id == 7

    def test_newer_begin_invalidates_older(self):
        session = SearchSession()
        first = session.begin("photo")
        second = session.begin("link")
        assert first != second == session.request_id


# ── Retry ─────────────────────────────────────────────────────────────────────

class TestRetry:
    def test_photo_retry_keeps_bytes(self):
        session = SearchSession()
        session.begin("photo")
        session.image_bytes = b"img"
        session.fail("boom")
        assert session.can_retry()
        session.retry()
        assert session.state is AppState.PROCESSING
        assert session.image_bytes == b"img"

    def test_link_retry(self):
        session = SearchSession()
        session.begin("link")
        session.source_url = "https://shop.example.com/p/1"
        session.fail("boom")
        session.retry()
        assert session.source == "link"
        assert session.source_url == "https://shop.example.com/p/1"

    def test_saved_search_retry_keeps_analysis(self):
        session = SearchSession()
        session.begin("saved search", "data:image/jpeg;base64,AAAA")
        session.analysis = make_analysis()
        session.fail("boom")
        session.retry()
        assert session.analysis == make_analysis()
        assert session.image_preview == "data:image/jpeg;base64,AAAA"

    def test_nothing_to_retry(self):
        session = SearchSession()
        session.begin("photo")
        session.fail("boom")
        assert not session.can_retry()
        with pytest.raises(InvalidTransition):
            session.retry()

    def test_retry_only_from_error(self):
        session = results_session()
        session.image_bytes = b"img"
        assert not session.can_retry()


# ── Results view ──────────────────────────────────────────────────────────────

class TestResultsView:
    def test_cycle_sort_resets_page(self):
        session = results_session([make_product(id=str(i)) for i in range(12)])
        session.go_to_page(1)
        assert session.cycle_sort() is SortOption.PRICE_ASC
        assert session.page == 0

    def test_visible_products_sorted(self):
        session = results_session([
            make_product(id="a", price=Price(current=300, currency="₹")),
            make_product(id="b", price=Price(current=100, currency="₹")),
        ])
        session.cycle_sort()
        assert [p.id for p in session.visible_products()] == ["b", "a"]

    def test_toggle_retailer(self):
        session = results_session([
            make_product(id="a", retailer_name="Myntra"),
            make_product(id="b", retailer_name="Flipkart"),
        ])
        session.toggle_retailer("Myntra")
        assert [p.id for p in session.visible_products()] == ["b"]
        session.toggle_retailer("Myntra")
        assert len(session.visible_products()) == 2

    def test_toggle_unknown_retailer_ignored(self):
        session = results_session()
        session.toggle_retailer("Nowhere")
        assert "Nowhere" not in session.selected_retailers

    def test_select_all(self):
        session = results_session([make_product(id="a", retailer_name="Myntra")])
        session.toggle_retailer("Myntra")
        session.select_all_retailers()
        assert session.selected_retailers == {"Myntra"}

    def test_pagination(self):
        per = config.RESULTS_PER_PAGE
        session = results_session([make_product(id=str(i), similarity_score=100 - i) for i in range(per * 2 + 1)])
        assert session.total_pages == 3
        session.go_to_page(2)
        assert [p.id for p in session.current_page_products()] == [str(per * 2)]

    def test_page_clamped(self):
        session = results_session()
        session.go_to_page(7)
        assert session.page == 0
        session.go_to_page(-3)
        assert session.page == 0

    def test_empty_results_one_page(self):
        assert results_session([]).total_pages == 1

    def test_results_actions_outside_results(self):
        with pytest.raises(InvalidTransition):
            SearchSession().cycle_sort()


class TestRefine:
    def test_text_field(self):
        refined = results_session().refine("type", "  trucker jacket ")
        assert refined.item_type == "trucker jacket"

    def test_list_field_split_on_commas(self):
        refined = results_session().refine("colours", "red, navy ,")
        assert refined.colors == ("red", "navy")

    def test_session_unchanged(self):
        session = results_session()
        session.refine("description", "something else")
        assert session.analysis == make_analysis()

    def test_unknown_field(self):
        with pytest.raises(ValueError):
            results_session().refine("price", "cheap")

    def test_empty_value(self):
        with pytest.raises(ValueError):
            results_session().refine("style", "   ")


# ── URL helpers ───────────────────────────────────────────────────────────────

class TestUrls:
    @pytest.mark.parametrize("url", [
        "https://www.myntra.com/jackets/levis/123",
        "http://shop.example.com/p?id=4",
    ])
    def test_valid(self, url):
        assert is_valid_url(url)

    @pytest.mark.parametrize("url", [
        "https://",
        "ftp://files.example.com/x",
        "https://exa mple.com/x",
        "not a url",
    ])
    def test_invalid(self, url):
        assert not is_valid_url(url)

    def test_placeholder_preview_quotes_item_type(self):
        assert placeholder_preview(make_analysis(item_type="denim jacket")).endswith("?denim%20jacket")


# ── Rate limiter ──────────────────────────────────────────────────────────────

class TestRateLimiter:
    @pytest.fixture(autouse=True)
    def clear_buckets(self):
        _rate_buckets.clear()
        yield
        _rate_buckets.clear()

    def test_up_to_limit_allowed(self):
        for _ in range(RATE_MAX_REQUESTS):
            assert _is_rate_limited(100) is False
        assert _is_rate_limited(100) is True

    def test_users_independent(self):
        for _ in range(RATE_MAX_REQUESTS):
            _is_rate_limited(1)
        assert _is_rate_limited(2) is False

    def test_window_slides(self, monkeypatch):
        now = [0.0]
        monkeypatch.setattr(time, "monotonic", lambda: now[0])
        for _ in range(RATE_MAX_REQUESTS):
            _is_rate_limited(7)
        assert _is_rate_limited(7) is True
        now[0] = RATE_WINDOW_SECS + 1.0
        assert _is_rate_limited(7) is False

    def test_rejected_requests_not_recorded(self):
        for _ in range(RATE_MAX_REQUESTS * 3):
            _is_rate_limited(9)
        assert len(_rate_buckets[9]) == RATE_MAX_REQUESTS


# ── _run_search ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestRunSearch:
    @pytest.fixture
    def message(self):
        msg = MagicMock()
        msg.edit_text = AsyncMock()
        return msg

    async def test_link_search_success(self, message):
        session = SearchSession()
        session.begin("link")
        session.source_url = "https://shop.example.com/p/1"
        analysis = make_analysis(image_url="https://img/x.jpg")
        with patch.object(bot, "analyse_url", AsyncMock(return_value=analysis)), \
             patch.object(bot, "find_similar_products", AsyncMock(return_value=[make_product()])):
            await bot._run_search(message, session)
        assert session.state is AppState.RESULTS
        assert session.image_preview == "https://img/x.jpg"
        assert "SIMILAR PRODUCTS" in message.edit_text.await_args.args[0]

    async def test_missing_image_url_uses_placeholder(self, message):
        session = SearchSession()
        session.begin("link")
        session.source_url = "https://shop.example.com/p/1"
        with patch.object(bot, "analyse_url", AsyncMock(return_value=make_analysis())), \
             patch.object(bot, "find_similar_products", AsyncMock(return_value=[])):
            await bot._run_search(message, session)
        assert session.image_preview == placeholder_preview(make_analysis())
        assert "No Results Found" in message.edit_text.await_args.args[0]

    async def test_saved_search_skips_analysis(self, message):
        session = SearchSession()
        session.begin("saved search", "preview")
        session.analysis = make_analysis()
        analyse = AsyncMock()
        with patch.object(bot, "analyse_url", analyse), patch.object(bot, "analyse_image", analyse), \
             patch.object(bot, "find_similar_products", AsyncMock(return_value=[make_product()])):
            await bot._run_search(message, session)
        analyse.assert_not_awaited()
        assert session.state is AppState.RESULTS

    async def test_provider_error_goes_to_error_state(self, message):
        session = SearchSession()
        session.begin("link")
        session.source_url = "https://shop.example.com/p/1"
        with patch.object(bot, "analyse_url", AsyncMock(side_effect=RateLimitedError())):
            await bot._run_search(message, session)
        assert session.state is AppState.ERROR
        assert session.error_message == "Too many requests. Please try again in a moment."

    async def test_unconfigured_provider(self, message):
        session = SearchSession()
        session.begin("link")
        session.source_url = "https://shop.example.com/p/1"
        with patch.object(bot, "analyse_url", AsyncMock(side_effect=RuntimeError("no key"))):
            await bot._run_search(message, session)
        assert session.state is AppState.ERROR
        assert "Not Configured" in message.edit_text.await_args.args[0]

    async def test_stale_result_dropped(self, message):
        session = SearchSession()
        session.begin("link")
        session.source_url = "https://shop.example.com/p/1"

        async def slow_search(analysis):
            session.begin("photo")       # user sent a new photo meanwhile
            return [make_product()]

        with patch.object(bot, "analyse_url", AsyncMock(return_value=make_analysis())), \
             patch.object(bot, "find_similar_products", slow_search):
            await bot._run_search(message, session)
        assert session.state is AppState.PROCESSING
        assert session.source == "photo"
        assert session.products == []


# ── Saved-search handlers ─────────────────────────────────────────────────────

def make_update(user_id: int, callback_data: str | None = None):
    update = MagicMock()
    update.effective_user.id = user_id
    update.message.reply_text = AsyncMock()
    if callback_data is not None:
        update.callback_query.data = callback_data
        update.callback_query.answer = AsyncMock()
        update.callback_query.message.edit_text = AsyncMock()
    return update


@pytest.mark.asyncio
class TestHistoryHandlers:
    @pytest_asyncio.fixture(autouse=True)
    async def init(self, tmp_data_dir, monkeypatch):
        monkeypatch.setattr(bot, "_sessions", {})
        await db.init_db()

    async def test_history_is_per_user(self):
        await get_store(1).save(make_analysis(), "p")

        other = make_update(2)
        await bot.cmd_history(other, MagicMock())
        assert "Nothing saved yet" in other.message.reply_text.await_args.args[0]

        owner = make_update(1)
        await bot.cmd_history(owner, MagicMock())
        assert "denim jacket" in owner.message.reply_text.await_args.args[0]

    async def test_other_user_cannot_delete(self):
        await get_store(1).save(make_analysis(), "p")
        entry_id = (await get_store(1).list())[0].id

        update = make_update(2, f"{bot.CB_DELETE}{entry_id}")
        await bot.handle_callback(update, MagicMock())
        update.callback_query.answer.assert_awaited_once_with(style.saved_notice(StoreOutcome.NOT_FOUND))
        assert len(await get_store(1).list()) == 1

    async def test_delete_reports_outcome(self):
        await get_store(1).save(make_analysis(), "p")
        entry_id = (await get_store(1).list())[0].id

        update = make_update(1, f"{bot.CB_DELETE}{entry_id}")
        await bot.handle_callback(update, MagicMock())
        update.callback_query.answer.assert_awaited_once_with(style.saved_notice(StoreOutcome.DELETED))
        assert await get_store(1).list() == []

    async def test_save_goes_to_own_history(self):
        session = bot.get_session(3)
        session.begin("photo", "data:image/jpeg;base64,AAAA")
        session.show_results(make_analysis(), [make_product()])

        update = make_update(3, bot.CB_SAVE)
        await bot.handle_callback(update, MagicMock())
        assert [e.analysis for e in await get_store(3).list()] == [make_analysis()]
        assert await get_store(1).list() == []

    async def test_results_action_after_reset_shows_expired(self):
        update = make_update(4, bot.CB_SORT)
        await bot.handle_callback(update, MagicMock())
        assert update.callback_query.message.edit_text.await_args.args[0] == style.session_expired()
