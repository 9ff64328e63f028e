"""
BasePage のユニットテスト

セッションは FakeDriverFactory で生成し、Page の Locator をモックで差し替える。
"""

from __future__ import annotations

import dataclasses
from unittest.mock import AsyncMock, MagicMock

import pytest

from pwharness.core.session import SessionManager
from pwharness.core.waits import WaitTimeoutError
from pwharness.pages import BasePage


def _make_locator(*, count: int = 1, visible: bool = True) -> MagicMock:
    locator = MagicMock()
    locator.count = AsyncMock(return_value=count)
    locator.first.is_visible = AsyncMock(return_value=visible)
    locator.first.inner_text = AsyncMock(return_value="  Welcome  ")
    locator.is_visible = AsyncMock(return_value=visible)
    locator.click = AsyncMock()
    locator.fill = AsyncMock()
    return locator


@pytest.fixture
async def session(settings, driver_factory):
    manager = SessionManager(settings, driver_factory=driver_factory)
    async with manager.open("worker-0") as session:
        yield session


class TestBasePage:
    """BasePage のテスト。"""

    async def test_requires_active_session(self, settings, driver_factory) -> None:
        """破棄済みセッションでは生成できないこと。"""
        manager = SessionManager(settings, driver_factory=driver_factory)
        closed = await manager.acquire("worker-0")
        await manager.release(closed)

        with pytest.raises(RuntimeError):
            BasePage(closed)

    async def test_navigate_to_relative_path(self, session) -> None:
        """base_url からの相対パスに遷移し、ロード完了を待つこと。"""
        page = BasePage(session, base_url="https://app.example.com/")

        await page.navigate_to("login")

        session.page.goto.assert_awaited_once_with("https://app.example.com/login")
        states = [c.args[0] for c in session.page.wait_for_load_state.await_args_list]
        assert states == ["domcontentloaded", "load"]

    async def test_is_displayed_missing_element(self, session) -> None:
        """要素が存在しない場合は例外ではなく False を返すこと。"""
        locator = _make_locator(count=0)
        session.page.locator.return_value = locator

        assert await BasePage(session).is_displayed("#missing") is False
        locator.first.is_visible.assert_not_awaited()

    async def test_is_displayed_visible(self, session) -> None:
        """要素が存在し可視なら True を返すこと。"""
        session.page.locator.return_value = _make_locator(count=1, visible=True)
        assert await BasePage(session).is_displayed("#header") is True

    async def test_is_present(self, session) -> None:
        """要素数に応じて存在判定されること。"""
        session.page.locator.return_value = _make_locator(count=2)
        assert await BasePage(session).is_present("li") is True

    async def test_text_of_strips(self, session) -> None:
        """テキストの前後の空白が除去されること。"""
        session.page.locator.return_value = _make_locator()
        assert await BasePage(session).text_of("h1") == "Welcome"

    async def test_click_and_fill(self, session) -> None:
        """クリックと入力が Locator に委譲されること。"""
        locator = _make_locator()
        session.page.locator.return_value = locator
        page = BasePage(session)

        await page.fill("#email", "alice@example.com")
        await page.click("#submit")

        locator.fill.assert_awaited_once_with("alice@example.com")
        locator.click.assert_awaited_once()

    async def test_wait_visible_uses_session_waiter(self, session) -> None:
        """待機はセッションの ConditionWaiter でポーリングされること。"""
        locator = _make_locator()
        locator.is_visible = AsyncMock(side_effect=[False, True])
        session.page.locator.return_value = locator

        await BasePage(session).wait_visible("#toast", timeout=1000)

        assert locator.is_visible.await_count == 2

    async def test_wait_visible_timeout(self, session) -> None:
        """可視にならなければ WaitTimeoutError となること。"""
        session.page.locator.return_value = _make_locator(visible=False)

        with pytest.raises(WaitTimeoutError):
            await BasePage(session).wait_visible("#toast", timeout=30)

    async def test_wait_defaults_to_action_timeout(self, settings, driver_factory) -> None:
        """timeout 省略時は action_timeout で打ち切られること。"""
        settings = dataclasses.replace(settings, action_timeout=30)
        manager = SessionManager(settings, driver_factory=driver_factory)
        async with manager.open("worker-0") as session:
            session.page.locator.return_value = _make_locator(visible=False)

            with pytest.raises(WaitTimeoutError) as exc_info:
                await BasePage(session).wait_visible("#toast")

        assert exc_info.value.timeout_ms == 30
