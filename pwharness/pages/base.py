"""
BasePage — ページオブジェクトの基底クラス

アプリ固有のページオブジェクトが継承する共通操作を提供する。
待機はすべてセッションの ConditionWaiter を経由し、固定時間の sleep は使わない。

要素の存在・可視判定は例外を使わない真偽値クエリとして提供する。
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional
from urllib.parse import urljoin

from ..core.waits import (
    ConditionWaiter,
    wait_for_element_count,
    wait_for_element_enabled,
    wait_for_element_hidden,
    wait_for_element_visible,
    wait_for_page_load,
    wait_for_text_contains,
    wait_for_url_contains,
)

if TYPE_CHECKING:
    from playwright.async_api import Page

    from ..core.session import Session

logger = logging.getLogger(__name__)


class BasePage:
    """ページオブジェクトの基底クラス。

    Attributes:
        session: ワーカー専有のセッション
        base_url: 相対パス遷移の基準 URL
    """

    def __init__(self, session: Session, base_url: str = "") -> None:
        page = session.page
        if page is None:
            raise RuntimeError(f"アクティブでないセッションです: {session}")
        self.session = session
        self.base_url = base_url
        self._page: Page = page
        self._waiter: ConditionWaiter = session.waiter

    @property
    def page(self) -> Page:
        return self._page

    # ----- ナビゲーション -----

    async def navigate_to(self, path: str = "") -> None:
        """base_url からの相対パス（または絶対 URL）へ遷移し、ロード完了を待つ。"""
        url = urljoin(self.base_url, path) if self.base_url else path
        logger.info("遷移: %s", url)
        await self._page.goto(url)
        await wait_for_page_load(self._page, timeout=self.session.navigation_timeout)

    async def title(self) -> str:
        return await self._page.title()

    @property
    def current_url(self) -> str:
        return self._page.url

    # ----- 操作 -----

    async def click(self, selector: str) -> None:
        logger.debug("クリック: %s", selector)
        await self._page.locator(selector).click()

    async def fill(self, selector: str, value: str) -> None:
        logger.debug("入力: %s", selector)
        await self._page.locator(selector).fill(value)

    async def text_of(self, selector: str) -> str:
        return (await self._page.locator(selector).first.inner_text()).strip()

    # ----- 真偽値クエリ -----

    async def is_present(self, selector: str) -> bool:
        """要素が DOM 上に 1 件以上存在するかを返す。"""
        return await self._page.locator(selector).count() > 0

    async def is_displayed(self, selector: str) -> bool:
        """要素が存在し、かつ可視かを返す。

        要素が存在しない場合も例外ではなく False を返す。
        """
        locator = self._page.locator(selector)
        if await locator.count() == 0:
            return False
        return await locator.first.is_visible()

    # ----- 待機 -----
    # timeout 省略時はセッションの action_timeout を使う

    def _timeout(self, timeout: Optional[int]) -> int:
        return self.session.action_timeout if timeout is None else timeout

    async def wait_visible(self, selector: str, timeout: Optional[int] = None) -> None:
        await wait_for_element_visible(self._waiter, self._page, selector, self._timeout(timeout))

    async def wait_hidden(self, selector: str, timeout: Optional[int] = None) -> None:
        await wait_for_element_hidden(self._waiter, self._page, selector, self._timeout(timeout))

    async def wait_enabled(self, selector: str, timeout: Optional[int] = None) -> None:
        await wait_for_element_enabled(self._waiter, self._page, selector, self._timeout(timeout))

    async def wait_url_contains(self, url_part: str, timeout: Optional[int] = None) -> None:
        await wait_for_url_contains(self._waiter, self._page, url_part, self._timeout(timeout))

    async def wait_count(
        self, selector: str, expected: int, timeout: Optional[int] = None
    ) -> None:
        await wait_for_element_count(
            self._waiter, self._page, selector, expected, self._timeout(timeout),
        )

    async def wait_text(
        self, selector: str, text: str, timeout: Optional[int] = None
    ) -> None:
        await wait_for_text_contains(
            self._waiter, self._page, selector, text, self._timeout(timeout),
        )
