"""
テスト共通フィクスチャ

実ブラウザを起動せずに SessionManager を動かすための偽 Playwright ドライバと、
一時ディレクトリを成果物の保存先にした HarnessSettings を提供する。

偽ドライバの各クローズ処理は呼び出し順を FakeDriver.order に記録する。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from pwharness.core.config import HarnessSettings


# ---------------------------------------------------------------------------
# 偽 Playwright ドライバ
# ---------------------------------------------------------------------------

@dataclass
class FakeDriver:
    """1 回の acquire で生成される偽の Playwright / Browser / Context / Page 一式。"""

    playwright: MagicMock
    browser: MagicMock
    context: MagicMock
    page: MagicMock
    order: list[str] = field(default_factory=list)


def _make_driver() -> FakeDriver:
    order: list[str] = []

    page = MagicMock()
    page.url = "about:blank"
    page.video = None
    page.close = AsyncMock(side_effect=lambda: order.append("page"))
    page.screenshot = AsyncMock(return_value=b"\x89PNG fake image")
    page.goto = AsyncMock()
    page.title = AsyncMock(return_value="Fake Page")
    page.wait_for_load_state = AsyncMock()

    async def _stop_tracing(path: str | None = None) -> None:
        order.append("trace")
        if path is not None:
            Path(path).write_bytes(b"PK fake trace")

    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock(side_effect=lambda: order.append("context"))
    context.tracing.start = AsyncMock()
    context.tracing.stop = AsyncMock(side_effect=_stop_tracing)

    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock(side_effect=lambda: order.append("browser"))

    playwright = MagicMock()
    for engine in ("chromium", "firefox", "webkit"):
        getattr(playwright, engine).launch = AsyncMock(return_value=browser)
    playwright.stop = AsyncMock(side_effect=lambda: order.append("driver"))

    return FakeDriver(
        playwright=playwright, browser=browser, context=context, page=page, order=order,
    )


class FakeDriverFactory:
    """async_playwright の代わりに SessionManager へ渡すファクトリ。

    呼び出しごとに新しい FakeDriver を生成して drivers に記録する。
    launch_error を設定するとブラウザ起動時にその例外を送出する。
    """

    def __init__(self) -> None:
        self.drivers: list[FakeDriver] = []
        self.launch_error: BaseException | None = None

    def __call__(self) -> MagicMock:
        driver = _make_driver()
        if self.launch_error is not None:
            for engine in ("chromium", "firefox", "webkit"):
                getattr(driver.playwright, engine).launch.side_effect = self.launch_error
        self.drivers.append(driver)

        context_manager = MagicMock()
        context_manager.start = AsyncMock(return_value=driver.playwright)
        return context_manager

    @property
    def pages(self) -> list[MagicMock]:
        return [d.page for d in self.drivers]


# ---------------------------------------------------------------------------
# pytest フィクスチャ
# ---------------------------------------------------------------------------

@pytest.fixture
def driver_factory() -> FakeDriverFactory:
    """偽 Playwright ドライバのファクトリ。"""
    return FakeDriverFactory()


@pytest.fixture
def settings(tmp_path: Path) -> HarnessSettings:
    """成果物を tmp_path 配下に保存する設定。

    ポーリング間隔とタイムアウトはテストが短時間で終わる値にしている。
    トレースは既定で無効。
    """
    return HarnessSettings(
        default_timeout=1000,
        navigation_timeout=2000,
        wait_poll_interval=10,
        trace_on_failure=False,
        artifacts_dir=tmp_path / "artifacts",
        screenshots_dir=tmp_path / "artifacts" / "screenshots",
        traces_dir=tmp_path / "artifacts" / "traces",
        videos_dir=tmp_path / "artifacts" / "videos",
    )
