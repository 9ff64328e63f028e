"""
待機戦略 — 条件ベースのポーリング待機

固定時間の sleep の代わりに、条件（述語）が真になるまでポーリングで待機する。

主な機能:
  - ConditionWaiter.wait_for: 述語ベースの汎用ポーリング待機（中断可能）
  - wait_for_element_visible / wait_for_element_hidden: 要素の可視・非可視待機
  - wait_for_url_contains: URL 部分一致待機
  - wait_for_element_count: 要素数一致待機
  - wait_for_element_enabled / wait_for_text_contains: 有効化・テキスト待機
  - wait_for_page_load / wait_for_network_settle: Playwright のロード状態待機

要素系の待機はすべて wait_for に述語クロージャを渡すだけで、
独自のポーリングループは持たない。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

Predicate = Callable[[], Union[bool, Awaitable[bool]]]
"""待機条件。同期関数・非同期関数のどちらでもよい。"""


# ---------------------------------------------------------------------------
# 例外
# ---------------------------------------------------------------------------

class WaitTimeoutError(TimeoutError):
    """タイムアウトまでに条件が真にならなかった場合のエラー。

    Attributes:
        description: 待機対象の説明
        timeout_ms: 指定されたタイムアウト（ミリ秒）
        elapsed_ms: 実際の経過時間（ミリ秒）
    """

    def __init__(self, description: str, timeout_ms: int, elapsed_ms: float) -> None:
        super().__init__(
            f"{description} が {timeout_ms}ms 以内に満たされませんでした"
            f"（経過 {elapsed_ms:.0f}ms）"
        )
        self.description = description
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms


class WaitCancelledError(RuntimeError):
    """中断シグナルにより待機が打ち切られた場合のエラー。"""


# ---------------------------------------------------------------------------
# WaitSpec
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WaitSpec:
    """1 回の待機のパラメータ。

    Attributes:
        predicate: 待機条件
        timeout_ms: タイムアウト（ミリ秒、0 で 1 回だけ評価）
        poll_interval_ms: ポーリング間隔（ミリ秒）
        description: ログ・エラーメッセージ用の説明
    """

    predicate: Predicate
    timeout_ms: int
    poll_interval_ms: int
    description: str = "条件"

    def __post_init__(self) -> None:
        if self.timeout_ms < 0:
            raise ValueError(f"timeout は 0 以上である必要があります: {self.timeout_ms}")
        if self.poll_interval_ms <= 0:
            raise ValueError(
                f"poll_interval は正の値である必要があります: {self.poll_interval_ms}"
            )


# ---------------------------------------------------------------------------
# ConditionWaiter 本体
# ---------------------------------------------------------------------------

class ConditionWaiter:
    """述語ベースのポーリング待機エンジン。

    abort_event を渡すと、イベントのセット時にスリープ中の待機が即座に中断される。
    タスク自体のキャンセル（asyncio.CancelledError）もスリープを即座に打ち切る。

    使用例::

        waiter = ConditionWaiter(default_timeout=30_000, poll_interval=100)
        await waiter.wait_for(lambda: job.done, timeout=5_000)
    """

    def __init__(
        self,
        default_timeout: int = 30_000,
        poll_interval: int = 100,
        abort_event: Optional[asyncio.Event] = None,
    ) -> None:
        """ConditionWaiter を初期化する。

        Args:
            default_timeout: timeout 省略時のタイムアウト（ミリ秒）
            poll_interval: poll_interval 省略時のポーリング間隔（ミリ秒）
            abort_event: 外部からの中断シグナル
        """
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self._abort_event = abort_event

    async def wait_for(
        self,
        predicate: Predicate,
        timeout: Optional[int] = None,
        poll_interval: Optional[int] = None,
        description: str = "条件",
    ) -> float:
        """述語が真になるまで待機する。

        述語が真ならスリープせずに即座に返る。述語が送出した例外は
        リトライせずにそのまま伝播する。

        Args:
            predicate: 待機条件（bool または awaitable[bool] を返す）
            timeout: タイムアウト（ミリ秒）。None で default_timeout
            poll_interval: ポーリング間隔（ミリ秒）。None で既定値
            description: エラーメッセージ用の説明

        Returns:
            条件が満たされるまでの経過時間（ミリ秒）

        Raises:
            WaitTimeoutError: タイムアウトまでに条件が真にならなかった場合
            WaitCancelledError: abort_event がセットされた場合
        """
        spec = WaitSpec(
            predicate=predicate,
            timeout_ms=self.default_timeout if timeout is None else timeout,
            poll_interval_ms=self.poll_interval if poll_interval is None else poll_interval,
            description=description,
        )
        return await self._poll(spec)

    async def _poll(self, spec: WaitSpec) -> float:
        start = time.perf_counter()
        deadline_sec = spec.timeout_ms / 1000.0
        interval_sec = spec.poll_interval_ms / 1000.0
        checks = 0

        while True:
            checks += 1
            if await _evaluate(spec.predicate):
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.debug(
                    "%s が満たされました（%.0fms 経過、%d 回評価）",
                    spec.description, elapsed_ms, checks,
                )
                return elapsed_ms

            elapsed = time.perf_counter() - start
            if elapsed >= deadline_sec:
                raise WaitTimeoutError(spec.description, spec.timeout_ms, elapsed * 1000)

            # 期限を越えて眠らない
            await self._sleep(min(interval_sec, deadline_sec - elapsed), spec.description)

    async def _sleep(self, seconds: float, description: str) -> None:
        if self._abort_event is None:
            await asyncio.sleep(seconds)
            return

        if self._abort_event.is_set():
            raise WaitCancelledError(f"{description} の待機が中断されました")
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise WaitCancelledError(f"{description} の待機が中断されました")


async def _evaluate(predicate: Predicate) -> bool:
    result = predicate()
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


# ---------------------------------------------------------------------------
# 要素・URL 待機（wait_for の特化版）
# ---------------------------------------------------------------------------

async def wait_for_element_visible(
    waiter: ConditionWaiter, page: Page, selector: str, timeout: Optional[int] = None
) -> float:
    """セレクタに一致する要素が可視になるまで待機する。"""
    locator = page.locator(selector)
    return await waiter.wait_for(
        locator.is_visible, timeout=timeout, description=f"要素 '{selector}' の可視化",
    )


async def wait_for_element_hidden(
    waiter: ConditionWaiter, page: Page, selector: str, timeout: Optional[int] = None
) -> float:
    """セレクタに一致する要素が非表示（または存在しない）になるまで待機する。"""
    locator = page.locator(selector)
    return await waiter.wait_for(
        locator.is_hidden, timeout=timeout, description=f"要素 '{selector}' の非表示化",
    )


async def wait_for_url_contains(
    waiter: ConditionWaiter, page: Page, url_part: str, timeout: Optional[int] = None
) -> float:
    """現在の URL が url_part を含むまで待機する。"""
    return await waiter.wait_for(
        lambda: url_part in page.url,
        timeout=timeout,
        description=f"URL への '{url_part}' の出現",
    )


async def wait_for_element_count(
    waiter: ConditionWaiter,
    page: Page,
    selector: str,
    expected: int,
    timeout: Optional[int] = None,
) -> float:
    """セレクタに一致する要素数が expected になるまで待機する。"""
    locator = page.locator(selector)

    async def _count_matches() -> bool:
        return await locator.count() == expected

    return await waiter.wait_for(
        _count_matches,
        timeout=timeout,
        description=f"要素 '{selector}' の件数 {expected}",
    )


async def wait_for_element_enabled(
    waiter: ConditionWaiter, page: Page, selector: str, timeout: Optional[int] = None
) -> float:
    """要素が有効（enabled）になるまで待機する。

    要素がまだ存在しない場合は未達として扱う（is_enabled は未検出時に
    タイムアウトまでブロックするため、先に件数を確認する）。
    """
    locator = page.locator(selector)

    async def _enabled() -> bool:
        if await locator.count() == 0:
            return False
        return await locator.first.is_enabled()

    return await waiter.wait_for(
        _enabled, timeout=timeout, description=f"要素 '{selector}' の有効化",
    )


async def wait_for_text_contains(
    waiter: ConditionWaiter,
    page: Page,
    selector: str,
    text: str,
    timeout: Optional[int] = None,
) -> float:
    """セレクタに一致するいずれかの要素のテキストが text を含むまで待機する。"""
    locator = page.locator(selector)

    async def _contains() -> bool:
        contents = await locator.all_text_contents()
        return any(text in content for content in contents)

    return await waiter.wait_for(
        _contains,
        timeout=timeout,
        description=f"要素 '{selector}' のテキスト '{text}'",
    )


# ---------------------------------------------------------------------------
# ロード状態待機（Playwright ネイティブ）
# ---------------------------------------------------------------------------

async def wait_for_page_load(page: Page, timeout: int = 30_000) -> None:
    """DOMContentLoaded と load イベントを順に待機する。

    Raises:
        WaitTimeoutError: タイムアウト時間内にロードが完了しなかった場合
    """
    start = time.perf_counter()
    try:
        await page.wait_for_load_state("domcontentloaded", timeout=timeout)
        await page.wait_for_load_state("load", timeout=timeout)
    except Exception as exc:
        if not _is_driver_timeout(exc):
            raise
        raise WaitTimeoutError(
            "ページロード", timeout, (time.perf_counter() - start) * 1000
        ) from exc
    logger.debug("ページのロードが完了しました")


async def wait_for_network_settle(page: Page, timeout: int = 5000) -> None:
    """ネットワークが安定するまで待機する。

    Playwright の waitForLoadState("networkidle") を使用して、
    進行中のネットワークリクエストが全て完了するまで待機する。

    Raises:
        WaitTimeoutError: タイムアウト時間内にネットワークが安定しなかった場合
    """
    start = time.perf_counter()
    try:
        await page.wait_for_load_state("networkidle", timeout=timeout)
    except Exception as exc:
        if not _is_driver_timeout(exc):
            raise
        raise WaitTimeoutError(
            "ネットワーク安定", timeout, (time.perf_counter() - start) * 1000
        ) from exc
    logger.debug("ネットワークが安定しました")


def _is_driver_timeout(exc: BaseException) -> bool:
    from playwright.async_api import TimeoutError as PlaywrightTimeoutError

    return isinstance(exc, (PlaywrightTimeoutError, TimeoutError))
