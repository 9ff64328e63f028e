"""
SessionManager — ワーカー専有ブラウザセッションの管理

テスト試行ごとに独立した Playwright ドライバ・Browser・Context・Page を生成し、
終了時には必ず逆順で破棄する。

主な機能:
  - BrowserType: 対応ブラウザエンジン（chromium / firefox / webkit）
  - SessionState: セッションの状態遷移
  - Session: 1 ワーカーが専有するブラウザセッション
  - SessionManager.acquire / release: セッションの生成と破棄
  - SessionManager.open: acquire / release を対にした async コンテキストマネージャ

Session はワーカー間で共有・受け渡しされないため、Session 自体にロックは不要。
SessionManager が保持する共有状態は件数カウンタと稼働中セッションの台帳のみ。
"""

from __future__ import annotations

import enum
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional

from .config import HarnessSettings
from .waits import ConditionWaiter

if TYPE_CHECKING:
    import asyncio

    from playwright.async_api import Browser, BrowserContext, Page, Playwright

logger = logging.getLogger(__name__)

_CHROMIUM_ARGS = [
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-gpu",
    "--disable-extensions",
]


# ---------------------------------------------------------------------------
# 列挙型・例外
# ---------------------------------------------------------------------------

class BrowserType(str, enum.Enum):
    """対応ブラウザエンジン。値は Playwright のブラウザ種別名と一致する。"""

    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


class SessionState(enum.Enum):
    """ブラウザセッションの状態。"""

    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    IN_USE = "in_use"
    TEARING_DOWN = "tearing_down"
    CLOSED = "closed"


class SessionLaunchError(RuntimeError):
    """ブラウザ・Context・Page のいずれかを生成できなかった場合のエラー。"""


class TeardownError(RuntimeError):
    """セッション破棄の個別ステップが失敗した場合のエラー。

    ログに記録されるのみで、残りの破棄処理は継続する。
    """


def resolve_browser_type(name: str) -> BrowserType:
    """設定値のブラウザ名を BrowserType に変換する。

    未知の名前の場合は警告を出して CHROMIUM を返す。
    """
    try:
        return BrowserType(name.strip().lower())
    except ValueError:
        logger.warning("不明なブラウザ種別です: %s。chromium を使用します", name)
        return BrowserType.CHROMIUM


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Session:
    """1 ワーカーが専有するブラウザセッション。

    SessionManager.acquire() でのみ生成され、release() で破棄される。

    Attributes:
        session_id: セッション ID
        worker_id: 所有ワーカー ID
        browser_type: 起動したブラウザエンジン
        created_at: 生成日時
        viewport: ビューポートサイズ
        default_timeout: Page のデフォルトタイムアウト（ミリ秒）
        navigation_timeout: Page のナビゲーションタイムアウト（ミリ秒）
        action_timeout: ページオブジェクトの待機で使う既定タイムアウト（ミリ秒）
        record_video: 動画録画の有無
        waiter: このセッションのテスト本体が使う ConditionWaiter
        video_path: 破棄時に確定した録画ファイルのパス
        teardown_errors: 破棄中に発生したエラー
    """

    def __init__(
        self,
        worker_id: str,
        browser_type: BrowserType,
        viewport: dict[str, int],
        default_timeout: int,
        navigation_timeout: int,
        record_video: bool = False,
        waiter: Optional[ConditionWaiter] = None,
        action_timeout: Optional[int] = None,
    ) -> None:
        self.session_id: str = uuid.uuid4().hex[:12]
        self.worker_id = worker_id
        self.browser_type = browser_type
        self.created_at = datetime.now()
        self.viewport = viewport
        self.default_timeout = default_timeout
        self.navigation_timeout = navigation_timeout
        self.action_timeout = action_timeout or default_timeout
        self.record_video = record_video
        self.waiter = waiter or ConditionWaiter(default_timeout=default_timeout)
        self.video_path: Optional[Path] = None
        self.teardown_errors: list[TeardownError] = []

        self._state = SessionState.UNINITIALIZED
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._tracing = False

    def __repr__(self) -> str:
        return (
            f"Session(id={self.session_id}, worker={self.worker_id}, "
            f"browser={self.browser_type.value}, state={self._state.value})"
        )

    @property
    def state(self) -> SessionState:
        """現在のセッション状態を返す。"""
        return self._state

    @property
    def is_active(self) -> bool:
        """Page が利用可能な状態かどうかを返す。"""
        return self._state in (SessionState.READY, SessionState.IN_USE)

    @property
    def is_tracing(self) -> bool:
        """トレース記録中かどうかを返す。"""
        return self._tracing

    @property
    def browser(self) -> Optional[Browser]:
        """Browser を返す。非アクティブ時は None。"""
        return self._browser if self.is_active else None

    @property
    def context(self) -> Optional[BrowserContext]:
        """BrowserContext を返す。非アクティブ時は None。"""
        return self._context if self.is_active else None

    @property
    def page(self) -> Optional[Page]:
        """Page を返す。非アクティブ時は None。"""
        return self._page if self.is_active else None

    async def start_tracing(self) -> None:
        """トレース記録を開始する。

        Raises:
            RuntimeError: セッションがアクティブでない場合
        """
        if not self.is_active or self._context is None:
            raise RuntimeError(f"アクティブでないセッションです: {self}")
        await self._context.tracing.start(screenshots=True, snapshots=True, sources=True)
        self._tracing = True
        logger.debug("トレース記録を開始しました: %s", self.session_id)

    async def stop_tracing(self, path: Optional[Path] = None) -> None:
        """トレース記録を停止する。

        path を指定した場合はトレースを書き出し、省略時は破棄する。
        記録中でなければ何もしない。
        """
        if not self._tracing or self._context is None:
            return
        self._tracing = False
        if path is None:
            await self._context.tracing.stop()
            logger.debug("トレースを破棄しました: %s", self.session_id)
        else:
            await self._context.tracing.stop(path=str(path))
            logger.info("トレースを保存しました: %s", path)


# ---------------------------------------------------------------------------
# SessionManager 本体
# ---------------------------------------------------------------------------

class SessionManager:
    """ブラウザセッションの生成・破棄を担当するクラス。

    acquire() ごとに新しい Playwright ドライバを起動するため、
    セッション同士は一切の状態を共有しない。

    使用例::

        manager = SessionManager(settings)
        async with manager.open("worker-0") as session:
            await session.page.goto(settings.base_url)
    """

    def __init__(
        self,
        settings: HarnessSettings,
        driver_factory: Optional[Callable[[], Any]] = None,
        abort_event: Optional[asyncio.Event] = None,
    ) -> None:
        """SessionManager を初期化する。

        Args:
            settings: 設定（ブラウザ種別、ビューポート、タイムアウト等）
            driver_factory: Playwright ドライバのファクトリ。
                            None の場合は playwright.async_api.async_playwright を使用
            abort_event: セッションの ConditionWaiter に渡す中断シグナル
        """
        self._settings = settings
        self._driver_factory = driver_factory
        self._abort_event = abort_event
        self._browser_type = resolve_browser_type(settings.browser)
        self._active: dict[str, Session] = {}
        self._acquired = 0
        self._released = 0

    @property
    def browser_type(self) -> BrowserType:
        """起動するブラウザエンジンを返す。"""
        return self._browser_type

    @property
    def acquired_count(self) -> int:
        """完了した acquire の件数。"""
        return self._acquired

    @property
    def released_count(self) -> int:
        """完了した release の件数。"""
        return self._released

    @property
    def active_count(self) -> int:
        """未解放のセッション数。"""
        return len(self._active)

    # -------------------------------------------------------------------
    # acquire / release
    # -------------------------------------------------------------------

    async def acquire(self, worker_id: str) -> Session:
        """ワーカー専有の新しいセッションを生成する。

        ドライバ起動 → ブラウザ起動 → Context 生成 → トレース開始 → Page 生成
        の順に行う。途中で失敗した場合は生成済みのリソースを破棄し、
        SessionLaunchError を送出する（中途半端なセッションは返さない）。

        Args:
            worker_id: セッションを所有するワーカー ID

        Returns:
            IN_USE 状態のセッション

        Raises:
            SessionLaunchError: セッションを生成できなかった場合
        """
        settings = self._settings
        session = Session(
            worker_id=worker_id,
            browser_type=self._browser_type,
            viewport={"width": settings.viewport_width, "height": settings.viewport_height},
            default_timeout=settings.default_timeout,
            navigation_timeout=settings.navigation_timeout,
            record_video=settings.video_on_failure,
            action_timeout=settings.action_timeout,
            waiter=ConditionWaiter(
                default_timeout=settings.default_timeout,
                poll_interval=settings.wait_poll_interval,
                abort_event=self._abort_event,
            ),
        )
        session._state = SessionState.LAUNCHING
        logger.info(
            "セッションを起動しています: %s (worker=%s, browser=%s, headless=%s)",
            session.session_id, worker_id, self._browser_type.value, settings.headless,
        )

        try:
            await self._launch(session)
        except Exception as exc:
            logger.error("セッションの起動に失敗しました: %s: %s", session.session_id, exc)
            await self._teardown(session)
            raise SessionLaunchError(
                f"{self._browser_type.value} セッションを起動できませんでした: {exc}"
            ) from exc

        session._state = SessionState.READY
        self._active[session.session_id] = session
        self._acquired += 1
        session._state = SessionState.IN_USE
        logger.debug("セッションを割り当てました: %s", session)
        return session

    async def release(self, session: Session) -> None:
        """セッションを破棄する。

        トレース停止 → Page → Context → Browser → ドライバ の順にクローズする。
        個別ステップの失敗はログに記録し、残りのステップを継続する。
        既に破棄済み（または破棄中）のセッションに対しては何もしない。

        Args:
            session: 破棄対象のセッション
        """
        if session.state in (SessionState.TEARING_DOWN, SessionState.CLOSED):
            logger.debug("破棄済みのセッションです（スキップ）: %s", session.session_id)
            return

        await self._teardown(session)
        if self._active.pop(session.session_id, None) is not None:
            self._released += 1
        logger.info(
            "セッションを解放しました: %s (worker=%s, エラー %d 件)",
            session.session_id, session.worker_id, len(session.teardown_errors),
        )

    @asynccontextmanager
    async def open(self, worker_id: str) -> AsyncIterator[Session]:
        """acquire / release を対にした async コンテキストマネージャ。"""
        session = await self.acquire(worker_id)
        try:
            yield session
        finally:
            await self.release(session)

    # -------------------------------------------------------------------
    # 起動
    # -------------------------------------------------------------------

    async def _launch(self, session: Session) -> None:
        settings = self._settings
        factory = self._driver_factory
        if factory is None:
            from playwright.async_api import async_playwright

            factory = async_playwright

        session._playwright = await factory().start()

        engine = getattr(session._playwright, self._browser_type.value)
        session._browser = await engine.launch(**self._launch_options())

        session._context = await session._browser.new_context(**self._context_options())

        if settings.trace_on_failure:
            await session._context.tracing.start(screenshots=True, snapshots=True, sources=True)
            session._tracing = True
            logger.debug("トレース記録を開始しました: %s", session.session_id)

        page = await session._context.new_page()
        page.set_default_timeout(settings.default_timeout)
        page.set_default_navigation_timeout(settings.navigation_timeout)
        session._page = page

    def _launch_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "headless": self._settings.headless,
            "slow_mo": self._settings.slow_motion,
        }
        if self._browser_type is BrowserType.CHROMIUM:
            options["args"] = list(_CHROMIUM_ARGS)
        return options

    def _context_options(self) -> dict[str, Any]:
        settings = self._settings
        viewport = {"width": settings.viewport_width, "height": settings.viewport_height}
        options: dict[str, Any] = {
            "viewport": viewport,
            "locale": settings.locale,
            "timezone_id": settings.timezone,
            "ignore_https_errors": settings.ignore_https_errors,
        }
        if settings.video_on_failure:
            raw_dir = settings.videos_dir / "raw"
            raw_dir.mkdir(parents=True, exist_ok=True)
            options["record_video_dir"] = str(raw_dir)
            options["record_video_size"] = dict(viewport)
        return options

    # -------------------------------------------------------------------
    # 破棄
    # -------------------------------------------------------------------

    async def _teardown(self, session: Session) -> None:
        session._state = SessionState.TEARING_DOWN
        page = session._page
        context = session._context
        browser = session._browser
        driver = session._playwright

        try:
            if session._tracing and context is not None:
                await self._run_step(session, "トレース", session.stop_tracing)

            if session.record_video and page is not None:
                await self._run_step(session, "動画パス取得", lambda: _store_video_path(session, page))

            if page is not None:
                await self._run_step(session, "Page", page.close)
            if context is not None:
                await self._run_step(session, "Context", context.close)
            if browser is not None:
                await self._run_step(session, "Browser", browser.close)
            if driver is not None:
                await self._run_step(session, "ドライバ", driver.stop)
        finally:
            session._page = None
            session._context = None
            session._browser = None
            session._playwright = None
            session._tracing = False
            session._state = SessionState.CLOSED

    async def _run_step(self, session: Session, label: str, action: Callable[[], Any]) -> None:
        try:
            await action()
        except Exception as exc:
            error = TeardownError(f"{label} のクローズに失敗しました: {exc}")
            session.teardown_errors.append(error)
            logger.warning("%s (session=%s)", error, session.session_id, exc_info=True)


async def _store_video_path(session: Session, page: Page) -> None:
    video = page.video
    if video is None:
        return
    session.video_path = Path(await video.path())
