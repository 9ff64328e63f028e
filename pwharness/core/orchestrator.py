"""
TestOrchestrator — テストケース実行と再試行の統括

テストケースごとにセッションを確保してテスト本体を実行し、失敗時は
RetryPolicy に従って新しいセッションで再実行する。再試行を使い切った場合のみ
成果物を取得する。どの経路でも acquire したセッションは必ず 1 回だけ release する。

主な機能:
  - TestCase: テスト名とテスト本体（Session を受け取る非同期関数）
  - TestResult: テストケース 1 件の実行結果
  - TestOrchestrator.run(): 単一テストケースの実行（再試行込み）
  - TestOrchestrator.run_suite(): ワーカープールによる並列実行
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, ClassVar, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .artifacts import ArtifactCapture, ArtifactRecord
from .config import HarnessSettings
from .retry import RetryPolicy
from .session import Session, SessionLaunchError, SessionManager

logger = logging.getLogger(__name__)

TestBody = Callable[[Session], Awaitable[None]]
"""テスト本体。ワーカー専有の Session を受け取る。"""


# ---------------------------------------------------------------------------
# テストケース・結果
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TestCase:
    """実行対象のテストケース。

    Attributes:
        name: テスト名（成果物のファイル名にも使用される）
        body: テスト本体
    """

    __test__ = False

    name: str
    body: TestBody


class TestResult(BaseModel):
    """テストケース 1 件の実行結果。

    Attributes:
        test_name: テスト名
        status: 最終結果（passed / failed / skipped）
        attempts: テスト本体の実行回数（初回を含む）
        retries: 再試行回数
        duration_ms: 全試行を通した実行時間（ミリ秒）
        failure_reason: 最終失敗の理由（成功時は None）
        artifacts: 最終失敗時に保存された成果物
        worker_id: 実行したワーカー ID
        started_at: 実行開始日時
    """

    __test__: ClassVar[bool] = False
    model_config = ConfigDict(frozen=True)

    test_name: str
    status: Literal["passed", "failed", "skipped"]
    attempts: int = 0
    retries: int = 0
    duration_ms: float = 0.0
    failure_reason: Optional[str] = None
    artifacts: list[ArtifactRecord] = Field(default_factory=list)
    worker_id: Optional[str] = None
    started_at: Optional[datetime] = None

    @property
    def flaky(self) -> bool:
        """再試行の末に成功したかどうかを返す。"""
        return self.status == "passed" and self.retries > 0


# ---------------------------------------------------------------------------
# TestOrchestrator 本体
# ---------------------------------------------------------------------------

class TestOrchestrator:
    """テストケースの実行・再試行・成果物取得・セッション解放を統括する。

    使用例::

        orchestrator = TestOrchestrator(settings)
        results = await orchestrator.run_suite(test_cases)
    """

    __test__ = False

    def __init__(
        self,
        settings: HarnessSettings,
        session_manager: Optional[SessionManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        artifact_capture: Optional[ArtifactCapture] = None,
        abort_event: Optional[asyncio.Event] = None,
    ) -> None:
        """TestOrchestrator を初期化する。

        Args:
            settings: 設定
            session_manager: セッション管理（None で settings から生成）
            retry_policy: 再試行ポリシー（None で retry.count から生成）
            artifact_capture: 成果物取得（None で settings から生成）
            abort_event: 実行中断シグナル（None で新規生成）
        """
        self._settings = settings
        self.abort_event = abort_event or asyncio.Event()
        self._manager = session_manager or SessionManager(
            settings, abort_event=self.abort_event
        )
        self._policy = retry_policy or RetryPolicy(settings.retry_count)
        self._capture = artifact_capture or ArtifactCapture.from_settings(settings)

    @property
    def session_manager(self) -> SessionManager:
        """使用中の SessionManager を返す。"""
        return self._manager

    def abort(self) -> None:
        """実行を中断する。

        進行中の待機は即座に打ち切られ、run_suite() は未着手のテストを skipped にする。
        """
        logger.warning("実行の中断が要求されました")
        self.abort_event.set()

    # -------------------------------------------------------------------
    # 単一テストケース
    # -------------------------------------------------------------------

    async def run(self, test_case: TestCase, worker_id: str = "worker-0") -> TestResult:
        """テストケースを実行し、結果を返す。

        テスト本体が失敗した場合は RetryPolicy に問い合わせ、再試行するなら
        セッションを解放して新しいセッションで再実行する。セッションの起動失敗は
        再試行せずに最終失敗とする。中断シグナルがセットされた後の失敗も再試行しない。

        Args:
            test_case: 実行するテストケース
            worker_id: 実行ワーカー ID

        Returns:
            テストケースの実行結果
        """
        state = self._policy.new_state()
        started_at = datetime.now()
        start = time.perf_counter()
        attempts = 0
        logger.info("テスト開始: %s (worker=%s)", test_case.name, worker_id)

        def _result(status: str, reason: Optional[str] = None,
                    artifacts: Optional[list[ArtifactRecord]] = None) -> TestResult:
            return TestResult(
                test_name=test_case.name,
                status=status,
                attempts=attempts,
                retries=state.retries,
                duration_ms=(time.perf_counter() - start) * 1000,
                failure_reason=reason,
                artifacts=artifacts or [],
                worker_id=worker_id,
                started_at=started_at,
            )

        while True:
            attempts += 1
            try:
                session = await self._manager.acquire(worker_id)
            except SessionLaunchError as exc:
                logger.error("テスト失敗（セッション起動不可）: %s: %s", test_case.name, exc)
                return _result("failed", reason=_describe(exc))

            failure: Optional[Exception] = None
            retry = False
            artifacts: list[ArtifactRecord] = []
            try:
                failure = await self._execute(test_case, session, attempts)
                if failure is not None:
                    if self.abort_event.is_set():
                        logger.warning("中断が要求されたため再試行しません: %s", test_case.name)
                    else:
                        retry = self._policy.should_retry(state, _describe(failure))
                    if not retry:
                        artifacts = await self._capture.capture_on_failure(
                            session, test_case.name
                        )
            finally:
                await self._manager.release(session)

            if failure is None:
                self._capture.discard_video(session)
                result = _result("passed")
                logger.info(
                    "テスト成功: %s (%.0fms, 試行 %d 回)",
                    test_case.name, result.duration_ms, attempts,
                )
                return result

            if retry:
                self._capture.discard_video(session)
                continue

            video = self._capture.persist_video(session, test_case.name)
            if video is not None:
                artifacts.append(video)
            result = _result("failed", reason=_describe(failure), artifacts=artifacts)
            logger.error(
                "テスト失敗: %s (試行 %d 回): %s",
                test_case.name, attempts, result.failure_reason,
            )
            for record in artifacts:
                logger.error("  成果物 [%s]: %s", record.kind.value, record.path)
            return result

    async def _execute(
        self, test_case: TestCase, session: Session, attempt: int
    ) -> Optional[Exception]:
        """テスト本体を 1 回実行し、失敗時は例外を返す（送出しない）。"""
        timeout_ms = self._settings.test_timeout
        try:
            if timeout_ms > 0:
                try:
                    await asyncio.wait_for(test_case.body(session), timeout=timeout_ms / 1000)
                except asyncio.TimeoutError as exc:
                    # wait_for 自身のタイムアウトは CancelledError を原因に持つ
                    if not isinstance(exc.__cause__, asyncio.CancelledError):
                        raise
                    raise TimeoutError(
                        f"テスト '{test_case.name}' が {timeout_ms}ms 以内に完了しませんでした"
                    ) from exc
            else:
                await test_case.body(session)
        except Exception as exc:
            logger.warning(
                "試行 %d が失敗しました: %s: %s", attempt, test_case.name, _describe(exc),
            )
            return exc
        return None

    # -------------------------------------------------------------------
    # 並列実行
    # -------------------------------------------------------------------

    async def run_suite(
        self, test_cases: Sequence[TestCase], workers: Optional[int] = None
    ) -> list[TestResult]:
        """複数のテストケースをワーカープールで並列実行する。

        各ワーカーはキューから 1 件ずつ取り出し、完了してから次を取る。
        結果は入力と同じ順序で返す。

        Args:
            test_cases: 実行するテストケース
            workers: ワーカー数（None で parallel.threads）

        Returns:
            各テストケースの実行結果
        """
        if not test_cases:
            logger.info("実行対象のテストがありません")
            return []

        pool_size = max(1, min(workers or self._settings.parallel_threads, len(test_cases)))
        queue: asyncio.Queue[tuple[int, TestCase]] = asyncio.Queue()
        for item in enumerate(test_cases):
            queue.put_nowait(item)
        results: list[Optional[TestResult]] = [None] * len(test_cases)

        async def _worker(worker_id: str) -> None:
            while not queue.empty():
                index, test_case = queue.get_nowait()
                if self.abort_event.is_set():
                    results[index] = TestResult(
                        test_name=test_case.name,
                        status="skipped",
                        failure_reason="実行が中断されました",
                        worker_id=worker_id,
                    )
                    continue
                results[index] = await self.run(test_case, worker_id)

        logger.info("=" * 40)
        logger.info("テストスイート開始: %d 件 (workers=%d)", len(test_cases), pool_size)
        logger.info("=" * 40)

        await asyncio.gather(*(_worker(f"worker-{i}") for i in range(pool_size)))

        final = [r for r in results if r is not None]
        _log_summary(final)
        return final


# ---------------------------------------------------------------------------
# ヘルパー関数
# ---------------------------------------------------------------------------

def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def _log_summary(results: Sequence[TestResult]) -> None:
    passed = sum(1 for r in results if r.status == "passed")
    failed = sum(1 for r in results if r.status == "failed")
    skipped = sum(1 for r in results if r.status == "skipped")
    flaky = sum(1 for r in results if r.flaky)

    logger.info("=" * 40)
    logger.info("テストスイート終了")
    logger.info("合計: %d / 成功: %d / 失敗: %d / スキップ: %d / 再試行後成功: %d",
                len(results), passed, failed, skipped, flaky)
    logger.info("=" * 40)
