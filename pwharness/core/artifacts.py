"""
ArtifactCapture — 失敗時の成果物取得

テストが最終的に失敗した（再試行を使い切った）時点で、アクティブな
セッションからスクリーンショット・トレースを取得して保存する。
動画はセッション破棄後にファイルが確定するため、別途 persist_video() で移動する。

主な機能:
  - ArtifactRecord: 保存済み成果物の記述子
  - sanitize_test_name(): テスト名のファイル名安全化
  - ArtifactCapture.capture_on_failure(): スクリーンショット・トレースの保存
  - ArtifactCapture.persist_video() / discard_video(): 録画ファイルの保存・削除

保存先:
  - <screenshots-dir>/<sanitized>_<timestamp>.png
  - <traces-dir>/<sanitized>_<timestamp>-trace.zip
  - <videos-dir>/<sanitized>_<timestamp>.webm

成果物の取得失敗は元のテスト失敗を覆い隠さないよう、ログ出力のみで握りつぶす。
"""

from __future__ import annotations

import enum
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from pydantic import BaseModel, ConfigDict

from .config import HarnessSettings

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
"""ファイル名に使用できない文字を検出する正規表現。"""

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


# ---------------------------------------------------------------------------
# データモデル
# ---------------------------------------------------------------------------

class ArtifactKind(str, enum.Enum):
    """成果物の種別。"""

    SCREENSHOT = "screenshot"
    TRACE = "trace"
    VIDEO = "video"


class ArtifactRecord(BaseModel):
    """保存済み成果物の記述子。レポート側に添付用として渡す。"""

    model_config = ConfigDict(frozen=True)

    test_name: str
    kind: ArtifactKind
    timestamp: datetime
    path: Path


class ArtifactCaptureError(RuntimeError):
    """成果物の取得・保存に失敗した場合のエラー。

    capture_on_failure() の内部でログに記録され、呼び出し側には伝播しない。
    """


def sanitize_test_name(name: str) -> str:
    """テスト名をファイル名に安全な文字列に変換する。

    [A-Za-z0-9._-] 以外の文字をすべて '_' に置換する。

    >>> sanitize_test_name("Login: user@test (retry)!")
    'Login__user_test__retry__'
    """
    return _UNSAFE_CHARS.sub("_", name)


# ---------------------------------------------------------------------------
# ArtifactCapture 本体
# ---------------------------------------------------------------------------

@dataclass
class ArtifactCapture:
    """失敗時成果物の取得クラス。

    Attributes:
        screenshots_dir: スクリーンショット保存先
        traces_dir: トレース保存先
        videos_dir: 動画保存先
        screenshot_enabled: スクリーンショットを取得するか
        clock: タイムスタンプ取得関数（テスト用に差し替え可能）
    """

    screenshots_dir: Path = field(default_factory=lambda: Path("artifacts/screenshots"))
    traces_dir: Path = field(default_factory=lambda: Path("artifacts/traces"))
    videos_dir: Path = field(default_factory=lambda: Path("artifacts/videos"))
    screenshot_enabled: bool = True
    clock: Callable[[], datetime] = datetime.now

    @classmethod
    def from_settings(cls, settings: HarnessSettings) -> ArtifactCapture:
        """設定から ArtifactCapture を生成する。"""
        return cls(
            screenshots_dir=settings.screenshots_dir,
            traces_dir=settings.traces_dir,
            videos_dir=settings.videos_dir,
            screenshot_enabled=settings.screenshot_on_failure,
        )

    # ----- 失敗時取得 -----

    async def capture_on_failure(
        self, session: Session, test_name: str
    ) -> list[ArtifactRecord]:
        """最終失敗したテストの成果物を取得する。

        スクリーンショット（有効時）とトレース（記録中の場合）を個別に取得する。
        一方の失敗は他方の取得を妨げない。取得エラーは送出せずログに記録する。

        Args:
            session: 失敗したテストのセッション（破棄前であること）
            test_name: テスト名

        Returns:
            保存に成功した成果物のリスト（失敗した種別は含まれない）
        """
        timestamp = self.clock()
        records: list[ArtifactRecord] = []

        if self.screenshot_enabled:
            try:
                records.append(await self.capture_screenshot(session, test_name, timestamp))
            except Exception as exc:
                _log_capture_error(ArtifactKind.SCREENSHOT, test_name, exc)

        if session.is_tracing:
            try:
                records.append(await self.capture_trace(session, test_name, timestamp))
            except Exception as exc:
                _log_capture_error(ArtifactKind.TRACE, test_name, exc)

        return records

    async def capture_screenshot(
        self, session: Session, test_name: str, timestamp: Optional[datetime] = None
    ) -> ArtifactRecord:
        """フルページのスクリーンショットを PNG で保存する。

        Raises:
            ArtifactCaptureError: Page が無い、または画像が空の場合
        """
        page = session.page
        if page is None:
            raise ArtifactCaptureError(f"アクティブな Page がありません: {session}")

        timestamp = timestamp or self.clock()
        data = await page.screenshot(full_page=True, type="png")
        if not data:
            raise ArtifactCaptureError("スクリーンショットが空です")

        filename = f"{sanitize_test_name(test_name)}_{timestamp.strftime(TIMESTAMP_FORMAT)}.png"
        path = self.screenshots_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

        logger.info("スクリーンショットを保存しました: %s", path)
        return ArtifactRecord(
            test_name=test_name, kind=ArtifactKind.SCREENSHOT, timestamp=timestamp, path=path,
        )

    async def capture_trace(
        self, session: Session, test_name: str, timestamp: Optional[datetime] = None
    ) -> ArtifactRecord:
        """記録中のトレースを停止して zip に書き出す。

        Raises:
            ArtifactCaptureError: 書き出し後のファイルが存在しない、または空の場合
        """
        timestamp = timestamp or self.clock()
        filename = (
            f"{sanitize_test_name(test_name)}_{timestamp.strftime(TIMESTAMP_FORMAT)}-trace.zip"
        )
        path = self.traces_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)

        await session.stop_tracing(path)
        _ensure_non_empty(path)

        return ArtifactRecord(
            test_name=test_name, kind=ArtifactKind.TRACE, timestamp=timestamp, path=path,
        )

    # ----- 動画 -----

    def persist_video(self, session: Session, test_name: str) -> Optional[ArtifactRecord]:
        """破棄済みセッションの録画ファイルを videos_dir に移動する。

        録画が無い場合や移動に失敗した場合は None を返す（エラーはログのみ）。
        """
        source = session.video_path
        if source is None:
            return None

        timestamp = self.clock()
        dest = self.videos_dir / (
            f"{sanitize_test_name(test_name)}_{timestamp.strftime(TIMESTAMP_FORMAT)}"
            f"{source.suffix or '.webm'}"
        )
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(dest))
            _ensure_non_empty(dest)
        except Exception as exc:
            _log_capture_error(ArtifactKind.VIDEO, test_name, exc)
            return None

        session.video_path = dest
        logger.info("動画を保存しました: %s", dest)
        return ArtifactRecord(
            test_name=test_name, kind=ArtifactKind.VIDEO, timestamp=timestamp, path=dest,
        )

    def discard_video(self, session: Session) -> None:
        """不要になった録画ファイルを削除する。"""
        source = session.video_path
        if source is None:
            return
        try:
            source.unlink(missing_ok=True)
            logger.debug("録画を削除しました: %s", source)
        except OSError as exc:
            logger.warning("録画の削除に失敗しました: %s: %s", source, exc)
        session.video_path = None


# ---------------------------------------------------------------------------
# ヘルパー関数
# ---------------------------------------------------------------------------

def _ensure_non_empty(path: Path) -> None:
    if not path.is_file() or path.stat().st_size == 0:
        raise ArtifactCaptureError(f"成果物ファイルが存在しないか空です: {path}")


def _log_capture_error(kind: ArtifactKind, test_name: str, exc: BaseException) -> None:
    error = exc if isinstance(exc, ArtifactCaptureError) else ArtifactCaptureError(str(exc))
    logger.error(
        "%s の取得に失敗しました（テスト: %s）: %s", kind.value, test_name, error,
    )
