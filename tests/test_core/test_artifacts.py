"""
失敗時成果物取得のユニットテスト

セッションは FakeDriverFactory で生成した実際の Session を使用する。

テスト対象:
  - sanitize_test_name: ファイル名安全化
  - ArtifactCapture.capture_on_failure: スクリーンショット・トレースの保存と命名
  - 取得失敗時の握りつぶし
  - persist_video / discard_video: 録画ファイルの移動・削除
"""

from __future__ import annotations

import dataclasses
import logging
import re
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from pwharness.core.artifacts import (
    ArtifactCapture,
    ArtifactKind,
    ArtifactRecord,
    sanitize_test_name,
)
from pwharness.core.session import SessionManager

_FIXED_TIME = datetime(2024, 5, 1, 13, 45, 30, 123456)


def _make_capture(settings) -> ArtifactCapture:
    capture = ArtifactCapture.from_settings(settings)
    capture.clock = lambda: _FIXED_TIME
    return capture


# ===========================================================================
# テスト: sanitize_test_name
# ===========================================================================

class TestSanitizeTestName:
    """テスト名の安全化テスト。"""

    def test_example(self) -> None:
        """記号・空白が '_' に置換されること。"""
        assert sanitize_test_name("Login: user@test (retry)!") == "Login__user_test__retry__"

    def test_safe_name_unchanged(self) -> None:
        """安全な文字のみの名前は変わらないこと。"""
        assert sanitize_test_name("test_login-01.v2") == "test_login-01.v2"

    @given(name=st.text(max_size=40))
    def test_output_is_filename_safe(self, name: str) -> None:
        """出力は安全な文字のみで構成され、長さが変わらないこと。"""
        sanitized = sanitize_test_name(name)
        assert re.fullmatch(r"[A-Za-z0-9._-]*", sanitized)
        assert len(sanitized) == len(name)


# ===========================================================================
# テスト: capture_on_failure
# ===========================================================================

class TestCaptureOnFailure:
    """capture_on_failure のテスト。"""

    async def test_screenshot_saved(self, settings, driver_factory) -> None:
        """フルページのスクリーンショットが命名規則どおりに保存されること。"""
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")

        records = await _make_capture(settings).capture_on_failure(session, "Login: bad password")

        assert len(records) == 1
        record = records[0]
        assert record.kind is ArtifactKind.SCREENSHOT
        assert record.test_name == "Login: bad password"
        assert record.timestamp == _FIXED_TIME
        assert record.path == (
            settings.screenshots_dir / "Login__bad_password_20240501_134530_123456.png"
        )
        assert record.path.read_bytes() == b"\x89PNG fake image"
        driver_factory.drivers[0].page.screenshot.assert_awaited_once_with(
            full_page=True, type="png",
        )

    async def test_trace_saved_when_tracing(self, settings, driver_factory) -> None:
        """トレース記録中ならトレース zip も保存され、記録が停止されること。"""
        settings = dataclasses.replace(settings, trace_on_failure=True)
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")

        records = await _make_capture(settings).capture_on_failure(session, "checkout")

        kinds = [r.kind for r in records]
        assert kinds == [ArtifactKind.SCREENSHOT, ArtifactKind.TRACE]
        trace = records[1]
        assert trace.path == settings.traces_dir / "checkout_20240501_134530_123456-trace.zip"
        assert trace.path.stat().st_size > 0
        assert not session.is_tracing

    async def test_screenshot_disabled(self, settings, driver_factory) -> None:
        """screenshot_enabled が偽ならスクリーンショットを取得しないこと。"""
        settings = dataclasses.replace(settings, screenshot_on_failure=False)
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")

        records = await _make_capture(settings).capture_on_failure(session, "search")

        assert records == []
        driver_factory.drivers[0].page.screenshot.assert_not_awaited()

    async def test_screenshot_error_swallowed(self, settings, driver_factory, caplog) -> None:
        """スクリーンショット取得の失敗は送出されず、エラーログのみ出ること。"""
        settings = dataclasses.replace(settings, trace_on_failure=True)
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")
        driver_factory.drivers[0].page.screenshot = AsyncMock(
            side_effect=RuntimeError("page crashed")
        )

        with caplog.at_level(logging.ERROR, logger="pwharness.core.artifacts"):
            records = await _make_capture(settings).capture_on_failure(session, "profile")

        # スクリーンショットの失敗はトレースの取得を妨げない
        assert [r.kind for r in records] == [ArtifactKind.TRACE]
        assert "page crashed" in caplog.text

    async def test_empty_screenshot_not_recorded(self, settings, driver_factory) -> None:
        """空のスクリーンショットは記録されずファイルも作られないこと。"""
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")
        driver_factory.drivers[0].page.screenshot = AsyncMock(return_value=b"")

        records = await _make_capture(settings).capture_on_failure(session, "empty")

        assert records == []
        assert not settings.screenshots_dir.exists() or not any(
            settings.screenshots_dir.iterdir()
        )

    async def test_released_session_yields_nothing(self, settings, driver_factory) -> None:
        """破棄済みセッションからは何も取得されず、例外も送出されないこと。"""
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")
        await manager.release(session)

        assert await _make_capture(settings).capture_on_failure(session, "late") == []


# ===========================================================================
# テスト: 動画
# ===========================================================================

class TestVideo:
    """persist_video / discard_video のテスト。"""

    async def test_persist_moves_file(self, settings, driver_factory, tmp_path: Path) -> None:
        """録画ファイルが videos_dir に移動されること。"""
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")
        await manager.release(session)
        raw = tmp_path / "raw-video.webm"
        raw.write_bytes(b"webm data")
        session.video_path = raw

        record = _make_capture(settings).persist_video(session, "login flow")

        assert record is not None
        assert record.kind is ArtifactKind.VIDEO
        assert record.path == settings.videos_dir / "login_flow_20240501_134530_123456.webm"
        assert record.path.read_bytes() == b"webm data"
        assert not raw.exists()

    async def test_persist_without_video(self, settings, driver_factory) -> None:
        """録画が無ければ None を返すこと。"""
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")
        await manager.release(session)

        assert _make_capture(settings).persist_video(session, "no video") is None

    async def test_persist_missing_file(self, settings, driver_factory, tmp_path: Path) -> None:
        """録画ファイルが存在しなければ None を返すこと。"""
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")
        await manager.release(session)
        session.video_path = tmp_path / "gone.webm"

        assert _make_capture(settings).persist_video(session, "gone") is None

    async def test_discard_deletes_file(self, settings, driver_factory, tmp_path: Path) -> None:
        """discard_video で録画ファイルが削除されること。"""
        manager = SessionManager(settings, driver_factory=driver_factory)
        session = await manager.acquire("worker-0")
        await manager.release(session)
        raw = tmp_path / "raw-video.webm"
        raw.write_bytes(b"webm data")
        session.video_path = raw

        _make_capture(settings).discard_video(session)

        assert not raw.exists()
        assert session.video_path is None


class TestArtifactRecord:
    """ArtifactRecord のテスト。"""

    def test_frozen(self, tmp_path: Path) -> None:
        """生成後の変更はできないこと。"""
        record = ArtifactRecord(
            test_name="t", kind=ArtifactKind.TRACE, timestamp=_FIXED_TIME, path=tmp_path,
        )
        with pytest.raises(ValidationError):
            record.test_name = "other"  # type: ignore[misc]
