# コアモジュール
# 設定解決、条件待機、再試行ポリシー、セッション管理、成果物取得、テスト実行統括を提供

from .artifacts import ArtifactCapture, ArtifactCaptureError, ArtifactKind, ArtifactRecord, sanitize_test_name
from .config import ConfigError, ConfigResolver, ConfigSnapshot, HarnessSettings, resolve
from .orchestrator import TestCase, TestOrchestrator, TestResult
from .reporting import Reporter
from .retry import RetryPhase, RetryPolicy, RetryState
from .session import (
    BrowserType,
    Session,
    SessionLaunchError,
    SessionManager,
    SessionState,
    TeardownError,
)
from .waits import ConditionWaiter, WaitCancelledError, WaitSpec, WaitTimeoutError

__all__ = [
    "ArtifactCapture",
    "ArtifactCaptureError",
    "ArtifactKind",
    "ArtifactRecord",
    "BrowserType",
    "ConditionWaiter",
    "ConfigError",
    "ConfigResolver",
    "ConfigSnapshot",
    "HarnessSettings",
    "Reporter",
    "RetryPhase",
    "RetryPolicy",
    "RetryState",
    "Session",
    "SessionLaunchError",
    "SessionManager",
    "SessionState",
    "TeardownError",
    "TestCase",
    "TestOrchestrator",
    "TestResult",
    "WaitCancelledError",
    "WaitSpec",
    "WaitTimeoutError",
    "resolve",
    "sanitize_test_name",
]
