"""
RetryPolicy — 失敗テストの再試行判定

テストケースごとの再試行状態（RetryState）を管理し、
失敗したテスト本体を再実行すべきかを判定する。

状態遷移: FRESH → RETRYING(n) → EXHAUSTED

失敗原因（アサーション失敗・タイムアウト・想定外の例外）は区別せず、
いずれも上限まで同じように再試行する。
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Union

logger = logging.getLogger(__name__)


class RetryPhase(enum.Enum):
    """再試行状態のフェーズ。"""

    FRESH = "fresh"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"


@dataclass
class RetryState:
    """テストケース 1 件分の再試行状態。

    テスト開始時に生成し、テスト終了時に破棄する。

    Attributes:
        max_retries: 許容する再試行回数（初回実行は含まない）
        retries: これまでに許可した再試行回数
        phase: 現在のフェーズ
    """

    max_retries: int
    retries: int = 0
    phase: RetryPhase = RetryPhase.FRESH

    @property
    def exhausted(self) -> bool:
        """再試行を使い切ったかどうかを返す。"""
        return self.phase is RetryPhase.EXHAUSTED


class RetryPolicy:
    """上限付きの再試行ポリシー。

    max_retries は RetryState 生成時に読み取られるため、
    実行中の状態は後から設定が変わっても影響を受けない。
    """

    def __init__(self, max_retries: int = 2) -> None:
        if max_retries < 0:
            logger.warning(
                "retry.count に負の値 %d が指定されました。0 として扱います", max_retries
            )
            max_retries = 0
        self.max_retries = max_retries

    def new_state(self) -> RetryState:
        """新しいテストケース用の RetryState を生成する。"""
        return RetryState(max_retries=self.max_retries)

    def should_retry(
        self, state: RetryState, reason: Union[BaseException, str, None] = None
    ) -> bool:
        """失敗したテストを再実行すべきかを判定する。

        再試行回数が上限未満なら回数を 1 増やして True を返す。
        上限に達していれば EXHAUSTED に遷移して False を返す。

        Args:
            state: 対象テストの再試行状態（この呼び出しで更新される）
            reason: 失敗理由（ログ出力のみに使用）

        Returns:
            再実行する場合 True
        """
        if state.phase is not RetryPhase.EXHAUSTED and state.retries < state.max_retries:
            state.retries += 1
            state.phase = RetryPhase.RETRYING
            logger.warning(
                "再試行します（%d/%d 回目）: %s",
                state.retries, state.max_retries, reason,
            )
            return True

        state.phase = RetryPhase.EXHAUSTED
        logger.debug("再試行上限に達しました（%d 回）", state.max_retries)
        return False
