"""
pwharness — Playwright E2E テストのセッション管理・再試行・失敗時成果物取得

主な構成:
  - core.config: 設定 3 層の解決（ConfigSnapshot / HarnessSettings）
  - core.waits: 条件ベースのポーリング待機（ConditionWaiter）
  - core.retry: 上限付き再試行ポリシー
  - core.session: ワーカー専有ブラウザセッションの管理
  - core.artifacts: 失敗時のスクリーンショット・トレース・動画の保存
  - core.orchestrator: テストケース実行の統括と並列実行
  - pages: ページオブジェクト基底クラス
  - cli: Typer ベースのコマンドラインインターフェース
"""

from __future__ import annotations

__version__ = "0.1.0"
