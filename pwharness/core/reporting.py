"""
Reporter — 実行結果サマリーの出力

TestResult のリストを JSON（summary.json）として書き出す。
HTML などの整形済みレポートは外部のレンダラーがこの JSON を読んで生成する。
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence

from .orchestrator import TestResult

logger = logging.getLogger(__name__)


class Reporter:
    """実行結果サマリーの生成クラス。"""

    def generate_json(self, results: Sequence[TestResult], output_dir: Path) -> Path:
        """JSON サマリーを生成する。

        各テストの結果（成果物のパスを含む）と、件数のサマリー
        （total, passed, failed, skipped, flaky）を出力する。

        Args:
            results: テスト結果のリスト
            output_dir: 出力先ディレクトリ

        Returns:
            生成された summary.json のパス
        """
        output_dir.mkdir(parents=True, exist_ok=True)

        output_path = output_dir / "summary.json"
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.build_summary(results), f, ensure_ascii=False, indent=2)

        logger.info("JSON サマリーを生成しました: %s", output_path)
        return output_path

    def build_summary(self, results: Sequence[TestResult]) -> dict[str, Any]:
        """サマリー辞書を構築する。"""
        return {
            "generated_at": datetime.now().isoformat(),
            "summary": {
                "total": len(results),
                "passed": sum(1 for r in results if r.status == "passed"),
                "failed": sum(1 for r in results if r.status == "failed"),
                "skipped": sum(1 for r in results if r.status == "skipped"),
                "flaky": sum(1 for r in results if r.flaky),
                "duration_ms": round(sum(r.duration_ms for r in results), 1),
            },
            "tests": [r.model_dump(mode="json") for r in results],
        }
