"""
テストローダー — Python ファイルからのテストケース収集

指定された Python ファイルをモジュールとして読み込み、
``async def test_xxx(session)`` 形式の関数を TestCase として収集する。
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import re
from pathlib import Path
from typing import Optional

from .core.orchestrator import TestCase

logger = logging.getLogger(__name__)


class TestLoadError(ImportError):
    """テストファイルを読み込めなかった場合のエラー。"""

    __test__ = False


def load_test_cases(path: Path, pattern: Optional[str] = None) -> list[TestCase]:
    """Python ファイルからテストケースを収集する。

    定義順（ソース上の行番号順）に並べて返す。同期関数の test_* は対象外。

    Args:
        path: テストファイルのパス
        pattern: テスト名の絞り込み用正規表現（部分一致）

    Returns:
        収集したテストケースのリスト

    Raises:
        TestLoadError: ファイルが存在しない、または読み込み中に例外が発生した場合
    """
    if not path.is_file():
        raise TestLoadError(f"テストファイルが見つかりません: {path}")

    module_name = f"pwharness_tests_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise TestLoadError(f"テストファイルを読み込めません: {path}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise TestLoadError(f"テストファイルの読み込み中にエラーが発生しました: {path}: {exc}") from exc

    name_filter = re.compile(pattern) if pattern else None
    functions = [
        obj for name, obj in vars(module).items()
        if name.startswith("test_")
        and inspect.iscoroutinefunction(obj)
        and (name_filter is None or name_filter.search(name))
    ]
    functions.sort(key=lambda fn: fn.__code__.co_firstlineno)

    cases = [TestCase(name=fn.__name__, body=fn) for fn in functions]
    logger.info("%d 件のテストを収集しました: %s", len(cases), path)
    return cases
