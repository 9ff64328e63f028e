"""
CLI エントリポイント — Typer ベースのコマンドラインインターフェース

pwharness コマンドとして以下のサブコマンドを提供する:
  - run: テストファイルの実行（並列・再試行・失敗時成果物取得）
  - config: 解決済み設定の表示
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from .core.config import ConfigResolver, HarnessSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Typer アプリ定義
# ---------------------------------------------------------------------------

app = typer.Typer(
    help=(
        "pwharness — Playwright E2E テスト実行ツール\n\n"
        "基本の流れ:\n"
        "  1. config/<env>.yaml に環境ごとの設定を書く\n"
        "  2. pwharness run tests_e2e/test_login.py --env qa\n\n"
        "詳しくは各コマンドに --help を付けてください。"
    ),
    no_args_is_help=True,
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def _build_overrides(
    browser: Optional[str],
    headless: Optional[bool],
    retries: Optional[int],
    workers: Optional[int],
    base_url: Optional[str],
) -> dict[str, str]:
    """CLI オプションのうち指定されたものだけをオーバーライド層にする。"""
    overrides: dict[str, str] = {}
    if browser is not None:
        overrides["browser"] = browser
    if headless is not None:
        overrides["headless"] = "true" if headless else "false"
    if retries is not None:
        overrides["retry.count"] = str(retries)
    if workers is not None:
        overrides["parallel.threads"] = str(workers)
    if base_url is not None:
        overrides["base.url"] = base_url
    return overrides


# ---------------------------------------------------------------------------
# run コマンド
# ---------------------------------------------------------------------------

@app.command()
def run(
    test_file: Path = typer.Argument(..., help="実行するテストファイル（async def test_*(session)）"),
    env: Optional[str] = typer.Option(None, "--env", "-e", help="環境プロファイル名（qa / staging / prod 等）"),
    config_dir: Path = typer.Option(Path("config"), "--config-dir", help="プロファイル YAML のディレクトリ"),
    browser: Optional[str] = typer.Option(None, "--browser", "-b", help="ブラウザ (chromium / firefox / webkit)"),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed", help="ヘッドレスモード"),
    retries: Optional[int] = typer.Option(None, "--retries", help="失敗時の再試行回数"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="並列実行ワーカー数"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="テスト対象のベース URL"),
    keyword: Optional[str] = typer.Option(None, "-k", help="テスト名の絞り込み（正規表現）"),
    report: Optional[Path] = typer.Option(None, "--report", help="summary.json の出力先ディレクトリ"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="DEBUG ログを出力する"),
) -> None:
    """テストファイルを実行する。失敗したテストがあれば終了コード 1 を返す。"""
    from .core.orchestrator import TestOrchestrator
    from .core.reporting import Reporter
    from .loader import TestLoadError, load_test_cases

    _configure_logging(verbose)

    try:
        resolver = ConfigResolver(
            config_dir=config_dir,
            env=env,
            overrides=_build_overrides(browser, headless, retries, workers, base_url),
        )
        cases = load_test_cases(test_file, keyword)
    except (TestLoadError, ValueError) as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=2)

    if not cases:
        typer.echo("実行対象のテストが見つかりませんでした。")
        raise typer.Exit(code=0)

    settings = HarnessSettings.from_snapshot(resolver.snapshot)
    orchestrator = TestOrchestrator(settings)
    results = asyncio.run(orchestrator.run_suite(cases))

    for result in results:
        line = f"[{result.status}] {result.test_name} ({result.duration_ms:.0f}ms, 試行 {result.attempts} 回)"
        typer.echo(line)
        if result.failure_reason:
            typer.echo(f"    理由: {result.failure_reason}")
        for record in result.artifacts:
            typer.echo(f"    {record.kind.value}: {record.path}")

    if report is not None:
        Reporter().generate_json(results, report)

    failed = [r for r in results if r.status != "passed"]
    typer.echo(f"\n{len(results) - len(failed)}/{len(results)} 件成功")
    if failed:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# config コマンド
# ---------------------------------------------------------------------------

@app.command("config")
def show_config(
    env: Optional[str] = typer.Option(None, "--env", "-e", help="環境プロファイル名"),
    config_dir: Path = typer.Option(Path("config"), "--config-dir", help="プロファイル YAML のディレクトリ"),
) -> None:
    """解決済みの設定を key = value 形式で表示する。"""
    try:
        resolver = ConfigResolver(config_dir=config_dir, env=env)
    except ValueError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=2)

    snapshot = resolver.snapshot
    for key in sorted(snapshot):
        typer.echo(f"{key} = {snapshot[key]}")
