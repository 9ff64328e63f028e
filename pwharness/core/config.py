"""
ConfigResolver — 階層化された設定の解決

デフォルト値 → 環境プロファイル → 実行時オーバーライド の 3 層を順に重ね、
実行中は変更されない ConfigSnapshot を生成する。

主な機能:
  - resolve(): 3 層のマージ（後の層が優先）
  - ConfigSnapshot: 読み取り専用スナップショットと型付きアクセサ
  - load_profile_layer(): YAML プロファイル（<config-dir>/<env>.yaml）の読み込み
  - load_env_overrides(): PWH_* 環境変数からのオーバーライド層
  - ConfigResolver: 3 層の保持と reload()
  - HarnessSettings: スナップショットから組み立てる型付き設定ビュー

型付きアクセサは値の解析に失敗しても例外を送出せず、
警告ログを出して呼び出し側のデフォルト値を返す。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# デフォルト値
# ---------------------------------------------------------------------------

DEFAULTS: Mapping[str, str] = MappingProxyType({
    "base.url": "",
    "browser": "chromium",
    "headless": "true",
    "slow.motion": "0",
    "viewport.width": "1920",
    "viewport.height": "1080",
    "locale": "en-US",
    "timezone": "America/New_York",
    "ignore.https.errors": "true",
    "default.timeout": "30000",
    "navigation.timeout": "60000",
    "action.timeout": "10000",
    "wait.poll.interval": "100",
    "test.timeout": "0",
    "retry.count": "2",
    "screenshot.on.failure": "true",
    "trace.on.failure": "true",
    "video.on.failure": "false",
    "parallel.threads": "3",
    "artifacts.dir": "artifacts",
    "screenshots.dir": "artifacts/screenshots",
    "traces.dir": "artifacts/traces",
    "videos.dir": "artifacts/videos",
})
"""既知の設定キーとデフォルト値。全ての値は文字列で保持する。"""

ENV_PREFIX = "PWH_"
"""オーバーライド用環境変数のプレフィックス（例: PWH_RETRY_COUNT）。"""

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


class ConfigError(ValueError):
    """設定値の解析に失敗した場合のエラー。

    アクセサ内部でのみ使用し、呼び出し側には伝播させない。
    """


# ---------------------------------------------------------------------------
# ConfigSnapshot
# ---------------------------------------------------------------------------

class ConfigSnapshot(Mapping[str, str]):
    """解決済み設定の読み取り専用スナップショット。

    生成後は変更できないため、全ワーカーからロックなしで参照できる。
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, str]) -> None:
        self._values: Mapping[str, str] = MappingProxyType(dict(values))

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ConfigSnapshot({dict(self._values)!r})"

    # ----- 型付きアクセサ -----

    def get_str(self, key: str, default: str = "") -> str:
        """文字列として値を取得する。未設定ならデフォルト値を返す。"""
        value = self._values.get(key)
        return default if value is None else value

    def get_int(self, key: str, default: int = 0) -> int:
        """整数として値を取得する。

        解析できない値の場合は警告ログを出し、default を返す。
        """
        value = self._values.get(key)
        if value is None:
            return default
        try:
            return _parse_int(key, value)
        except ConfigError as exc:
            logger.warning("%s。デフォルト値 %d を使用します", exc, default)
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        """真偽値として値を取得する。

        true/1/yes/on と false/0/no/off 以外の値は警告ログを出し、default を返す。
        """
        value = self._values.get(key)
        if value is None:
            return default
        try:
            return _parse_bool(key, value)
        except ConfigError as exc:
            logger.warning("%s。デフォルト値 %s を使用します", exc, default)
            return default


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ConfigError(f"設定 '{key}' の値が整数ではありません: {value!r}") from exc


def _parse_bool(key: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigError(f"設定 '{key}' の値が真偽値ではありません: {value!r}")


# ---------------------------------------------------------------------------
# 層のマージ
# ---------------------------------------------------------------------------

def resolve(
    default_layer: Optional[Mapping[str, str]],
    env_layer: Optional[Mapping[str, str]],
    override_layer: Optional[Mapping[str, str]],
) -> ConfigSnapshot:
    """3 層の設定をマージしてスナップショットを生成する。

    後の引数ほど優先される。None の層は空として扱う。

    Args:
        default_layer: デフォルト層
        env_layer: 環境プロファイル層（存在しなくてもよい）
        override_layer: 実行時オーバーライド層

    Returns:
        マージ済みの ConfigSnapshot
    """
    merged: dict[str, str] = {}
    for layer in (default_layer, env_layer, override_layer):
        if layer:
            merged.update({str(k): str(v) for k, v in layer.items()})
    return ConfigSnapshot(merged)


# ---------------------------------------------------------------------------
# 層の読み込み
# ---------------------------------------------------------------------------

def load_profile_layer(config_dir: Path, name: str) -> dict[str, str]:
    """YAML プロファイル <config_dir>/<name>.yaml を読み込む。

    ネストしたマッピングはドット区切りのキーに平坦化する
    （例: ``viewport: {width: 1280}`` → ``viewport.width = "1280"``）。
    ファイルが存在しない場合は空の層を返す。

    Raises:
        ValueError: YAML の構文が不正、またはトップレベルがマッピングでない場合
    """
    path = config_dir / f"{name}.yaml"
    if not path.is_file():
        logger.debug("プロファイルが見つかりません（スキップ）: %s", path)
        return {}

    yaml = YAML(typ="safe")
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.load(f)
    except YAMLError as exc:
        raise ValueError(f"プロファイルの YAML 構文が不正です: {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"プロファイルのトップレベルはマッピングである必要があります: {path}")

    layer = _flatten(data)
    logger.info("プロファイルを読み込みました: %s（%d キー）", path, len(layer))
    return layer


def _flatten(data: Mapping[str, Any], prefix: str = "") -> dict[str, str]:
    flat: dict[str, str] = {}
    for key, value in data.items():
        full_key = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, prefix=f"{full_key}."))
        elif isinstance(value, bool):
            flat[full_key] = "true" if value else "false"
        elif value is not None:
            flat[full_key] = str(value)
    return flat


def env_var_name(key: str) -> str:
    """設定キーに対応する環境変数名を返す（browser → PWH_BROWSER）。"""
    return ENV_PREFIX + key.upper().replace(".", "_")


def load_env_overrides(
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """PWH_* 環境変数からオーバーライド層を組み立てる。

    既知のキー（DEFAULTS）に対応する環境変数のみを対象とし、空文字列は無視する。
    """
    if environ is None:
        environ = os.environ
    layer: dict[str, str] = {}
    for key in DEFAULTS:
        value = environ.get(env_var_name(key))
        if value:
            layer[key] = value
    return layer


# ---------------------------------------------------------------------------
# ConfigResolver
# ---------------------------------------------------------------------------

class ConfigResolver:
    """設定 3 層を保持し、スナップショットを生成するクラス。

    使用例::

        resolver = ConfigResolver(config_dir=Path("config"), env="qa",
                                  overrides={"browser": "firefox"})
        snapshot = resolver.snapshot
    """

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        overrides: Optional[Mapping[str, str]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        """ConfigResolver を初期化し、最初のスナップショットを生成する。

        Args:
            config_dir: プロファイル YAML の格納ディレクトリ（None でファイル読み込みなし）
            env: 環境プロファイル名（qa / staging / prod 等）
            overrides: CLI 等からの明示的なオーバーライド（環境変数より優先）
            environ: 環境変数マッピング（None で os.environ）
        """
        self._config_dir = config_dir
        self._env = env.lower() if env else None
        self._overrides = dict(overrides or {})
        self._environ = environ
        self._snapshot = self._build()

    @property
    def snapshot(self) -> ConfigSnapshot:
        """現在のスナップショットを返す。"""
        return self._snapshot

    def reload(self) -> ConfigSnapshot:
        """同じ 3 層から新しいスナップショットを再構築する。

        プロファイルファイルと環境変数は読み直す。
        以前のスナップショットは変更されない。
        """
        self._snapshot = self._build()
        return self._snapshot

    def _build(self) -> ConfigSnapshot:
        default_layer = dict(DEFAULTS)
        env_layer: dict[str, str] = {}
        if self._config_dir is not None:
            default_layer.update(load_profile_layer(self._config_dir, "default"))
            if self._env:
                env_layer = load_profile_layer(self._config_dir, self._env)

        override_layer = load_env_overrides(self._environ)
        override_layer.update(self._overrides)

        snapshot = resolve(default_layer, env_layer, override_layer)
        logger.info(
            "設定を解決しました (env=%s, overrides=%s)",
            self._env or "-", sorted(override_layer),
        )
        return snapshot


# ---------------------------------------------------------------------------
# 型付き設定ビュー
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HarnessSettings:
    """ConfigSnapshot から組み立てた型付き設定。

    時間はすべてミリ秒。
    """

    base_url: str = ""
    browser: str = "chromium"
    headless: bool = True
    slow_motion: int = 0
    viewport_width: int = 1920
    viewport_height: int = 1080
    locale: str = "en-US"
    timezone: str = "America/New_York"
    ignore_https_errors: bool = True
    default_timeout: int = 30_000
    navigation_timeout: int = 60_000
    action_timeout: int = 10_000
    wait_poll_interval: int = 100
    test_timeout: int = 0
    retry_count: int = 2
    screenshot_on_failure: bool = True
    trace_on_failure: bool = True
    video_on_failure: bool = False
    parallel_threads: int = 3
    screenshots_dir: Path = Path("artifacts/screenshots")
    traces_dir: Path = Path("artifacts/traces")
    videos_dir: Path = Path("artifacts/videos")
    artifacts_dir: Path = Path("artifacts")

    @classmethod
    def from_snapshot(cls, snapshot: ConfigSnapshot) -> HarnessSettings:
        """スナップショットから設定を生成する。未設定のキーはデフォルト値になる。"""
        defaults = cls()
        return cls(
            base_url=snapshot.get_str("base.url", defaults.base_url),
            browser=snapshot.get_str("browser", defaults.browser).strip().lower(),
            headless=snapshot.get_bool("headless", defaults.headless),
            slow_motion=snapshot.get_int("slow.motion", defaults.slow_motion),
            viewport_width=snapshot.get_int("viewport.width", defaults.viewport_width),
            viewport_height=snapshot.get_int("viewport.height", defaults.viewport_height),
            locale=snapshot.get_str("locale", defaults.locale),
            timezone=snapshot.get_str("timezone", defaults.timezone),
            ignore_https_errors=snapshot.get_bool(
                "ignore.https.errors", defaults.ignore_https_errors
            ),
            default_timeout=snapshot.get_int("default.timeout", defaults.default_timeout),
            navigation_timeout=snapshot.get_int(
                "navigation.timeout", defaults.navigation_timeout
            ),
            action_timeout=snapshot.get_int("action.timeout", defaults.action_timeout),
            wait_poll_interval=snapshot.get_int(
                "wait.poll.interval", defaults.wait_poll_interval
            ),
            test_timeout=snapshot.get_int("test.timeout", defaults.test_timeout),
            retry_count=snapshot.get_int("retry.count", defaults.retry_count),
            screenshot_on_failure=snapshot.get_bool(
                "screenshot.on.failure", defaults.screenshot_on_failure
            ),
            trace_on_failure=snapshot.get_bool(
                "trace.on.failure", defaults.trace_on_failure
            ),
            video_on_failure=snapshot.get_bool(
                "video.on.failure", defaults.video_on_failure
            ),
            parallel_threads=snapshot.get_int("parallel.threads", defaults.parallel_threads),
            screenshots_dir=Path(
                snapshot.get_str("screenshots.dir", str(defaults.screenshots_dir))
            ),
            traces_dir=Path(snapshot.get_str("traces.dir", str(defaults.traces_dir))),
            videos_dir=Path(snapshot.get_str("videos.dir", str(defaults.videos_dir))),
            artifacts_dir=Path(
                snapshot.get_str("artifacts.dir", str(defaults.artifacts_dir))
            ),
        )
