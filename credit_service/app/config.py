from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG_FILE_NAME = "config.yaml"

DEFAULT_MIGRATION_EXPIRATION_DAYS = 365
DEFAULT_DELETE_CHUNK_SIZE = 500
DEFAULT_MAX_UPDATE_RETRIES = 5
DEFAULT_SWEEP_INTERVAL_SECONDS = 24.0 * 60.0 * 60.0


@dataclass(slots=True)
class LedgerConfig:
    migration_expiration_days: int = DEFAULT_MIGRATION_EXPIRATION_DAYS
    delete_chunk_size: int = DEFAULT_DELETE_CHUNK_SIZE
    max_update_retries: int = DEFAULT_MAX_UPDATE_RETRIES


@dataclass(slots=True)
class SweepConfig:
    interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    run_on_startup: bool = True


@dataclass(slots=True)
class AppConfig:
    """credit-service 전체 설정 루트."""

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)


def _find_config_path() -> Path:
    """현재 작업 디렉토리 기준으로 상위로 올라가며 config.yaml 을 찾는다.

    credit-service 가 레포지토리 루트(또는 그 하위)에서 실행된다는 전제를 사용한다.
    """

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / DEFAULT_CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate

    raise RuntimeError(
        f"{DEFAULT_CONFIG_FILE_NAME} not found. Place config.yaml in project root.",
    )


def _positive_int(section: dict[str, Any], key: str, default: int, path: Path) -> int:
    raw_value = section.get(key, default)
    try:
        value = int(raw_value)
    except (TypeError, ValueError) as exc:  # noqa: TRY003
        raise RuntimeError(f"invalid {key} in {path}: {raw_value!r}") from exc
    if isinstance(raw_value, bool) or value <= 0:
        raise RuntimeError(f"{key} in {path} must be a positive integer, got {raw_value!r}")
    return value


def load_ledger_config(data: dict[str, Any], path: Path) -> LedgerConfig:
    ledger = data.get("ledger") or {}
    return LedgerConfig(
        migration_expiration_days=_positive_int(
            ledger, "migration_expiration_days", DEFAULT_MIGRATION_EXPIRATION_DAYS, path
        ),
        delete_chunk_size=_positive_int(
            ledger, "delete_chunk_size", DEFAULT_DELETE_CHUNK_SIZE, path
        ),
        max_update_retries=_positive_int(
            ledger, "max_update_retries", DEFAULT_MAX_UPDATE_RETRIES, path
        ),
    )


def load_sweep_config(data: dict[str, Any], path: Path) -> SweepConfig:
    sweep = data.get("sweep") or {}
    raw_interval = sweep.get("interval_seconds", DEFAULT_SWEEP_INTERVAL_SECONDS)
    try:
        interval = float(raw_interval)
    except (TypeError, ValueError) as exc:  # noqa: TRY003
        raise RuntimeError(
            f"invalid sweep.interval_seconds in {path}: {raw_interval!r}",
        ) from exc
    if interval <= 0:
        raise RuntimeError(f"sweep.interval_seconds in {path} must be positive")

    return SweepConfig(
        interval_seconds=interval,
        run_on_startup=bool(sweep.get("run_on_startup", True)),
    )


def load_config(path: Path | None = None) -> AppConfig:
    """credit-service 설정을 로드하여 AppConfig 로 반환한다."""

    config_path = path or _find_config_path()
    with config_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise RuntimeError(f"{config_path} must contain a mapping at the top level")

    return AppConfig(
        ledger=load_ledger_config(data, config_path),
        sweep=load_sweep_config(data, config_path),
    )
