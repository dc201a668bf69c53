"""carelog_etl.config

Pipeline configuration: dataclass defaults, optional YAML file, overrides.

Precedence (lowest to highest): PipelineConfig defaults, YAML file given
with --config, explicit CLI options. Connection settings (DSN, input dir,
log level) come from the CLI or the DATABASE_URL / CSV_INPUT_DIR /
LOG_LEVEL environment variables and are not part of the YAML file.

Usage:
    from pathlib import Path
    from carelog_etl.config import load_config

    config = load_config(Path("config/pipeline.yml"))
    config = config.with_overrides(batch_size=2000)
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from carelog_etl.errors import ConfigValidationError
from carelog_etl.retry import RetryPolicy

VALID_ISOLATION_LEVELS = frozenset({
    "read_committed", "repeatable_read", "serializable",
})

_SCALAR_KEYS = frozenset({
    "batch_size",
    "max_concurrency",
    "enable_transactions",
    "skip_duplicates",
    "enable_parallel_processing",
    "enable_progress_tracking",
    "relax_foreign_keys",
    "max_pending_batches",
    "pool_max_size",
})
_SECTION_KEYS = frozenset({"deadlock_retry", "transaction"})


@dataclass(frozen=True)
class TransactionOptions:
    max_wait_ms: int = 10000
    timeout_ms: int = 30000
    isolation_level: str = "read_committed"


@dataclass(frozen=True)
class PipelineConfig:
    batch_size: int = 5000
    max_concurrency: int = 2
    enable_transactions: bool = False
    skip_duplicates: bool = True
    enable_parallel_processing: bool = False
    enable_progress_tracking: bool = True
    relax_foreign_keys: bool = True
    max_pending_batches: int | None = None
    pool_max_size: int = 10
    deadlock_retry: RetryPolicy = field(default_factory=RetryPolicy)
    transaction: TransactionOptions = field(default_factory=TransactionOptions)

    def with_overrides(self, **overrides: Any) -> "PipelineConfig":
        """Return a copy with every non-None override applied, then validated."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        updated = replace(self, **changes)
        validate_config(updated)
        return updated


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _require_positive_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigValidationError(f"{name} must be a positive integer, got {value!r}")


def _require_bool(name: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise ConfigValidationError(f"{name} must be true or false, got {value!r}")


def validate_config(config: PipelineConfig) -> None:
    """Raise ConfigValidationError if any setting is out of range."""
    _require_positive_int("batch_size", config.batch_size)
    _require_positive_int("max_concurrency", config.max_concurrency)
    _require_positive_int("pool_max_size", config.pool_max_size)
    if config.max_pending_batches is not None:
        _require_positive_int("max_pending_batches", config.max_pending_batches)
    for name in (
        "enable_transactions", "skip_duplicates", "enable_parallel_processing",
        "enable_progress_tracking", "relax_foreign_keys",
    ):
        _require_bool(name, getattr(config, name))

    retry = config.deadlock_retry
    _require_positive_int("deadlock_retry.max_retries", retry.max_retries)
    _require_positive_int("deadlock_retry.base_delay_ms", retry.base_delay_ms)
    _require_positive_int("deadlock_retry.max_delay_ms", retry.max_delay_ms)
    if retry.max_delay_ms < retry.base_delay_ms:
        raise ConfigValidationError(
            "deadlock_retry.max_delay_ms must be >= deadlock_retry.base_delay_ms"
        )

    tx = config.transaction
    _require_positive_int("transaction.max_wait_ms", tx.max_wait_ms)
    _require_positive_int("transaction.timeout_ms", tx.timeout_ms)
    if tx.isolation_level not in VALID_ISOLATION_LEVELS:
        raise ConfigValidationError(
            f"transaction.isolation_level must be one of "
            f"{sorted(VALID_ISOLATION_LEVELS)}, got {tx.isolation_level!r}"
        )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _section(data: dict[str, Any], key: str, cls: type) -> Any:
    raw = data.get(key)
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{key} must be a mapping, got {type(raw).__name__}")
    allowed = {f.name for f in fields(cls)}
    unknown = set(raw) - allowed
    if unknown:
        raise ConfigValidationError(f"unknown keys in {key}: {sorted(unknown)}")
    return cls(**raw)


def config_from_dict(data: dict[str, Any]) -> PipelineConfig:
    """Build and validate a PipelineConfig from a parsed YAML mapping."""
    if not isinstance(data, dict):
        raise ConfigValidationError("config file must contain a mapping at top level")
    unknown = set(data) - _SCALAR_KEYS - _SECTION_KEYS
    if unknown:
        raise ConfigValidationError(f"unknown config keys: {sorted(unknown)}")
    config = PipelineConfig(
        **{k: v for k, v in data.items() if k in _SCALAR_KEYS},
        deadlock_retry=_section(data, "deadlock_retry", RetryPolicy),
        transaction=_section(data, "transaction", TransactionOptions),
    )
    validate_config(config)
    return config


def load_config(path: Path | None) -> PipelineConfig:
    """Load config from a YAML file, or return validated defaults when path is None.

    Raises:
        ConfigValidationError: If the file is missing, unparseable or invalid.
    """
    if path is None:
        config = PipelineConfig()
        validate_config(config)
        return config
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigValidationError(f"cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"invalid YAML in {path}: {exc}") from exc
    return config_from_dict(data)
