"""calley_recurrence.core.config_loader

Config loader for the recurrence engine.

- Reads YAML (PyYAML) and falls back to JSON.
- Applies CALLEY_* environment overrides after the file.
- Exposes a typed dataclass `EngineConfig` and a `load_config()` helper that
  accepts an optional path override.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SUPPORTED_FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
DEFAULT_MAX_INSTANCES = 1000
MAX_INSTANCES_UPPER_BOUND = 10000


@dataclass
class EngineConfig:
    """Typed configuration for the recurrence engine.

    Fields:
        max_instances_per_series: hard ceiling on occurrences produced per
            series per expansion (denial-of-service guard)
        allowed_frequencies: FREQ values accepted by the rule parser
        log_level: root logging level name, applied by configure_logging()
        default_window_days: window length used when callers omit one
    """

    max_instances_per_series: int = DEFAULT_MAX_INSTANCES
    allowed_frequencies: tuple[str, ...] = field(default=SUPPORTED_FREQUENCIES)
    log_level: str = "INFO"
    default_window_days: int = 42

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EngineConfig:
        """Create EngineConfig from a plain mapping, applying defaults and validation.

        Numeric-like values are coerced to int; the ceiling is clamped to
        1..10000; frequency names outside DAILY/WEEKLY/MONTHLY/YEARLY are
        dropped. Every coercion is logged as a warning.
        """
        if data is None:
            data = {}

        def _coerce_int(key: str, default: int) -> int:
            raw = data.get(key, default)
            try:
                return int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default

        max_instances = _coerce_int("max_instances_per_series", DEFAULT_MAX_INSTANCES)
        if max_instances < 1:
            logger.warning("max_instances_per_series %d below minimum; coercing to 1", max_instances)
            max_instances = 1
        elif max_instances > MAX_INSTANCES_UPPER_BOUND:
            logger.warning(
                "max_instances_per_series %d above maximum; coercing to %d",
                max_instances,
                MAX_INSTANCES_UPPER_BOUND,
            )
            max_instances = MAX_INSTANCES_UPPER_BOUND

        freqs_raw = data.get("allowed_frequencies", SUPPORTED_FREQUENCIES)
        if isinstance(freqs_raw, str):
            freqs_raw = [freqs_raw]
        freqs: list[str] = []
        for raw in freqs_raw or []:
            name = str(raw).strip().upper()
            if name not in SUPPORTED_FREQUENCIES:
                logger.warning("Frequency %r is not supported; dropping", raw)
                continue
            if name not in freqs:
                freqs.append(name)
        if not freqs:
            logger.warning("No usable allowed_frequencies configured; using defaults")
            freqs = list(SUPPORTED_FREQUENCIES)

        window_days = _coerce_int("default_window_days", 42)
        if window_days < 1:
            logger.warning("default_window_days %d below minimum; coercing to 1", window_days)
            window_days = 1

        log_level = data.get("log_level", "INFO")
        log_level = str(log_level).upper() if log_level is not None else "INFO"

        return cls(
            max_instances_per_series=max_instances,
            allowed_frequencies=tuple(freqs),
            log_level=log_level,
            default_window_days=window_days,
        )


def _load_yaml_or_json(path: Path) -> Any:
    """
    Load a mapping from a YAML or JSON file.

    PyYAML's safe_load handles both YAML and JSON documents; plain JSON is
    tried when the YAML parser rejects the text.
    """
    import yaml  # noqa: PLC0415

    text = path.read_text(encoding="utf-8")
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError:
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Config file {path} is neither valid YAML nor JSON") from exc
    # safe_load returns None for empty files
    if loaded is None:
        return {}
    return loaded


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay CALLEY_* environment variables onto a raw config mapping.

    Recognizes:
    - CALLEY_MAX_INSTANCES -> 'max_instances_per_series' (int)
    - CALLEY_LOG_LEVEL -> 'log_level'
    - CALLEY_DEFAULT_WINDOW_DAYS -> 'default_window_days' (int)
    """
    merged = dict(data)

    max_instances = os.environ.get("CALLEY_MAX_INSTANCES")
    if max_instances:
        try:
            merged["max_instances_per_series"] = int(max_instances)
        except ValueError:
            logger.warning("Invalid CALLEY_MAX_INSTANCES=%r; ignoring", max_instances)

    log_level = os.environ.get("CALLEY_LOG_LEVEL")
    if log_level:
        merged["log_level"] = log_level

    window_days = os.environ.get("CALLEY_DEFAULT_WINDOW_DAYS")
    if window_days:
        try:
            merged["default_window_days"] = int(window_days)
        except ValueError:
            logger.warning("Invalid CALLEY_DEFAULT_WINDOW_DAYS=%r; ignoring", window_days)

    return merged


def load_config(path: str | None = None) -> EngineConfig:
    """Load configuration from a YAML/JSON file and return an EngineConfig instance.

    Args:
        path: Optional path to the config file. If not provided the default is
              ./calley_recurrence/config.yaml (relative to current working dir).

    Returns:
        EngineConfig dataclass instance with values from file, env, or defaults.

    Behavior:
    - If file is missing: defaults (plus environment overrides).
    - If file exists but top-level is not a mapping: raises ValueError.
    """
    p = Path(path) if path else Path.cwd() / "calley_recurrence" / "config.yaml"
    logger.debug("Attempting to load config from %s", p)

    raw: Any = {}
    if p.exists():
        raw = _load_yaml_or_json(p)
        if not isinstance(raw, dict):
            logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, raw)
            raise ValueError("Config file must contain a mapping at top level")  # noqa: TRY004
        logger.info("Loaded configuration from %s", p)
    else:
        logger.info("Config file %s not found; using defaults", p)

    cfg = EngineConfig.from_dict(apply_env_overrides(raw))
    logger.debug("Configuration values: %s", cfg)
    return cfg
