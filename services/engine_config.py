"""Centralized sheet engine configuration.

Single source of truth for codec and evaluator settings.
Reads from environment variables with sensible defaults.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class EngineSettings:
    """Engine settings loaded from environment.

    Usage:
        settings = get_engine_settings()
        print(settings.pixels_per_width_unit)  # 7
    """
    # Column width conversion (stored pixels / ratio = container width units)
    pixels_per_width_unit: float = 7.0
    autofit_max_width: int = 50

    # Decode guardrails
    error_sniff_bytes: int = 1000
    max_upload_bytes: int = 25 * 1024 * 1024

    # Editing defaults
    default_date_format: str = "MM/DD/YYYY"
    recompute_debounce_ms: int = 150

    log_level: str = "INFO"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _load_settings_from_env() -> EngineSettings:
    """Load engine settings from environment variables."""
    settings = EngineSettings()

    settings.pixels_per_width_unit = _env_float("SHEET_PIXELS_PER_WIDTH_UNIT", settings.pixels_per_width_unit)
    if settings.pixels_per_width_unit <= 0:
        settings.pixels_per_width_unit = 7.0
    settings.autofit_max_width = _env_int("SHEET_AUTOFIT_MAX_WIDTH", settings.autofit_max_width)
    settings.error_sniff_bytes = _env_int("SHEET_ERROR_SNIFF_BYTES", settings.error_sniff_bytes)
    settings.max_upload_bytes = _env_int("SHEET_MAX_UPLOAD_BYTES", settings.max_upload_bytes)
    settings.default_date_format = os.getenv("SHEET_DEFAULT_DATE_FORMAT", settings.default_date_format)
    settings.recompute_debounce_ms = _env_int("SHEET_RECOMPUTE_DEBOUNCE_MS", settings.recompute_debounce_ms)
    settings.log_level = os.getenv("SHEET_LOG_LEVEL", settings.log_level).upper()

    return settings


_settings: EngineSettings | None = None


def get_engine_settings() -> EngineSettings:
    """Get the engine settings (loaded once)."""
    global _settings
    if _settings is None:
        _settings = _load_settings_from_env()
    return _settings


def reload_engine_settings() -> EngineSettings:
    """Force reload settings from environment (for tests)."""
    global _settings
    _settings = _load_settings_from_env()
    return _settings
