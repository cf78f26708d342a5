"""Centralized engine configuration.

Single source of truth for reader and writer defaults.
Reads from environment variables (and a local .env file) with sensible
defaults. Explicit arguments passed to the reader or writer always win.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Literal

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

WriterMode = Literal["full", "light"]
EncryptionAlgorithm = Literal["default", "AES128", "AES256"]


@dataclass
class EngineSettings:
    """Engine settings loaded from environment.

    Usage:
        settings = get_settings()
        print(settings.compression_level)  # 6
        print(settings.writer_mode)  # "full"
    """
    # Writer
    compression_level: int = 6  # DEFLATE level 0-9 (0 = stored)
    writer_mode: WriterMode = "full"

    # Reader
    lazy_read: bool = False

    # Encryption
    encryption_algorithm: EncryptionAlgorithm = "default"
    spin_count: int = 100000

    # New workbooks
    default_font_name: str = "Calibri"
    default_font_size: float = 11.0

    # CSV export
    csv_encoding: str = "utf-8"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _load_settings_from_env() -> EngineSettings:
    """Load engine settings from environment variables."""
    load_dotenv(override=False)
    settings = EngineSettings()

    if os.getenv("EXCEL_ENGINE_COMPRESSION_LEVEL"):
        level = int(os.getenv("EXCEL_ENGINE_COMPRESSION_LEVEL"))
        if not 0 <= level <= 9:
            logger.warning(f"[CONFIG] Ignoring out-of-range compression level {level}")
        else:
            settings.compression_level = level

    mode = os.getenv("EXCEL_ENGINE_WRITER_MODE", "").strip().lower()
    if mode in ("full", "light"):
        settings.writer_mode = mode
    elif mode:
        logger.warning(f"[CONFIG] Unknown writer mode {mode!r}, using {settings.writer_mode!r}")

    settings.lazy_read = _env_bool("EXCEL_ENGINE_LAZY_READ", settings.lazy_read)

    algorithm = os.getenv("EXCEL_ENGINE_ENCRYPTION_ALGORITHM", "").strip()
    if algorithm in ("default", "AES128", "AES256"):
        settings.encryption_algorithm = algorithm
    elif algorithm:
        logger.warning(f"[CONFIG] Unknown encryption algorithm {algorithm!r}, using default")

    if os.getenv("EXCEL_ENGINE_SPIN_COUNT"):
        settings.spin_count = int(os.getenv("EXCEL_ENGINE_SPIN_COUNT"))

    settings.default_font_name = os.getenv("EXCEL_ENGINE_DEFAULT_FONT_NAME", settings.default_font_name)
    if os.getenv("EXCEL_ENGINE_DEFAULT_FONT_SIZE"):
        settings.default_font_size = float(os.getenv("EXCEL_ENGINE_DEFAULT_FONT_SIZE"))

    settings.csv_encoding = os.getenv("EXCEL_ENGINE_CSV_ENCODING", settings.csv_encoding)

    return settings


# Singleton instance
_settings: EngineSettings | None = None


def get_settings() -> EngineSettings:
    """Get the engine settings singleton.

    Settings are loaded once from environment on first access.
    """
    global _settings
    if _settings is None:
        _settings = _load_settings_from_env()
    return _settings


def reload_settings() -> EngineSettings:
    """Force reload settings from environment.

    Useful for testing or after env changes.
    """
    global _settings
    _settings = _load_settings_from_env()
    return _settings
