# aerbqa/config.py
"""
Runtime settings read from the environment.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_level(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip().upper()
    level = logging.getLevelName(raw) if raw else default
    return level if isinstance(level, int) else default


class Settings:
    """Centralized configuration for the report service"""

    API_URL = "http://localhost:8000/api"
    API_TOKEN: Optional[str] = None
    API_TIMEOUT = 10.0
    LOG_LEVEL = logging.INFO
    LOG_FILE: Optional[str] = None
    LOGO_PATH: Optional[Path] = None
    COMPANY_NAME = "Radiation Safety QA Services"

    def __init__(self) -> None:
        self.API_URL = os.environ.get("AERBQA_API_URL", self.API_URL).rstrip("/")
        self.API_TOKEN = os.environ.get("AERBQA_API_TOKEN") or None
        self.API_TIMEOUT = _env_float("AERBQA_API_TIMEOUT", self.API_TIMEOUT)
        self.LOG_LEVEL = _env_level("AERBQA_LOG_LEVEL", self.LOG_LEVEL)
        self.LOG_FILE = os.environ.get("AERBQA_LOG_FILE") or None
        self.COMPANY_NAME = os.environ.get("AERBQA_COMPANY_NAME", self.COMPANY_NAME)

        logo = os.environ.get("AERBQA_LOGO_PATH")
        self.LOGO_PATH = Path(logo) if logo else None
