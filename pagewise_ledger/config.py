"""Configuration loader for the review console and batch runs."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_SUGGEST_MODEL = "gpt-4o"
DEFAULT_MAX_PAGES = 5
DEFAULT_RENDER_DPI = 144  # 2x the 72dpi PDF user space


def _get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is not None:
        value = value.strip()
        if value == "":
            return default
        return value
    return default


def _get_int(key: str, default: int) -> int:
    value = _get_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {key} must be an integer") from exc


@dataclass(slots=True)
class AppConfig:
    openai_api_key: str
    extraction_model: str
    suggest_model: str
    max_pages: int
    render_dpi: int
    log_level: str
    document_config_path: Path
    output_config_path: Path

    @property
    def ai_enabled(self) -> bool:
        return bool(self.openai_api_key)


def load_config(dotenv_path: Optional[Path] = None) -> AppConfig:
    load_dotenv(dotenv_path=dotenv_path)

    return AppConfig(
        openai_api_key=_get_env("OPENAI_API_KEY", ""),
        extraction_model=_get_env("EXTRACTION_MODEL", DEFAULT_MODEL),
        suggest_model=_get_env("SUGGEST_MODEL", DEFAULT_SUGGEST_MODEL),
        max_pages=max(1, _get_int("MAX_PAGES", DEFAULT_MAX_PAGES)),
        render_dpi=max(36, _get_int("RENDER_DPI", DEFAULT_RENDER_DPI)),
        log_level=_get_env("LOG_LEVEL", "INFO").upper(),
        document_config_path=Path(_get_env("DOCUMENT_CONFIG_PATH", "document_config.json")),
        output_config_path=Path(_get_env("OUTPUT_CONFIG_PATH", "output_config.json")),
    )
