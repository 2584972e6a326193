"""Propagation configuration: defaults, YAML file, environment overrides.

Precedence (lowest to highest):
  1. PropagationConfig defaults
  2. ``propagation:`` section of carryon.yaml (or an explicit path)
  3. CARRYON_* environment variables (``.env`` is loaded first)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

CONFIG_FILE = Path("carryon.yaml")

_ENV_OVERRIDES = {
    "CARRYON_CODEC": "codec",
    "CARRYON_HEADER_PREFIX": "header_prefix",
    "CARRYON_JSON_HEADER": "json_header",
    "CARRYON_TIMEOUT": "timeout",
    "CARRYON_LOG_LEVEL": "log_level",
    "CARRYON_PERCENT_ENCODE_VALUES": "percent_encode_values",
}


class PropagationConfig(BaseModel):
    """How baggage is carried on the wire and how outbound calls behave."""

    codec: Literal["prefix", "json"] = "prefix"
    header_prefix: str = Field(default="context-", min_length=1)
    json_header: str = Field(default="x-baggage", min_length=1)
    percent_encode_values: bool = True
    timeout: float = Field(default=30.0, gt=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


def load_config(path: Path | None = None) -> PropagationConfig:
    """Build a PropagationConfig from file and environment.

    A missing file is not an error. A file whose top level or
    ``propagation:`` section is not a mapping raises ValueError; invalid
    values raise pydantic's ValidationError.
    """
    load_dotenv()
    data: dict = {}
    cfg_path = path or CONFIG_FILE
    if cfg_path.exists():
        with open(cfg_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"{cfg_path}: top level must be a mapping")
        section = raw.get("propagation") or {}
        if not isinstance(section, dict):
            raise ValueError(f"{cfg_path}: 'propagation' must be a mapping")
        data.update(section)
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[field_name] = value
    if isinstance(data.get("log_level"), str):
        data["log_level"] = data["log_level"].upper()
    return PropagationConfig(**data)
