"""
Load the outlet tier directory (`outlets.yaml`).

String values may reference environment variables as `${NAME}`, anywhere in
the string; unset names expand to an empty string.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{(\w+)\}")


def load_outlets_config(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        logger.warning("outlets config not found at %s", config_path)
        return {}
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        logger.warning("outlets config at %s is not a mapping; ignoring", config_path)
        return {}
    return _resolve(data)


def _resolve(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_REF.sub(lambda ref: os.environ.get(ref.group(1), ""), value)
    if isinstance(value, dict):
        return {key: _resolve(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve(item) for item in value]
    return value
