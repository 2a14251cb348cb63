"""
Configuration Loader (``tally_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses its ``counting:`` section into
a ``CountingConfig``.

Invariants enforced
-------------------
* Unknown keys in the ``counting:`` section raise ``ValueError``; there
  are no silent defaults for misspelled settings.
* Missing keys take the ``CountingConfig`` defaults.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError`` from ``CountingConfig.__post_init__``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from tally_kernel.logging_config import get_logger
from tally_modules.counting.config import CountingConfig

logger = get_logger("config.loader")

_SECTION = "counting"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def parse_counting_section(data: dict[str, Any]) -> CountingConfig:
    """Build a ``CountingConfig`` from the parsed top-level document."""
    section = data.get(_SECTION) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{_SECTION}' section must be a mapping")

    known = {f.name for f in fields(CountingConfig)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(f"Unknown counting settings: {', '.join(unknown)}")

    values = dict(section)
    if "elevated_roles" in values:
        values["elevated_roles"] = tuple(values["elevated_roles"] or ())
    return CountingConfig.from_dict(values)


def load_counting_config(path: Path | str) -> CountingConfig:
    """Load ``CountingConfig`` from the ``counting:`` section of a YAML file."""
    path = Path(path)
    data = load_yaml_file(path)
    config = parse_counting_section(data)
    logger.info(
        "counting_config_loaded",
        extra={"path": str(path), "checksum": compute_checksum(data)},
    )
    return config


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 over the parsed document, for change detection."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
