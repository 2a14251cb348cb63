"""
tally_config -- single public entrypoint for counting configuration.

Responsibility:
    Provides the runtime ``CountingConfig`` through ``get_active_config()``.
    Services receive the config by injection; they never read files or
    environment variables themselves.

Architecture position:
    Configuration -- sits above ``tally_kernel`` and beside
    ``tally_services``.  The kernel and engines never import from here.

Resolution order:
    1. explicit ``path`` argument;
    2. the ``TALLY_CONFIG`` environment variable;
    3. the packaged ``defaults.yaml``.

Failure modes:
    - ``FileNotFoundError`` -- the configured file does not exist.
    - ``ValueError`` -- unknown keys or invalid values.
"""

from __future__ import annotations

import os
from pathlib import Path

from tally_config.loader import compute_checksum, load_counting_config, load_yaml_file
from tally_kernel.logging_config import get_logger
from tally_modules.counting.config import CountingConfig

logger = get_logger("config")

CONFIG_ENV_VAR = "TALLY_CONFIG"

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> CountingConfig:
    """The public configuration entrypoint.

    Emits ``TALLY_CONFIG_TRACE`` with the resolved source on every call.
    """
    source = "argument"
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path:
            path, source = env_path, "environment"
        else:
            path, source = _DEFAULT_CONFIG_FILE, "packaged_defaults"

    config = load_counting_config(path)
    logger.info(
        "TALLY_CONFIG_TRACE",
        extra={"source": source, "path": str(path)},
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "CountingConfig",
    "compute_checksum",
    "get_active_config",
    "load_counting_config",
    "load_yaml_file",
]
