"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    ``get_active_config()`` is the ONLY way runtime code obtains
    configuration.  No other component reads configuration files or
    environment variables directly.

Architecture position:
    Configuration sits above ``billing_kernel`` and ``billing_engines``.
    The kernel MUST NEVER import from ``billing_config``; the bridges in
    ``billing_config.bridges`` translate a BillingConfig into constructor
    arguments for kernel services.

Resolution order:
    1. ``path`` argument
    2. ``BILLING_CONFIG_PATH`` environment variable
    3. packaged ``billing_config/defaults.yaml``
    ``DATABASE_URL`` in the environment overrides ``database_url``.

Failure modes:
    - ``FileNotFoundError`` -- the configured path does not exist.
    - ``ValueError`` -- unknown keys or invalid values.

Audit relevance:
    Every successful call emits a ``BILLING_CONFIG_TRACE`` log record with
    the source path and checksum, tying runtime behavior to the exact
    configuration document that governed it.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

from billing_config.loader import load_yaml_file, parse_config
from billing_config.schema import BillingConfig
from billing_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_PATH_ENV = "BILLING_CONFIG_PATH"
DATABASE_URL_ENV = "DATABASE_URL"


def get_active_config(path: Path | str | None = None) -> BillingConfig:
    """
    The ONLY public configuration entrypoint.

    Postconditions:
        - Returns a frozen, validated BillingConfig.
        - A ``BILLING_CONFIG_TRACE`` log record has been emitted.

    Raises:
        FileNotFoundError: If the resolved config file does not exist.
        ValueError: If validation fails.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    config = parse_config(load_yaml_file(resolved), source_path=str(resolved))

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        config = replace(config, database_url=database_url)

    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "source_path": str(resolved),
            "checksum": config.checksum,
            "timezone": config.timezone,
            "checkout_method": config.allocation.checkout_method,
            "database_url_overridden": bool(database_url),
        },
    )
    return config


__all__ = ["BillingConfig", "get_active_config"]
