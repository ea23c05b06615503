"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into the frozen
``billing_config.schema`` dataclasses.  Runtime callers use
``billing_config.get_active_config()``; this module is the parsing layer
underneath it.

Invariants enforced
-------------------
* Unknown keys are rejected with ``ValueError`` (a typo never silently
  falls back to a default).
* Every value is type-checked; every parsed object is frozen.
* ``compute_checksum`` is a deterministic SHA-256 over canonical JSON.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from billing_config.schema import (
    AllocationSettings,
    AuditSettings,
    BillingConfig,
    LoggingSettings,
    RuleSettings,
)
from billing_engines.allocation import AllocationMethod
from billing_kernel.domain.currency import CurrencyRegistry

_TOP_LEVEL_KEYS = frozenset(
    {"database_url", "default_currency", "timezone", "audit", "allocation", "rules", "logging"}
)
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _section(data: dict[str, Any], name: str, allowed: set[str]) -> dict[str, Any]:
    section = data.get(name)
    if section is None:
        # a bare "section:" line loads as None
        section = {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' must be a mapping")
    unknown = set(section) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {sorted(unknown)}")
    return section


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


def parse_audit(data: dict[str, Any]) -> AuditSettings:
    section = _section(data, "audit", {"retention_limit", "export_limit", "default_page_size"})
    defaults = AuditSettings()
    return AuditSettings(
        retention_limit=_positive_int(
            section.get("retention_limit", defaults.retention_limit), "audit.retention_limit"
        ),
        export_limit=_positive_int(
            section.get("export_limit", defaults.export_limit), "audit.export_limit"
        ),
        default_page_size=_positive_int(
            section.get("default_page_size", defaults.default_page_size),
            "audit.default_page_size",
        ),
    )


def parse_allocation(data: dict[str, Any]) -> AllocationSettings:
    section = _section(data, "allocation", {"checkout_method"})
    method = section.get("checkout_method", AllocationSettings().checkout_method)
    try:
        AllocationMethod(method)
    except ValueError as e:
        raise ValueError(f"allocation.checkout_method is not a known method: {method!r}") from e
    return AllocationSettings(checkout_method=method)


def parse_rules(data: dict[str, Any]) -> RuleSettings:
    section = _section(data, "rules", {"default_priority"})
    priority = section.get("default_priority", RuleSettings().default_priority)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValueError(f"rules.default_priority must be an integer, got {priority!r}")
    return RuleSettings(default_priority=priority)


def parse_logging(data: dict[str, Any]) -> LoggingSettings:
    section = _section(data, "logging", {"level"})
    level = str(section.get("level", LoggingSettings().level)).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")
    return LoggingSettings(level=level)


def parse_config(
    data: dict[str, Any],
    source_path: str | None = None,
) -> BillingConfig:
    """
    Parse a BillingConfig from a dict.

    Postconditions:
        - Returns a frozen BillingConfig whose checksum covers ``data``.
    Raises:
        ValueError: on unknown keys or invalid values.
    """
    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

    defaults = BillingConfig()

    timezone = data.get("timezone", defaults.timezone)
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
        raise ValueError(f"timezone is not a valid IANA zone: {timezone!r}") from e

    currency = str(data.get("default_currency", defaults.default_currency)).upper()
    if not CurrencyRegistry.is_valid(currency):
        raise ValueError(f"default_currency is not a known currency: {currency!r}")

    database_url = data.get("database_url", defaults.database_url)
    if not isinstance(database_url, str) or not database_url:
        raise ValueError("database_url must be a non-empty string")

    return BillingConfig(
        database_url=database_url,
        default_currency=currency,
        timezone=timezone,
        audit=parse_audit(data),
        allocation=parse_allocation(data),
        rules=parse_rules(data),
        logging=parse_logging(data),
        source_path=source_path,
        checksum=compute_checksum(data),
    )
