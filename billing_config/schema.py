"""
BillingConfig schema.

The typed, frozen form of the YAML configuration. YAML files are parsed
into these types by ``billing_config.loader``; runtime code only ever sees
a ``BillingConfig`` obtained from ``get_active_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class AuditSettings:
    """Audit trail live-window and query limits."""

    retention_limit: int = 10_000
    export_limit: int = 10_000
    default_page_size: int = 50


@dataclass(frozen=True)
class AllocationSettings:
    # Method used when a checkout names billing groups but no method
    checkout_method: str = "proportional"


@dataclass(frozen=True)
class RuleSettings:
    default_priority: int = 100


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class BillingConfig:
    """
    Complete runtime configuration.

    Guarantees:
        - timezone is a valid IANA zone name.
        - default_currency is known to CurrencyRegistry.
        - allocation.checkout_method is a valid AllocationMethod value.
        - checksum identifies the exact source document that was loaded.
    """

    database_url: str = "sqlite+pysqlite:///:memory:"
    default_currency: str = "USD"
    timezone: str = "UTC"
    audit: AuditSettings = field(default_factory=AuditSettings)
    allocation: AllocationSettings = field(default_factory=AllocationSettings)
    rules: RuleSettings = field(default_factory=RuleSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source_path: str | None = None
    checksum: str = ""
