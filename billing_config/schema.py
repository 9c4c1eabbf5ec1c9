"""
BillingConfig schema.

Typed, frozen configuration for the billing engine.  YAML documents are
parsed into these types by the loader; ``billing_api`` reads them and hands
plain values to kernel services.  The kernel never imports this module.

Every dataclass validates itself in ``__post_init__`` so that a bad value
fails at load time, not on the first request that touches it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


def _as_decimal(value: object, name: str) -> Decimal:
    # str() first so YAML floats keep their written digits
    try:
        return Decimal(str(value))
    except ArithmeticError as exc:
        raise ValueError(f"{name} must be a decimal value, got {value!r}") from exc


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerConfig:
    """Percentage ledger limits."""

    percentage_cap: Decimal = Decimal("100")
    decimal_places: int = 2

    def __post_init__(self) -> None:
        object.__setattr__(self, "percentage_cap", _as_decimal(self.percentage_cap, "percentage_cap"))
        if not Decimal("0") < self.percentage_cap <= Decimal("100"):
            raise ValueError(
                f"ledger.percentage_cap must be in (0, 100], got {self.percentage_cap}"
            )
        if self.decimal_places != 2:
            raise ValueError(
                "ledger.decimal_places must be 2; billing columns are stored "
                f"as Numeric(5,2), got {self.decimal_places}"
            )


@dataclass(frozen=True)
class InvoicingConfig:
    """Invoice numbering and due-date defaults."""

    number_prefix: str = "INV"
    payment_terms_days: int = 30
    milestone_due_days: int = 14
    currency: str = "USD"

    def __post_init__(self) -> None:
        if not self.number_prefix or not self.number_prefix.isalnum():
            raise ValueError(
                f"invoicing.number_prefix must be alphanumeric, got {self.number_prefix!r}"
            )
        if self.payment_terms_days < 0:
            raise ValueError("invoicing.payment_terms_days must be >= 0")
        if self.milestone_due_days < 0:
            raise ValueError("invoicing.milestone_due_days must be >= 0")
        if len(self.currency) != 3:
            raise ValueError(f"invoicing.currency must be an ISO 4217 code, got {self.currency!r}")


@dataclass(frozen=True)
class MilestoneConfig:
    """Task-to-milestone linkage defaults."""

    default_task_percentage: Decimal = Decimal("0")
    auto_create_for_billable_tasks: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "default_task_percentage",
            _as_decimal(self.default_task_percentage, "default_task_percentage"),
        )
        if not Decimal("0") <= self.default_task_percentage <= Decimal("100"):
            raise ValueError(
                "milestones.default_task_percentage must be in [0, 100], "
                f"got {self.default_task_percentage}"
            )


@dataclass(frozen=True)
class WebhookConfig:
    """Payment-processor webhook verification and reconciliation options."""

    signing_secret: str | None = None
    tolerance_seconds: int = 300
    mark_overdue_on_payment_failure: bool = False

    def __post_init__(self) -> None:
        if self.tolerance_seconds <= 0:
            raise ValueError("webhooks.tolerance_seconds must be > 0")

    @property
    def is_configured(self) -> bool:
        return bool(self.signing_secret)


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite://"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    create_tables: bool = False

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("database.url must not be empty")
        if self.pool_size < 1:
            raise ValueError("database.pool_size must be >= 1")


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BillingConfig:
    """Complete billing engine configuration."""

    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    invoicing: InvoicingConfig = field(default_factory=InvoicingConfig)
    milestones: MilestoneConfig = field(default_factory=MilestoneConfig)
    webhooks: WebhookConfig = field(default_factory=WebhookConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    log_level: str = "INFO"
    checksum: str = ""

    def __post_init__(self) -> None:
        level = self.log_level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"log_level must be a logging level name, got {self.log_level!r}")
        object.__setattr__(self, "log_level", level)
        if self.milestones.default_task_percentage > self.ledger.percentage_cap:
            raise ValueError(
                "milestones.default_task_percentage cannot exceed ledger.percentage_cap"
            )
