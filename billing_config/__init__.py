"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``get_active_config()``.  Kernel services never read configuration
    files or environment variables; ``billing_api`` reads a BillingConfig
    and passes plain values into the services it constructs.

Architecture position:
    Configuration -- sits beside ``billing_kernel`` and below
    ``billing_api``.  The kernel MUST NEVER import from ``billing_config``.

Failure modes:
    - ``FileNotFoundError`` -- BILLING_CONFIG_PATH points at a missing file.
    - ``ValueError`` -- schema or value validation failures.

Audit relevance:
    Every ``get_active_config()`` call emits a ``BILLING_CONFIG_TRACE`` log
    entry with the configuration checksum, so a request can be tied back to
    the exact settings it ran under.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from billing_config.loader import apply_env_overrides, load_config, parse_config
from billing_config.schema import (
    BillingConfig,
    DatabaseConfig,
    InvoicingConfig,
    LedgerConfig,
    MilestoneConfig,
    WebhookConfig,
)

_logger = logging.getLogger("billing_kernel.config")

CONFIG_PATH_ENV = "BILLING_CONFIG_PATH"


def get_active_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> BillingConfig:
    """The public configuration entrypoint.

    Reads ``path``, else the file named by ``BILLING_CONFIG_PATH``, else
    built-in defaults; environment overrides apply in every case.
    """
    environ = os.environ if environ is None else environ
    source = path or environ.get(CONFIG_PATH_ENV) or None
    config = load_config(source, environ)
    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "config_source": str(source) if source else "defaults",
            "checksum": config.checksum,
            "webhook_secret_configured": config.webhooks.is_configured,
            "percentage_cap": config.ledger.percentage_cap,
        },
    )
    return config


__all__ = [
    "BillingConfig",
    "DatabaseConfig",
    "InvoicingConfig",
    "LedgerConfig",
    "MilestoneConfig",
    "WebhookConfig",
    "apply_env_overrides",
    "get_active_config",
    "load_config",
    "parse_config",
]
