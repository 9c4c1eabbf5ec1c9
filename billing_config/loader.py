"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Reads a YAML configuration document, applies environment overrides, and
parses the result into a frozen ``BillingConfig``.

Architecture position
---------------------
**Config layer**.  Consumed by ``billing_config.get_active_config()`` and by
tests.  Has no dependency on the kernel or the API.

Invariants enforced
-------------------
* Unknown keys are rejected; a typo in a YAML file is a load error, not a
  silently ignored setting.
* Environment overrides are applied to the raw mapping before parsing, so
  they pass through the same ``__post_init__`` validation as file values.
* ``compute_checksum`` gives every loaded configuration a deterministic
  identity for the startup trace log.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys or invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import copy
import hashlib
import json
import os
from collections.abc import Mapping
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    BillingConfig,
    DatabaseConfig,
    InvoicingConfig,
    LedgerConfig,
    MilestoneConfig,
    WebhookConfig,
)

# environment variable -> (section, key); section None means top level
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "DATABASE_URL": ("database", "url"),
    "STRIPE_WEBHOOK_SECRET": ("webhooks", "signing_secret"),
    "BILLING_LOG_LEVEL": (None, "log_level"),
}

_SECTIONS = {
    "ledger": LedgerConfig,
    "invoicing": InvoicingConfig,
    "milestones": MilestoneConfig,
    "webhooks": WebhookConfig,
    "database": DatabaseConfig,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def apply_env_overrides(
    data: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return a copy of ``data`` with set environment variables applied."""
    environ = os.environ if environ is None else environ
    result = copy.deepcopy(dict(data))
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if not value:
            continue
        if section is None:
            result[key] = value
        else:
            result[section] = {**(result.get(section) or {}), key: value}
    return result


def compute_checksum(data: Mapping[str, Any]) -> str:
    """Deterministic SHA-256 of a configuration mapping; secrets are masked."""
    masked = copy.deepcopy(dict(data))
    webhooks = masked.get("webhooks")
    if isinstance(webhooks, dict) and webhooks.get("signing_secret"):
        webhooks["signing_secret"] = "***"
    canonical = json.dumps(masked, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_section(name: str, data: Any) -> Any:
    cls = _SECTIONS[name]
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {sorted(unknown)}")
    return cls(**data)


def parse_config(data: Mapping[str, Any]) -> BillingConfig:
    """Parse a raw mapping into a validated BillingConfig."""
    unknown = set(data) - set(_SECTIONS) - {"log_level"}
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
    sections = {name: _parse_section(name, data.get(name)) for name in _SECTIONS}
    return BillingConfig(
        **sections,
        log_level=str(data.get("log_level", "INFO")),
        checksum=compute_checksum(data),
    )


def load_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> BillingConfig:
    """
    Load configuration from ``path`` (or defaults only) plus the environment.

    Postconditions:
        - Returns a frozen, validated BillingConfig.
    """
    raw = load_yaml_file(Path(path)) if path is not None else {}
    return parse_config(apply_env_overrides(raw, environ))
