"""
Tests for billing configuration loading.

Covers:
1. Built-in defaults and the shipped default.yaml
2. Environment overrides
3. Rejection of unknown keys and invalid values
4. get_active_config: path resolution and the trace log
"""

from decimal import Decimal
from pathlib import Path

import pytest
import yaml

import billing_config
from billing_config import (
    BillingConfig,
    apply_env_overrides,
    get_active_config,
    load_config,
    parse_config,
)
from billing_config.loader import compute_checksum

DEFAULT_SET = Path(billing_config.__file__).parent / "sets" / "default.yaml"


@pytest.fixture
def write_config(tmp_path):
    """Factory: write a mapping as YAML and return the path."""

    def _write(data: dict) -> Path:
        path = tmp_path / "billing.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


class TestDefaults:

    def test_no_file_gives_defaults(self):
        config = load_config(environ={})

        assert config.ledger.percentage_cap == Decimal("100")
        assert config.invoicing.number_prefix == "INV"
        assert config.milestones.default_task_percentage == Decimal("0")
        assert config.webhooks.signing_secret is None
        assert not config.webhooks.is_configured
        assert config.database.url == "sqlite://"
        assert config.log_level == "INFO"

    def test_shipped_default_set_loads(self):
        config = load_config(DEFAULT_SET, environ={})

        assert config.milestones.default_task_percentage == Decimal("10")
        assert config.database.create_tables
        assert config.invoicing.payment_terms_days == 30

    def test_percentages_from_yaml_strings_are_decimals(self, write_config):
        path = write_config({"ledger": {"percentage_cap": "95.5"}})

        config = load_config(path, environ={})

        assert config.ledger.percentage_cap == Decimal("95.5")
        assert isinstance(config.ledger.percentage_cap, Decimal)


class TestEnvironmentOverrides:

    def test_overrides_apply(self, write_config):
        path = write_config({"database": {"url": "sqlite:///file.db", "echo": True}})

        config = load_config(
            path,
            environ={
                "DATABASE_URL": "postgresql://billing@localhost/billing",
                "STRIPE_WEBHOOK_SECRET": "whsec_env",
                "BILLING_LOG_LEVEL": "debug",
            },
        )

        assert config.database.url == "postgresql://billing@localhost/billing"
        assert config.database.echo
        assert config.webhooks.signing_secret == "whsec_env"
        assert config.log_level == "DEBUG"

    def test_empty_values_are_ignored(self):
        data = apply_env_overrides({"log_level": "WARNING"}, {"BILLING_LOG_LEVEL": ""})

        assert data == {"log_level": "WARNING"}

    def test_input_mapping_is_not_mutated(self):
        data = {"database": {"url": "sqlite://"}}

        apply_env_overrides(data, {"DATABASE_URL": "sqlite:///other.db"})

        assert data == {"database": {"url": "sqlite://"}}


class TestValidation:

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            parse_config({"ledgr": {}})

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in 'ledger'"):
            parse_config({"ledger": {"cap": "100"}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError):
            parse_config({"webhooks": "whsec"})

    @pytest.mark.parametrize(
        "data",
        [
            {"ledger": {"percentage_cap": "0"}},
            {"ledger": {"percentage_cap": "101"}},
            {"ledger": {"decimal_places": 3}},
            {"milestones": {"default_task_percentage": "-1"}},
            {"invoicing": {"number_prefix": "IN-V"}},
            {"invoicing": {"currency": "dollars"}},
            {"webhooks": {"tolerance_seconds": 0}},
            {"database": {"pool_size": 0}},
            {"log_level": "LOUD"},
        ],
    )
    def test_invalid_values(self, data):
        with pytest.raises(ValueError):
            parse_config(data)

    def test_default_percentage_cannot_exceed_cap(self):
        with pytest.raises(ValueError, match="cannot exceed"):
            parse_config(
                {
                    "ledger": {"percentage_cap": "50"},
                    "milestones": {"default_task_percentage": "60"},
                }
            )

    def test_config_is_frozen(self):
        config = BillingConfig()

        with pytest.raises(AttributeError):
            config.log_level = "DEBUG"


class TestChecksum:

    def test_secret_does_not_change_checksum(self):
        a = compute_checksum({"webhooks": {"signing_secret": "whsec_a"}})
        b = compute_checksum({"webhooks": {"signing_secret": "whsec_b"}})

        assert a == b

    def test_settings_change_checksum(self):
        assert compute_checksum({"log_level": "INFO"}) != compute_checksum({"log_level": "DEBUG"})


class TestGetActiveConfig:

    def test_reads_path_from_environment(self, write_config):
        path = write_config({"invoicing": {"number_prefix": "BILL"}})

        config = get_active_config(environ={"BILLING_CONFIG_PATH": str(path)})

        assert config.invoicing.number_prefix == "BILL"

    def test_explicit_path_wins(self, write_config):
        path = write_config({"invoicing": {"number_prefix": "BILL"}})

        config = get_active_config(path, environ={"BILLING_CONFIG_PATH": str(DEFAULT_SET)})

        assert config.invoicing.number_prefix == "BILL"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(environ={"BILLING_CONFIG_PATH": str(tmp_path / "absent.yaml")})

    def test_trace_is_logged(self, captured_logs):
        config = get_active_config(environ={})

        (trace,) = [r for r in captured_logs() if r["message"] == "BILLING_CONFIG_TRACE"]
        assert trace["config_source"] == "defaults"
        assert trace["checksum"] == config.checksum
        assert trace["webhook_secret_configured"] is False
