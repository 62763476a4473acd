"""Tests for billing_config: YAML loading, validation and environment overrides."""

from decimal import Decimal

import pytest
import yaml

from billing_config import get_active_config
from billing_config.loader import build_config, compute_checksum
from billing_kernel.exceptions import ConfigurationError, ContractorConfigurationError


def _write(tmp_path, data) -> str:
    path = tmp_path / "billing.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestDefaults:
    def test_packaged_defaults_load(self):
        config = get_active_config(environ={})

        assert len(config.plans.plans) == 6
        assert config.plans.seat_limit_for("business_plus") == 50
        assert config.revenue.currency == "jpy"
        assert config.revenue.fee_rate == Decimal("0.036")
        assert config.revenue.page_size == 100
        assert config.allocation.pool_percent == Decimal("60")
        assert [c.key for c in config.allocation.contractors] == ["yoshitsune", "kensei"]
        assert config.queue.max_attempts == 8
        assert config.idempotency.window_minutes == 60
        assert config.broadcast.batch_size == 50
        assert config.processor.webhook_secret is None
        assert len(config.checksum) == 64

    def test_empty_document_needs_contractors(self):
        with pytest.raises(ContractorConfigurationError):
            build_config({})


class TestEnvironmentOverrides:
    def test_secrets_and_url_from_environment(self):
        config = get_active_config(environ={
            "STRIPE_API_KEY": "sk_live_x",
            "STRIPE_WEBHOOK_SECRET": "whsec_x",
            "BILLING_DATABASE_URL": "postgresql://billing@db/billing",
            "SMTP_HOST": "smtp.example.com",
            "SMTP_PORT": "465",
            "SMTP_USERNAME": "mailer",
            "SMTP_PASSWORD": "secret",
        })

        assert config.processor.api_key == "sk_live_x"
        assert config.processor.webhook_secret == "whsec_x"
        assert config.database.url == "postgresql://billing@db/billing"
        assert config.broadcast.smtp.host == "smtp.example.com"
        assert config.broadcast.smtp.port == 465
        assert config.broadcast.smtp.has_credentials

    def test_checksum_ignores_secrets(self):
        a = get_active_config(environ={"STRIPE_WEBHOOK_SECRET": "one", "SMTP_PASSWORD": "p1"})
        b = get_active_config(environ={"STRIPE_WEBHOOK_SECRET": "two", "SMTP_PASSWORD": "p2"})
        assert a.checksum == b.checksum

    def test_config_path_from_environment(self, tmp_path):
        document = yaml.safe_load(_default_path().read_text())
        document["queue"]["max_attempts"] = 3
        path = _write(tmp_path, document)

        config = get_active_config(environ={"BILLING_CONFIG_PATH": path})
        assert config.queue.max_attempts == 3

    def test_load_is_logged_without_secrets(self, captured_logs):
        get_active_config(environ={"STRIPE_WEBHOOK_SECRET": "whsec_hidden"})

        (record,) = [r for r in captured_logs() if r["message"] == "billing_config_loaded"]
        assert record["webhook_secret_configured"] is True
        assert record["env_overrides"] == ["STRIPE_WEBHOOK_SECRET"]
        assert "whsec_hidden" not in str(record)


class TestValidation:
    def _document(self):
        return yaml.safe_load(_default_path().read_text())

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml", environ={})

    def test_unknown_key_rejected(self):
        document = self._document()
        document["queue"]["max_attemps"] = 5
        with pytest.raises(ConfigurationError) as exc_info:
            build_config(document)
        assert exc_info.value.field == "queue"

    def test_unknown_smtp_key_rejected(self):
        document = self._document()
        document["broadcast"]["smtp"]["hostname"] = "x"
        with pytest.raises(ConfigurationError):
            build_config(document)

    def test_fee_rate_out_of_range(self):
        document = self._document()
        document["revenue"]["fee_rate"] = "1.5"
        with pytest.raises(ValueError):
            build_config(document)

    def test_contractor_percents_must_fill_pool(self):
        document = self._document()
        document["allocation"]["contractors"][0]["default_percent"] = "20"
        with pytest.raises(ContractorConfigurationError):
            build_config(document)

    def test_queue_backoff_bounds(self):
        document = self._document()
        document["queue"]["backoff_cap_seconds"] = 10
        with pytest.raises(ValueError):
            build_config(document)

    def test_fetcher_section_merges_into_revenue(self):
        document = self._document()
        document["fetcher"]["page_size"] = 25
        assert build_config(document).revenue.page_size == 25

    def test_corporate_plan_needs_seat_limit(self):
        document = self._document()
        del document["plans"]["catalog"][2]["seat_limit"]
        with pytest.raises(ValueError):
            build_config(document)


class TestChecksum:
    def test_deterministic_and_order_independent(self):
        a = compute_checksum({"queue": {"max_attempts": 3, "lease_seconds": 60}})
        b = compute_checksum({"queue": {"lease_seconds": 60, "max_attempts": 3}})
        assert a == b

    def test_changes_with_settings(self):
        assert compute_checksum({"queue": {"max_attempts": 3}}) != compute_checksum(
            {"queue": {"max_attempts": 4}}
        )


def _default_path():
    from billing_config import DEFAULT_CONFIG_PATH

    return DEFAULT_CONFIG_PATH
