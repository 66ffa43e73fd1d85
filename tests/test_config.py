"""Configuration loading for tally.config module."""

from pathlib import Path

from tally.config import (
    DEFAULT_SEASONALITY,
    AnalyticsConfig,
    BillingConfig,
    Config,
    SchedulerConfig,
    load_config,
)


class TestConfigDefaults:
    def test_default_db_path(self):
        cfg = Config()
        assert cfg.db_path == Path("data/tally.db")

    def test_default_scheduler_config(self):
        cfg = Config()
        assert cfg.scheduler.interval_minutes == 60
        assert cfg.scheduler.max_attempts == 3

    def test_default_billing_config(self):
        cfg = Config()
        assert cfg.billing.tax_rate == 0.10
        assert cfg.billing.payment_terms_days == 30
        assert cfg.billing.currency == "USD"

    def test_default_analytics_config(self):
        cfg = Config()
        assert cfg.analytics.overhead_rate == 0.30
        assert cfg.analytics.pipeline_conversion == 0.3
        assert cfg.analytics.seasonality == DEFAULT_SEASONALITY
        assert cfg.analytics.expected_lifetime_months == 24

    def test_seasonality_is_not_shared(self):
        a = AnalyticsConfig()
        b = AnalyticsConfig()
        a.seasonality[0] = 5.0
        assert b.seasonality[0] == 0.9

    def test_ntfy_disabled_by_default(self):
        assert Config().ntfy.enabled is False


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nope.toml")
        assert cfg.scheduler == SchedulerConfig()
        assert cfg.billing == BillingConfig()

    def test_loads_sections(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text(
            'db_path = "/var/lib/tally/tally.db"\n'
            "\n"
            "[scheduler]\n"
            "interval_minutes = 15\n"
            "max_attempts = 5\n"
            "\n"
            "[billing]\n"
            "tax_rate = 0.2\n"
            'currency = "EUR"\n'
            "\n"
            "[analytics]\n"
            "overhead_rate = 0.25\n"
            "\n"
            "[ntfy]\n"
            "enabled = true\n"
            'topic = "billing"\n'
            "\n"
            "[logging]\n"
            'level = "DEBUG"\n'
            'audit_file = "/var/log/tally/audit.log"\n'
        )
        cfg = load_config(path)
        assert cfg.db_path == Path("/var/lib/tally/tally.db")
        assert cfg.scheduler.interval_minutes == 15
        assert cfg.scheduler.max_attempts == 5
        assert cfg.billing.tax_rate == 0.2
        assert cfg.billing.currency == "EUR"
        assert cfg.billing.payment_terms_days == 30
        assert cfg.analytics.overhead_rate == 0.25
        assert cfg.analytics.market_trends == 1.05
        assert cfg.ntfy.enabled is True
        assert cfg.ntfy.topic == "billing"
        assert cfg.logging.level == "DEBUG"
        assert cfg.logging.audit_file == "/var/log/tally/audit.log"

    def test_bad_seasonality_falls_back(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[analytics]\nseasonality = [1.0, 2.0]\n")
        cfg = load_config(path)
        assert cfg.analytics.seasonality == DEFAULT_SEASONALITY

    def test_custom_seasonality(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[analytics]\nseasonality = [1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 1, 2]\n")
        cfg = load_config(path)
        assert cfg.analytics.seasonality[-1] == 2.0


class TestEnvOverrides:
    def test_db_path_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TALLY_DB_PATH", "/tmp/other.db")
        cfg = load_config(tmp_path / "nope.toml")
        assert cfg.db_path == Path("/tmp/other.db")

    def test_numeric_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TALLY_INTERVAL_MINUTES", "5")
        monkeypatch.setenv("TALLY_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("TALLY_TAX_RATE", "0.07")
        cfg = load_config(tmp_path / "nope.toml")
        assert cfg.scheduler.interval_minutes == 5
        assert cfg.scheduler.max_attempts == 7
        assert cfg.billing.tax_rate == 0.07

    def test_ntfy_token_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TALLY_NTFY_TOKEN", "tk_secret")
        cfg = load_config(tmp_path / "nope.toml")
        assert cfg.ntfy.token == "tk_secret"

    def test_invalid_value_is_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TALLY_MAX_ATTEMPTS", "lots")
        cfg = load_config(tmp_path / "nope.toml")
        assert cfg.scheduler.max_attempts == 3
