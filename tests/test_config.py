"""
Tests for environment-driven configuration
"""

import pytest
from decimal import Decimal
from pydantic import ValidationError

from lamf_ledger import config as config_module
from lamf_ledger.config import LamfConfig, get_config, reload_config


class TestLamfConfig:
    """Test defaults and environment overrides"""

    def teardown_method(self):
        reload_config()

    def test_defaults(self, monkeypatch):
        for name in ("LAMF_NPA_THRESHOLD_DAYS", "LAMF_MARGIN_THRESHOLD", "LAMF_STORAGE_URL"):
            monkeypatch.delenv(name, raising=False)
        config = LamfConfig(_env_file=None)

        assert config.npa_threshold_days == 90
        assert config.margin_threshold == Decimal("0.8")
        assert config.application_expiry_days == 30
        assert config.first_emi_offset_months == 1
        assert config.enable_audit_logging is True
        assert config.storage_url == "sqlite:///lamf.db"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LAMF_NPA_THRESHOLD_DAYS", "60")
        monkeypatch.setenv("LAMF_MARGIN_THRESHOLD", "0.75")
        monkeypatch.setenv("lamf_storage_url", "memory://")

        config = reload_config()
        assert config.npa_threshold_days == 60
        assert config.margin_threshold == Decimal("0.75")
        assert config.storage_url == "memory://"

    def test_reload_replaces_global(self, monkeypatch):
        monkeypatch.setenv("LAMF_ENABLE_AUDIT_LOGGING", "false")
        reloaded = reload_config()

        assert get_config() is reloaded
        assert config_module.config is reloaded
        assert reloaded.enable_audit_logging is False

    def test_out_of_range_rejected(self, monkeypatch):
        monkeypatch.setenv("LAMF_NPA_THRESHOLD_DAYS", "0")
        with pytest.raises(ValidationError):
            LamfConfig(_env_file=None)
