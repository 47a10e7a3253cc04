"""Unit tests for configuration loading."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from building_ledger.services.config import get_settings


class TestSettings:
    """Tests for get_settings()."""

    @pytest.fixture(autouse=True)
    def isolated_env(self, monkeypatch, tmp_path):
        """Run from an empty directory so no .env file is picked up."""
        monkeypatch.chdir(tmp_path)
        for name in (
            "LOCALE",
            "CURRENCY",
            "LOG_LEVEL",
            "LOG_FILE",
            "DEFAULT_LATE_FEE_RATE",
            "CREDIT_MOVEMENTS_DEFAULT_LIMIT",
            "CREDIT_MOVEMENTS_MAX_LIMIT",
        ):
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        settings = get_settings()

        assert settings.locale == "es_AR"
        assert settings.currency == "ARS"
        assert settings.log_level == "INFO"
        assert settings.log_file == "logs/ledger.log"
        assert settings.default_late_fee_rate == Decimal("10")
        assert settings.credit_movements_default_limit == 25
        assert settings.credit_movements_max_limit == 100

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///./other.db")
        monkeypatch.setenv("DEFAULT_LATE_FEE_RATE", "7.5")
        monkeypatch.setenv("CURRENCY", "USD")

        settings = get_settings()

        assert settings.database_url == "sqlite:///./other.db"
        assert settings.default_late_fee_rate == Decimal("7.5")
        assert settings.currency == "USD"

    def test_dotenv_file_is_read(self, tmp_path):
        (tmp_path / ".env").write_text("LOCALE=en_US\nCREDIT_MOVEMENTS_DEFAULT_LIMIT=10\n")

        settings = get_settings()

        assert settings.locale == "en_US"
        assert settings.credit_movements_default_limit == 10

    def test_negative_late_fee_rate_rejected(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_LATE_FEE_RATE", "-1")

        with pytest.raises(ValidationError):
            get_settings()
