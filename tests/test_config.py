"""Tests for settings, logging setup and the error taxonomy."""

import json
import logging
from decimal import Decimal

import pytest

from circulation import config
from circulation.config import Settings, get_settings
from circulation.exceptions import (
    CirculationError,
    ConfigurationError,
    ConflictError,
    NotEligibleError,
    NotFoundError,
)
from circulation.logging import JsonFormatter, setup_logging


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.loan_period_days == 14
        assert settings.max_renewals == 3
        assert settings.default_max_loans == 3
        assert settings.penalty_ceiling == Decimal("0.00")
        assert settings.per_day_rate == Decimal("0.50")
        assert settings.reservation_window_days == 7
        assert settings.validate() is settings

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LOAN_PERIOD_DAYS", "21")
        monkeypatch.setenv("PER_DAY_RATE", "0.25")
        monkeypatch.setenv("PENALTY_CEILING", "10")
        monkeypatch.setenv("LOG_FORMAT", "json")

        settings = Settings.from_env()

        assert settings.loan_period_days == 21
        assert settings.per_day_rate == Decimal("0.25")
        assert settings.penalty_ceiling == Decimal("10.00")
        assert settings.log_format == "json"

    @pytest.mark.parametrize(
        "name,value",
        [("MAX_RENEWALS", "many"), ("LOSS_FEE", "lots"), ("LOG_FORMAT", "xml")],
    )
    def test_from_env_rejects_bad_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ConfigurationError):
            Settings.from_env()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"loan_period_days": 0},
            {"loan_period_days": 30, "max_loan_period_days": 20},
            {"max_renewals": -1},
            {"per_day_rate": Decimal("-0.10")},
            {"reservation_window_days": 0},
        ],
    )
    def test_validate(self, overrides):
        with pytest.raises(ConfigurationError):
            Settings(**overrides).validate()

    def test_get_settings_is_cached(self, monkeypatch):
        monkeypatch.setattr(config, "_settings", None)

        assert get_settings() is get_settings()


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("circulation").setLevel(logging.NOTSET)


class TestLogging:
    def test_setup_logging_levels(self, restore_logging):
        setup_logging(level="DEBUG")

        assert logging.getLogger("circulation").level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_json_formatter(self):
        record = logging.LogRecord(
            name="circulation.loans",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Loan %s returned",
            args=(7,),
            exc_info=None,
        )

        payload = json.loads(JsonFormatter().format(record))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "circulation.loans"
        assert payload["message"] == "Loan 7 returned"
        assert "timestamp" in payload


class TestErrors:
    def test_default_codes(self):
        assert NotFoundError("gone").code == "not_found"
        assert ConflictError("busy").code == "conflict"
        assert issubclass(ConfigurationError, CirculationError)

    def test_to_dict_carries_details(self):
        error = ConflictError("No units", code="no_units_available", suggestion="reserve")

        assert error.to_dict() == {
            "detail": "No units",
            "code": "no_units_available",
            "suggestion": "reserve",
        }

    def test_not_eligible_reasons(self):
        reasons = [{"code": "overdue_loans", "message": "1 overdue loan"}]

        error = NotEligibleError("Patron may not borrow", reasons=reasons)

        assert error.reasons == reasons
        assert error.to_dict()["reasons"] == reasons
        assert str(error) == "Patron may not borrow"
