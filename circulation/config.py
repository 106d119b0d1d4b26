"""Configuration management for the lending desk."""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from circulation.exceptions import ConfigurationError


@dataclass
class Settings:
    """Lending rules and service settings.

    Money values are ``Decimal`` in the currency's major unit.
    """

    database_url: str = "sqlite:///./circulation.db"
    auth_key: str = "dev-secret-key-12345"
    loan_period_days: int = 14
    max_loan_period_days: int = 60
    renewal_period_days: int = 14
    max_renewals: int = 3
    default_max_loans: int = 3
    penalty_ceiling: Decimal = Decimal("0.00")
    per_day_rate: Decimal = Decimal("0.50")
    loss_fee: Decimal = Decimal("25.00")
    reservation_window_days: int = 7
    pickup_grace_days: int = 3
    log_level: str = "INFO"
    log_format: str = "standard"

    def validate(self) -> "Settings":
        """Check value ranges, returning self so calls can be chained."""
        if self.loan_period_days < 1:
            raise ConfigurationError("loan_period_days must be at least 1")
        if self.max_loan_period_days < self.loan_period_days:
            raise ConfigurationError(
                "max_loan_period_days must not be below loan_period_days"
            )
        if self.renewal_period_days < 1:
            raise ConfigurationError("renewal_period_days must be at least 1")
        if self.max_renewals < 0:
            raise ConfigurationError("max_renewals must not be negative")
        if self.default_max_loans < 0:
            raise ConfigurationError("default_max_loans must not be negative")
        if self.penalty_ceiling < 0:
            raise ConfigurationError("penalty_ceiling must not be negative")
        if self.per_day_rate < 0:
            raise ConfigurationError("per_day_rate must not be negative")
        if self.loss_fee < 0:
            raise ConfigurationError("loss_fee must not be negative")
        if self.reservation_window_days < 1:
            raise ConfigurationError("reservation_window_days must be at least 1")
        if self.pickup_grace_days < 0:
            raise ConfigurationError("pickup_grace_days must not be negative")
        if self.log_format not in ("standard", "json"):
            raise ConfigurationError("log_format must be 'standard' or 'json'")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        defaults = cls()

        def _int(name: str, default: int) -> int:
            raw = os.getenv(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be an integer, got {raw!r}")

        def _money(name: str, default: Decimal) -> Decimal:
            raw = os.getenv(name)
            if raw is None:
                return default
            try:
                return Decimal(raw).quantize(Decimal("0.01"))
            except InvalidOperation:
                raise ConfigurationError(f"{name} must be a decimal amount, got {raw!r}")

        settings = cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            auth_key=os.getenv("AUTH_KEY", defaults.auth_key),
            loan_period_days=_int("LOAN_PERIOD_DAYS", defaults.loan_period_days),
            max_loan_period_days=_int("MAX_LOAN_PERIOD_DAYS", defaults.max_loan_period_days),
            renewal_period_days=_int("RENEWAL_PERIOD_DAYS", defaults.renewal_period_days),
            max_renewals=_int("MAX_RENEWALS", defaults.max_renewals),
            default_max_loans=_int("DEFAULT_MAX_LOANS", defaults.default_max_loans),
            penalty_ceiling=_money("PENALTY_CEILING", defaults.penalty_ceiling),
            per_day_rate=_money("PER_DAY_RATE", defaults.per_day_rate),
            loss_fee=_money("LOSS_FEE", defaults.loss_fee),
            reservation_window_days=_int(
                "RESERVATION_WINDOW_DAYS", defaults.reservation_window_days
            ),
            pickup_grace_days=_int("PICKUP_GRACE_DAYS", defaults.pickup_grace_days),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            log_format=os.getenv("LOG_FORMAT", defaults.log_format),
        )
        return settings.validate()


_settings = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them from the environment once.

    Used as a FastAPI dependency; tests override it.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
