"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Business policy is turned into an explicit LendingPolicy value object here; the engine
itself never reads this module.
"""

from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings

from .late_fees import LateFeePolicy, LateFeeType, LendingPolicy, ExcessPolicy
from .amortization import PaymentFrequency


class LendingConfig(BaseSettings):
    """Microlending system configuration"""

    # Database configuration
    database_url: str = "sqlite:///microlending.db"  # memory://, sqlite:///..., postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cron_secret: str = ""  # Empty disables the overdue sweep endpoint

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    currency_code: str = "DOP"
    late_fee_type: str = "PERCENTAGE_DAILY"  # PERCENTAGE_DAILY or FIXED
    late_fee_value: str = "0.00"
    grace_period_days: int = 0
    default_daily_rate: Optional[str] = None     # Annual percentages
    default_weekly_rate: Optional[str] = None
    default_biweekly_rate: Optional[str] = None
    default_monthly_rate: Optional[str] = None
    excess_payment_policy: str = "reject"  # reject or refund

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False

    def policy(self) -> LendingPolicy:
        """Build the immutable policy object passed into the engine"""
        default_rates = {}
        for frequency, raw in (
            (PaymentFrequency.DAILY, self.default_daily_rate),
            (PaymentFrequency.WEEKLY, self.default_weekly_rate),
            (PaymentFrequency.BIWEEKLY, self.default_biweekly_rate),
            (PaymentFrequency.MONTHLY, self.default_monthly_rate),
        ):
            if raw not in (None, ""):
                default_rates[frequency] = Decimal(raw)

        return LendingPolicy(
            late_fee=LateFeePolicy(
                fee_type=LateFeeType(self.late_fee_type.upper()),
                fee_value=Decimal(self.late_fee_value),
            ),
            grace_period_days=self.grace_period_days,
            default_rates=default_rates,
            excess_policy=ExcessPolicy(self.excess_payment_policy.lower()),
        )


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
