import logging.config
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Server
    APP_NAME: str = "Points Ledger"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Economy: 10,000 points = $1.00
    POINTS_PER_DOLLAR: int = 10000

    # Base earning rates (points)
    RATE_READ_NEWS: int = 10
    RATE_WATCH_AD: int = 20
    RATE_TRIVIA: int = 20
    RATE_GAME: int = 2
    REFERRAL_SIGNUP_BONUS: int = 2500

    # Daily caps per activity
    MAX_ADS_PER_DAY: int = 5
    MAX_NEWS_PER_DAY: int = 5
    MAX_TRIVIA_PER_DAY: int = 1

    # Multipliers
    DEFAULT_TIMEZONE: str = "UTC"
    HAPPY_HOUR_ENABLED: bool = True
    WEEKEND_BONUS_MULTIPLIER: float = 1.0  # 1.0 disables the weekend bonus

    # Payouts (Reloadly)
    AUTO_PAYMENTS_ENABLED: bool = False
    RELOADLY_CLIENT_ID: str = ""
    RELOADLY_CLIENT_SECRET: str = ""
    RELOADLY_SANDBOX: bool = True
    PAYOUT_CONNECT_TIMEOUT: float = 5.0
    PAYOUT_READ_TIMEOUT: float = 25.0

    # Offerwall postback secrets
    KIWIWALL_SECRET: str = ""
    CPX_SECURE_HASH: str = ""
    TIMEWALL_SECRET: str = ""
    POSTBACK_SECRETS: dict[str, str] = {}

    @property
    def payout_timeout(self) -> tuple[float, float]:
        return (self.PAYOUT_CONNECT_TIMEOUT, self.PAYOUT_READ_TIMEOUT)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = None) -> None:
    level = (level or get_settings().LOG_LEVEL).upper()
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "app": {
                "format": "[{levelname}] {asctime} {name} - {message}",
                "style": "{",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "app",
            },
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {
            "urllib3": {"level": "WARNING"},
        },
    })
