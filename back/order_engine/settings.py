from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    Engine configuration.

    Values come from `config.env` (non-dot env file) at the repository root,
    a `.env` if present, and the process environment.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")
    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="pos", validation_alias="DB_USER")
    db_password: str = Field(default="pos", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="pos", validation_alias="DB_NAME")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")

    telegram_bot_token: str = Field(default="", validation_alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str = Field(default="", validation_alias="TELEGRAM_CHAT_ID")

    # Business rules
    payment_tolerance: Decimal = Field(default=Decimal("0.5"), validation_alias="PAYMENT_TOLERANCE")
    discount_pin_percent: Decimal = Field(default=Decimal("10"), validation_alias="DISCOUNT_PIN_PERCENT")
    discount_alert_amount: Decimal = Field(default=Decimal("500"), validation_alias="DISCOUNT_ALERT_AMOUNT")
    stale_session_hours: int = Field(default=12, validation_alias="STALE_SESSION_HOURS")

    cors_origins: str = Field(
        default="http://localhost:4200",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # psycopg 3 driver
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
