import logging
import os
from decimal import Decimal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "LIBRARY_"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class Settings(BaseModel):
    default_loan_days: int = Field(14, ge=1)
    default_late_fee_per_day: Decimal = Field(Decimal("5.00"), ge=0)
    fine_grace_threshold: Decimal = Field(Decimal("100.00"), ge=0, description="Fines above this block checkout")
    suspension_threshold: Decimal = Field(Decimal("500.00"), ge=0, description="Fines above this suspend the member")
    damage_fee_ratio: Decimal = Field(Decimal("0.50"), ge=0, description="Share of replacement cost charged for damage")
    fine_due_days: int = Field(30, ge=0)
    reservation_claim_days: int = Field(7, ge=1)
    default_wait_days: int = Field(14, ge=1, description="Loan length assumed when a book has no return history")
    popularity_window_days: int = Field(30, ge=1)
    popularity_checkout_weight: int = Field(10, ge=0)
    popularity_rating_weight: int = Field(20, ge=0)
    recommendation_categories: int = Field(3, ge=1)
    stats_cache_ttl_seconds: int = Field(300, ge=0)
    database_url: str = Field("sqlite:///library.db", description="SQLAlchemy URL of the catalog store")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file=None) -> "Settings":
        load_dotenv(env_file)
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls(**values)


def configure_logging(level="INFO") -> logging.Logger:
    logger = logging.getLogger("library")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
