"""
Configuration for the circulation engine and the service around it.

Business constants live on ``LibraryPolicy`` (validated with pydantic);
service settings come straight from the environment.
"""

import logging
import os
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

ENV_PREFIX = "LIBRARY_"


class LibraryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    loan_period_days: int = Field(14, gt=0, description="Default loan length")
    per_diem_rate: float = Field(0.50, ge=0, description="Fine per day late")
    damaged_surcharge: float = Field(10.00, ge=0, description="Flat fee added for a damaged return")
    replacement_cost: float = Field(50.00, ge=0, description="Charge for a lost item, replaces the daily fine")
    hold_expiry_days: int = Field(7, gt=0, description="Nominal expiry of a pending hold")
    pickup_window_days: int = Field(7, gt=0, description="Days a ready hold waits for pickup")
    due_soon_boundaries: Tuple[int, ...] = Field((7, 3, 1), description="Days-before-due reminder points")
    overdue_boundaries: Tuple[int, ...] = Field((1, 7, 14), description="Days-past-due notice points")
    expiring_notice_days: int = Field(1, gt=0, description="Warn this many days before a pickup deadline")
    overdue_wait_days: int = Field(3, gt=0, description="Queue head's estimated wait while the loan is overdue")
    lock_timeout_seconds: float = Field(5.0, gt=0, description="Bounded wait for a per-item lock")

    @field_validator("due_soon_boundaries", "overdue_boundaries")
    @classmethod
    def _positive_boundaries(cls, value: Tuple[int, ...]) -> Tuple[int, ...]:
        if not value or any(day <= 0 for day in value):
            raise ValueError("boundaries must be a non-empty set of positive day counts")
        return tuple(sorted(set(value), reverse=True))

    @classmethod
    def from_env(cls) -> "LibraryPolicy":
        """Build a policy from ``LIBRARY_*`` variables over the defaults."""
        overrides = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            if field.annotation == Tuple[int, ...]:
                overrides[name] = tuple(int(part) for part in raw.split(",") if part.strip())
            else:
                overrides[name] = raw
        return cls(**overrides)


def sweep_enabled() -> bool:
    return os.getenv("SWEEP_ENABLED", "false").lower() in ("1", "true", "yes")


def sweep_interval_hours() -> float:
    return float(os.getenv("SWEEP_INTERVAL_HOURS", "24"))


def configure_logging(level: Optional[str] = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
