"""Typed view over the ``system_settings`` key/value rows."""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.orm import Session

from gymdesk.membership import DEFAULT_GRACE_PERIOD_DAYS
from gymdesk.models import SystemSetting

logger = logging.getLogger(__name__)


class GymSettings(BaseModel):
    gym_name: str = "FMF Gym"
    gym_address: str = "123 Fitness Street, City, State 12345"
    gym_phone: str = "+60 12-345 6789"
    gym_email: str = "info@fmfgym.com"
    timezone: str = "Asia/Kuala_Lumpur"

    walk_in_rate: Decimal = Field(default=Decimal("15.00"), ge=0)
    walk_in_student_rate: Decimal = Field(default=Decimal("8.00"), ge=0)
    registration_fee_default: Decimal = Field(default=Decimal("50.00"), ge=0)
    grace_period_days: int = Field(default=DEFAULT_GRACE_PERIOD_DAYS, ge=0)
    late_fee_amount: Decimal = Field(default=Decimal("10.00"), ge=0)

    email_notifications: bool = False
    sms_notifications: bool = False
    expiry_reminder_days: int = Field(default=7, ge=0)
    low_stock_threshold: int = Field(default=10, ge=0)

    session_timeout: int = Field(default=60, gt=0)
    require_password_change: bool = False
    two_factor_auth: bool = False

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def today(self, now: Optional[datetime] = None) -> date:
        now = now or datetime.now(timezone.utc)
        return now.astimezone(self.tz).date()

    def day_bounds(self, target_date: date) -> tuple[datetime, datetime]:
        """UTC [start, end) of ``target_date`` in the gym's timezone."""
        starts_at = datetime.combine(target_date, time.min, tzinfo=self.tz)
        ends_at = starts_at + timedelta(days=1)
        return starts_at.astimezone(timezone.utc), ends_at.astimezone(timezone.utc)


SETTING_DESCRIPTIONS = {
    "gym_name": "Gym name displayed throughout the system",
    "gym_address": "Physical address of the gym",
    "gym_phone": "Primary contact phone number",
    "gym_email": "Primary contact email address",
    "timezone": "System timezone for date/time display",
    "walk_in_rate": "Daily rate for walk-in gym access",
    "walk_in_student_rate": "Daily rate for student walk-in gym access",
    "registration_fee_default": "Default one-time registration fee for new members",
    "grace_period_days": "Number of days members can access gym after membership expires",
    "late_fee_amount": "Late fee amount for overdue payments",
    "email_notifications": "Enable email notifications",
    "sms_notifications": "Enable SMS notifications",
    "expiry_reminder_days": "Days before membership expiry to send reminders",
    "low_stock_threshold": "Stock level threshold for low stock alerts",
    "session_timeout": "Session timeout in minutes",
    "require_password_change": "Force users to change password on next login",
    "two_factor_auth": "Require two-factor authentication for all staff accounts",
}


def parse_settings(raw: dict[str, str]) -> GymSettings:
    """Build settings from stored strings, defaulting any key that does not validate."""
    values = {key: value for key, value in raw.items() if key in GymSettings.model_fields}
    while True:
        try:
            return GymSettings.model_validate(values)
        except ValidationError as exc:
            bad_keys = {str(error["loc"][0]) for error in exc.errors() if error["loc"]}
            if not bad_keys & values.keys():
                raise
            for key in bad_keys & values.keys():
                logger.warning(
                    "invalid system setting %s=%r, using default %r",
                    key,
                    values.pop(key),
                    GymSettings.model_fields[key].default,
                )


def serialize_setting(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def load_gym_settings(db: Session) -> GymSettings:
    rows = db.query(SystemSetting).all()
    return parse_settings({row.key: row.value for row in rows})


def upsert_setting(db: Session, key: str, value: str, description: Optional[str] = None) -> SystemSetting:
    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if row is None:
        row = SystemSetting(key=key, value=value, description=description)
        db.add(row)
    else:
        row.value = value
        if description is not None:
            row.description = description
    return row


def save_gym_settings(db: Session, settings: GymSettings) -> None:
    for key, value in settings.model_dump().items():
        upsert_setting(db, key, serialize_setting(value), SETTING_DESCRIPTIONS.get(key))
