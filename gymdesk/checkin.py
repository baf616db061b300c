"""Check-in dispatch for members, coupons and walk-ins.

Every branch writes inside a single database transaction, so a failure
halfway (say, the check-in insert after the walk-in payment) leaves nothing
behind. Coupon entries are spent with a conditional UPDATE so two desks
scanning the same coupon cannot both use its last entry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal, Optional

from fastapi import HTTPException
from pydantic import BaseModel
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from gymdesk.gym_settings import GymSettings
from gymdesk.membership import STATUS_EXPIRED, STATUS_IN_GRACE, MembershipStatus
from gymdesk.models import CheckIn, Member, SoldCoupon, Transaction
from gymdesk.records import (
    atomic,
    lock_active_shift,
    member_status,
    record_transaction,
    require_profile,
)

logger = logging.getLogger(__name__)

CheckInType = Literal["MEMBER", "COUPON", "WALK_IN", "WALK_IN_STUDENT"]


class CheckInRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {'type': 'MEMBER', 'member_id': 12, 'shift_id': 3, 'processed_by': 1, 'confirm_duplicate': False}}}
    type: CheckInType
    shift_id: int
    processed_by: int
    member_id: Optional[int] = None
    sold_coupon_id: Optional[int] = None
    coupon_code: Optional[str] = None
    payment_method: str = "CASH"
    confirm_duplicate: bool = False
    notes: Optional[str] = None


@dataclass
class AccessCheck:
    valid: bool
    message: str
    member: Optional[Member] = None
    status: Optional[MembershipStatus] = None
    coupon: Optional[SoldCoupon] = None


@dataclass
class CheckInOutcome:
    check_in: CheckIn
    message: str
    warnings: list[str] = field(default_factory=list)
    member: Optional[Member] = None
    status: Optional[MembershipStatus] = None
    coupon: Optional[SoldCoupon] = None
    transaction: Optional[Transaction] = None


def member_access(db: Session, member: Member, settings: GymSettings, today: date) -> AccessCheck:
    status, _ = member_status(db, member, today, settings.grace_period_days)
    if status.status == STATUS_EXPIRED:
        return AccessCheck(False, "Membership expired. Please renew to access the gym.", member, status)
    if status.status == STATUS_IN_GRACE:
        return AccessCheck(
            True,
            f"Welcome {member.full_name}! Membership in grace period - please renew soon.",
            member,
            status,
        )
    return AccessCheck(True, f"Welcome {member.full_name}! Active membership.", member, status)


def validate_member_access(
    db: Session, member_id_string: str, settings: GymSettings, today: date
) -> AccessCheck:
    member = db.query(Member).filter(Member.member_id_string == member_id_string).first()
    if not member:
        return AccessCheck(False, "Member not found. Please check the member ID.")
    return member_access(db, member, settings, today)


def coupon_access(coupon: SoldCoupon, today: date) -> AccessCheck:
    if today > coupon.expiry_date:
        return AccessCheck(False, "Coupon has expired.", coupon=coupon)
    if coupon.entries_remaining <= 0:
        return AccessCheck(False, "Coupon has no remaining entries.", coupon=coupon)
    return AccessCheck(
        True, f"Valid coupon! {coupon.entries_remaining} entries remaining.", coupon=coupon
    )


def validate_coupon_access(db: Session, code: str, today: date) -> AccessCheck:
    coupon = db.query(SoldCoupon).filter(SoldCoupon.code == code).first()
    if not coupon:
        return AccessCheck(False, "Coupon not found. Please check the coupon code.")
    return coupon_access(coupon, today)


def _already_checked_in(db: Session, member_id: int, settings: GymSettings, today: date) -> bool:
    starts_at, ends_at = settings.day_bounds(today)
    return (
        db.query(CheckIn.id)
        .filter(
            CheckIn.member_id == member_id,
            CheckIn.check_in_time >= starts_at,
            CheckIn.check_in_time < ends_at,
        )
        .first()
        is not None
    )


def _member_check_in(
    db: Session, payload: CheckInRequest, settings: GymSettings, now: datetime
) -> CheckInOutcome:
    if payload.member_id is None:
        raise HTTPException(status_code=400, detail="member_id is required for member check-in")
    member = db.get(Member, payload.member_id)
    if not member:
        raise HTTPException(status_code=404, detail="member not found")
    today = settings.today(now)
    access = member_access(db, member, settings, today)
    if not access.valid:
        logger.info("member %s refused at check-in: %s", member.member_id_string, access.status.status)
        raise HTTPException(status_code=403, detail="membership expired")

    warnings: list[str] = []
    if access.status.status == STATUS_IN_GRACE:
        warnings.append("membership_in_grace")
    if _already_checked_in(db, member.id, settings, today):
        if not payload.confirm_duplicate:
            raise HTTPException(status_code=409, detail="duplicate_check_in")
        warnings.append("duplicate_check_in")

    with atomic(db):
        lock_active_shift(db, payload.shift_id)
        check_in = CheckIn(
            shift_id=payload.shift_id,
            type="MEMBER",
            member_id=member.id,
            processed_by=payload.processed_by,
            notes=payload.notes,
            check_in_time=now,
        )
        db.add(check_in)
    db.refresh(check_in)
    return CheckInOutcome(
        check_in=check_in,
        message=access.message,
        warnings=warnings,
        member=member,
        status=access.status,
    )


def _coupon_check_in(
    db: Session, payload: CheckInRequest, settings: GymSettings, now: datetime
) -> CheckInOutcome:
    if payload.sold_coupon_id is not None:
        coupon = db.get(SoldCoupon, payload.sold_coupon_id)
    elif payload.coupon_code:
        coupon = db.query(SoldCoupon).filter(SoldCoupon.code == payload.coupon_code).first()
    else:
        raise HTTPException(status_code=400, detail="sold_coupon_id or coupon_code is required")
    if not coupon:
        raise HTTPException(status_code=404, detail="coupon not found")
    today = settings.today(now)
    access = coupon_access(coupon, today)
    if not access.valid:
        logger.info("coupon %s refused at check-in: %s", coupon.code, access.message)
        raise HTTPException(status_code=403, detail=access.message)

    with atomic(db):
        lock_active_shift(db, payload.shift_id)
        spent = db.execute(
            update(SoldCoupon)
            .where(
                SoldCoupon.id == coupon.id,
                SoldCoupon.entries_remaining > 0,
                SoldCoupon.expiry_date >= today,
            )
            .values(entries_remaining=SoldCoupon.entries_remaining - 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if spent.rowcount != 1:
            logger.warning("coupon %s lost a concurrent check-in race", coupon.code)
            raise HTTPException(status_code=403, detail="Coupon has no remaining entries.")
        check_in = CheckIn(
            shift_id=payload.shift_id,
            type="COUPON",
            member_id=coupon.member_id,
            sold_coupon_id=coupon.id,
            processed_by=payload.processed_by,
            notes=payload.notes,
            check_in_time=now,
        )
        db.add(check_in)
    db.refresh(coupon)
    db.refresh(check_in)
    return CheckInOutcome(
        check_in=check_in,
        message=f"Check-in successful! {coupon.entries_remaining} entries remaining.",
        coupon=coupon,
    )


def _walk_in_check_in(
    db: Session, payload: CheckInRequest, settings: GymSettings, now: datetime
) -> CheckInOutcome:
    student = payload.type == "WALK_IN_STUDENT"
    rate = settings.walk_in_student_rate if student else settings.walk_in_rate
    notes = payload.notes
    if student:
        notes = f"Student walk-in. {notes}" if notes else "Student walk-in"

    with atomic(db):
        shift = lock_active_shift(db, payload.shift_id)
        transaction = record_transaction(
            db,
            shift,
            amount=rate,
            payment_method=payload.payment_method,
            type_="WALK_IN",
            processed_by=payload.processed_by,
            now=now,
            notes=notes,
        )
        check_in = CheckIn(
            shift_id=shift.id,
            type=payload.type,
            transaction_id=transaction.id,
            processed_by=payload.processed_by,
            notes=notes,
            check_in_time=now,
        )
        db.add(check_in)
    db.refresh(check_in)
    db.refresh(transaction)
    return CheckInOutcome(
        check_in=check_in,
        message=f"Walk-in check-in successful! Payment: RM{rate:.2f}",
        transaction=transaction,
    )


_BRANCHES = {
    "MEMBER": _member_check_in,
    "COUPON": _coupon_check_in,
    "WALK_IN": _walk_in_check_in,
    "WALK_IN_STUDENT": _walk_in_check_in,
}


def process_check_in(
    db: Session, payload: CheckInRequest, settings: GymSettings, now: datetime
) -> CheckInOutcome:
    require_profile(db, payload.processed_by)
    outcome = _BRANCHES[payload.type](db, payload, settings, now)
    logger.info("check-in %s recorded (%s) on shift %s", outcome.check_in.id, payload.type, payload.shift_id)
    return outcome


def check_in_window(db: Session, shift_id: Optional[int], settings: GymSettings, today: date):
    query = db.query(CheckIn)
    if shift_id is not None:
        return query.filter(CheckIn.shift_id == shift_id)
    starts_at, ends_at = settings.day_bounds(today)
    return query.filter(CheckIn.check_in_time >= starts_at, CheckIn.check_in_time < ends_at)


def check_in_stats(db: Session, shift_id: Optional[int], settings: GymSettings, today: date) -> dict:
    counts = dict(
        check_in_window(db, shift_id, settings, today)
        .with_entities(CheckIn.type, func.count(CheckIn.id))
        .group_by(CheckIn.type)
        .all()
    )
    revenue_query = db.query(func.coalesce(func.sum(Transaction.amount), 0)).filter(
        Transaction.type == "WALK_IN"
    )
    if shift_id is not None:
        revenue_query = revenue_query.filter(Transaction.shift_id == shift_id)
    else:
        starts_at, ends_at = settings.day_bounds(today)
        revenue_query = revenue_query.filter(
            Transaction.created_at >= starts_at, Transaction.created_at < ends_at
        )
    return {
        "total": sum(counts.values()),
        "members": counts.get("MEMBER", 0),
        "coupons": counts.get("COUPON", 0),
        "walk_ins": counts.get("WALK_IN", 0) + counts.get("WALK_IN_STUDENT", 0),
        "revenue": float(revenue_query.scalar() or 0),
    }
