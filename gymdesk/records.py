"""Row lookups and response shapes shared by the API and the check-in flow."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from gymdesk.membership import MembershipStatus, compute_membership_status
from gymdesk.models import (
    CheckIn,
    Member,
    Membership,
    Product,
    Profile,
    Shift,
    SoldCoupon,
    Transaction,
)

logger = logging.getLogger(__name__)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit once at the end, or roll back every write of the block."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def money(value) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def require_profile(db: Session, profile_id: int) -> Profile:
    profile = db.get(Profile, profile_id)
    if not profile:
        raise HTTPException(status_code=400, detail="invalid staff profile")
    return profile


def lock_active_shift(db: Session, shift_id: int) -> Shift:
    """Lock the shift row for this transaction and make sure it still takes sales."""
    shift = db.query(Shift).filter(Shift.id == shift_id).with_for_update().first()
    if not shift:
        raise HTTPException(status_code=404, detail="shift not found")
    if shift.status != "ACTIVE":
        logger.warning("rejected write against closed shift %s", shift_id)
        raise HTTPException(status_code=409, detail="shift is closed")
    return shift


def record_transaction(
    db: Session,
    shift: Shift,
    amount: Decimal,
    payment_method: str,
    type_: str,
    processed_by: int,
    now: datetime,
    related_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> Transaction:
    transaction = Transaction(
        shift_id=shift.id,
        amount=amount,
        payment_method=payment_method,
        type=type_,
        related_id=related_id,
        processed_by=processed_by,
        status="PAID",
        notes=notes,
        created_at=now,
    )
    db.add(transaction)
    db.flush()
    return transaction


def current_membership(db: Session, member_id: int) -> Optional[Membership]:
    return (
        db.query(Membership)
        .filter(Membership.member_id == member_id, Membership.status == "ACTIVE")
        .order_by(Membership.end_date.desc())
        .first()
    )


def member_status(
    db: Session, member: Member, today: date, grace_period_days: int
) -> tuple[MembershipStatus, Optional[Membership]]:
    membership = current_membership(db, member.id)
    status = compute_membership_status(
        membership.end_date if membership else None, today, grace_period_days
    )
    return status, membership


def membership_data(membership: Membership) -> dict:
    return {
        "membership_id": membership.id,
        "member_id": membership.member_id,
        "plan_id": membership.plan_id,
        "start_date": membership.start_date.isoformat(),
        "end_date": membership.end_date.isoformat(),
        "status": membership.status,
    }


def member_data(
    member: Member, status: MembershipStatus, membership: Optional[Membership] = None
) -> dict:
    return {
        "member_id": member.id,
        "member_id_string": member.member_id_string,
        "full_name": member.full_name,
        "ic_passport_number": member.ic_passport_number,
        "phone_number": member.phone_number,
        "email": member.email,
        "photo_url": member.photo_url,
        "join_date": member.join_date.isoformat(),
        "status": status.status,
        "days_until_expiry": status.days_until_expiry,
        "current_membership": membership_data(membership) if membership else None,
    }


def transaction_data(transaction: Transaction) -> dict:
    return {
        "transaction_id": transaction.id,
        "shift_id": transaction.shift_id,
        "amount": money(transaction.amount),
        "payment_method": transaction.payment_method,
        "type": transaction.type,
        "related_id": transaction.related_id,
        "processed_by": transaction.processed_by,
        "status": transaction.status,
        "notes": transaction.notes,
        "created_at": transaction.created_at.isoformat(),
    }


def check_in_data(check_in: CheckIn) -> dict:
    return {
        "check_in_id": check_in.id,
        "shift_id": check_in.shift_id,
        "type": check_in.type,
        "member_id": check_in.member_id,
        "sold_coupon_id": check_in.sold_coupon_id,
        "transaction_id": check_in.transaction_id,
        "processed_by": check_in.processed_by,
        "notes": check_in.notes,
        "check_in_time": check_in.check_in_time.isoformat(),
    }


def coupon_data(coupon: SoldCoupon) -> dict:
    return {
        "sold_coupon_id": coupon.id,
        "template_id": coupon.template_id,
        "code": coupon.code,
        "member_id": coupon.member_id,
        "customer_name": coupon.customer_name,
        "purchase_date": coupon.purchase_date.isoformat(),
        "expiry_date": coupon.expiry_date.isoformat(),
        "entries_remaining": coupon.entries_remaining,
    }


def product_data(product: Product) -> dict:
    return {
        "product_id": product.id,
        "name": product.name,
        "price": money(product.price),
        "current_stock": product.current_stock,
        "photo_url": product.photo_url,
        "is_active": product.is_active,
    }


def shift_data(shift: Shift) -> dict:
    return {
        "shift_id": shift.id,
        "status": shift.status,
        "start_time": shift.start_time.isoformat(),
        "end_time": shift.end_time.isoformat() if shift.end_time else None,
        "starting_staff_id": shift.starting_staff_id,
        "ending_staff_id": shift.ending_staff_id,
        "starting_cash_float": money(shift.starting_cash_float),
        "ending_cash_balance": money(shift.ending_cash_balance),
        "system_calculated_cash": money(shift.system_calculated_cash),
        "cash_discrepancy": money(shift.cash_discrepancy),
        "handover_notes": shift.handover_notes,
        "next_shift_id": shift.next_shift_id,
    }
