from __future__ import annotations

import re
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Optional
from uuid import uuid4

from dateutil.relativedelta import relativedelta
from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gymdesk.checkin import (
    CheckInRequest,
    check_in_stats,
    check_in_window,
    process_check_in,
    validate_coupon_access,
    validate_member_access,
)
from gymdesk.db import SessionLocal
from gymdesk.gym_settings import (
    SETTING_DESCRIPTIONS,
    GymSettings,
    load_gym_settings,
    save_gym_settings,
    upsert_setting,
)
from gymdesk.logger import init_log
from gymdesk.membership import (
    STATUS_ACTIVE,
    compute_membership_status,
    membership_end_date,
    renewal_start_date,
)
from gymdesk.models import (
    CheckIn,
    CouponTemplate,
    Member,
    Membership,
    MembershipPlan,
    Product,
    Profile,
    Shift,
    SoldCoupon,
    StockMovement,
    SystemSetting,
    Transaction,
)
from gymdesk.reconciliation import discrepancy_message, reconcile_shift
from gymdesk.records import (
    atomic,
    check_in_data,
    coupon_data,
    current_membership,
    lock_active_shift,
    member_data,
    member_status,
    membership_data,
    money,
    product_data,
    record_transaction,
    require_profile,
    shift_data,
    transaction_data,
)

logger = init_log(__name__)

app = FastAPI(title="Gym Desk")

COUPON_VALIDITY_MONTHS = 3


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_now() -> datetime:
    return _now()


def get_gym_settings(db: Session = Depends(get_db)) -> GymSettings:
    return load_gym_settings(db)


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _next_code(codes: list[str], pattern: str) -> str:
    numbers = [int(match.group(1)) for code in codes if (match := re.search(pattern, code or ""))]
    return str(max(numbers, default=0) + 1).zfill(4)


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


# Profiles


class ProfileCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'full_name': 'Aina', 'role': 'CS'}}}
    full_name: str
    role: Literal["ADMIN", "CS"] = "CS"


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    role: Optional[Literal["ADMIN", "CS"]] = None


def _profile_data(profile: Profile) -> dict:
    return {"profile_id": profile.id, "full_name": profile.full_name, "role": profile.role}


@app.post("/api/v1/profiles", tags=["Profiles"])
def create_profile(payload: ProfileCreate, db: Session = Depends(get_db)) -> dict:
    profile = Profile(full_name=payload.full_name, role=payload.role)
    db.add(profile)
    db.commit()
    db.refresh(profile)
    return {"data": _profile_data(profile), "meta": _meta()}


@app.get("/api/v1/profiles/{profile_id}", tags=["Profiles"])
def get_profile(profile_id: int, db: Session = Depends(get_db)) -> dict:
    profile = db.get(Profile, profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="profile not found")
    return {"data": _profile_data(profile), "meta": _meta()}


@app.patch("/api/v1/profiles/{profile_id}", tags=["Profiles"])
def update_profile(profile_id: int, payload: ProfileUpdate, db: Session = Depends(get_db)) -> dict:
    profile = db.get(Profile, profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="profile not found")
    for name, value in payload.model_dump(exclude_unset=True).items():
        if not value or (name == "full_name" and not value.strip()):
            raise HTTPException(status_code=400, detail=f"{name} cannot be empty")
        setattr(profile, name, value)
    db.commit()
    db.refresh(profile)
    logger.info("profile %s updated", profile.id)
    return {"data": _profile_data(profile), "meta": _meta()}


@app.get("/api/v1/profiles", tags=["Profiles"])
def list_profiles(
    role: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Profile)
    if role is not None:
        query = query.filter(Profile.role == role)
    profiles, next_cursor = _paginate_by_id(query, Profile, limit, cursor)
    return {
        "data": [_profile_data(profile) for profile in profiles],
        "meta": _list_meta(limit, cursor, next_cursor),
    }


# Settings


def _settings_data(settings: GymSettings) -> dict:
    return {
        key: float(value) if isinstance(value, Decimal) else value
        for key, value in settings.model_dump().items()
    }


class SettingUpsert(BaseModel):
    model_config = {"json_schema_extra": {"example": {'value': '10', 'description': 'Grace period in days'}}}
    value: str
    description: Optional[str] = None


@app.get("/api/v1/settings", tags=["Settings"])
def get_settings(settings: GymSettings = Depends(get_gym_settings)) -> dict:
    return {"data": _settings_data(settings), "meta": _meta()}


@app.put("/api/v1/settings", tags=["Settings"])
def update_settings(payload: GymSettings, db: Session = Depends(get_db)) -> dict:
    with atomic(db):
        save_gym_settings(db, payload)
    logger.info("system settings updated")
    return {"data": _settings_data(payload), "meta": _meta()}


@app.get("/api/v1/settings/{key}", tags=["Settings"])
def get_setting(key: str, db: Session = Depends(get_db)) -> dict:
    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if not row:
        raise HTTPException(status_code=404, detail="setting not found")
    return {
        "data": {"key": row.key, "value": row.value, "description": row.description},
        "meta": _meta(),
    }


@app.put("/api/v1/settings/{key}", tags=["Settings"])
def put_setting(key: str, payload: SettingUpsert, db: Session = Depends(get_db)) -> dict:
    if key in GymSettings.model_fields:
        try:
            GymSettings.model_validate({key: payload.value})
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=f"invalid value for {key}") from exc
    with atomic(db):
        row = upsert_setting(db, key, payload.value, payload.description or SETTING_DESCRIPTIONS.get(key))
    db.refresh(row)
    return {
        "data": {"key": row.key, "value": row.value, "description": row.description},
        "meta": _meta(),
    }


# Members


class MemberCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'full_name': 'Nur Iman', 'phone_number': '+60 12-111 2222', 'ic_passport_number': '900101-14-5678'}}}
    member_id_string: Optional[str] = None
    full_name: str
    ic_passport_number: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    photo_url: Optional[str] = None
    join_date: Optional[date] = None


class MemberUpdate(BaseModel):
    member_id_string: Optional[str] = None
    full_name: Optional[str] = None
    ic_passport_number: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    photo_url: Optional[str] = None


def _generate_member_id(db: Session) -> str:
    codes = [row[0] for row in db.query(Member.member_id_string).all()]
    return _next_code(codes, r"^(\d+)$")


def _member_payload(db: Session, member: Member, settings: GymSettings, today: date) -> dict:
    status, membership = member_status(db, member, today, settings.grace_period_days)
    return member_data(member, status, membership)


def _current_memberships(db: Session, member_ids: list[int]) -> dict[int, Membership]:
    current: dict[int, Membership] = {}
    if not member_ids:
        return current
    rows = (
        db.query(Membership)
        .filter(Membership.member_id.in_(member_ids), Membership.status == "ACTIVE")
        .order_by(Membership.end_date)
        .all()
    )
    for membership in rows:
        current[membership.member_id] = membership
    return current


@app.post("/api/v1/members", tags=["Members"])
def create_member(
    payload: MemberCreate,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    today = settings.today(now)
    member_id_string = (payload.member_id_string or "").strip() or _generate_member_id(db)
    member = Member(
        member_id_string=member_id_string,
        full_name=payload.full_name,
        ic_passport_number=payload.ic_passport_number,
        phone_number=payload.phone_number,
        email=payload.email,
        photo_url=payload.photo_url,
        join_date=payload.join_date or today,
    )
    db.add(member)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="member id already exists") from exc
    db.refresh(member)
    logger.info("member %s registered", member.member_id_string)
    return {"data": _member_payload(db, member, settings, today), "meta": _meta()}


@app.get("/api/v1/members/by-code/{member_id_string}", tags=["Members"])
def get_member_by_code(
    member_id_string: str,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    member = db.query(Member).filter(Member.member_id_string == member_id_string).first()
    if not member:
        raise HTTPException(status_code=404, detail="member not found")
    return {"data": _member_payload(db, member, settings, settings.today(now)), "meta": _meta()}


@app.get("/api/v1/members/{member_id}", tags=["Members"])
def get_member(
    member_id: int,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    member = db.get(Member, member_id)
    if not member:
        raise HTTPException(status_code=404, detail="member not found")
    return {"data": _member_payload(db, member, settings, settings.today(now)), "meta": _meta()}


@app.get("/api/v1/members", tags=["Members"])
def list_members(
    q: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    query = db.query(Member)
    if q:
        pattern = f"%{q}%"
        query = query.filter(
            or_(
                Member.full_name.ilike(pattern),
                Member.member_id_string.ilike(pattern),
                Member.email.ilike(pattern),
            )
        )
    members, next_cursor = _paginate_by_id(query, Member, limit, cursor)
    today = settings.today(now)
    memberships = _current_memberships(db, [member.id for member in members])
    data = []
    for member in members:
        membership = memberships.get(member.id)
        status = compute_membership_status(
            membership.end_date if membership else None, today, settings.grace_period_days
        )
        data.append(member_data(member, status, membership))
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.patch("/api/v1/members/{member_id}", tags=["Members"])
def update_member(
    member_id: int,
    payload: MemberUpdate,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    member = db.get(Member, member_id)
    if not member:
        raise HTTPException(status_code=404, detail="member not found")
    for name, value in payload.model_dump(exclude_unset=True).items():
        if name in ("member_id_string", "full_name") and not value:
            raise HTTPException(status_code=400, detail=f"{name} cannot be empty")
        setattr(member, name, value)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="member id already exists") from exc
    db.refresh(member)
    return {"data": _member_payload(db, member, settings, settings.today(now)), "meta": _meta()}


# Membership plans


class MembershipPlanCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Monthly', 'price': 120.0, 'duration_months': 1, 'has_registration_fee': True, 'free_months_on_signup': 0, 'is_active': True}}}
    name: str
    price: Decimal = Field(ge=0)
    duration_months: int = Field(gt=0)
    has_registration_fee: bool = False
    free_months_on_signup: int = Field(default=0, ge=0)
    is_active: bool = True


class MembershipPlanUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    duration_months: Optional[int] = Field(default=None, gt=0)
    has_registration_fee: Optional[bool] = None
    free_months_on_signup: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


def _plan_data(plan: MembershipPlan) -> dict:
    return {
        "plan_id": plan.id,
        "name": plan.name,
        "price": money(plan.price),
        "duration_months": plan.duration_months,
        "has_registration_fee": plan.has_registration_fee,
        "free_months_on_signup": plan.free_months_on_signup,
        "is_active": plan.is_active,
    }


@app.post("/api/v1/membership-plans", tags=["Membership Plans"])
def create_membership_plan(payload: MembershipPlanCreate, db: Session = Depends(get_db)) -> dict:
    plan = MembershipPlan(**payload.model_dump())
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return {"data": _plan_data(plan), "meta": _meta()}


@app.get("/api/v1/membership-plans", tags=["Membership Plans"])
def list_membership_plans(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(MembershipPlan)
    if not include_inactive:
        query = query.filter(MembershipPlan.is_active.is_(True))
    plans = query.order_by(MembershipPlan.price, MembershipPlan.id).all()
    return {"data": [_plan_data(plan) for plan in plans], "meta": _meta()}


@app.patch("/api/v1/membership-plans/{plan_id}", tags=["Membership Plans"])
def update_membership_plan(
    plan_id: int, payload: MembershipPlanUpdate, db: Session = Depends(get_db)
) -> dict:
    plan = db.get(MembershipPlan, plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="membership plan not found")
    for name, value in payload.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(plan, name, value)
    db.commit()
    db.refresh(plan)
    return {"data": _plan_data(plan), "meta": _meta()}


@app.delete("/api/v1/membership-plans/{plan_id}", tags=["Membership Plans"])
def delete_membership_plan(plan_id: int, db: Session = Depends(get_db)) -> dict:
    plan = db.get(MembershipPlan, plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="membership plan not found")
    in_use = (
        db.query(Membership.id)
        .filter(Membership.plan_id == plan_id, Membership.status == "ACTIVE")
        .first()
    )
    if in_use:
        raise HTTPException(
            status_code=409,
            detail="plan has active memberships, deactivate it instead",
        )
    plan.is_active = False
    db.commit()
    db.refresh(plan)
    return {"data": _plan_data(plan), "meta": _meta()}


# Memberships


class MembershipPurchase(BaseModel):
    model_config = {"json_schema_extra": {"example": {'member_id': 12, 'plan_id': 2, 'payment_method': 'CASH', 'shift_id': 3, 'processed_by': 1, 'is_renewal': False}}}
    member_id: int
    plan_id: int
    payment_method: str
    shift_id: int
    processed_by: int
    is_renewal: bool = False


@app.post("/api/v1/memberships:purchase", tags=["Memberships"])
def purchase_membership(
    payload: MembershipPurchase,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    require_profile(db, payload.processed_by)
    plan = db.get(MembershipPlan, payload.plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="membership plan not found")
    if not plan.is_active:
        raise HTTPException(status_code=400, detail="membership plan is not active")
    member = db.get(Member, payload.member_id)
    if not member:
        raise HTTPException(status_code=404, detail="member not found")

    today = settings.today(now)
    with atomic(db):
        shift = lock_active_shift(db, payload.shift_id)
        status, previous = member_status(db, member, today, settings.grace_period_days)
        start_date = today
        if payload.is_renewal and previous is not None:
            start_date = renewal_start_date(previous.end_date, status.status, today)
        end_date = membership_end_date(start_date, plan.duration_months, plan.free_months_on_signup)

        # At most one ACTIVE membership per member.
        db.query(Membership).filter(
            Membership.member_id == member.id, Membership.status == "ACTIVE"
        ).update({"status": "EXPIRED", "updated_at": now}, synchronize_session=False)
        membership = Membership(
            member_id=member.id,
            plan_id=plan.id,
            start_date=start_date,
            end_date=end_date,
            status="ACTIVE",
        )
        db.add(membership)
        db.flush()

        transactions = [
            record_transaction(
                db,
                shift,
                amount=plan.price,
                payment_method=payload.payment_method,
                type_="MEMBERSHIP",
                processed_by=payload.processed_by,
                now=now,
                related_id=membership.id,
            )
        ]
        if not payload.is_renewal and plan.has_registration_fee:
            transactions.append(
                record_transaction(
                    db,
                    shift,
                    amount=settings.registration_fee_default,
                    payment_method=payload.payment_method,
                    type_="REGISTRATION_FEE",
                    processed_by=payload.processed_by,
                    now=now,
                    related_id=member.id,
                )
            )
    db.refresh(membership)
    logger.info(
        "membership %s sold to %s (%s to %s)",
        membership.id,
        member.member_id_string,
        membership.start_date,
        membership.end_date,
    )
    return {
        "data": {
            "membership": membership_data(membership),
            "transactions": [transaction_data(transaction) for transaction in transactions],
        },
        "meta": _meta(),
    }


# Shifts


class ShiftStart(BaseModel):
    model_config = {"json_schema_extra": {"example": {'starting_staff_id': 1, 'starting_cash_float': 100.0}}}
    starting_staff_id: int
    starting_cash_float: Decimal = Field(ge=0)


class ShiftEnd(BaseModel):
    model_config = {"json_schema_extra": {"example": {'ending_staff_id': 1, 'ending_cash_balance': 340.0, 'handover_notes': 'Till short, see CCTV'}}}
    ending_staff_id: int
    ending_cash_balance: Decimal = Field(ge=0)
    handover_notes: Optional[str] = None


class ShiftHandover(BaseModel):
    next_shift_id: int
    handover_notes: Optional[str] = None


@app.post("/api/v1/shifts:start", tags=["Shifts"])
def start_shift(
    payload: ShiftStart,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> dict:
    require_profile(db, payload.starting_staff_id)
    existing = (
        db.query(Shift.id)
        .filter(Shift.starting_staff_id == payload.starting_staff_id, Shift.status == "ACTIVE")
        .first()
    )
    if existing:
        raise HTTPException(
            status_code=409,
            detail="staff member already has an active shift",
        )
    shift = Shift(
        starting_staff_id=payload.starting_staff_id,
        starting_cash_float=payload.starting_cash_float,
        start_time=now,
        status="ACTIVE",
    )
    db.add(shift)
    db.commit()
    db.refresh(shift)
    logger.info("shift %s started by staff %s", shift.id, shift.starting_staff_id)
    return {"data": shift_data(shift), "meta": _meta()}


@app.post("/api/v1/shifts/{shift_id}/end", tags=["Shifts"])
def end_shift(
    shift_id: int,
    payload: ShiftEnd,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> dict:
    require_profile(db, payload.ending_staff_id)
    with atomic(db):
        # Sales and check-ins take the same row lock, so none can slip in after the snapshot.
        shift = lock_active_shift(db, shift_id)
        transactions = db.query(Transaction).filter(Transaction.shift_id == shift.id).all()
        result = reconcile_shift(shift.starting_cash_float, transactions, payload.ending_cash_balance)
        shift.end_time = now
        shift.ending_staff_id = payload.ending_staff_id
        shift.ending_cash_balance = payload.ending_cash_balance
        shift.system_calculated_cash = result.system_calculated_cash
        shift.cash_discrepancy = result.cash_discrepancy
        shift.handover_notes = payload.handover_notes
        shift.status = "CLOSED"
    db.refresh(shift)
    message = discrepancy_message(result.cash_discrepancy)
    warnings = []
    if not result.is_balanced:
        warnings.append(message)
        logger.warning("shift %s closed with %s", shift.id, message)
    else:
        logger.info("shift %s closed balanced", shift.id)
    data = shift_data(shift)
    data["total_revenue"] = money(result.total_revenue)
    data["message"] = f"Shift ended successfully. {message}"
    return {"data": data, "meta": _meta(warnings=warnings)}


@app.post("/api/v1/shifts/{shift_id}/handover", tags=["Shifts"])
def link_shift_handover(shift_id: int, payload: ShiftHandover, db: Session = Depends(get_db)) -> dict:
    shift = db.get(Shift, shift_id)
    if not shift:
        raise HTTPException(status_code=404, detail="shift not found")
    if shift.status != "CLOSED":
        raise HTTPException(status_code=409, detail="only closed shifts can be handed over")
    if payload.next_shift_id == shift.id or not db.get(Shift, payload.next_shift_id):
        raise HTTPException(status_code=400, detail="invalid next_shift_id")
    shift.next_shift_id = payload.next_shift_id
    if payload.handover_notes is not None:
        shift.handover_notes = payload.handover_notes
    db.commit()
    db.refresh(shift)
    return {"data": shift_data(shift), "meta": _meta()}


@app.get("/api/v1/shifts/active", tags=["Shifts"])
def list_active_shifts(
    staff_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Shift).filter(Shift.status == "ACTIVE")
    if staff_id is not None:
        query = query.filter(Shift.starting_staff_id == staff_id)
    shifts = query.order_by(Shift.start_time.desc()).all()
    return {"data": [shift_data(shift) for shift in shifts], "meta": _meta()}


@app.get("/api/v1/shifts/history", tags=["Shifts"])
def shift_history(
    limit: int = Query(default=10, ge=1, le=200),
    db: Session = Depends(get_db),
) -> dict:
    shifts = (
        db.query(Shift)
        .filter(Shift.status == "CLOSED")
        .order_by(Shift.start_time.desc(), Shift.id.desc())
        .limit(limit)
        .all()
    )
    return {"data": [shift_data(shift) for shift in shifts], "meta": _meta()}


@app.get("/api/v1/shifts/{shift_id}", tags=["Shifts"])
def get_shift(shift_id: int, db: Session = Depends(get_db)) -> dict:
    shift = db.get(Shift, shift_id)
    if not shift:
        raise HTTPException(status_code=404, detail="shift not found")
    return {"data": shift_data(shift), "meta": _meta()}


@app.get("/api/v1/shifts/{shift_id}/stats", tags=["Shifts"])
def get_shift_stats(shift_id: int, db: Session = Depends(get_db)) -> dict:
    if not db.get(Shift, shift_id):
        raise HTTPException(status_code=404, detail="shift not found")
    transactions = db.query(Transaction).filter(Transaction.shift_id == shift_id).all()
    check_ins = db.query(func.count(CheckIn.id)).filter(CheckIn.shift_id == shift_id).scalar()
    return {
        "data": {
            "shift_id": shift_id,
            "total_transactions": len(transactions),
            "total_revenue": float(sum((t.amount for t in transactions), Decimal("0"))),
            "check_ins": check_ins or 0,
            "sales_count": sum(1 for t in transactions if t.type == "POS_SALE"),
        },
        "meta": _meta(),
    }


@app.get("/api/v1/transactions", tags=["Transactions"])
def list_transactions(
    shift_id: Optional[int] = Query(default=None),
    type: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Transaction)
    if shift_id is not None:
        query = query.filter(Transaction.shift_id == shift_id)
    if type is not None:
        query = query.filter(Transaction.type == type)
    transactions, next_cursor = _paginate_by_id(query, Transaction, limit, cursor)
    return {
        "data": [transaction_data(transaction) for transaction in transactions],
        "meta": _list_meta(limit, cursor, next_cursor),
    }


# Check-ins


@app.post("/api/v1/check-ins", tags=["Check-ins"])
def create_check_in(
    payload: CheckInRequest,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    outcome = process_check_in(db, payload, settings, now)
    data = {"check_in": check_in_data(outcome.check_in), "message": outcome.message}
    if outcome.member is not None:
        data["member"] = {
            "member_id": outcome.member.id,
            "member_id_string": outcome.member.member_id_string,
            "full_name": outcome.member.full_name,
            "status": outcome.status.status,
            "days_until_expiry": outcome.status.days_until_expiry,
        }
    if outcome.coupon is not None:
        data["coupon"] = coupon_data(outcome.coupon)
    if outcome.transaction is not None:
        data["transaction"] = transaction_data(outcome.transaction)
    return {"data": data, "meta": _meta(warnings=outcome.warnings)}


@app.get("/api/v1/check-ins/validate-member/{member_id_string}", tags=["Check-ins"])
def validate_member(
    member_id_string: str,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    today = settings.today(now)
    access = validate_member_access(db, member_id_string, settings, today)
    member = None
    if access.member is not None:
        member = member_data(access.member, access.status, current_membership(db, access.member.id))
    return {
        "data": {"valid": access.valid, "message": access.message, "member": member},
        "meta": _meta(),
    }


@app.get("/api/v1/check-ins/validate-coupon/{code}", tags=["Check-ins"])
def validate_coupon(
    code: str,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    access = validate_coupon_access(db, code, settings.today(now))
    return {
        "data": {
            "valid": access.valid,
            "message": access.message,
            "coupon": coupon_data(access.coupon) if access.coupon else None,
        },
        "meta": _meta(),
    }


@app.get("/api/v1/check-ins/stats", tags=["Check-ins"])
def get_check_in_stats(
    shift_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    return {"data": check_in_stats(db, shift_id, settings, settings.today(now)), "meta": _meta()}


@app.get("/api/v1/check-ins", tags=["Check-ins"])
def list_check_ins(
    shift_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    check_ins = (
        check_in_window(db, shift_id, settings, settings.today(now))
        .order_by(CheckIn.check_in_time.desc(), CheckIn.id.desc())
        .all()
    )
    return {"data": [check_in_data(check_in) for check_in in check_ins], "meta": _meta()}


# Products and stock


class ProductCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': 'Protein Bar', 'price': 6.5, 'current_stock': 40}}}
    name: str
    price: Decimal = Field(ge=0)
    current_stock: int = Field(default=0, ge=0)
    photo_url: Optional[str] = None
    is_active: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    photo_url: Optional[str] = None
    is_active: Optional[bool] = None


class StockChange(BaseModel):
    product_id: int
    change_quantity: int


class StockAdjust(BaseModel):
    model_config = {"json_schema_extra": {"example": {'created_by': 1, 'reason': 'RESTOCK', 'items': [{'product_id': 4, 'change_quantity': 24}]}}}
    created_by: int
    reason: Literal["RESTOCK", "ADJUSTMENT"] = "RESTOCK"
    items: list[StockChange] = Field(min_length=1)


class SaleLine(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class SaleCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'shift_id': 3, 'processed_by': 1, 'payment_method': 'CASH', 'items': [{'product_id': 4, 'quantity': 2}], 'customer_name': 'Walk-in'}}}
    shift_id: int
    processed_by: int
    payment_method: str
    items: list[SaleLine] = Field(min_length=1)
    customer_name: Optional[str] = None
    notes: Optional[str] = None


def _apply_stock_delta(db: Session, product: Product, delta: int, now: datetime) -> bool:
    """Move stock by ``delta`` unless that would take it below zero."""
    moved = db.execute(
        update(Product)
        .where(
            Product.id == product.id,
            Product.is_active.is_(True),
            Product.current_stock + delta >= 0,
        )
        .values(current_stock=Product.current_stock + delta, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return moved.rowcount == 1


@app.post("/api/v1/products", tags=["Products"])
def create_product(payload: ProductCreate, db: Session = Depends(get_db)) -> dict:
    product = Product(**payload.model_dump())
    db.add(product)
    db.commit()
    db.refresh(product)
    return {"data": product_data(product), "meta": _meta()}


@app.get("/api/v1/products/low-stock", tags=["Products"])
def list_low_stock_products(
    threshold: Optional[int] = Query(default=None, ge=0),
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
) -> dict:
    limit = settings.low_stock_threshold if threshold is None else threshold
    products = (
        db.query(Product)
        .filter(Product.is_active.is_(True), Product.current_stock <= limit)
        .order_by(Product.current_stock, Product.id)
        .all()
    )
    return {"data": [product_data(product) for product in products], "meta": _meta()}


@app.get("/api/v1/products/{product_id}", tags=["Products"])
def get_product(product_id: int, db: Session = Depends(get_db)) -> dict:
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    return {"data": product_data(product), "meta": _meta()}


@app.get("/api/v1/products", tags=["Products"])
def list_products(
    q: Optional[str] = Query(default=None),
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Product)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    if q:
        query = query.filter(Product.name.ilike(f"%{q}%"))
    products = query.order_by(Product.name, Product.id).all()
    return {"data": [product_data(product) for product in products], "meta": _meta()}


@app.patch("/api/v1/products/{product_id}", tags=["Products"])
def update_product(product_id: int, payload: ProductUpdate, db: Session = Depends(get_db)) -> dict:
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    for name, value in payload.model_dump(exclude_unset=True, exclude_none=True).items():
        if name == "name" and not value.strip():
            raise HTTPException(status_code=400, detail="name cannot be empty")
        setattr(product, name, value)
    db.commit()
    db.refresh(product)
    return {"data": product_data(product), "meta": _meta()}


@app.delete("/api/v1/products/{product_id}", tags=["Products"])
def delete_product(product_id: int, db: Session = Depends(get_db)) -> dict:
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    product.is_active = False
    db.commit()
    db.refresh(product)
    return {"data": product_data(product), "meta": _meta()}


@app.post("/api/v1/pos/sales", tags=["POS"])
def process_sale(
    payload: SaleCreate,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> dict:
    require_profile(db, payload.processed_by)
    quantities: dict[int, int] = defaultdict(int)
    for line in payload.items:
        quantities[line.product_id] += line.quantity

    with atomic(db):
        shift = lock_active_shift(db, payload.shift_id)
        total = Decimal("0.00")
        unit_prices: dict[int, Decimal] = {}
        for product_id, quantity in quantities.items():
            product = db.get(Product, product_id)
            if not product or not product.is_active:
                raise HTTPException(status_code=404, detail="product not found")
            if not _apply_stock_delta(db, product, -quantity, now):
                logger.warning("sale refused: %s has %s left, %s wanted", product.name, product.current_stock, quantity)
                raise HTTPException(status_code=409, detail=f"insufficient stock for {product.name}")
            unit_prices[product_id] = Decimal(product.price)
            total += unit_prices[product_id] * quantity
        transaction = record_transaction(
            db,
            shift,
            amount=total,
            payment_method=payload.payment_method,
            type_="POS_SALE",
            processed_by=payload.processed_by,
            now=now,
            notes=payload.notes or f"Sale to {payload.customer_name or 'Customer'}",
        )
        movements = [
            StockMovement(
                product_id=product_id,
                change_quantity=-quantity,
                unit_price=unit_prices[product_id],
                reason="POS_SALE",
                transaction_id=transaction.id,
                created_by=payload.processed_by,
                created_at=now,
            )
            for product_id, quantity in quantities.items()
        ]
        db.add_all(movements)
    db.refresh(transaction)
    logger.info("sale %s completed on shift %s for %s", transaction.id, shift.id, total)
    return {
        "data": {
            "transaction": transaction_data(transaction),
            "stock_movements": [
                {
                    "stock_movement_id": movement.id,
                    "product_id": movement.product_id,
                    "change_quantity": movement.change_quantity,
                }
                for movement in movements
            ],
            "message": f"Sale completed successfully! Total: RM{total:.2f}",
        },
        "meta": _meta(),
    }


@app.post("/api/v1/stock-movements:adjust", tags=["Stock"])
def adjust_stock(
    payload: StockAdjust,
    db: Session = Depends(get_db),
    now: datetime = Depends(get_now),
) -> dict:
    require_profile(db, payload.created_by)
    if payload.reason == "RESTOCK" and any(item.change_quantity <= 0 for item in payload.items):
        raise HTTPException(status_code=400, detail="restock quantities must be positive")
    with atomic(db):
        movements = []
        for item in payload.items:
            product = db.get(Product, item.product_id)
            if not product:
                raise HTTPException(status_code=404, detail="product not found")
            if not _apply_stock_delta(db, product, item.change_quantity, now):
                raise HTTPException(status_code=409, detail=f"insufficient stock for {product.name}")
            movement = StockMovement(
                product_id=product.id,
                change_quantity=item.change_quantity,
                reason=payload.reason,
                created_by=payload.created_by,
                created_at=now,
            )
            db.add(movement)
            movements.append(movement)
    products = {movement.product_id: db.get(Product, movement.product_id) for movement in movements}
    for product in products.values():
        db.refresh(product)
    return {
        "data": [product_data(product) for product in products.values()],
        "meta": _meta(),
    }


@app.get("/api/v1/stock-movements", tags=["Stock"])
def list_stock_movements(
    product_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(StockMovement)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    movements = query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).all()
    data = [
        {
            "stock_movement_id": movement.id,
            "product_id": movement.product_id,
            "change_quantity": movement.change_quantity,
            "reason": movement.reason,
            "transaction_id": movement.transaction_id,
            "created_by": movement.created_by,
            "created_at": movement.created_at.isoformat(),
        }
        for movement in movements
    ]
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/reports/sales", tags=["Reports"])
def sales_report(
    start_date: date = Query(...),
    end_date: date = Query(...),
    shift_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
) -> dict:
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date before start_date")
    window_start, _ = settings.day_bounds(start_date)
    _, window_end = settings.day_bounds(end_date)
    query = db.query(Transaction).filter(
        Transaction.type == "POS_SALE",
        Transaction.created_at >= window_start,
        Transaction.created_at < window_end,
    )
    if shift_id is not None:
        query = query.filter(Transaction.shift_id == shift_id)
    transactions = query.all()
    lines = []
    if transactions:
        lines = (
            db.query(
                Product.id,
                Product.name,
                func.sum(-StockMovement.change_quantity),
                func.sum(-StockMovement.change_quantity * StockMovement.unit_price),
            )
            .join(StockMovement, StockMovement.product_id == Product.id)
            .filter(StockMovement.transaction_id.in_([t.id for t in transactions]))
            .group_by(Product.id, Product.name)
            .all()
        )
    top_products = sorted(
        (
            {
                "product_id": product_id,
                "name": name,
                "quantity": int(quantity),
                "revenue": float(revenue or 0),
            }
            for product_id, name, quantity, revenue in lines
        ),
        key=lambda row: row["revenue"],
        reverse=True,
    )[:10]
    return {
        "data": {
            "total_sales": len(transactions),
            "total_revenue": float(sum((t.amount for t in transactions), Decimal("0"))),
            "top_products": top_products,
        },
        "meta": _meta(),
    }


# Coupons


class CouponTemplateCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'name': '10 Entry Pass', 'price': 120.0, 'max_entries': 10, 'duration_days': 90}}}
    name: str
    price: Decimal = Field(gt=0)
    max_entries: int = Field(gt=0)
    duration_days: Optional[int] = Field(default=None, gt=0)
    is_active: bool = True


class CouponSale(BaseModel):
    model_config = {"json_schema_extra": {"example": {'template_id': 1, 'shift_id': 3, 'processed_by': 1, 'payment_method': 'CASH', 'customer_name': 'Ali'}}}
    template_id: int
    shift_id: int
    processed_by: int
    payment_method: str
    code: Optional[str] = None
    member_id: Optional[int] = None
    customer_name: Optional[str] = None


def _template_data(template: CouponTemplate) -> dict:
    return {
        "template_id": template.id,
        "name": template.name,
        "price": money(template.price),
        "max_entries": template.max_entries,
        "duration_days": template.duration_days,
        "is_active": template.is_active,
    }


def _generate_coupon_code(db: Session) -> str:
    codes = [row[0] for row in db.query(SoldCoupon.code).all()]
    return _next_code(codes, r"(\d{4})$")


@app.post("/api/v1/coupon-templates", tags=["Coupons"])
def create_coupon_template(payload: CouponTemplateCreate, db: Session = Depends(get_db)) -> dict:
    template = CouponTemplate(**payload.model_dump())
    db.add(template)
    db.commit()
    db.refresh(template)
    return {"data": _template_data(template), "meta": _meta()}


@app.get("/api/v1/coupon-templates", tags=["Coupons"])
def list_coupon_templates(db: Session = Depends(get_db)) -> dict:
    templates = (
        db.query(CouponTemplate)
        .filter(CouponTemplate.is_active.is_(True))
        .order_by(CouponTemplate.name)
        .all()
    )
    return {"data": [_template_data(template) for template in templates], "meta": _meta()}


@app.post("/api/v1/coupons:sell", tags=["Coupons"])
def sell_coupon(
    payload: CouponSale,
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    require_profile(db, payload.processed_by)
    template = db.get(CouponTemplate, payload.template_id)
    if not template or not template.is_active:
        raise HTTPException(status_code=404, detail="coupon template not found")
    if payload.member_id is not None and not db.get(Member, payload.member_id):
        raise HTTPException(status_code=404, detail="member not found")

    purchase_date = settings.today(now)
    code = (payload.code or "").strip() or _generate_coupon_code(db)
    try:
        with atomic(db):
            shift = lock_active_shift(db, payload.shift_id)
            coupon = SoldCoupon(
                template_id=template.id,
                code=code,
                member_id=payload.member_id,
                customer_name=None if payload.member_id is not None else payload.customer_name,
                purchase_date=purchase_date,
                expiry_date=purchase_date + relativedelta(months=COUPON_VALIDITY_MONTHS),
                entries_remaining=template.max_entries,
            )
            db.add(coupon)
            db.flush()
            transaction = record_transaction(
                db,
                shift,
                amount=template.price,
                payment_method=payload.payment_method,
                type_="COUPON_SALE",
                processed_by=payload.processed_by,
                now=now,
                related_id=coupon.id,
                notes=f"Coupon sold to {payload.customer_name}" if payload.customer_name else "Coupon sale",
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="coupon code already exists") from exc
    db.refresh(coupon)
    db.refresh(transaction)
    logger.info("coupon %s sold on shift %s", coupon.code, shift.id)
    return {
        "data": {"coupon": coupon_data(coupon), "transaction": transaction_data(transaction)},
        "meta": _meta(),
    }


@app.get("/api/v1/coupons/{code}", tags=["Coupons"])
def get_coupon(code: str, db: Session = Depends(get_db)) -> dict:
    coupon = db.query(SoldCoupon).filter(SoldCoupon.code == code).first()
    if not coupon:
        raise HTTPException(status_code=404, detail="coupon not found")
    return {"data": coupon_data(coupon), "meta": _meta()}


# Dashboard


@app.get("/api/v1/dashboard/stats", tags=["Dashboard"])
def dashboard_stats(
    db: Session = Depends(get_db),
    settings: GymSettings = Depends(get_gym_settings),
    now: datetime = Depends(get_now),
) -> dict:
    today = settings.today(now)
    member_ids = [row[0] for row in db.query(Member.id).all()]
    memberships = _current_memberships(db, member_ids)
    active_members = 0
    expiring_memberships = 0
    for member_id in member_ids:
        membership = memberships.get(member_id)
        status = compute_membership_status(
            membership.end_date if membership else None, today, settings.grace_period_days
        )
        if status.status != STATUS_ACTIVE:
            continue
        active_members += 1
        if status.days_until_expiry <= settings.expiry_reminder_days:
            expiring_memberships += 1

    starts_at, ends_at = settings.day_bounds(today)
    today_revenue = (
        db.query(func.coalesce(func.sum(Transaction.amount), 0))
        .filter(Transaction.created_at >= starts_at, Transaction.created_at < ends_at)
        .scalar()
    )
    active_shifts = db.query(func.count(Shift.id)).filter(Shift.status == "ACTIVE").scalar()
    low_stock = (
        db.query(func.count(Product.id))
        .filter(Product.is_active.is_(True), Product.current_stock <= settings.low_stock_threshold)
        .scalar()
    )
    return {
        "data": {
            "active_members": active_members,
            "today_revenue": float(today_revenue or 0),
            "active_shifts": active_shifts or 0,
            "today_check_ins": check_in_stats(db, None, settings, today)["total"],
            "expiring_memberships": expiring_memberships,
            "low_stock_products": low_stock or 0,
        },
        "meta": _meta(),
    }
