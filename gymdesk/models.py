from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from gymdesk.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
MONEY = Numeric(10, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (CheckConstraint("role IN ('ADMIN', 'CS')", name="profile_role"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(Text, nullable=False, default="CS")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Member(Base):
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    member_id_string: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    ic_passport_number: Mapped[str | None] = mapped_column(Text)
    phone_number: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    photo_url: Mapped[str | None] = mapped_column(Text)
    join_date: Mapped[Date] = mapped_column(Date, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class MembershipPlan(Base):
    __tablename__ = "membership_plans"
    __table_args__ = (
        CheckConstraint("duration_months > 0", name="plan_duration_positive"),
        CheckConstraint("free_months_on_signup >= 0", name="plan_free_months"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    duration_months: Mapped[int] = mapped_column(Integer, nullable=False)
    has_registration_fee: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    free_months_on_signup: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        CheckConstraint("status IN ('ACTIVE', 'EXPIRED')", name="membership_status"),
        Index("ix_memberships_member_status", "member_id", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("members.id"), nullable=False)
    plan_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("membership_plans.id"), nullable=False)
    start_date: Mapped[Date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="ACTIVE")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Shift(Base):
    __tablename__ = "shifts"
    __table_args__ = (
        CheckConstraint("status IN ('ACTIVE', 'CLOSED')", name="shift_status"),
        Index("ix_shifts_staff_status", "starting_staff_id", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    start_time: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_time: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    starting_staff_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id"), nullable=False)
    ending_staff_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("profiles.id"))
    starting_cash_float: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    ending_cash_balance: Mapped[Numeric | None] = mapped_column(MONEY)
    system_calculated_cash: Mapped[Numeric | None] = mapped_column(MONEY)
    cash_discrepancy: Mapped[Numeric | None] = mapped_column(MONEY)
    handover_notes: Mapped[str | None] = mapped_column(Text)
    next_shift_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("shifts.id"))
    status: Mapped[str] = mapped_column(Text, nullable=False, default="ACTIVE")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint(
            "type IN ('MEMBERSHIP', 'COUPON_SALE', 'POS_SALE', 'WALK_IN', 'REGISTRATION_FEE')",
            name="transaction_type",
        ),
        CheckConstraint("status IN ('PAID', 'OUTSTANDING')", name="transaction_status"),
        Index("ix_transactions_shift", "shift_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("shifts.id"), nullable=False)
    amount: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[int | None] = mapped_column(BigInteger)
    processed_by: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id"), nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="PAID")
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CheckIn(Base):
    __tablename__ = "check_ins"
    __table_args__ = (
        CheckConstraint(
            "type IN ('MEMBER', 'COUPON', 'WALK_IN', 'WALK_IN_STUDENT')", name="check_in_type"
        ),
        Index("ix_check_ins_member_time", "member_id", "check_in_time"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shift_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("shifts.id"), nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    member_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("members.id"))
    sold_coupon_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("sold_coupons.id"))
    transaction_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("transactions.id"))
    processed_by: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id"), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    check_in_time: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CouponTemplate(Base):
    __tablename__ = "coupon_templates"
    __table_args__ = (
        CheckConstraint("price > 0", name="coupon_price_positive"),
        CheckConstraint("max_entries > 0", name="coupon_entries_positive"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    max_entries: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_days: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class SoldCoupon(Base):
    __tablename__ = "sold_coupons"
    __table_args__ = (
        CheckConstraint("entries_remaining >= 0", name="coupon_entries_non_negative"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("coupon_templates.id"), nullable=False)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    member_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("members.id"))
    customer_name: Mapped[str | None] = mapped_column(Text)
    purchase_date: Mapped[Date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[Date] = mapped_column(Date, nullable=False)
    entries_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("current_stock >= 0", name="product_stock_non_negative"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Numeric] = mapped_column(MONEY, nullable=False)
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    photo_url: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class StockMovement(Base):
    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint("reason IN ('POS_SALE', 'RESTOCK', 'ADJUSTMENT')", name="stock_reason"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("products.id"), nullable=False)
    change_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Price charged per unit at sale time; set for POS_SALE rows only.
    unit_price: Mapped[Numeric | None] = mapped_column(MONEY)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("transactions.id"))
    created_by: Mapped[int] = mapped_column(BigInteger, ForeignKey("profiles.id"), nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class SystemSetting(Base):
    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
