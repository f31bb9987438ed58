from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DECIMAL,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()
metadata = Base.metadata

BOOKING_STATUSES = ("pending", "confirmed", "in-progress", "completed", "cancelled")
PAYMENT_STATUSES = ("unpaid", "pending", "paid", "refunded")
PAYMENT_METHODS = ("cash", "bank-transfer", "e-wallet", "credit-card")

# Statuses that hold a stylist's time
ACTIVE_BOOKING_STATUSES = ("pending", "confirmed", "in-progress")
# Statuses the reminder scan picks up
REMINDABLE_STATUSES = ("pending", "confirmed")


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (Index("customer_email", "email"),)

    id = mapped_column(Integer, primary_key=True)
    full_name = mapped_column(String(120), nullable=False)
    email = mapped_column(String(255))
    phone = mapped_column(String(40))
    notify_email = mapped_column(Boolean, nullable=False, server_default=text("1"))
    notify_whatsapp = mapped_column(Boolean, nullable=False, server_default=text("1"))
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    bookings: Mapped[List["Booking"]] = relationship(
        "Booking", uselist=True, back_populates="customer"
    )


class Stylist(Base):
    __tablename__ = "stylists"
    __table_args__ = {"comment": "schedule_version fences every reservation write."}

    id = mapped_column(Integer, primary_key=True)
    full_name = mapped_column(String(120), nullable=False)
    active = mapped_column(Boolean, nullable=False, server_default=text("1"))
    schedule_version = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )

    bookings: Mapped[List["Booking"]] = relationship(
        "Booking", uselist=True, back_populates="stylist"
    )


class ServiceCategory(Base):
    __tablename__ = "service_categories"

    id = mapped_column(Integer, primary_key=True)
    name = mapped_column(String(100), nullable=False)

    services: Mapped[List["Service"]] = relationship(
        "Service", uselist=True, back_populates="category"
    )


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (
        ForeignKeyConstraint(
            ["category_id"],
            ["service_categories.id"],
            ondelete="SET NULL",
            name="fk_service_category",
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    category_id = mapped_column(Integer)
    name = mapped_column(String(255), nullable=False)
    price = mapped_column(DECIMAL(12, 2), nullable=False)
    duration_minutes = mapped_column(Integer, nullable=False)
    active = mapped_column(Boolean, nullable=False, server_default=text("1"))

    category: Mapped[Optional["ServiceCategory"]] = relationship(
        "ServiceCategory", back_populates="services"
    )


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        ForeignKeyConstraint(["customer_id"], ["customers.id"], name="fk_bk_customer"),
        ForeignKeyConstraint(["stylist_id"], ["stylists.id"], name="fk_bk_stylist"),
        Index("bk_stylist_start", "stylist_id", "start_time"),
        Index("bk_status_start", "status", "start_time"),
        Index("bk_slot_date", "slot_date"),
    )

    id = mapped_column(Integer, primary_key=True)
    customer_id = mapped_column(Integer, nullable=False)
    stylist_id = mapped_column(Integer)
    start_time = mapped_column(DateTime, nullable=False)
    end_time = mapped_column(DateTime, nullable=False)
    status = mapped_column(String(16), nullable=False, default="pending")
    notes = mapped_column(Text)
    admin_notes = mapped_column(Text)
    slot_date = mapped_column(String(10), nullable=False)

    payment_method = mapped_column(String(16), nullable=False, default="e-wallet")
    payment_status = mapped_column(String(16), nullable=False, default="unpaid")
    subtotal_amount = mapped_column(DECIMAL(12, 2), nullable=False)
    discount_amount = mapped_column(DECIMAL(12, 2), nullable=False, default=0)
    dp_amount = mapped_column(DECIMAL(12, 2), nullable=False, default=0)
    total_amount = mapped_column(DECIMAL(12, 2), nullable=False)
    invoice_no = mapped_column(String(40))
    payment_reference = mapped_column(String(120))
    coupon_code = mapped_column(String(50))

    version = mapped_column(Integer, nullable=False)
    created_at = mapped_column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )

    # Every ORM flush of a booking is a conditional write on version
    __mapper_args__ = {"version_id_col": version}

    customer: Mapped["Customer"] = relationship("Customer", back_populates="bookings")
    stylist: Mapped[Optional["Stylist"]] = relationship(
        "Stylist", back_populates="bookings"
    )
    services: Mapped[List["BookedService"]] = relationship(
        "BookedService",
        uselist=True,
        back_populates="booking",
        order_by="BookedService.position",
        cascade="all, delete-orphan",
    )
    reminder_dispatches: Mapped[List["ReminderDispatch"]] = relationship(
        "ReminderDispatch",
        uselist=True,
        back_populates="booking",
        cascade="all, delete-orphan",
    )


class BookedService(Base):
    __tablename__ = "booked_services"
    __table_args__ = (
        ForeignKeyConstraint(
            ["booking_id"], ["bookings.id"], ondelete="CASCADE", name="fk_bs_booking"
        ),
        Index("bs_booking", "booking_id", "position"),
        {"comment": "Catalog snapshot captured when the booking was made."},
    )

    id = mapped_column(Integer, primary_key=True)
    booking_id = mapped_column(Integer, nullable=False)
    position = mapped_column(Integer, nullable=False)
    service_id = mapped_column(Integer, nullable=False)
    category_id = mapped_column(Integer)
    name = mapped_column(String(255), nullable=False)
    price = mapped_column(DECIMAL(12, 2), nullable=False)
    duration_minutes = mapped_column(Integer, nullable=False)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="services")


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (Index("coupon_code", "code", unique=True),)

    id = mapped_column(Integer, primary_key=True)
    code = mapped_column(String(50), nullable=False)
    description = mapped_column(String(255))
    discount_type = mapped_column(String(8), nullable=False)
    amount = mapped_column(DECIMAL(12, 2), nullable=False)
    min_spend = mapped_column(DECIMAL(12, 2), nullable=False, default=0)
    start_date = mapped_column(DateTime)
    end_date = mapped_column(DateTime)
    usage_limit = mapped_column(Integer)
    used_count = mapped_column(Integer, nullable=False, default=0)
    is_active = mapped_column(Boolean, nullable=False, default=True)
    service_ids = mapped_column(JSON, nullable=False, default=list)
    category_ids = mapped_column(JSON, nullable=False, default=list)


class Settings(Base):
    __tablename__ = "settings"
    __table_args__ = {"comment": "Single-row booking and notification policy."}

    id = mapped_column(Integer, primary_key=True)
    dp_type = mapped_column(String(8), nullable=False, default="percent")
    dp_amount = mapped_column(DECIMAL(12, 2), nullable=False, default=0)
    lead_time_days = mapped_column(Integer, nullable=False, default=1)
    slot_duration_minutes = mapped_column(Integer, nullable=False, default=15)
    cancellation_policy = mapped_column(Text, nullable=False, default="")
    reminder_schedule_days = mapped_column(JSON, nullable=False, default=lambda: [7, 1])
    templates = mapped_column(JSON, nullable=False, default=dict)
    updated_at = mapped_column(
        DateTime,
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=func.now(),
    )


class ReminderDispatch(Base):
    __tablename__ = "reminder_dispatches"
    __table_args__ = (
        ForeignKeyConstraint(
            ["booking_id"], ["bookings.id"], ondelete="CASCADE", name="fk_rd_booking"
        ),
        UniqueConstraint(
            "booking_id", "offset_days", "channel", name="uq_reminder_dispatch"
        ),
    )

    id = mapped_column(Integer, primary_key=True)
    booking_id = mapped_column(Integer, nullable=False)
    offset_days = mapped_column(Integer, nullable=False)
    channel = mapped_column(String(16), nullable=False)
    idempotency_key = mapped_column(String(120), nullable=False)
    provider_reference = mapped_column(String(120))
    attempts = mapped_column(Integer, nullable=False, default=1)
    sent_at = mapped_column(DateTime, nullable=False)

    booking: Mapped["Booking"] = relationship(
        "Booking", back_populates="reminder_dispatches"
    )
