from sqlalchemy import (
    String, Integer, ForeignKey, Numeric, DateTime, Date, Boolean, func, Index
)
from sqlalchemy.orm import mapped_column, relationship, DeclarativeBase


class Base(DeclarativeBase): ...


# ---------- Tours ----------
class Tour(Base):
    __tablename__ = "tours"
    id          = mapped_column(Integer, primary_key=True)
    slug        = mapped_column(String(120), unique=True, nullable=False)
    name        = mapped_column(String(200), nullable=False)
    price_per_traveler = mapped_column(Numeric(10, 2), nullable=False, default=1200)
    duration_days = mapped_column(Integer, nullable=False, default=14)
    active      = mapped_column(Boolean, nullable=False, server_default="true")


# ---------- Customers ----------
class Customer(Base):
    __tablename__ = "customers"
    id        = mapped_column(Integer, primary_key=True)
    name      = mapped_column(String(200), nullable=False)
    email     = mapped_column(String(254), unique=True, nullable=False)
    phone     = mapped_column(String(32), nullable=True)
    # The storefront maps the lead traveler's country here
    address   = mapped_column(String(200), nullable=True)
    created_at = mapped_column(DateTime, server_default=func.now())


# ---------- Bookings ----------
class Booking(Base):
    __tablename__ = "bookings"
    id             = mapped_column(Integer, primary_key=True)
    reference      = mapped_column(String(32), nullable=False, comment="Human readable booking reference, e.g. NV-4821-EBC")
    customer_id    = mapped_column(ForeignKey("customers.id"), nullable=True)
    # Identity provider user id (not a local FK; profiles live with the provider)
    user_id        = mapped_column(String(64), nullable=True)
    tour_id        = mapped_column(ForeignKey("tours.id"), nullable=False)
    start_date     = mapped_column(Date, nullable=False)
    dates          = mapped_column(String(64), nullable=True, comment="Display range, e.g. 'Mar 3 - Mar 16, 2027'")
    total_price    = mapped_column(Numeric(10, 2), nullable=False)
    amount_paid    = mapped_column(Numeric(10, 2), nullable=False)
    currency       = mapped_column(String(3), nullable=False, default="usd")
    status         = mapped_column(String(16), nullable=False, default="Pending", comment="Pending | Confirmed | Cancelled")
    payment_status = mapped_column(String(16), nullable=False, default="Not Paid", comment="Not Paid | Deposit Paid | Paid in Full | Refunded")
    payment_reference = mapped_column(String(128), unique=True, nullable=True, comment="Gateway intent id; one booking per captured payment")
    created_at     = mapped_column(DateTime, server_default=func.now())
    updated_at     = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    customer  = relationship("Customer")
    tour      = relationship("Tour")
    travelers = relationship(
        "BookingTraveler",
        back_populates="booking",
        order_by="BookingTraveler.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_bookings_user_id", "user_id"),
    )


class BookingTraveler(Base):
    __tablename__ = "booking_travelers"
    id         = mapped_column(Integer, primary_key=True)
    booking_id = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    position   = mapped_column(Integer, nullable=False, default=0)
    name       = mapped_column(String(200), nullable=False)
    email      = mapped_column(String(254), nullable=True)
    phone      = mapped_column(String(32), nullable=True)
    is_primary = mapped_column(Boolean, nullable=False, default=False)
    dob        = mapped_column(Date, nullable=True)
    gender     = mapped_column(String(16), nullable=True)
    country    = mapped_column(String(64), nullable=True)
    dietary_requirements = mapped_column(String(500), nullable=True)

    booking    = relationship("Booking", back_populates="travelers")
