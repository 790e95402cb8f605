"""ORM model definitions describing the library seat and subscription ledger schema."""

from sqlalchemy import (
    Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, JSON, Numeric,
    String, Text, UniqueConstraint, and_,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class SeatStatus(str, enum.Enum):
    """Informational seat state; occupancy itself lives in seat allocations."""
    VACANT = 'vacant'
    OCCUPIED = 'occupied'
    BLOCKED = 'blocked'


class AllocationStatus(str, enum.Enum):
    OCCUPIED = 'occupied'
    BLOCKED = 'blocked'


class StudentStatus(str, enum.Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle; every state except ACTIVE is terminal."""
    ACTIVE = 'active'
    EXPIRED = 'expired'
    CANCELLED = 'cancelled'
    CLOSED = 'closed'
    RENEWED = 'renewed'


class PaymentMode(str, enum.Enum):
    CASH = 'cash'
    UPI = 'upi'
    CARD = 'card'
    BANK_TRANSFER = 'bank_transfer'


class AuditMixin:
    created_on = Column(DateTime(timezone=True), default=utcnow)
    created_by = Column(String(100))
    modified_on = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    modified_by = Column(String(100))


class Library(AuditMixin, Base):
    __tablename__ = 'libraries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    address = Column(Text)
    phone = Column(String(20))
    email = Column(String(255))
    total_seats = Column(Integer, nullable=False, default=90)
    is_active = Column(Boolean, nullable=False, default=True)
    description = Column(Text)

    shifts = relationship('Shift', back_populates='library', order_by='Shift.start_time')
    seats = relationship('Seat', back_populates='library', order_by='Seat.seat_number')


class Shift(AuditMixin, Base):
    __tablename__ = 'shifts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(Integer, ForeignKey('libraries.id'), nullable=False)
    name = Column(String(100), nullable=False)
    start_time = Column(String(10), nullable=False)
    end_time = Column(String(10), nullable=False)
    total_hours = Column(Integer, nullable=False, default=6)
    is_active = Column(Boolean, nullable=False, default=True)

    library = relationship('Library', back_populates='shifts')

    __table_args__ = (
        Index('idx_shifts_library', 'library_id'),
    )


class Seat(AuditMixin, Base):
    __tablename__ = 'seats'

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(Integer, ForeignKey('libraries.id'), nullable=False)
    seat_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=SeatStatus.VACANT.value)
    is_active = Column(Boolean, nullable=False, default=True)

    library = relationship('Library', back_populates='seats')
    allocations = relationship('SeatAllocation', back_populates='seat')

    __table_args__ = (
        UniqueConstraint('library_id', 'seat_number', name='uq_seats_library_number'),
    )


class SeatAllocation(AuditMixin, Base):
    __tablename__ = 'seat_allocations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    seat_id = Column(Integer, ForeignKey('seats.id'), nullable=False)
    shift_id = Column(Integer, ForeignKey('shifts.id'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'))
    subscription_id = Column(Integer, ForeignKey('subscriptions.id'))
    status = Column(String(20), nullable=False, default=AllocationStatus.OCCUPIED.value)
    gender = Column(String(10))
    is_active = Column(Boolean, nullable=False, default=True)

    seat = relationship('Seat', back_populates='allocations')
    shift = relationship('Shift')

    __table_args__ = (
        # One live occupant per (seat, shift); a losing concurrent insert fails here
        Index(
            'uq_allocations_seat_shift_occupied', 'seat_id', 'shift_id',
            unique=True,
            postgresql_where=and_(is_active.is_(True), status == AllocationStatus.OCCUPIED.value),
            sqlite_where=and_(is_active.is_(True), status == AllocationStatus.OCCUPIED.value),
        ),
        Index('idx_allocations_subscription', 'subscription_id'),
    )


class Student(AuditMixin, Base):
    __tablename__ = 'students'

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(Integer, ForeignKey('libraries.id'), nullable=False)
    student_code = Column(String(20), nullable=False)
    student_name = Column(String(255), nullable=False)
    mobile_no = Column(String(15), nullable=False)
    email_id = Column(String(255))
    gender = Column(String(10), nullable=False)
    guardian_name = Column(String(255))
    guardian_phone = Column(String(15))
    address = Column(Text)
    status = Column(String(20), nullable=False, default=StudentStatus.ACTIVE.value)
    admission_date = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    manual_comments = Column(Text)

    subscriptions = relationship('Subscription', back_populates='student')

    __table_args__ = (
        UniqueConstraint('library_id', 'student_code', name='uq_students_library_code'),
    )


class Subscription(AuditMixin, Base):
    __tablename__ = 'subscriptions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(Integer, ForeignKey('libraries.id'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False)
    seat_id = Column(Integer, ForeignKey('seats.id'), nullable=False)
    plan_name = Column(String(100), nullable=False)
    shift_ids = Column(JSON, nullable=False)
    total_hours = Column(Integer, nullable=False)
    shift_start = Column(String(10), nullable=False)
    shift_end = Column(String(10), nullable=False)
    plan_start_date = Column(Date, nullable=False)
    plan_end_date = Column(Date, nullable=False)
    subscription_cost = Column(Numeric(10, 2), nullable=False)
    paid_amount = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    pending_amount = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    renewed_from_id = Column(Integer, ForeignKey('subscriptions.id'))
    manual_comments = Column(Text)

    student = relationship('Student', back_populates='subscriptions')
    seat = relationship('Seat')
    payments = relationship('Payment', back_populates='subscription')

    __table_args__ = (
        Index(
            'uq_subscriptions_student_active', 'student_id',
            unique=True,
            postgresql_where=status == SubscriptionStatus.ACTIVE.value,
            sqlite_where=status == SubscriptionStatus.ACTIVE.value,
        ),
        Index('idx_subscriptions_library_status', 'library_id', 'status'),
    )


class Payment(AuditMixin, Base):
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(Integer, ForeignKey('libraries.id'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id'), nullable=False)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id'), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_date = Column(Date, nullable=False)
    payment_mode = Column(String(50), nullable=False, default=PaymentMode.CASH.value)
    transaction_id = Column(String(100))
    status = Column(String(20), nullable=False, default='completed')

    subscription = relationship('Subscription', back_populates='payments')
    student = relationship('Student')

    __table_args__ = (
        Index('idx_payments_library_date', 'library_id', 'payment_date'),
    )


class Expense(AuditMixin, Base):
    __tablename__ = 'expenses'

    id = Column(Integer, primary_key=True, autoincrement=True)
    library_id = Column(Integer, ForeignKey('libraries.id'), nullable=False)
    purpose = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    expense_date = Column(Date, nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
