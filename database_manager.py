"""Database coordination layer: engine, transactional scope and tenant reference data."""

from sqlalchemy import create_engine, func, or_, text
from sqlalchemy.orm import sessionmaker, scoped_session
from contextlib import contextmanager
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
import logging

from errors import ConflictError, LedgerError, NotFoundError, StateError, ValidationError
from models import (
    Base, Library, Shift, Seat, SeatAllocation, Student, Subscription, Payment,
    Expense, SeatStatus, StudentStatus, SubscriptionStatus, AllocationStatus,
)

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
MAX_MONEY = Decimal('99999999.99')

DEFAULT_SHIFTS = [
    {"name": "Morning", "start_time": "06:00", "end_time": "12:00", "total_hours": 6},
    {"name": "Afternoon", "start_time": "12:00", "end_time": "18:00", "total_hours": 6},
    {"name": "Evening", "start_time": "18:00", "end_time": "00:00", "total_hours": 6},
    {"name": "Night", "start_time": "00:00", "end_time": "06:00", "total_hours": 6},
]

STUDENT_UPDATABLE_FIELDS = (
    'student_name', 'mobile_no', 'email_id', 'gender', 'guardian_name',
    'guardian_phone', 'address', 'status', 'manual_comments', 'is_active',
)

STUDENT_REQUIRED_FIELDS = ('student_name', 'mobile_no', 'gender')


def to_money(value: Any, field: str, *, required: bool = False) -> Decimal:
    """Parse a monetary amount into a non-negative two-place Decimal.

    Blank values default to zero unless ``required`` is set.
    """
    if value is None or value == '':
        if required:
            raise ValidationError(f"{field} is required", details={"field": field})
        return Decimal('0.00')
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    try:
        amount = Decimal(str(value))
        if not amount.is_finite() or amount < 0:
            raise ValidationError(f"{field} must be a non-negative number", details={"field": field})
        amount = amount.quantize(CENT)
    except InvalidOperation:
        raise ValidationError(f"{field} must be a number", details={"field": field})
    # Numeric(10, 2) columns
    if amount > MAX_MONEY:
        raise ValidationError(f"{field} must not exceed {MAX_MONEY}", details={"field": field})
    return amount


def money_str(value) -> str:
    return str(Decimal(value or 0).quantize(CENT))


def get_owned(session, model, entity_id, library_id: int, label: str, *, lock: bool = False):
    """Fetch a row of an active library; rows of other or deactivated libraries are reported as missing."""
    query = session.query(model).join(Library, model.library_id == Library.id).filter(
        model.id == entity_id,
        model.library_id == library_id,
        Library.is_active.is_(True)
    )
    if lock:
        query = query.with_for_update(of=model)
    entity = query.first()
    if entity is None:
        raise NotFoundError(f"{label} not found", details={f"{label}_id": entity_id})
    return entity


def serialize_library(library: Library) -> Dict:
    return {
        "id": library.id,
        "name": library.name,
        "address": library.address,
        "phone": library.phone,
        "email": library.email,
        "total_seats": library.total_seats,
        "is_active": library.is_active,
        "description": library.description,
    }


def serialize_shift(shift: Shift) -> Dict:
    return {
        "id": shift.id,
        "library_id": shift.library_id,
        "name": shift.name,
        "start_time": shift.start_time,
        "end_time": shift.end_time,
        "total_hours": shift.total_hours,
    }


def serialize_seat(seat: Seat) -> Dict:
    return {"id": seat.id, "seat_number": seat.seat_number, "status": seat.status}


def serialize_allocation(allocation: SeatAllocation) -> Dict:
    return {
        "id": allocation.id,
        "seat_id": allocation.seat_id,
        "shift_id": allocation.shift_id,
        "student_id": allocation.student_id,
        "subscription_id": allocation.subscription_id,
        "status": allocation.status,
        "gender": allocation.gender,
        "is_active": allocation.is_active,
    }


def serialize_student(student: Student) -> Dict:
    return {
        "id": student.id,
        "library_id": student.library_id,
        "student_code": student.student_code,
        "student_name": student.student_name,
        "mobile_no": student.mobile_no,
        "email_id": student.email_id,
        "gender": student.gender,
        "guardian_name": student.guardian_name,
        "guardian_phone": student.guardian_phone,
        "address": student.address,
        "status": student.status,
        "admission_date": student.admission_date.isoformat(),
        "is_active": student.is_active,
    }


def serialize_subscription(subscription: Subscription) -> Dict:
    return {
        "id": subscription.id,
        "library_id": subscription.library_id,
        "student_id": subscription.student_id,
        "seat_id": subscription.seat_id,
        "plan_name": subscription.plan_name,
        "shift_ids": list(subscription.shift_ids),
        "total_hours": subscription.total_hours,
        "shift_start": subscription.shift_start,
        "shift_end": subscription.shift_end,
        "plan_start_date": subscription.plan_start_date.isoformat(),
        "plan_end_date": subscription.plan_end_date.isoformat(),
        "subscription_cost": money_str(subscription.subscription_cost),
        "paid_amount": money_str(subscription.paid_amount),
        "discount": money_str(subscription.discount),
        "pending_amount": money_str(subscription.pending_amount),
        "status": subscription.status,
        "renewed_from_id": subscription.renewed_from_id,
    }


def serialize_payment(payment: Payment) -> Dict:
    return {
        "id": payment.id,
        "library_id": payment.library_id,
        "student_id": payment.student_id,
        "subscription_id": payment.subscription_id,
        "amount": money_str(payment.amount),
        "payment_date": payment.payment_date.isoformat(),
        "payment_mode": payment.payment_mode,
        "transaction_id": payment.transaction_id,
        "status": payment.status,
    }


def serialize_expense(expense: Expense) -> Dict:
    return {
        "id": expense.id,
        "library_id": expense.library_id,
        "purpose": expense.purpose,
        "subject": expense.subject,
        "amount": money_str(expense.amount),
        "expense_date": expense.expense_date.isoformat(),
        "description": expense.description,
    }


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and tenant reference data."""

    def __init__(self, database_url: str, pool_size: int = 20, max_overflow: int = 40):
        engine_options: Dict[str, Any] = {"echo": False}
        if not database_url.startswith('sqlite'):
            engine_options.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,  # Reconnect if connection lost
                pool_recycle=3600,   # Recycle connections after 1 hour
            )
        self.engine = create_engine(database_url, **engine_options)
        self.session_factory = scoped_session(sessionmaker(bind=self.engine))

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except LedgerError:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def dispose(self):
        self.session_factory.remove()
        self.engine.dispose()

    # Libraries

    def onboard_library(
        self,
        name: str,
        total_seats: int,
        actor: str,
        address: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict:
        """Create a library with its four default shifts and a seat map numbered 1..total_seats."""
        if not name or not name.strip():
            raise ValidationError("name is required", details={"field": "name"})
        if isinstance(total_seats, bool) or not isinstance(total_seats, int) or total_seats <= 0:
            raise ValidationError("total_seats must be a positive integer", details={"field": "total_seats"})

        with self.get_session() as session:
            library = Library(
                name=name.strip(),
                address=address,
                phone=phone,
                email=email,
                total_seats=total_seats,
                description=description,
                created_by=actor,
                modified_by=actor,
            )
            session.add(library)
            session.flush()

            session.add_all([
                Shift(library_id=library.id, created_by=actor, modified_by=actor, **shift)
                for shift in DEFAULT_SHIFTS
            ])
            session.add_all([
                Seat(
                    library_id=library.id,
                    seat_number=number,
                    status=SeatStatus.VACANT.value,
                    created_by=actor,
                    modified_by=actor,
                ) for number in range(1, total_seats + 1)
            ])
            session.flush()

            logger.info(f"Onboarded library {library.id} ({library.name}) with {total_seats} seats")
            result = serialize_library(library)
            result["shifts"] = [serialize_shift(shift) for shift in library.shifts]
            return result

    def list_libraries(self) -> List[Dict]:
        with self.get_session() as session:
            libraries = session.query(Library).filter(
                Library.is_active.is_(True)
            ).order_by(Library.name).all()
            return [serialize_library(library) for library in libraries]

    def get_library(self, library_id: int) -> Dict:
        with self.get_session() as session:
            library = session.query(Library).filter(
                Library.id == library_id,
                Library.is_active.is_(True)
            ).first()
            if not library:
                raise NotFoundError("library not found", details={"library_id": library_id})
            return serialize_library(library)

    def require_library(self, session, library_id: int) -> Library:
        library = session.query(Library).filter(
            Library.id == library_id,
            Library.is_active.is_(True)
        ).first()
        if not library:
            raise NotFoundError("library not found", details={"library_id": library_id})
        return library

    def deactivate_library(self, library_id: int, actor: str) -> Dict:
        """Soft-delete a library; it disappears from every tenant-scoped lookup."""
        with self.get_session() as session:
            library = self.require_library(session, library_id)
            library.is_active = False
            library.modified_by = actor
            logger.info(f"Library {library.id} ({library.name}) deactivated by {actor}")
            return serialize_library(library)

    # Shifts and seats

    def list_shifts(self, library_id: int) -> List[Dict]:
        with self.get_session() as session:
            self.require_library(session, library_id)
            shifts = session.query(Shift).filter(
                Shift.library_id == library_id,
                Shift.is_active.is_(True)
            ).order_by(Shift.start_time).all()
            return [serialize_shift(shift) for shift in shifts]

    def get_seat_grid(self, library_id: int) -> Dict:
        """Return shifts, seats and every live allocation so a client can render the occupancy grid."""
        with self.get_session() as session:
            library = self.require_library(session, library_id)
            shifts = session.query(Shift).filter(
                Shift.library_id == library_id,
                Shift.is_active.is_(True)
            ).order_by(Shift.start_time).all()
            seats = session.query(Seat).filter(
                Seat.library_id == library_id,
                Seat.is_active.is_(True)
            ).order_by(Seat.seat_number).all()

            seat_numbers = {seat.id: seat.seat_number for seat in seats}
            allocations = []
            if seat_numbers:
                rows = session.query(SeatAllocation).filter(
                    SeatAllocation.seat_id.in_(list(seat_numbers)),
                    SeatAllocation.is_active.is_(True)
                ).all()
                for allocation in rows:
                    detail = serialize_allocation(allocation)
                    detail["seat_number"] = seat_numbers[allocation.seat_id]
                    allocations.append(detail)

            return {
                "total_seats": library.total_seats,
                "shifts": [serialize_shift(shift) for shift in shifts],
                "seats": [serialize_seat(seat) for seat in seats],
                "allocations": allocations,
            }

    def set_seat_status(self, library_id: int, seat_id: int, status: str, actor: str) -> Dict:
        """Administratively block or unblock a physical seat."""
        if status not in (SeatStatus.VACANT.value, SeatStatus.BLOCKED.value):
            raise ValidationError("status must be 'vacant' or 'blocked'", details={"field": "status"})

        with self.get_session() as session:
            seat = get_owned(session, Seat, seat_id, library_id, "seat", lock=True)
            if status == SeatStatus.BLOCKED.value:
                occupied = session.query(SeatAllocation).filter(
                    SeatAllocation.seat_id == seat.id,
                    SeatAllocation.is_active.is_(True),
                    SeatAllocation.status == AllocationStatus.OCCUPIED.value
                ).count()
                if occupied:
                    raise ConflictError(
                        "seat has active allocations",
                        details={"seat_id": seat.id, "active_allocations": occupied}
                    )
            seat.status = status
            seat.modified_by = actor
            logger.info(f"Seat {seat.seat_number} of library {library_id} set to {status}")
            return serialize_seat(seat)

    # Students

    def list_students(self, library_id: int) -> List[Dict]:
        with self.get_session() as session:
            self.require_library(session, library_id)
            students = session.query(Student).filter(
                Student.library_id == library_id,
                Student.is_active.is_(True)
            ).order_by(Student.id.desc()).all()
            return [serialize_student(student) for student in students]

    def search_students(self, library_id: int, query: str) -> List[Dict]:
        """Match on code, name or mobile number; each hit carries its active subscription."""
        with self.get_session() as session:
            self.require_library(session, library_id)
            escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            students = session.query(Student).filter(
                Student.library_id == library_id,
                Student.is_active.is_(True),
                or_(
                    Student.student_code.ilike(pattern, escape="\\"),
                    Student.student_name.ilike(pattern, escape="\\"),
                    Student.mobile_no.ilike(pattern, escape="\\"),
                )
            ).order_by(Student.student_code).all()

            results = []
            for student in students:
                detail = serialize_student(student)
                subscription = session.query(Subscription).filter(
                    Subscription.student_id == student.id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value
                ).first()
                detail["subscription"] = serialize_subscription(subscription) if subscription else None
                detail["seat_number"] = subscription.seat.seat_number if subscription else None
                results.append(detail)
            return results

    def update_student(self, library_id: int, student_id: int, changes: Dict[str, Any], actor: str) -> Dict:
        unknown = sorted(set(changes) - set(STUDENT_UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError("unknown student fields", details={"fields": unknown})
        if 'status' in changes and changes['status'] not in {s.value for s in StudentStatus}:
            raise ValidationError("status must be 'active' or 'inactive'", details={"field": "status"})
        if 'is_active' in changes and not isinstance(changes['is_active'], bool):
            raise ValidationError("is_active must be a boolean", details={"field": "is_active"})
        for field, value in changes.items():
            if field in ('status', 'is_active'):
                continue
            if field in STUDENT_REQUIRED_FIELDS and (not isinstance(value, str) or not value.strip()):
                raise ValidationError(f"{field} must not be empty", details={"field": field})
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{field} must be a string", details={"field": field})

        with self.get_session() as session:
            student = get_owned(session, Student, student_id, library_id, "student")
            if changes.get('is_active') is False:
                active = session.query(Subscription).filter(
                    Subscription.student_id == student.id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value
                ).first()
                if active is not None:
                    raise StateError(
                        "student has an active subscription",
                        details={"student_id": student.id, "subscription_id": active.id}
                    )
            for field, value in changes.items():
                setattr(student, field, value)
            student.modified_by = actor
            session.flush()
            return serialize_student(student)

    # Listings

    def list_subscriptions(self, library_id: int, status: Optional[str] = None) -> List[Dict]:
        if status is not None and status not in {s.value for s in SubscriptionStatus}:
            raise ValidationError("unknown subscription status", details={"status": status})

        with self.get_session() as session:
            self.require_library(session, library_id)
            query = session.query(Subscription, Student, Seat).join(
                Student, Subscription.student_id == Student.id
            ).join(
                Seat, Subscription.seat_id == Seat.id
            ).filter(Subscription.library_id == library_id)
            if status:
                query = query.filter(Subscription.status == status)

            results = []
            for subscription, student, seat in query.order_by(Subscription.id.desc()).all():
                detail = serialize_subscription(subscription)
                detail["student_name"] = student.student_name
                detail["student_code"] = student.student_code
                detail["seat_number"] = seat.seat_number
                results.append(detail)
            return results

    def list_payments(self, library_id: int) -> List[Dict]:
        with self.get_session() as session:
            self.require_library(session, library_id)
            rows = session.query(Payment, Student).join(
                Student, Payment.student_id == Student.id
            ).filter(
                Payment.library_id == library_id
            ).order_by(Payment.payment_date.desc(), Payment.id.desc()).all()

            results = []
            for payment, student in rows:
                detail = serialize_payment(payment)
                detail["student_name"] = student.student_name
                detail["student_code"] = student.student_code
                results.append(detail)
            return results

    # Expenses

    def create_expense(
        self,
        library_id: int,
        purpose: str,
        subject: str,
        amount: Any,
        expense_date: date,
        actor: str,
        description: Optional[str] = None,
    ) -> Dict:
        if not purpose or not subject:
            raise ValidationError("purpose and subject are required")
        value = to_money(amount, "amount")
        if value <= 0:
            raise ValidationError("amount must be greater than zero", details={"field": "amount"})

        with self.get_session() as session:
            self.require_library(session, library_id)
            expense = Expense(
                library_id=library_id,
                purpose=purpose,
                subject=subject,
                amount=value,
                expense_date=expense_date,
                description=description,
                created_by=actor,
                modified_by=actor,
            )
            session.add(expense)
            session.flush()
            logger.info(f"Expense {expense.id} recorded for library {library_id}: {value}")
            return serialize_expense(expense)

    def list_expenses(self, library_id: int) -> List[Dict]:
        with self.get_session() as session:
            self.require_library(session, library_id)
            expenses = session.query(Expense).filter(
                Expense.library_id == library_id,
                Expense.is_active.is_(True)
            ).order_by(Expense.expense_date.desc(), Expense.id.desc()).all()
            return [serialize_expense(expense) for expense in expenses]

    def delete_expense(self, library_id: int, expense_id: int, actor: str) -> None:
        with self.get_session() as session:
            expense = get_owned(session, Expense, expense_id, library_id, "expense")
            if not expense.is_active:
                raise NotFoundError("expense not found", details={"expense_id": expense_id})
            expense.is_active = False
            expense.modified_by = actor

    def health_check(self) -> Dict:
        """Report database connectivity and library count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                # Test database connection
                session.execute(text("SELECT 1"))

                library_count = session.query(func.count(Library.id)).scalar()

                return {
                    "status": "healthy",
                    "database": "connected",
                    "libraries": library_count
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }
