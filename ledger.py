"""Seat allocation and subscription lifecycle bookkeeping.

Every public method runs as a single transaction. Occupancy is re-checked
under a row lock on the seat at write time, and the partial unique index on
seat allocations turns any race that slips past the check into a
ConflictError instead of a double booking.
"""

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, NamedTuple, Optional
import logging

from database_manager import (
    DatabaseManager, get_owned, to_money, serialize_allocation, serialize_payment,
    serialize_seat, serialize_student, serialize_subscription, CENT,
)
from errors import ConflictError, NotFoundError, StateError, ValidationError
from models import (
    Seat, SeatAllocation, Shift, Student, Subscription, Payment,
    AllocationStatus, PaymentMode, SeatStatus, StudentStatus, SubscriptionStatus,
)

logger = logging.getLogger(__name__)

STUDENT_CODE_PREFIX = 'STD'
STUDENT_CODE_WIDTH = 6
REQUIRED_STUDENT_FIELDS = ('student_name', 'mobile_no', 'gender', 'admission_date')
OPTIONAL_STUDENT_FIELDS = ('email_id', 'guardian_name', 'guardian_phone', 'address', 'manual_comments')


class PlanTerms(NamedTuple):
    start: date
    end: date
    cost: Decimal
    paid: Decimal
    discount: Decimal

    @property
    def pending(self) -> Decimal:
        return pending_amount(self.cost, self.paid, self.discount)


def pending_amount(cost: Decimal, paid: Decimal, discount: Decimal) -> Decimal:
    """Outstanding balance, floored at zero."""
    return max(Decimal('0'), cost - paid - discount).quantize(CENT)


def format_student_code(serial: int) -> str:
    return f"{STUDENT_CODE_PREFIX}{serial:0{STUDENT_CODE_WIDTH}d}"


def build_plan(
    plan_start_date: date,
    plan_end_date: date,
    subscription_cost: Any,
    paid_amount: Any = 0,
    discount: Any = 0,
) -> PlanTerms:
    if not isinstance(plan_start_date, date) or not isinstance(plan_end_date, date):
        raise ValidationError("plan_start_date and plan_end_date must be dates")
    if plan_end_date < plan_start_date:
        raise ValidationError(
            "plan_end_date must not precede plan_start_date",
            details={"field": "plan_end_date"}
        )
    return PlanTerms(
        start=plan_start_date,
        end=plan_end_date,
        cost=to_money(subscription_cost, "subscription_cost", required=True),
        paid=to_money(paid_amount, "paid_amount"),
        discount=to_money(discount, "discount"),
    )


def validate_payment_mode(payment_mode: str) -> str:
    modes = [mode.value for mode in PaymentMode]
    if payment_mode not in modes:
        raise ValidationError("unknown payment_mode", details={"allowed": modes})
    return payment_mode


class SeatLedger:
    """Owns seat-per-shift allocation and the financial state of subscriptions."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # Availability

    def get_vacant_seats(self, library_id: int, shift_ids: Iterable[int]) -> List[Dict]:
        """Seats free in every requested shift. A hint for the client, not a reservation."""
        shift_ids = list(shift_ids)
        with self.db.get_session() as session:
            self.db.require_library(session, library_id)
            self._load_shifts(session, library_id, shift_ids)

            occupied = select(SeatAllocation.seat_id).where(
                SeatAllocation.shift_id.in_(shift_ids),
                SeatAllocation.status == AllocationStatus.OCCUPIED.value,
                SeatAllocation.is_active.is_(True)
            )
            seats = session.query(Seat).filter(
                Seat.library_id == library_id,
                Seat.is_active.is_(True),
                Seat.status != SeatStatus.BLOCKED.value,
                ~Seat.id.in_(occupied)
            ).order_by(Seat.seat_number).all()
            return [serialize_seat(seat) for seat in seats]

    # Registration

    def create_registration(
        self,
        library_id: int,
        student: Dict[str, Any],
        shift_ids: Iterable[int],
        seat_id: int,
        plan: PlanTerms,
        actor: str,
        payment_mode: str = PaymentMode.CASH.value,
        existing_student_id: Optional[int] = None,
    ) -> Dict:
        """Register a student on a seat across a set of shifts and open an active subscription."""
        shift_ids = list(shift_ids)
        validate_payment_mode(payment_mode)
        if existing_student_id is None:
            missing = [field for field in REQUIRED_STUDENT_FIELDS if not student.get(field)]
            if missing:
                raise ValidationError("missing student fields", details={"fields": missing})

        with self.db.get_session() as session:
            self.db.require_library(session, library_id)
            shifts = self._load_shifts(session, library_id, shift_ids)

            # Lock the seat so concurrent registrations on it serialize here
            seat = get_owned(session, Seat, seat_id, library_id, "seat", lock=True)
            if not seat.is_active:
                raise NotFoundError("seat not found", details={"seat_id": seat_id})
            if seat.status == SeatStatus.BLOCKED.value:
                raise ConflictError("seat is blocked", details={"seat_id": seat_id})
            self._ensure_vacant(session, seat, shift_ids)

            if existing_student_id is not None:
                record = get_owned(session, Student, existing_student_id, library_id, "student")
                if self._active_subscription(session, record.id) is not None:
                    raise StateError(
                        "student already has an active subscription",
                        details={"student_id": record.id}
                    )
            else:
                record = Student(
                    library_id=library_id,
                    student_code=self._next_student_code(session, library_id),
                    status=StudentStatus.ACTIVE.value,
                    created_by=actor,
                    modified_by=actor,
                    **{field: student[field] for field in REQUIRED_STUDENT_FIELDS},
                    **{field: student.get(field) for field in OPTIONAL_STUDENT_FIELDS},
                )
                session.add(record)
                self._flush_or_conflict(session, "student code already taken, retry the registration")

            total_hours = sum(shift.total_hours for shift in shifts)
            subscription = Subscription(
                library_id=library_id,
                student_id=record.id,
                seat_id=seat.id,
                plan_name=f"{total_hours}h Plan",
                shift_ids=shift_ids,
                total_hours=total_hours,
                shift_start=min(shift.start_time for shift in shifts),
                shift_end=max(shift.end_time for shift in shifts),
                plan_start_date=plan.start,
                plan_end_date=plan.end,
                subscription_cost=plan.cost,
                paid_amount=plan.paid,
                discount=plan.discount,
                pending_amount=plan.pending,
                status=SubscriptionStatus.ACTIVE.value,
                created_by=actor,
                modified_by=actor,
            )
            session.add(subscription)
            self._flush_or_conflict(session, "student already has an active subscription")

            allocations = self._allocate(session, seat, shift_ids, record, subscription, actor)

            payment = None
            if plan.paid > 0:
                payment = self._record_payment(session, subscription, plan.paid, plan.start, payment_mode, actor)

            logger.info(
                f"Registered {record.student_code} on seat {seat.seat_number} "
                f"for shifts {shift_ids} (subscription {subscription.id})"
            )
            return {
                "student": serialize_student(record),
                "subscription": serialize_subscription(subscription),
                "allocations": [serialize_allocation(allocation) for allocation in allocations],
                "payment": serialize_payment(payment) if payment else None,
            }

    # Payments

    def add_payment(
        self,
        library_id: int,
        subscription_id: int,
        amount: Any,
        actor: str,
        payment_mode: str = PaymentMode.CASH.value,
        payment_date: Optional[date] = None,
        transaction_id: Optional[str] = None,
    ) -> Dict:
        """Append a payment and recompute the subscription's paid and pending amounts atomically."""
        value = to_money(amount, "amount")
        if value <= 0:
            raise ValidationError("amount must be greater than zero", details={"field": "amount"})
        validate_payment_mode(payment_mode)

        with self.db.get_session() as session:
            # Row lock prevents lost updates between concurrent payments
            subscription = get_owned(session, Subscription, subscription_id, library_id, "subscription", lock=True)
            self._require_active(subscription)

            payment = self._record_payment(
                session, subscription, value, payment_date or date.today(),
                payment_mode, actor, transaction_id
            )
            subscription.paid_amount = (Decimal(subscription.paid_amount) + value).quantize(CENT)
            subscription.pending_amount = pending_amount(
                Decimal(subscription.subscription_cost),
                subscription.paid_amount,
                Decimal(subscription.discount),
            )
            subscription.modified_by = actor
            session.flush()

            logger.info(
                f"Payment {payment.id} of {value} applied to subscription {subscription.id}, "
                f"pending now {subscription.pending_amount}"
            )
            return serialize_payment(payment)

    # Renewal

    def renew_subscription(
        self,
        library_id: int,
        student_id: int,
        plan: PlanTerms,
        actor: str,
        payment_mode: str = PaymentMode.CASH.value,
    ) -> Dict:
        """Renew the student's active subscription on the same seat and shifts."""
        validate_payment_mode(payment_mode)
        with self.db.get_session() as session:
            student = get_owned(session, Student, student_id, library_id, "student")
            current = self._active_subscription(session, student.id, lock=True)
            if current is None:
                raise StateError("no active subscription to renew", details={"student_id": student.id})
            return self._renew(session, current, student, plan, payment_mode, actor)

    def renew_subscription_by_id(
        self,
        library_id: int,
        subscription_id: int,
        plan: PlanTerms,
        actor: str,
        payment_mode: str = PaymentMode.CASH.value,
    ) -> Dict:
        validate_payment_mode(payment_mode)
        with self.db.get_session() as session:
            current = get_owned(session, Subscription, subscription_id, library_id, "subscription", lock=True)
            self._require_active(current)
            return self._renew(session, current, current.student, plan, payment_mode, actor)

    def _renew(self, session, current, student, plan, payment_mode, actor) -> Dict:
        current.status = SubscriptionStatus.RENEWED.value
        current.modified_by = actor
        self._release_allocations(session, current, actor)
        session.flush()

        successor = Subscription(
            library_id=current.library_id,
            student_id=current.student_id,
            seat_id=current.seat_id,
            plan_name=current.plan_name,
            shift_ids=list(current.shift_ids),
            total_hours=current.total_hours,
            shift_start=current.shift_start,
            shift_end=current.shift_end,
            plan_start_date=plan.start,
            plan_end_date=plan.end,
            subscription_cost=plan.cost,
            paid_amount=plan.paid,
            discount=plan.discount,
            pending_amount=plan.pending,
            status=SubscriptionStatus.ACTIVE.value,
            renewed_from_id=current.id,
            created_by=actor,
            modified_by=actor,
        )
        session.add(successor)
        self._flush_or_conflict(session, "student already has an active subscription")

        # Seat continuity: the occupant keeps the seat, no vacancy lookup beyond the unique index
        seat = session.get(Seat, current.seat_id)
        self._allocate(session, seat, successor.shift_ids, student, successor, actor)

        if plan.paid > 0:
            self._record_payment(session, successor, plan.paid, plan.start, payment_mode, actor)

        logger.info(f"Subscription {current.id} renewed as {successor.id} for student {student.student_code}")
        return serialize_subscription(successor)

    # Terminal transitions

    def cancel_subscription(self, library_id: int, subscription_id: int, actor: str) -> Dict:
        """Abort an active subscription before plan completion and free its seat."""
        return self._terminate(library_id, subscription_id, SubscriptionStatus.CANCELLED, actor)

    def close_subscription(self, library_id: int, subscription_id: int, actor: str) -> Dict:
        """Finish an active subscription that ran its course and free its seat."""
        return self._terminate(library_id, subscription_id, SubscriptionStatus.CLOSED, actor)

    def _terminate(self, library_id, subscription_id, status: SubscriptionStatus, actor: str) -> Dict:
        with self.db.get_session() as session:
            subscription = get_owned(session, Subscription, subscription_id, library_id, "subscription", lock=True)
            self._require_active(subscription)
            subscription.status = status.value
            subscription.modified_by = actor
            released = self._release_allocations(session, subscription, actor)
            session.flush()
            logger.info(f"Subscription {subscription.id} {status.value}, {released} allocations released")
            return serialize_subscription(subscription)

    def expire_lapsed_subscriptions(self, library_id: int, actor: str, as_of: Optional[date] = None) -> int:
        """Expire active subscriptions whose plan ended before as_of, returning the count."""
        as_of = as_of or date.today()
        with self.db.get_session() as session:
            self.db.require_library(session, library_id)
            lapsed = session.query(Subscription).filter(
                Subscription.library_id == library_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.plan_end_date < as_of
            ).with_for_update().all()

            for subscription in lapsed:
                subscription.status = SubscriptionStatus.EXPIRED.value
                subscription.modified_by = actor
                self._release_allocations(session, subscription, actor)

            if lapsed:
                logger.info(f"Expired {len(lapsed)} lapsed subscriptions in library {library_id}")
            return len(lapsed)

    # Internal helpers

    def _load_shifts(self, session, library_id: int, shift_ids: List[int]) -> List[Shift]:
        if not shift_ids:
            raise ValidationError("shift_ids must contain at least one shift", details={"field": "shift_ids"})
        if len(set(shift_ids)) != len(shift_ids):
            raise ValidationError("shift_ids must not contain duplicates", details={"field": "shift_ids"})

        shifts = session.query(Shift).filter(
            Shift.id.in_(shift_ids),
            Shift.library_id == library_id,
            Shift.is_active.is_(True)
        ).all()
        found = {shift.id for shift in shifts}
        missing = [shift_id for shift_id in shift_ids if shift_id not in found]
        if missing:
            raise NotFoundError("shift not found", details={"shift_ids": missing})
        return shifts

    def _ensure_vacant(self, session, seat: Seat, shift_ids: List[int]):
        taken = [
            shift_id for (shift_id,) in session.query(SeatAllocation.shift_id).filter(
                SeatAllocation.seat_id == seat.id,
                SeatAllocation.shift_id.in_(shift_ids),
                SeatAllocation.status == AllocationStatus.OCCUPIED.value,
                SeatAllocation.is_active.is_(True)
            ).all()
        ]
        if taken:
            logger.warning(f"Seat {seat.seat_number} already occupied in shifts {sorted(taken)}")
            raise ConflictError(
                "seat already occupied in requested shift(s)",
                details={"seat_id": seat.id, "shift_ids": sorted(taken)}
            )

    def _allocate(self, session, seat: Seat, shift_ids, student: Student, subscription: Subscription, actor: str):
        allocations = [
            SeatAllocation(
                seat_id=seat.id,
                shift_id=shift_id,
                student_id=student.id,
                subscription_id=subscription.id,
                status=AllocationStatus.OCCUPIED.value,
                gender=student.gender,
                created_by=actor,
                modified_by=actor,
            ) for shift_id in shift_ids
        ]
        session.add_all(allocations)
        self._flush_or_conflict(
            session, "seat already occupied in requested shift(s)",
            details={"seat_id": seat.id, "shift_ids": list(shift_ids)}
        )
        self._refresh_seat_status(session, seat)
        return allocations

    def _release_allocations(self, session, subscription: Subscription, actor: str) -> int:
        allocations = session.query(SeatAllocation).filter(
            SeatAllocation.subscription_id == subscription.id,
            SeatAllocation.is_active.is_(True)
        ).all()
        for allocation in allocations:
            allocation.is_active = False
            allocation.modified_by = actor
        session.flush()
        self._refresh_seat_status(session, session.get(Seat, subscription.seat_id))
        return len(allocations)

    def _refresh_seat_status(self, session, seat: Seat):
        # Informational mirror of allocation state; administrative blocks win
        if seat.status == SeatStatus.BLOCKED.value:
            return
        occupied = session.query(func.count(SeatAllocation.id)).filter(
            SeatAllocation.seat_id == seat.id,
            SeatAllocation.status == AllocationStatus.OCCUPIED.value,
            SeatAllocation.is_active.is_(True)
        ).scalar()
        seat.status = SeatStatus.OCCUPIED.value if occupied else SeatStatus.VACANT.value

    def _active_subscription(self, session, student_id: int, lock: bool = False) -> Optional[Subscription]:
        query = session.query(Subscription).filter(
            Subscription.student_id == student_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def _next_student_code(self, session, library_id: int) -> str:
        # Codes are fixed-width, so the lexicographic max is the numeric max
        latest = session.query(func.max(Student.student_code)).filter(
            Student.library_id == library_id
        ).scalar()
        serial = int(latest[len(STUDENT_CODE_PREFIX):]) if latest else 0
        return format_student_code(serial + 1)

    def _record_payment(self, session, subscription, amount, payment_date, payment_mode, actor, transaction_id=None):
        payment = Payment(
            library_id=subscription.library_id,
            student_id=subscription.student_id,
            subscription_id=subscription.id,
            amount=amount,
            payment_date=payment_date,
            payment_mode=payment_mode,
            transaction_id=transaction_id,
            status='completed',
            created_by=actor,
            modified_by=actor,
        )
        session.add(payment)
        session.flush()
        return payment

    @staticmethod
    def _require_active(subscription: Subscription):
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise StateError(
                f"subscription is {subscription.status}",
                details={"subscription_id": subscription.id, "status": subscription.status}
            )

    @staticmethod
    def _flush_or_conflict(session, message: str, details: Optional[Dict] = None):
        try:
            session.flush()
        except IntegrityError as e:
            logger.warning(f"Integrity conflict: {e.orig}")
            raise ConflictError(message, details=details)
