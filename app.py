"""HTTP entrypoint for the library seat and subscription ledger."""

from flask import Flask, request, jsonify
from flask_cors import CORS
from datetime import date
from functools import wraps
import logging
import os
from dotenv import load_dotenv
from typing import Any, Dict, List, Optional, Tuple

load_dotenv()
from database_manager import DatabaseManager
from errors import LedgerError, ValidationError
from ledger import SeatLedger, build_plan, REQUIRED_STUDENT_FIELDS, OPTIONAL_STUDENT_FIELDS

logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'))
logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = 'sqlite:///ledger.db'

# Static capability set per role; the caller's identity is supplied by the auth layer in front of us
ROLE_CAPABILITIES = {
    'super_admin': {'read', 'write', 'manage_library', 'onboard'},
    'admin': {'read', 'write', 'manage_library'},
    'staff': {'read', 'write'},
}


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[str, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def validate_id_list(raw: Any, field: str) -> List[int]:
    """Validate a non-empty list of positive integer ids without duplicates."""
    if not isinstance(raw, list):
        raise ValidationError(f"{field} must be provided as a non-empty JSON array", details={"field": field})

    if len(raw) == 0:
        raise ValidationError(f"{field} must contain at least one id", details={"field": field})

    normalized: List[int] = []
    for index, value in enumerate(raw):
        normalized.append(parse_id(value, field, index=index))

    if len(set(normalized)) != len(normalized):
        raise ValidationError(f"{field} must not contain duplicates", details={"field": field})

    return normalized


def parse_id(value: Any, field: str, *, index: Optional[int] = None) -> int:
    details: Dict[str, Any] = {"field": field}
    if index is not None:
        details["index"] = index
    if isinstance(value, bool):  # Reject boolean masquerading as int
        raise ValidationError(f"{field} must be a positive integer", details=details)
    if isinstance(value, str) and value.strip().isdecimal():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} must be a positive integer", details=details)
    return value


def parse_date(value: Any, field: str, *, required: bool = True) -> Optional[date]:
    if value in (None, ''):
        if required:
            raise ValidationError(f"{field} is required", details={"field": field})
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", details={"field": field})
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", details={"field": field})


def plan_from_payload(data: Dict[str, Any]):
    return build_plan(
        parse_date(data.get('plan_start_date'), 'plan_start_date'),
        parse_date(data.get('plan_end_date'), 'plan_end_date'),
        data.get('subscription_cost'),
        data.get('paid_amount', 0),
        data.get('discount', 0),
    )


def require_capability(capability: str):
    """Resolve the caller from request headers and pass it to the view as ``actor``."""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            actor = (request.headers.get('X-Actor-Id') or '').strip()
            role = (request.headers.get('X-Actor-Role') or '').strip()
            if not actor:
                return jsonify({"error": "missing actor identity"}), 401
            if capability not in ROLE_CAPABILITIES.get(role, set()):
                return jsonify({"error": f"role '{role}' may not {capability}"}), 403
            return view(*args, actor=actor, **kwargs)
        return wrapper
    return decorator


def create_app(database_url: Optional[str] = None) -> Flask:
    app = Flask(__name__)
    CORS(app)

    # Instantiate the database layer once so all request handlers reuse the same pool
    db = DatabaseManager(
        database_url or os.getenv('DATABASE_URL', DEFAULT_DATABASE_URL),
        pool_size=int(os.getenv('DB_POOL_SIZE', 20)),
        max_overflow=int(os.getenv('DB_MAX_OVERFLOW', 40)),
    )
    ledger = SeatLedger(db)
    app.extensions['ledger_db'] = db
    app.extensions['seat_ledger'] = ledger

    @app.errorhandler(LedgerError)
    def handle_ledger_error(error: LedgerError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.error(f"Unhandled error on {request.method} {request.path}: {getattr(error, 'original_exception', error)}")
        return jsonify({"error": "internal error"}), 500

    # API Endpoints

    @app.route('/health', methods=['GET'])
    def health_check():
        """Expose the database connectivity and library count."""
        return jsonify(db.health_check())

    # Libraries

    @app.route('/libraries', methods=['POST'])
    @require_capability('onboard')
    def onboard_library(actor):
        """Create a library with its default shifts and seat map."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        total_seats = data.get('total_seats')
        if isinstance(total_seats, bool) or not isinstance(total_seats, int):
            return bad_request("total_seats must be a positive integer", details={"field": "total_seats"})

        library = db.onboard_library(
            name=data.get('name') or '',
            total_seats=total_seats,
            actor=actor,
            address=data.get('address'),
            phone=data.get('phone'),
            email=data.get('email'),
            description=data.get('description'),
        )
        return jsonify(library), 201

    @app.route('/libraries', methods=['GET'])
    @require_capability('read')
    def list_libraries(actor):
        return jsonify(db.list_libraries())

    @app.route('/libraries/<int:library_id>', methods=['GET'])
    @require_capability('read')
    def get_library(library_id, actor):
        return jsonify(db.get_library(library_id))

    @app.route('/libraries/<int:library_id>', methods=['DELETE'])
    @require_capability('onboard')
    def deactivate_library(library_id, actor):
        library = db.deactivate_library(library_id, actor)
        return jsonify({"message": "library deactivated", "library": library})

    @app.route('/libraries/<int:library_id>/shifts', methods=['GET'])
    @require_capability('read')
    def list_shifts(library_id, actor):
        return jsonify(db.list_shifts(library_id))

    # Seats

    @app.route('/libraries/<int:library_id>/seats/vacant', methods=['GET'])
    @require_capability('read')
    def vacant_seats(library_id, actor):
        """List seats free in every shift given as ``?shift_ids=1,2``."""
        raw = (request.args.get('shift_ids') or '').strip('[] ')
        shift_ids = validate_id_list([part.strip() for part in raw.split(',') if part.strip()], 'shift_ids')
        return jsonify(ledger.get_vacant_seats(library_id, shift_ids))

    @app.route('/libraries/<int:library_id>/seats/grid', methods=['GET'])
    @require_capability('read')
    def seat_grid(library_id, actor):
        return jsonify(db.get_seat_grid(library_id))

    @app.route('/libraries/<int:library_id>/seats/<int:seat_id>', methods=['PATCH'])
    @require_capability('manage_library')
    def update_seat(library_id, seat_id, actor):
        data, error_response = require_json_object()
        if error_response:
            return error_response
        return jsonify(db.set_seat_status(library_id, seat_id, data.get('status'), actor))

    # Registrations and students

    @app.route('/libraries/<int:library_id>/registrations', methods=['POST'])
    @require_capability('write')
    def register_student(library_id, actor):
        """Register a student on a seat for a set of shifts and open a subscription."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        shift_ids = validate_id_list(data.get('shift_ids'), 'shift_ids')
        seat_id = parse_id(data.get('seat_id'), 'seat_id')
        plan = plan_from_payload(data)

        existing_student_id = None
        student: Dict[str, Any] = {}
        if data.get('student_id') is not None:
            existing_student_id = parse_id(data.get('student_id'), 'student_id')
        else:
            raw_student = data.get('student')
            if not isinstance(raw_student, dict):
                return bad_request("student must be a JSON object", details={"field": "student"})
            student = {
                field: raw_student.get(field)
                for field in REQUIRED_STUDENT_FIELDS + OPTIONAL_STUDENT_FIELDS
            }
            student['admission_date'] = parse_date(raw_student.get('admission_date'), 'admission_date')

        result = ledger.create_registration(
            library_id,
            student,
            shift_ids,
            seat_id,
            plan,
            actor,
            payment_mode=data.get('payment_mode', 'cash'),
            existing_student_id=existing_student_id,
        )
        logger.info(f"Registration by {actor}: student {result['student']['student_code']}, seat {seat_id}")
        return jsonify(result), 201

    @app.route('/libraries/<int:library_id>/students', methods=['GET'])
    @require_capability('read')
    def list_students(library_id, actor):
        return jsonify(db.list_students(library_id))

    @app.route('/libraries/<int:library_id>/students/search', methods=['GET'])
    @require_capability('read')
    def search_students(library_id, actor):
        query = (request.args.get('q') or '').strip()
        if not query:
            return jsonify([])
        return jsonify(db.search_students(library_id, query))

    @app.route('/libraries/<int:library_id>/students/<int:student_id>', methods=['PATCH'])
    @require_capability('write')
    def update_student(library_id, student_id, actor):
        data, error_response = require_json_object()
        if error_response:
            return error_response
        return jsonify(db.update_student(library_id, student_id, data, actor))

    @app.route('/libraries/<int:library_id>/students/<int:student_id>/renew', methods=['POST'])
    @require_capability('write')
    def renew_for_student(library_id, student_id, actor):
        """Renew the student's active subscription on the same seat and shifts."""
        data, error_response = require_json_object()
        if error_response:
            return error_response
        subscription = ledger.renew_subscription(
            library_id, student_id, plan_from_payload(data), actor,
            payment_mode=data.get('payment_mode', 'cash'),
        )
        return jsonify(subscription), 201

    # Subscriptions

    @app.route('/libraries/<int:library_id>/subscriptions', methods=['GET'])
    @require_capability('read')
    def list_subscriptions(library_id, actor):
        return jsonify(db.list_subscriptions(library_id, request.args.get('status') or None))

    @app.route('/libraries/<int:library_id>/subscriptions/<int:subscription_id>/renew', methods=['POST'])
    @require_capability('write')
    def renew_subscription(library_id, subscription_id, actor):
        data, error_response = require_json_object()
        if error_response:
            return error_response
        subscription = ledger.renew_subscription_by_id(
            library_id, subscription_id, plan_from_payload(data), actor,
            payment_mode=data.get('payment_mode', 'cash'),
        )
        return jsonify(subscription), 201

    @app.route('/libraries/<int:library_id>/subscriptions/<int:subscription_id>/cancel', methods=['POST'])
    @require_capability('write')
    def cancel_subscription(library_id, subscription_id, actor):
        subscription = ledger.cancel_subscription(library_id, subscription_id, actor)
        return jsonify({"message": "subscription cancelled", "subscription": subscription})

    @app.route('/libraries/<int:library_id>/subscriptions/<int:subscription_id>/close', methods=['POST'])
    @require_capability('write')
    def close_subscription(library_id, subscription_id, actor):
        subscription = ledger.close_subscription(library_id, subscription_id, actor)
        return jsonify({"message": "subscription closed", "subscription": subscription})

    @app.route('/libraries/<int:library_id>/subscriptions/expire-lapsed', methods=['POST'])
    @require_capability('manage_library')
    def expire_lapsed(library_id, actor):
        """Administrative sweep that expires subscriptions past their plan end date."""
        as_of = None
        if request.data:
            data, error_response = require_json_object()
            if error_response:
                return error_response
            as_of = parse_date(data.get('as_of'), 'as_of', required=False)

        expired = ledger.expire_lapsed_subscriptions(library_id, actor, as_of=as_of)
        return jsonify({"message": "lapsed subscriptions expired", "expired": expired})

    # Payments

    @app.route('/libraries/<int:library_id>/payments', methods=['GET'])
    @require_capability('read')
    def list_payments(library_id, actor):
        return jsonify(db.list_payments(library_id))

    @app.route('/libraries/<int:library_id>/payments', methods=['POST'])
    @require_capability('write')
    def add_payment(library_id, actor):
        """Record a payment against a subscription."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        payment = ledger.add_payment(
            library_id,
            parse_id(data.get('subscription_id'), 'subscription_id'),
            data.get('amount'),
            actor,
            payment_mode=data.get('payment_mode', 'cash'),
            payment_date=parse_date(data.get('payment_date'), 'payment_date', required=False),
            transaction_id=data.get('transaction_id'),
        )
        return jsonify(payment), 201

    # Expenses

    @app.route('/libraries/<int:library_id>/expenses', methods=['GET'])
    @require_capability('read')
    def list_expenses(library_id, actor):
        return jsonify(db.list_expenses(library_id))

    @app.route('/libraries/<int:library_id>/expenses', methods=['POST'])
    @require_capability('write')
    def create_expense(library_id, actor):
        data, error_response = require_json_object()
        if error_response:
            return error_response

        expense = db.create_expense(
            library_id,
            purpose=data.get('purpose'),
            subject=data.get('subject'),
            amount=data.get('amount'),
            expense_date=parse_date(data.get('expense_date'), 'expense_date'),
            actor=actor,
            description=data.get('description'),
        )
        return jsonify(expense), 201

    @app.route('/libraries/<int:library_id>/expenses/<int:expense_id>', methods=['DELETE'])
    @require_capability('write')
    def delete_expense(library_id, expense_id, actor):
        db.delete_expense(library_id, expense_id, actor)
        return jsonify({"message": "expense deleted"})

    return app


if __name__ == '__main__':
    app = create_app()

    logger.info("""
    ================================
    LIBRARY SEAT LEDGER
    ================================
    Database: %s
    Occupancy: partial unique index + SELECT FOR UPDATE on seats
    ================================
    """, app.extensions['ledger_db'].engine.url.render_as_string(hide_password=True))

    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
