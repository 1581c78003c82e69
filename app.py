"""HTTP entrypoint for the seat reservation backend."""

from flask import Flask, request, jsonify
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError
import atexit
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from config import Settings
from database_manager import DatabaseManager
from booking_service import (
    BookingService,
    BookingNotFoundError,
    BookingExpiredError,
    InvalidBookingStateError,
    ReservationUnavailableError,
    ValidationError,
)
from expiry_worker import ExpiryReclaimer

logger = logging.getLogger(__name__)


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Any, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def parse_start_time(raw: Any) -> Optional[datetime]:
    """Accept ISO-8601 timestamps (a trailing Z included); naive values are taken as UTC."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[DatabaseManager] = None,
    start_reclaimer: bool = True,
) -> Flask:
    """Wire the database, the booking service and the reclaimer into a Flask app."""
    settings = settings or Settings.from_env()
    db = db or DatabaseManager(settings.database_url)
    service = BookingService(db, settings)

    app = Flask(__name__)
    CORS(app)
    app.extensions["booking_service"] = service

    if start_reclaimer:
        # Separate manager so the reclaimer never competes with requests for pooled connections
        reclaimer = ExpiryReclaimer(DatabaseManager(settings.database_url), settings.reclaim_interval_seconds)
        reclaimer.start()
        atexit.register(reclaimer.stop)
        app.extensions["expiry_reclaimer"] = reclaimer

    @app.errorhandler(SQLAlchemyError)
    def database_error(e):
        logger.error(f"Database error while handling {request.path}: {e}")
        return jsonify({"error": "database error"}), 500

    @app.route('/api/shows', methods=['POST'])
    def create_show():
        """Admin: create a show and its seats."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        name = data.get('name')
        if not isinstance(name, str) or not name.strip():
            return bad_request("name must be a non-empty string")

        start_time = parse_start_time(data.get('start_time'))
        if start_time is None:
            return bad_request("start_time must be an ISO-8601 timestamp")

        total_seats = data.get('total_seats')
        if isinstance(total_seats, bool) or not isinstance(total_seats, int) or total_seats < 1:
            return bad_request("total_seats must be a positive integer")

        show = db.create_show(name.strip(), start_time, total_seats)
        return jsonify({"show": show}), 201

    @app.route('/api/shows', methods=['GET'])
    def list_shows():
        """List shows with their seat counts."""
        return jsonify(db.list_shows())

    @app.route('/api/shows/<show_id>', methods=['GET'])
    def get_show(show_id):
        """Return one show with per-seat status."""
        show = db.get_show(show_id)
        if show is None:
            return jsonify({"error": "Show not found"}), 404
        return jsonify(show)

    @app.route('/api/bookings', methods=['POST'])
    def create_booking():
        """Hold seats and create a PENDING booking."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        show_id = data.get('show_id')
        seat_numbers = data.get('seat_numbers')
        if not show_id or not isinstance(seat_numbers, list) or not seat_numbers:
            return bad_request("show_id and seat_numbers (array) are required")

        user_id = data.get('user_id')
        if user_id is not None and not isinstance(user_id, str):
            return bad_request("user_id must be a string")

        try:
            result = service.reserve(show_id, seat_numbers, user_id=user_id)
        except ValidationError as e:
            return bad_request(str(e))
        except ReservationUnavailableError as e:
            logger.warning(str(e))
            return jsonify({"error": "could not determine seat availability, please retry"}), 503

        if result["status"] == "FAILED":
            return jsonify(result), 409
        return jsonify(result), 201

    @app.route('/api/bookings/<booking_id>', methods=['GET'])
    def get_booking(booking_id):
        """Return a booking and its seats."""
        booking = service.get_booking(booking_id)
        if booking is None:
            return jsonify({"error": "Booking not found"}), 404
        return jsonify(booking)

    @app.route('/api/bookings/<booking_id>/confirm', methods=['POST'])
    def confirm_booking(booking_id):
        """Convert a PENDING booking into a confirmed one."""
        try:
            return jsonify(service.confirm(booking_id)), 200
        except BookingNotFoundError as e:
            return jsonify({"error": str(e)}), 404
        except BookingExpiredError as e:
            return jsonify({"error": str(e)}), 410
        except InvalidBookingStateError as e:
            return jsonify({"error": str(e)}), 409

    @app.route('/health', methods=['GET'])
    def health_check():
        """Expose the database connectivity and show count."""
        return jsonify(db.health_check())

    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    app = create_app(settings)

    logger.info(f"""
    ================================
    SEAT RESERVATION ENGINE
    ================================
    Hold duration: {settings.hold_seconds}s
    Reclaim interval: {settings.reclaim_interval_seconds}s
    Reservation retries: {settings.max_reservation_retries}
    Concurrency: advisory show lock + SELECT FOR UPDATE SKIP LOCKED + seat versions
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
