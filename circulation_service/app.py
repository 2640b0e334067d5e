import os
import logging
from functools import wraps

from flask import Flask, jsonify, request, abort, g
from flask_cors import CORS

from .config import Config
from .errors import CirculationError
from .service import CirculationService

logger = logging.getLogger(__name__)


# ----------------- serializers -----------------

def _iso(value):
    return value.isoformat() if value else None


def loan_json(loan):
    return {
        "loan_id": loan.id,
        "user_id": loan.user_id,
        "book_id": loan.book_id,
        "status": loan.status.value,
        "borrowed_at": _iso(loan.borrowed_at),
        "due_at": _iso(loan.due_at),
        "returned_at": _iso(loan.returned_at),
        "fine_amount": loan.fine_amount,
        "fine_paid": loan.fine_paid,
    }


def loan_summary_json(summary):
    data = loan_json(summary.loan)
    data.update(
        {
            "days_remaining": summary.days_remaining,
            "is_overdue": summary.is_overdue,
            "days_overdue": summary.days_overdue,
            "estimated_fine": summary.estimated_fine,
        }
    )
    return data


def reservation_json(reservation):
    return {
        "reservation_id": reservation.id,
        "user_id": reservation.user_id,
        "book_id": reservation.book_id,
        "status": reservation.status.value,
        "queue_position": reservation.queue_position,
        "expires_at": _iso(reservation.expires_at),
        "approved_at": _iso(reservation.approved_at),
        "cancelled_at": _iso(reservation.cancelled_at),
        "completed_at": _iso(reservation.completed_at),
        "created_at": _iso(reservation.created_at),
    }


def queue_status_json(status):
    return {
        "book": {
            "id": status.book_id,
            "title": status.title,
            "available_copies": status.available_copies,
        },
        "pending_count": status.pending_count,
        "approved_count": status.approved_count,
        "queue": [
            {
                "reservation_id": e.reservation_id,
                "user_id": e.user_id,
                "queue_position": e.queue_position,
                "expires_at": _iso(e.expires_at),
                "created_at": _iso(e.created_at),
            }
            for e in status.queue
        ],
    }


def page_json(page, serialize):
    return {
        "items": [serialize(item) for item in page.items],
        "pagination": {
            "page": page.page,
            "limit": page.limit,
            "total": page.total,
            "pages": page.pages,
        },
    }


def loan_stats_json(stats):
    return {
        "total_loans": stats.total_loans,
        "active": stats.active,
        "returned": stats.returned,
        "lost": stats.lost,
        "overdue": stats.overdue,
        "total_fines": stats.total_fines,
        "unpaid_fines": stats.unpaid_fines,
        "unpaid_count": stats.unpaid_count,
    }


# ----------------- request parsing -----------------

def _json_body():
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object")
    return data


def _int_field(data, name, required=True):
    value = data.get(name)
    if value is None:
        if required:
            raise ValueError(f"{name} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"{name} must be an integer")
    return int(value)


def _page_args():
    return {
        "page": request.args.get("page", 1, type=int),
        "limit": request.args.get("limit", type=int),
    }


# ----------------- app factory -----------------

def create_app(config=Config, service=None):
    app = Flask(__name__)
    app.config.from_object(config)
    CORS(app)

    if service is None:
        service = CirculationService.from_config(config)
    app.extensions["circulation"] = service

    def require_api_key(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            expected = app.config.get("SERVICE_API_KEY")
            sent = request.headers.get("X-API-Key")
            if expected and sent != expected:
                logger.warning("Invalid API key on %s", request.path)
                abort(401, description="Invalid or missing service API key")
            return func(*args, **kwargs)

        return wrapper

    def require_actor(func):
        """Identity is established upstream and forwarded in headers."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            actor = request.headers.get("X-Actor-Id")
            if not actor:
                abort(400, description="X-Actor-Id header is required")
            try:
                g.actor_id = int(actor)
            except ValueError:
                abort(400, description="X-Actor-Id must be an integer")
            g.is_admin = request.headers.get("X-Actor-Role", "").lower() == "admin"
            return func(*args, **kwargs)

        return wrapper

    @app.errorhandler(CirculationError)
    def handle_circulation_error(e):
        return jsonify({"error": e.code, "message": e.message}), e.http_status

    @app.errorhandler(ValueError)
    def handle_bad_input(e):
        return jsonify({"error": "bad_request", "message": str(e)}), 400

    @app.errorhandler(KeyError)
    def handle_missing_field(e):
        return jsonify({"error": "bad_request", "message": f"missing field {e}"}), 400

    # ----------------- health -----------------

    @app.get("/api/health")
    def health():
        return jsonify({"status": "ok", "service": "circulation_service"})

    # ----------------- loan endpoints -----------------

    @app.post("/api/loans")
    @require_api_key
    @require_actor
    def create_loan():
        data = _json_body()
        holder_id = _int_field(data, "user_id", required=False)
        if holder_id is None:
            holder_id = g.actor_id
        if holder_id != g.actor_id and not g.is_admin:
            abort(403, description="Only admins can borrow on behalf of another user")
        loan = service.create_loan(
            holder_id,
            _int_field(data, "book_id"),
            loan_days=_int_field(data, "days", required=False),
        )
        return jsonify(loan_json(loan)), 201

    @app.get("/api/loans")
    @require_api_key
    def list_loans():
        page = service.list_loans(
            holder_id=request.args.get("user_id", type=int),
            status=request.args.get("status"),
            **_page_args(),
        )
        return jsonify(page_json(page, loan_json))

    @app.get("/api/loans/<int:loan_id>")
    @require_api_key
    @require_actor
    def get_loan(loan_id):
        loan = service.get_loan(loan_id, g.actor_id, g.is_admin)
        return jsonify(loan_json(loan))

    @app.get("/api/loans/stats")
    @require_api_key
    def loan_stats():
        stats = service.loan_stats(request.args.get("user_id", type=int))
        return jsonify(loan_stats_json(stats))

    @app.post("/api/loans/<int:loan_id>/return")
    @require_api_key
    @require_actor
    def return_loan(loan_id):
        receipt = service.return_loan(loan_id, g.actor_id, g.is_admin)
        return jsonify(
            {
                "loan": loan_json(receipt.loan),
                "fine_details": {
                    "days_overdue": receipt.days_overdue,
                    "fine_amount": receipt.fine_amount,
                    "fine_rate": receipt.fine_rate,
                    "fine_paid": receipt.fine_paid,
                },
            }
        ), 200

    @app.post("/api/loans/<int:loan_id>/lost")
    @require_api_key
    @require_actor
    def mark_lost(loan_id):
        loan = service.mark_lost(loan_id, g.actor_id, g.is_admin)
        return jsonify(loan_json(loan)), 200

    @app.post("/api/loans/<int:loan_id>/fine/settle")
    @require_api_key
    def settle_fine(loan_id):
        """
        Called by the payment workflow once a fine payment has cleared.
        """
        loan = service.settle_fine(loan_id)
        return jsonify(loan_json(loan)), 200

    @app.get("/api/loans/overdue")
    @require_api_key
    def overdue_loans():
        return jsonify([loan_summary_json(s) for s in service.list_overdue_loans()])

    @app.get("/api/loans/unpaid-fines")
    @require_api_key
    def unpaid_fines():
        user_id = request.args.get("user_id", type=int)
        return jsonify([loan_json(l) for l in service.list_unpaid_fines(user_id)])

    @app.get("/api/users/<int:user_id>/loans")
    @require_api_key
    def user_loans(user_id):
        return jsonify([loan_summary_json(s) for s in service.list_active_loans(user_id)])

    # ----------------- reservation endpoints -----------------

    @app.post("/api/reservations")
    @require_api_key
    @require_actor
    def create_reservation():
        data = _json_body()
        reservation = service.create_reservation(g.actor_id, _int_field(data, "book_id"))
        return jsonify(reservation_json(reservation)), 201

    @app.get("/api/reservations")
    @require_api_key
    def list_reservations():
        page = service.list_reservations(
            holder_id=request.args.get("user_id", type=int),
            book_id=request.args.get("book_id", type=int),
            status=request.args.get("status"),
            **_page_args(),
        )
        return jsonify(page_json(page, reservation_json))

    @app.get("/api/reservations/<int:reservation_id>")
    @require_api_key
    @require_actor
    def get_reservation(reservation_id):
        reservation = service.get_reservation(reservation_id, g.actor_id, g.is_admin)
        return jsonify(reservation_json(reservation))

    @app.post("/api/reservations/<int:reservation_id>/cancel")
    @require_api_key
    @require_actor
    def cancel_reservation(reservation_id):
        reservation = service.cancel_reservation(reservation_id, g.actor_id, g.is_admin)
        return jsonify(reservation_json(reservation)), 200

    @app.post("/api/reservations/<int:reservation_id>/complete")
    @require_api_key
    def complete_reservation(reservation_id):
        reservation = service.complete_reservation(reservation_id)
        return jsonify(reservation_json(reservation)), 200

    @app.get("/api/books/<int:book_id>/queue")
    @require_api_key
    def queue_status(book_id):
        return jsonify(queue_status_json(service.get_queue_status(book_id)))

    @app.post("/api/reservations/expire")
    @require_api_key
    def expire_reservations():
        """
        Hook for the external scheduler.
        """
        result = service.sweep_expired()
        return jsonify(
            {
                "expired_count": result.expired_count,
                "processed": result.processed,
                "skipped": result.skipped,
                "failures": [
                    {"reservation_id": f.reservation_id, "error": f.error}
                    for f in result.failures
                ],
            }
        ), 200

    # ----------------- sync endpoints -----------------

    @app.post("/api/sync/retry")
    @require_api_key
    def retry_sync():
        delivered = service.retry_sync()
        return jsonify({"message": "Retry triggered", "delivered": delivered}), 200

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.getenv("PORT", "5001"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
