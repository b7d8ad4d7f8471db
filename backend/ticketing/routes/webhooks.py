# Overview: Inbound payment provider webhook endpoint.

"""
Payment webhook route.

Answers 200 {received: true, ...} for every outcome the provider should
stop redelivering (ignored types, malformed bodies, unknown orders,
duplicates). Answers non-2xx only when a retry can help: 503 when the
provider lookup failed, 500 when the status update could not be stored.
"""

from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..services import webhook_service
from ..services.payment_provider import UpstreamUnavailable, PaymentNotFound


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/payments")
def payment_webhook_route():
    payload = request.get_json(silent=True)

    try:
        result = webhook_service.handle_notification(payload)
        return jsonify(result.to_response()), 200

    except PaymentNotFound as e:
        current_app.logger.warning("Acknowledging webhook for unknown payment: %s", e)
        return jsonify({"received": True, "outcome": "payment_not_found"}), 200
    except UpstreamUnavailable as e:
        db.session.rollback()
        current_app.logger.warning("Payment provider unavailable, asking for redelivery: %s", e)
        return jsonify({"error": "Payment provider unavailable"}), 503
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to persist payment notification")
        return jsonify({"error": "Internal server error"}), 500
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to process payment notification")
        return jsonify({"error": "Internal server error"}), 500
