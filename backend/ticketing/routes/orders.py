# Overview: Order inspection and issuance reconciliation routes.

from flask import Blueprint, jsonify, g, current_app

from ..extensions import db
from ..decorators import require_auth, require_staff
from ..services import issuance_service, order_service
from ..services.order_service import OrderNotFound
from ..services.issuance_service import IssuanceFailed


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    """Order with items and issued tickets. Owner or staff."""
    try:
        order = order_service.get_order(order_id)
    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404

    if order.user_id != g.current_user.id and not g.current_user.is_staff:
        # Same answer as a missing order; do not reveal other users' orders
        return jsonify({"error": f"Order {order_id} not found"}), 404

    return jsonify({"order": order_service.get_order_summary(order_id)}), 200


@orders_bp.post("/<int:order_id>/reissue")
@require_auth
@require_staff
def reissue_route(order_id: int):
    """
    Re-run issuance for a paid order.

    Idempotent: items that already have their tickets are skipped.

    Returns:
        200: {tickets_created, issued_counts}
        404: Order not found
        409: Order not paid, or issuance failed again
    """
    try:
        created = issuance_service.issue_tickets(order_id)
        return jsonify({
            "tickets_created": len(created),
            "issued_counts": {
                str(item_id): count
                for item_id, count in issuance_service.get_issued_counts(order_id).items()
            },
        }), 200

    except OrderNotFound as e:
        return jsonify({"error": str(e)}), 404
    except IssuanceFailed as e:
        db.session.rollback()
        return jsonify({"error": str(e), "order_item_id": e.order_item_id}), 409
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reissue tickets")
        return jsonify({"error": "Internal server error"}), 500
