# backend/ticketing/routes/transfers.py
"""
Ticket transfer API routes.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..decorators import require_auth
from ..services import transfer_service


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


def _error_response(e: transfer_service.TransferError):
    if isinstance(e, (transfer_service.TicketNotFound, transfer_service.TransferNotFound)):
        status = 404
    elif isinstance(e, transfer_service.TransferForbidden):
        status = 403
    elif isinstance(e, (transfer_service.TransferAlreadyPending, transfer_service.TransferNotPending)):
        status = 409
    else:
        status = 400
    return jsonify({"error": str(e), "code": type(e).__name__}), status


@transfers_bp.route("", methods=["POST"])
@require_auth
def initiate_transfer():
    """
    Start transferring a ticket.

    Request body:
    {
        "ticket_id": int,
        "to_email": str
    }

    Returns:
        201: {transfer, email_sent, accept_url}
        400: Invalid request / transfer window closed
        403: Caller does not hold the ticket
        404: Ticket not found
        409: A transfer is already pending
    """
    data = request.get_json(silent=True) or {}
    if "to_email" in data and not isinstance(data["to_email"], str):
        return jsonify({"error": "to_email must be a string"}), 400

    try:
        result = transfer_service.initiate_transfer(
            ticket_id=int(data["ticket_id"]),
            from_user_id=g.current_user.id,
            to_email=data["to_email"],
        )

        return jsonify({
            "transfer": result.transfer.to_dict(),
            "email_sent": result.email_sent,
            "accept_url": result.accept_url,
        }), 201

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except (TypeError, ValueError):
        db.session.rollback()
        return jsonify({"error": "ticket_id must be an integer"}), 400
    except transfer_service.TransferError as e:
        db.session.rollback()
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to initiate transfer")
        return jsonify({"error": "Internal server error"}), 500


@transfers_bp.route("/accept", methods=["POST"])
@require_auth
def accept_transfer():
    """
    Accept a transfer by code.

    Request body:
    {
        "code": str
    }

    Returns:
        200: Transfer accepted, ticket now held by caller
        403: Transfer addressed to a different email
        404: Unknown code
        409: Transfer no longer pending
    """
    data = request.get_json(silent=True) or {}
    code = data.get("code")
    if not code:
        return jsonify({"error": "Missing required field: 'code'"}), 400
    if not isinstance(code, str):
        return jsonify({"error": "code must be a string"}), 400

    try:
        transfer = transfer_service.accept_transfer(code, g.current_user.id)
        return jsonify({"transfer": transfer.to_dict()}), 200

    except transfer_service.TransferError as e:
        db.session.rollback()
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to accept transfer")
        return jsonify({"error": "Internal server error"}), 500


@transfers_bp.route("/<int:transfer_id>/cancel", methods=["POST"])
@require_auth
def cancel_transfer(transfer_id: int):
    """
    Cancel a pending transfer (sender only).

    Request body:
    {
        "reason": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    reason = data.get("reason")
    if reason is not None and not isinstance(reason, str):
        return jsonify({"error": "reason must be a string"}), 400

    try:
        transfer = transfer_service.cancel_transfer(
            transfer_id,
            g.current_user.id,
            reason=reason,
        )
        return jsonify({"transfer": transfer.to_dict()}), 200

    except transfer_service.TransferError as e:
        db.session.rollback()
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to cancel transfer")
        return jsonify({"error": "Internal server error"}), 500


@transfers_bp.route("/<int:transfer_id>/reject", methods=["POST"])
@require_auth
def reject_transfer(transfer_id: int):
    """Decline a pending transfer (recipient only)."""
    try:
        transfer = transfer_service.reject_transfer(transfer_id, g.current_user.id)
        return jsonify({"transfer": transfer.to_dict()}), 200

    except transfer_service.TransferError as e:
        db.session.rollback()
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reject transfer")
        return jsonify({"error": "Internal server error"}), 500


@transfers_bp.route("/incoming", methods=["GET"])
@require_auth
def list_incoming():
    transfers = transfer_service.list_incoming_transfers(g.current_user.id)
    return jsonify({
        "transfers": [transfer_service.get_transfer_summary(t) for t in transfers],
    }), 200


@transfers_bp.route("/outgoing", methods=["GET"])
@require_auth
def list_outgoing():
    transfers = transfer_service.list_outgoing_transfers(g.current_user.id)
    return jsonify({"transfers": [t.to_dict() for t in transfers]}), 200
