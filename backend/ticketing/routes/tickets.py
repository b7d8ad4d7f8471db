# Overview: Ticket listing for the current holder.

from flask import Blueprint, jsonify, g

from ..extensions import db
from ..decorators import require_auth
from ..models import Ticket


tickets_bp = Blueprint("tickets", __name__, url_prefix="/api/tickets")


@tickets_bp.get("")
@require_auth
def list_my_tickets():
    tickets = (
        db.session.query(Ticket)
        .filter_by(user_id=g.current_user.id)
        .order_by(Ticket.id.asc())
        .all()
    )
    return jsonify({
        "tickets": [
            {**ticket.to_dict(), "event": ticket.event.to_dict()}
            for ticket in tickets
        ],
    }), 200
