from .auth import User, SessionToken
from .events import Event, TicketType
from .orders import Order, OrderItem
from .tickets import Ticket, TicketTransfer
from .ledger import FulfillmentLedgerEvent

__all__ = [
    'User', 'SessionToken',
    'Event', 'TicketType',
    'Order', 'OrderItem',
    'Ticket', 'TicketTransfer',
    'FulfillmentLedgerEvent',
]
