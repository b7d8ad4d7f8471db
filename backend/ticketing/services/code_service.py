# Overview: Random code generation for ticket and transfer codes.

"""
Code generation

Ticket codes and transfer codes share one generator: a fixed alphabet
([A-Z0-9], 36 symbols) sampled uniformly with the secrets CSPRNG.
allocate_unique_code() adds the "generate until unused" loop against a
unique column; the column's UNIQUE constraint remains the final guard
for codes allocated concurrently.
"""

from __future__ import annotations

import secrets
import string

from ..extensions import db


CODE_ALPHABET = string.ascii_uppercase + string.digits

TICKET_CODE_LENGTH = 12
TRANSFER_CODE_LENGTH = 10

MAX_CODE_ATTEMPTS = 10


class CodeAllocationError(Exception):
    """Raised when no unused code could be found within the attempt budget."""
    pass


def generate_code(length: int, alphabet: str = CODE_ALPHABET) -> str:
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def allocate_unique_code(
    column,
    length: int,
    *,
    alphabet: str = CODE_ALPHABET,
    reserved: set[str] | None = None,
    attempts: int = MAX_CODE_ATTEMPTS,
) -> str:
    """
    Generate a code not yet present in `column` (e.g. Ticket.ticket_code).

    `reserved` holds codes already handed out in the current unit of work
    but not yet flushed, so a batch never collides with itself.
    """
    for _ in range(attempts):
        code = generate_code(length, alphabet)
        if reserved is not None and code in reserved:
            continue
        taken = db.session.query(column).filter(column == code).first()
        if taken is None:
            if reserved is not None:
                reserved.add(code)
            return code
    raise CodeAllocationError(f"Could not allocate a unique {length}-character code")
