# Overview: Human-readable code allocation for orders and inventory units.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CodeSequence


class CodeSequenceError(Exception):
    """Raised when code sequence operations fail."""
    pass


def _current_next(kind: str) -> int:
    return (
        db.session.query(CodeSequence.next_number)
        .filter_by(kind=kind)
        .scalar()
    )


def next_code(*, kind: str, prefix: str, pad: int = 4) -> str:
    """
    Atomically allocate the next code for a kind (ORDER, INVENTORY).

    Runs inside the caller's transaction: the counter increment commits or
    rolls back together with the row that receives the code.
    """
    if not kind:
        raise CodeSequenceError("kind is required")

    stmt = (
        update(CodeSequence)
        .where(CodeSequence.kind == kind)
        .values(next_number=CodeSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        db.session.flush()
        next_num = _current_next(kind) - 1
    else:
        try:
            with db.session.begin_nested():
                db.session.add(CodeSequence(kind=kind, next_number=2))
            next_num = 1
        except IntegrityError:
            # Another writer created the counter first
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            db.session.flush()
            next_num = _current_next(kind) - 1

    return f"{prefix}{next_num:0{pad}d}"
