# Overview: Human-readable sequential document numbers per store and document type.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import VersionConflictError
from ..models import DocumentSequence


# document_type -> number prefix
DOCUMENT_PREFIXES = {
    "ORDER": "SO",
    "PURCHASE": "PO",
    "TRANSFER": "TR",
    "REFUND": "RF",
}


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _bump(store_id: int, document_type: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.store_id == store_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(store_id=store_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    store_id: int,
    document_type: str,
    pad: int = 4,
) -> str:
    """
    Allocate the next document number for a store/type, e.g. "SO-001-0042".

    Runs inside the caller's transaction: the number is only consumed if the
    document that uses it commits. Two writers creating the first number for
    a pair collide on the unique key; the loser gets VersionConflictError and
    is retried by the caller's retry loop.
    """
    if not store_id:
        raise DocumentSequenceError("store_id is required")
    prefix = DOCUMENT_PREFIXES.get(document_type)
    if prefix is None:
        raise DocumentSequenceError(f"Unknown document_type {document_type!r}")

    next_num = _bump(store_id, document_type)
    if next_num is None:
        db.session.add(DocumentSequence(store_id=store_id, document_type=document_type, next_number=2))
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            raise VersionConflictError(
                f"{document_type} sequence for store {store_id} was created concurrently",
                details={"store_id": store_id, "document_type": document_type},
            ) from exc
        next_num = 1

    return f"{prefix}-{store_id:03d}-{next_num:0{pad}d}"
