# Overview: Atomic per-organization document number allocation.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence

PREFIXES = {
    "SALE": "S",
    "RETURN": "RET",
    "TRANSFER": "TRF",
    "PURCHASE_ORDER": "PO",
    "RECEIVING": "RCV",
    "INVOICE": "INV",
    "ADJUSTMENT": "ADJ",
}


def next_document_number(*, org_id: int, document_type: str, pad: int = 6) -> str:
    """
    Allocate the next document number for an organization/type.

    Must run inside the caller's write transaction: the UPDATE takes the row
    lock, and a first-use INSERT races safely inside a savepoint.
    """
    prefix = PREFIXES[document_type]
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.org_id == org_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(org_id=org_id, document_type=document_type, next_number=2))
            return f"{prefix}-{str(1).zfill(pad)}"
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(org_id=org_id, document_type=document_type)
        .scalar()
    )
    return f"{prefix}-{str(current - 1).zfill(pad)}"
