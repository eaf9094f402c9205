"""Assign-once transaction codes for document requests."""
import secrets
import string
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import DocumentRequest
from utils.errors import CodeAssignmentExhausted, NotFoundError

_ALPHABET = string.ascii_uppercase + string.digits


def candidate_code(request_id: str, year: Optional[int] = None) -> str:
    """``<year>-<6 random alnum>-<last 6 of the request id>``, all uppercase."""
    year = year or datetime.utcnow().year
    segment = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    fragment = request_id.replace("-", "")[-6:].upper()
    return f"{year}-{segment}-{fragment}"


def _code_taken(code: str) -> bool:
    return db.session.query(DocumentRequest.id).filter(DocumentRequest.transaction_code == code).first() is not None


def ensure_transaction_code(request_id: str) -> str:
    """Return the request's code, minting one only if it has none yet.

    The write is conditional on the column still being null, so two concurrent
    callers end up sharing whichever code landed first.
    """
    attempts = int(current_app.config.get("TRANSACTION_CODE_ATTEMPTS", 6))
    for attempt in range(1, attempts + 1):
        existing = (
            db.session.query(DocumentRequest.transaction_code).filter(DocumentRequest.id == request_id).first()
        )
        if existing is None:
            raise NotFoundError("Document request not found")
        if existing[0]:
            return existing[0]

        code = candidate_code(request_id)
        if _code_taken(code):
            current_app.logger.warning("Transaction code collision", extra={"attempt": attempt})
            continue
        try:
            updated = (
                DocumentRequest.query.filter(
                    DocumentRequest.id == request_id,
                    DocumentRequest.transaction_code.is_(None),
                ).update({"transaction_code": code}, synchronize_session=False)
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            current_app.logger.warning("Transaction code collision on write", extra={"attempt": attempt})
            continue
        if updated:
            current_app.logger.info(
                "transaction_code_assigned", extra={"request_id": request_id, "attempt": attempt}
            )
            return code
        # Lost the race: loop back and read the winner's code.

    raise CodeAssignmentExhausted(attempts=attempts)
