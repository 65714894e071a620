from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from casehub.logging_config import get_logger
from casehub.models import models

logger = get_logger(__name__)


def _stored_response(record: models.IdempotencyKey, body_hash: str) -> dict:
    if record.request_hash != body_hash:
        raise HTTPException(status_code=409, detail="idempotency key reused with a different request")
    return record.response_body


def find_replay(db: Session, key: str, body_hash: str) -> dict | None:
    """
    Stored response of an earlier deposit request sent with the same
    Idempotency-Key, or None if the key is new.
    """
    record = db.query(models.IdempotencyKey).filter_by(key=key).first()
    return _stored_response(record, body_hash) if record else None


def remember_response(db: Session, key: str, body_hash: str, response_body: dict) -> dict:
    """
    Store the response for ``key``. When a concurrent request with the same
    key stored first, its response wins and is returned instead.
    """
    db.add(models.IdempotencyKey(key=key, request_hash=body_hash, response_body=response_body))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        record = db.query(models.IdempotencyKey).filter_by(key=key).one()
        logger.info("Idempotency key stored by a concurrent request key=%s", key)
        return _stored_response(record, body_hash)
    return response_body
