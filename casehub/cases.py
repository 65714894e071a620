from sqlalchemy.orm import Session

from casehub.config import CHANCE_SUM_TOLERANCE
from casehub.errors import NotFoundError, ValidationError
from casehub.logging_config import get_logger
from casehub.models import models

logger = get_logger(__name__)


def validate_chances(items: list[dict]):
    """
    Reject a case item list that could not be drawn from fairly.
    """
    if not items:
        raise ValidationError("a case needs at least one item")
    seen = set()
    for entry in items:
        chance = entry["chancePercent"]
        if not 0 < chance <= 100:
            raise ValidationError(f"chancePercent for item {entry['itemId']} must be in (0, 100]")
        if entry["itemId"] in seen:
            raise ValidationError(f"item {entry['itemId']} listed more than once")
        seen.add(entry["itemId"])
    total = sum(entry["chancePercent"] for entry in items)
    if abs(total - 100) > CHANCE_SUM_TOLERANCE:
        raise ValidationError(f"chances must sum to 100 (got {total:.4f})")


def save_case_items(db: Session, case_id: int, items: list[dict]) -> models.Case:
    """
    Replace a case's item list. Order of ``items`` is the draw order.
    """
    validate_chances(items)
    case = db.get(models.Case, case_id)
    if not case:
        raise NotFoundError(f"case {case_id} not found")

    item_ids = [entry["itemId"] for entry in items]
    known = {row.id for row in db.query(models.Item.id).filter(models.Item.id.in_(item_ids))}
    missing = [item_id for item_id in item_ids if item_id not in known]
    if missing:
        raise ValidationError(f"unknown item ids: {missing}")

    try:
        case.items.clear()
        db.flush()
        for position, entry in enumerate(items):
            case.items.append(models.CaseItem(
                item_id=entry["itemId"],
                chance_percent=entry["chancePercent"],
                position=position,
            ))
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Saved case items caseId=%s count=%s", case_id, len(items))
    return case


def serialize_case(case: models.Case) -> dict:
    return {
        "id": case.id,
        "name": case.name,
        "price": case.price,
        "isActive": case.is_active,
        "openCount": case.open_count,
        "items": [
            {"itemId": ci.item_id, "chancePercent": ci.chance_percent, "position": ci.position}
            for ci in case.items
        ],
    }
