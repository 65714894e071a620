import csv
from io import StringIO
from typing import Tuple

from sqlalchemy.orm import Session

from casehub.config import LedgerStatus
from casehub.helpers import format_minor_units
from casehub.logging_config import get_logger
from casehub.models import models


logger = get_logger(__name__)

REPORT_HEADER = ["ledgerEntryId", "accountId", "provider", "providerOrderRef", "amount", "currency", "expiresAt", "hasOrder"]

def generate_pending_report(db: Session) -> Tuple[str, int]:
    """
    List ledger entries still waiting on a gateway outcome and return CSV text plus their count.
    """
    pending = (
        db.query(models.LedgerEntry)
        .filter(models.LedgerEntry.status == LedgerStatus.PENDING.value)
        .order_by(models.LedgerEntry.created_at)
        .all()
    )
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(REPORT_HEADER)
    for entry in pending:
        writer.writerow([
            entry.id,
            entry.account_id,
            entry.provider,
            entry.provider_order_ref or "",
            format_minor_units(entry.amount), # major units for humans
            entry.currency,
            entry.expires_at.isoformat() if entry.expires_at else "",
            bool(entry.provider_order_ref),
        ])
    logger.info("Pending ledger report generated with %s entries", len(pending))
    return output.getvalue(), len(pending)
