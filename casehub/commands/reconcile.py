import asyncio

from casehub.clients.gateway_a import GatewayAClient
from casehub.clients.gateway_b import GatewayBClient
from casehub.database import SessionLocal
from casehub.payments import PaymentSettlementPipeline, sweep_expired_entries
from casehub.reconciliation import generate_pending_report

async def reconcile(output_path: str = "reconciliation.csv") -> int:
    pipeline = PaymentSettlementPipeline(gateway_a=GatewayAClient(), gateway_b=GatewayBClient())
    db = SessionLocal()
    try:
        sweep_expired_entries(db)
        await pipeline.poll_pending_entries(db, limit=1000)
        csv_text, pending_count = generate_pending_report(db)
    finally:
        db.close()
        await pipeline.gateway_a.aclose()
        await pipeline.gateway_b.aclose()
    with open(output_path, "w", newline="") as f:
        f.write(csv_text)
    return 1 if pending_count else 0

if __name__ == "__main__":
    exit_code = asyncio.run(reconcile())
    raise SystemExit(exit_code)
