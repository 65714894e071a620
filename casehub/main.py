from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from sqlalchemy.orm import Session

from casehub.catalog import ProductCatalog
from casehub.cases import save_case_items, serialize_case
from casehub.clients.gateway_a import GatewayAClient
from casehub.clients.gateway_b import GatewayBClient
from casehub.clients.market import MarketPriceClient
from casehub.config import PaymentProvider, settings
from casehub.contracts.contracts import GatewayAWebhook, GatewayBWebhook
from casehub.database import SessionLocal, engine, get_db
from casehub.db import find_replay, remember_response
from casehub.errors import NotFoundError, register_error_handlers
from casehub.helpers import hash_request, serialize_ledger_entry, serialize_opening
from casehub.jobs import build_periodic_tasks
from casehub.logging_config import get_logger
from casehub.models import models
from casehub.notifications import LiveFeedNotifier
from casehub.opening import CaseOpeningService
from casehub.payments import PaymentSettlementPipeline, deposit_stats, get_ledger_entry, sweep_expired_entries
from casehub.probability import ProbabilityCalculator
from casehub.reconciliation import generate_pending_report
from casehub.schemas.app_schemas import (
    CreateDepositRequest,
    CreateDepositResponse,
    OpenCaseRequest,
    OpenCaseResponse,
    ProbabilityOptions,
    ProbabilityPreviewRequest,
    ProbabilityPreviewResponse,
    SaveCaseItemsRequest,
)
from casehub.security import require_bearer_token


logger = get_logger(__name__)

app = FastAPI(title="Case Hub")
register_error_handlers(app)

catalog = ProductCatalog(settings.catalog_file)
notifier = LiveFeedNotifier(size=settings.live_feed_size)
market_client = MarketPriceClient()
pipeline = PaymentSettlementPipeline(gateway_a=GatewayAClient(), gateway_b=GatewayBClient())
opening_service = CaseOpeningService(notifier=notifier)
calculator = ProbabilityCalculator(catalog, market_client)
periodic_tasks = build_periodic_tasks(SessionLocal, pipeline, market_client)


def get_pipeline() -> PaymentSettlementPipeline:
    return pipeline

def get_opening_service() -> CaseOpeningService:
    return opening_service

def get_calculator() -> ProbabilityCalculator:
    return calculator

@app.on_event("startup")
async def startup_event():
    models.Base.metadata.create_all(bind=engine)
    catalog.load()
    if settings.jobs_enabled:
        logger.info("Starting Case Hub periodic tasks")
        for task in periodic_tasks:
            await task.start()

@app.on_event("shutdown")
async def shutdown_event():
    for task in periodic_tasks:
        await task.stop()

@app.post("/openings", response_model=OpenCaseResponse)
def open_case_route(
    request: OpenCaseRequest,
    db: Session = Depends(get_db),
    service: CaseOpeningService = Depends(get_opening_service),
):
    result = service.open_case(db, request.accountId, request.caseId)
    return {
        "openingId": result.opening_id,
        "wonItem": result.won_item(),
        "newBalance": result.new_balance,
    }

@app.get("/openings/recent")
def recent_openings(limit: int = Query(20, ge=1, le=100), db: Session = Depends(get_db)):
    records = (
        db.query(models.OpeningRecord)
        .order_by(models.OpeningRecord.opened_at.desc(), models.OpeningRecord.id.desc())
        .limit(limit)
        .all()
    )
    return [serialize_opening(r) for r in records]

@app.get("/openings/live")
def live_feed(limit: int = Query(20, ge=1, le=100)):
    return notifier.recent(limit)

@app.get("/cases/{case_id}")
def get_case(case_id: int, db: Session = Depends(get_db)):
    case = db.get(models.Case, case_id)
    if not case:
        raise NotFoundError(f"case {case_id} not found")
    return serialize_case(case)

@app.post("/admin/cases/calculate-probabilities", response_model=ProbabilityPreviewResponse)
async def calculate_probabilities(
    request: ProbabilityPreviewRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    probability_calculator: ProbabilityCalculator = Depends(get_calculator),
):
    options = request.options or ProbabilityOptions()
    result = await probability_calculator.calculate(
        db,
        request.itemNames,
        request.algorithm,
        min_chance=options.minChance,
        max_chance=options.maxChance,
    )
    return {
        "items": result.items,
        "totalChance": result.total_chance,
        "algorithm": result.algorithm,
        "warnings": result.warnings,
    }

@app.put("/admin/cases/{case_id}/items")
def replace_case_items(
    case_id: int,
    request: SaveCaseItemsRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    case = save_case_items(db, case_id, [item.model_dump() for item in request.items])
    return serialize_case(case)

@app.post("/payments/deposits", response_model=CreateDepositResponse)
async def create_deposit(
    request: CreateDepositRequest,
    db: Session = Depends(get_db),
    settlement: PaymentSettlementPipeline = Depends(get_pipeline),
    idempotency_key: str | None = Header(None),
):
    body = request.model_dump(mode="json")
    body_hash = hash_request(body)
    if idempotency_key:
        existing = find_replay(db, idempotency_key, body_hash)
        if existing:
            return existing
    order = await settlement.create_deposit(
        db,
        request.accountId,
        request.amount,
        request.currency,
        request.provider,
        idempotency_key=idempotency_key,
    )
    response = {
        "redirectUrl": order.redirect_url,
        "ledgerEntryId": order.ledger_entry_id,
        "providerOrderRef": order.provider_order_ref,
    }
    if idempotency_key:
        return remember_response(db, idempotency_key, body_hash, response)
    return response

@app.post("/payments/gateway-a/webhook")
async def gateway_a_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settlement: PaymentSettlementPipeline = Depends(get_pipeline),
):
    # Always acknowledge; a non-200 makes the gateway redeliver.
    try:
        payload = GatewayAWebhook.model_validate(await request.json())
        logger.info("Received gateway_a webhook event=%s paymentId=%s status=%s", payload.event, payload.object.id, payload.object.status)
        result = await settlement.handle_gateway_a_webhook(db, payload)
        logger.info("gateway_a webhook processed outcome=%s ledgerEntryId=%s", result.outcome.value, result.ledger_entry_id)
    except Exception:  # noqa: BLE001
        logger.exception("gateway_a webhook processing failed")
    return {"status": "accepted"}

@app.post("/payments/gateway-b/webhook")
async def gateway_b_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settlement: PaymentSettlementPipeline = Depends(get_pipeline),
):
    try:
        payload = GatewayBWebhook.model_validate(await request.json())
        logger.info("Received gateway_b webhook trackerId=%s", payload.tracker_id)
        result = await settlement.handle_gateway_b_webhook(db, payload.tracker_id)
        logger.info("gateway_b webhook processed outcome=%s ledgerEntryId=%s", result.outcome.value, result.ledger_entry_id)
    except Exception:  # noqa: BLE001
        logger.exception("gateway_b webhook processing failed")
    return {"status": "accepted"}

@app.get("/accounts/{account_id}/transactions")
def list_transactions(
    account_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    entries = (
        db.query(models.LedgerEntry)
        .filter(models.LedgerEntry.account_id == account_id)
        .order_by(models.LedgerEntry.created_at.desc(), models.LedgerEntry.id.desc())
        .limit(limit)
        .all()
    )
    return [serialize_ledger_entry(e) for e in entries]

@app.get("/accounts/{account_id}/transactions/{entry_id}")
def get_transaction(account_id: str, entry_id: int, db: Session = Depends(get_db)):
    return serialize_ledger_entry(get_ledger_entry(db, account_id, entry_id))

@app.post("/admin/payments/sweep")
def sweep_expired(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    return {"expired": sweep_expired_entries(db)}

@app.post("/admin/payments/poll")
async def poll_pending(
    limit: int = Query(100, ge=1, le=1000),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    settlement: PaymentSettlementPipeline = Depends(get_pipeline),
):
    results = await settlement.poll_pending_entries(db, limit=limit)
    return [{"ledgerEntryId": r.ledger_entry_id, "outcome": r.outcome.value} for r in results]

@app.get("/admin/payments/stats")
def payment_stats(
    provider: Optional[PaymentProvider] = None,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    providers = [provider] if provider else list(PaymentProvider)
    return [deposit_stats(db, p) for p in providers]

@app.get("/admin/reconciliation")
def download_pending_report(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    csv_text, pending_count = generate_pending_report(db)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="pending-ledger.csv"',
            "X-Pending-Count": str(pending_count),
        },
    )

@app.post("/admin/catalog/reload")
def reload_catalog(_auth=Depends(require_bearer_token)):
    return {"items": catalog.reload()}

@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="Case Hub - Swagger UI")

@app.get("/health")
async def health():
    return {"status": "ok"}
