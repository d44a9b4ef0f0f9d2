from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import ConflictError, NotFoundError, ProcessorError, TipLedgerError, ValidationError
from .logging_config import setup_logging
from .models import (
    BatchDetail,
    BatchResult,
    FeeDeductionRequest,
    GeneratePayoutRequest,
    LedgerEntry,
    MilestoneSummary,
    PayoutBatch,
    PayoutBatchItem,
    ReversalSummary,
)
from .service import TipLedgerService

setup_logging()

app = FastAPI(
    title="Tip Ledger API",
    description="Referral reward ledger and weekly payout batch engine",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = TipLedgerService()


def get_service() -> TipLedgerService:
    return ledger_service


def _http_error(e: TipLedgerError) -> HTTPException:
    detail = {"error": e.code, "message": str(e)}
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    if isinstance(e, ConflictError):
        if e.batch_id is not None:
            detail["batch_id"] = str(e.batch_id)
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "tip-ledger"}


@app.post("/admin/referrals/milestones/run", response_model=MilestoneSummary, tags=["Referrals"])
def run_milestones(service: TipLedgerService = Depends(get_service)) -> MilestoneSummary:
    try:
        return service.run_milestone_evaluation()
    except ProcessorError as e:
        raise _http_error(e)


@app.post("/admin/referrals/reversals/run", response_model=ReversalSummary, tags=["Referrals"])
def run_reversals(service: TipLedgerService = Depends(get_service)) -> ReversalSummary:
    try:
        return service.run_reversal_evaluation()
    except ProcessorError as e:
        raise _http_error(e)


@app.get("/referrers/{referrer_id}/ledger", response_model=list[LedgerEntry], tags=["Referrals"])
def get_referrer_ledger(
    referrer_id: UUID,
    limit: int = 50,
    offset: int = 0,
    service: TipLedgerService = Depends(get_service),
) -> list[LedgerEntry]:
    return service.get_ledger_history(referrer_id, limit, offset)


@app.post(
    "/admin/payouts/generate-weekly",
    response_model=BatchResult,
    status_code=status.HTTP_201_CREATED,
    tags=["Payouts"],
)
def generate_weekly_payout(
    request: Optional[GeneratePayoutRequest] = None,
    service: TipLedgerService = Depends(get_service),
) -> BatchResult:
    request = request or GeneratePayoutRequest()
    try:
        if request.run_referrals:
            return service.run_weekly_payout(period=request, force=request.force)
        return service.generate_payout_batch(period=request, force=request.force)
    except TipLedgerError as e:
        raise _http_error(e)


@app.get("/admin/payouts/{batch_id}", response_model=BatchDetail, tags=["Payouts"])
def get_payout_batch(batch_id: UUID, service: TipLedgerService = Depends(get_service)) -> BatchDetail:
    try:
        batch, items = service.get_batch(batch_id)
    except NotFoundError as e:
        raise _http_error(e)
    return BatchDetail(batch=batch, items=items)


@app.post("/admin/payouts/{batch_id}/settle", response_model=PayoutBatch, tags=["Payouts"])
def settle_payout_batch(batch_id: UUID, service: TipLedgerService = Depends(get_service)) -> PayoutBatch:
    try:
        return service.settle_payout_batch(batch_id)
    except TipLedgerError as e:
        raise _http_error(e)


@app.post(
    "/earners/{earner_id}/fee-deductions",
    response_model=PayoutBatchItem,
    status_code=status.HTTP_201_CREATED,
    tags=["Payouts"],
)
def create_fee_deduction(
    earner_id: UUID,
    request: FeeDeductionRequest,
    service: TipLedgerService = Depends(get_service),
) -> PayoutBatchItem:
    try:
        return service.record_fee_deduction(earner_id, request.amount, request.description)
    except TipLedgerError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
