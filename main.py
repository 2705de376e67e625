import os
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import Identity, identity_from_token, require_admin, require_writer
from database import get_db
from errors import (
    AuthenticationError,
    EngineError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    PreconditionError,
)
from models import ObligationKind, PeriodType
from periods import DateRange
from scheduler import SchedulerManager
from schemas import (
    AutoMatchResult,
    CalendarResult,
    CurrentSweepResult,
    DateRangeIn,
    ExtendRangeIn,
    ExtendRangeResult,
    ExtensionResult,
    GenerateCalendarIn,
    IngestResult,
    MatchIn,
    MatchResult,
    MaterializeResult,
    ObligationIn,
    ObligationOut,
    ObligationUpdate,
    PeriodAllocationUpdate,
    PeriodInstanceOut,
    ReassignIn,
    SourcePeriodOut,
    StatusRefreshResult,
    TransactionIn,
    TransactionOut,
)
from services import (
    ObligationService,
    ReconciliationService,
    SourcePeriodService,
    TransactionMatcher,
    TransactionService,
)

app = FastAPI(title="Period Allocation Engine")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

_STATUS_CODES = {
    NotFoundError: 404,
    InvalidInputError: 400,
    AuthenticationError: 401,
    PermissionDeniedError: 403,
    PreconditionError: 500,
}


def http_error(exc: EngineError) -> HTTPException:
    status_code = next(
        (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500
    )
    return HTTPException(
        status_code=status_code, detail={"code": exc.code, "message": exc.message}
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"detail": {"code": InvalidInputError.code, "message": message}},
    )


def get_identity(authorization: Optional[str] = Header(default=None)) -> Identity:
    scheme, _, token = (authorization or "").partition(" ")
    try:
        if scheme.lower() != "bearer":
            raise AuthenticationError("Bearer token required")
        return identity_from_token(token.strip())
    except AuthenticationError as exc:
        raise http_error(exc) from exc


def get_writer(identity: Identity = Depends(get_identity)) -> Identity:
    try:
        require_writer(identity)
    except PermissionDeniedError as exc:
        raise http_error(exc) from exc
    return identity


def get_admin(identity: Identity = Depends(get_identity)) -> Identity:
    try:
        require_admin(identity)
    except PermissionDeniedError as exc:
        raise http_error(exc) from exc
    return identity


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if os.getenv("PERIODS_DISABLE_SCHEDULER") != "1":
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/admin/source-periods/generate", response_model=CalendarResult)
def regenerate_source_periods(
    payload: GenerateCalendarIn,
    identity: Identity = Depends(get_admin),
    db: Session = Depends(get_db),
):
    try:
        return SourcePeriodService(db).regenerate(
            identity, payload.start_year, payload.end_year
        )
    except EngineError as exc:
        raise http_error(exc) from exc


@app.post("/admin/source-periods/refresh-current", response_model=CurrentSweepResult)
def refresh_current_periods(
    identity: Identity = Depends(get_admin), db: Session = Depends(get_db)
):
    return SourcePeriodService(db).refresh_current_flags()


@app.post("/admin/obligations/extend", response_model=ExtensionResult)
def extend_all_obligations(
    identity: Identity = Depends(get_admin), db: Session = Depends(get_db)
):
    return ReconciliationService(db, user_id=None).extend_all()


@app.post("/admin/statuses/refresh", response_model=StatusRefreshResult)
def refresh_statuses(
    identity: Identity = Depends(get_admin), db: Session = Depends(get_db)
):
    return ReconciliationService(db, user_id=None).refresh_statuses()


@app.get("/source-periods", response_model=list[SourcePeriodOut])
def list_source_periods(
    type: Optional[PeriodType] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: Optional[int] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    if start and end and start > end:
        raise http_error(InvalidInputError("Start date must be before end date"))
    return SourcePeriodService(db).list(type, start, end, limit)


@app.get("/source-periods/current")
def current_source_periods(
    identity: Identity = Depends(get_identity), db: Session = Depends(get_db)
):
    return SourcePeriodService(db).current()


@app.get("/source-periods/{period_id}", response_model=SourcePeriodOut)
def get_source_period(
    period_id: str,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    try:
        return SourcePeriodService(db).get(period_id)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.post("/obligations", response_model=ObligationOut, status_code=201)
def create_obligation(
    payload: ObligationIn,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        return ObligationService(db, identity.user_id).create(payload)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.get("/obligations", response_model=list[ObligationOut])
def list_obligations(
    kind: Optional[ObligationKind] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return ObligationService(db, identity.user_id).list(kind)


@app.post("/obligations/catch-all", response_model=ObligationOut)
def ensure_catch_all(
    identity: Identity = Depends(get_writer), db: Session = Depends(get_db)
):
    try:
        return ObligationService(db, identity.user_id).ensure_catch_all_budget()
    except EngineError as exc:
        raise http_error(exc) from exc


@app.get("/obligations/{obligation_id}", response_model=ObligationOut)
def get_obligation(
    obligation_id: str,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    try:
        return ObligationService(db, identity.user_id).get(obligation_id)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.put("/obligations/{obligation_id}", response_model=ObligationOut)
def update_obligation(
    obligation_id: str,
    payload: ObligationUpdate,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        return ObligationService(db, identity.user_id).update(obligation_id, payload)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.delete("/obligations/{obligation_id}", status_code=204)
def delete_obligation(
    obligation_id: str,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        ObligationService(db, identity.user_id).delete(obligation_id)
    except EngineError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/obligations/{obligation_id}/materialize", response_model=MaterializeResult)
def materialize_obligation(
    obligation_id: str,
    payload: DateRangeIn,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    service = ObligationService(db, identity.user_id)
    try:
        obligation = service.get(obligation_id)
        date_range = None
        if payload.start and payload.end:
            date_range = DateRange(payload.start, payload.end)
        return service.materializer.materialize(obligation, date_range)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.post("/obligations/{obligation_id}/auto-match", response_model=AutoMatchResult)
def auto_match_obligation(
    obligation_id: str,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    service = ObligationService(db, identity.user_id)
    try:
        obligation = service.get(obligation_id)
        return service.matcher.match_linked_transactions(obligation)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.get("/obligations/{obligation_id}/periods", response_model=list[PeriodInstanceOut])
def obligation_periods(
    obligation_id: str,
    type: Optional[PeriodType] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    try:
        return ObligationService(db, identity.user_id).periods(obligation_id, type)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.patch("/periods/{period_id}", response_model=PeriodInstanceOut)
def update_period_allocation(
    period_id: str,
    payload: PeriodAllocationUpdate,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        return ObligationService(db, identity.user_id).update_period_allocation(
            period_id, payload.allocated_amount_cents
        )
    except EngineError as exc:
        raise http_error(exc) from exc


@app.post("/periods/extend-range", response_model=ExtendRangeResult)
def extend_range(
    payload: ExtendRangeIn,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        return ReconciliationService(db, identity.user_id).extend_range(payload)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.post("/transactions", response_model=IngestResult)
def ingest_transaction(
    payload: TransactionIn,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, identity.user_id).ingest(payload)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: str,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, identity.user_id).get(transaction_id)
    except EngineError as exc:
        raise http_error(exc) from exc


def _owned_matcher(db: Session, identity: Identity, transaction_id: str) -> TransactionMatcher:
    TransactionService(db, identity.user_id).get(transaction_id)
    return TransactionMatcher(db)


@app.post("/transactions/{transaction_id}/match", response_model=MatchResult)
def match_transaction(
    transaction_id: str,
    payload: MatchIn,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        ObligationService(db, identity.user_id).get(payload.obligation_id)
        matcher = _owned_matcher(db, identity, transaction_id)
        return matcher.match(transaction_id, payload.obligation_id)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.post("/transactions/{transaction_id}/unassign", response_model=MatchResult)
def unassign_transaction(
    transaction_id: str,
    payload: MatchIn,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        ObligationService(db, identity.user_id).get(payload.obligation_id)
        matcher = _owned_matcher(db, identity, transaction_id)
        return matcher.unassign(transaction_id, payload.obligation_id)
    except EngineError as exc:
        raise http_error(exc) from exc


@app.post("/transactions/{transaction_id}/reassign", response_model=MatchResult)
def reassign_transaction(
    transaction_id: str,
    payload: ReassignIn,
    identity: Identity = Depends(get_writer),
    db: Session = Depends(get_db),
):
    try:
        obligations = ObligationService(db, identity.user_id)
        obligations.get(payload.from_obligation_id)
        obligations.get(payload.to_obligation_id)
        matcher = _owned_matcher(db, identity, transaction_id)
        return matcher.reassign(
            transaction_id, payload.from_obligation_id, payload.to_obligation_id
        )
    except EngineError as exc:
        raise http_error(exc) from exc
