import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from categorizer import GeminiCategorizer
from database import SessionLocal
from errors import (
    CategorizerUnavailable,
    ConflictExceeded,
    InvalidArgument,
    LedgerError,
    NotFound,
    StoreUnavailable,
    Unauthorized,
)
from identity import resolve_user_token
from models import CategoryType, TransactionType, UserProfile
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    CategoryNode,
    CategoryOut,
    CategoryPatch,
    ProfileIn,
    ProfileOut,
    ProfilePatch,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
    TransferIn,
    TransferOut,
    TransferPatch,
    WalletIn,
    WalletOrderIn,
    WalletOut,
    WalletPatch,
)
from services import (
    AutoCategorizeService,
    Categorizer,
    CategoryService,
    ReportService,
    TagService,
    TransactionService,
    UserProfileService,
    WalletService,
)
from subscriptions import COLLECTIONS, SnapshotStream

logger = logging.getLogger(__name__)

app = FastAPI(title="Piggy Ledger")

_STATUS_BY_ERROR = (
    (NotFound, 404),
    (Unauthorized, 403),
    (InvalidArgument, 400),
    (ConflictExceeded, 409),
    (StoreUnavailable, 503),
    (CategorizerUnavailable, 502),
)


def http_error(exc: LedgerError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(authorization: Optional[str] = Header(default=None)) -> str:
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
    try:
        return resolve_user_token(token)
    except Unauthorized as exc:
        raise HTTPException(
            status_code=401,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def get_categorizer(
    user_id: str = Depends(current_user), db: Session = Depends(get_db)
) -> Categorizer:
    profile = db.get(UserProfile, user_id)
    try:
        return GeminiCategorizer(
            api_key=profile.gemini_api_key if profile else None,
            model_id=profile.gemini_model if profile else None,
        )
    except InvalidArgument as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# Profile


@app.post("/api/onboard", response_model=ProfileOut)
def onboard(
    payload: ProfileIn,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        profile = UserProfileService(db, user_id).onboard(payload.email)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return ProfileOut.from_profile(profile)


@app.get("/api/profile", response_model=ProfileOut)
def get_profile(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    try:
        profile = UserProfileService(db, user_id).get()
    except LedgerError as exc:
        raise http_error(exc) from exc
    return ProfileOut.from_profile(profile)


@app.patch("/api/profile", response_model=ProfileOut)
def update_profile(
    payload: ProfilePatch,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        profile = UserProfileService(db, user_id).update(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return ProfileOut.from_profile(profile)


# Wallets


@app.get("/api/wallets", response_model=list[WalletOut])
def list_wallets(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return WalletService(db, user_id).list_all()


@app.get("/api/wallets/totals")
def wallet_totals(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return WalletService(db, user_id).totals()


@app.post("/api/wallets", response_model=WalletOut, status_code=201)
def create_wallet(
    payload: WalletIn,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return WalletService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/api/wallets/{wallet_id}", response_model=WalletOut)
def update_wallet(
    wallet_id: int,
    payload: WalletPatch,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return WalletService(db, user_id).update(wallet_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/wallets/{wallet_id}", status_code=204)
def delete_wallet(
    wallet_id: int,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        WalletService(db, user_id).delete(wallet_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/wallets/reorder", status_code=204)
def reorder_wallets(
    payload: list[WalletOrderIn],
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        WalletService(db, user_id).reorder(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/wallets/recalculate")
def recalculate_wallets(
    user_id: str = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        count = WalletService(db, user_id).recalculate_all()
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"recalculated": count}


# Transactions


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    limit: Optional[int] = None,
    wallet_id: Optional[int] = None,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    service = TransactionService(db, user_id)
    if wallet_id is not None:
        return service.list_for_wallet(wallet_id)
    return service.list_recent(limit)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user_id).get(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user_id).update(transaction_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# Transfers


@app.post("/api/transfers", response_model=TransferOut, status_code=201)
def create_transfer(
    payload: TransferIn,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        outgoing, incoming = TransactionService(db, user_id).transfer(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {
        "outgoing": TransactionOut.model_validate(outgoing),
        "incoming": TransactionOut.model_validate(incoming),
    }


@app.patch("/api/transfers/{transaction_id}", response_model=TransferOut)
def update_transfer(
    transaction_id: int,
    payload: TransferPatch,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        first, second = TransactionService(db, user_id).update_transfer(
            transaction_id, payload
        )
    except LedgerError as exc:
        raise http_error(exc) from exc
    outgoing, incoming = first, second
    if first.type != TransactionType.expense:
        outgoing, incoming = second, first
    return {
        "outgoing": TransactionOut.model_validate(outgoing),
        "incoming": TransactionOut.model_validate(incoming),
    }


@app.delete("/api/transfers/{transaction_id}")
def delete_transfer(
    transaction_id: int,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        removed = TransactionService(db, user_id).delete_transfer(transaction_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"removed": removed}


# Categories and tags


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    type: Optional[CategoryType] = None,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).list_all(type)


@app.get("/api/categories/tree", response_model=list[CategoryNode])
def category_tree(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return CategoryService(db, user_id).tree()


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).create(payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryPatch,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        return CategoryService(db, user_id).update(category_id, payload)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: int,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        removed = CategoryService(db, user_id).delete(category_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"removed": removed}


@app.post("/api/categories/reset")
def reset_categories(
    user_id: str = Depends(current_user), db: Session = Depends(get_db)
):
    return {"created": CategoryService(db, user_id).reset()}


@app.get("/api/tags")
def list_tags(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return [tag.name for tag in TagService(db, user_id).list_all()]


@app.post("/api/categorize")
def auto_categorize(
    limit: Optional[int] = None,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
    categorizer: Categorizer = Depends(get_categorizer),
):
    try:
        assigned = AutoCategorizeService(db, user_id).run(categorizer, limit)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"assigned": assigned}


# Reports


@app.get("/api/reports/summary")
def report_summary(
    request: Request,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    summary = ReportService(db, user_id).summary(period)
    return {"period": period.slug, "start": period.start, "end": period.end, **summary}


@app.get("/api/reports/categories")
def report_categories(
    request: Request,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    kind = request.query_params.get("type", "expense")
    if kind not in ("income", "expense"):
        raise HTTPException(status_code=400, detail="type must be income or expense")
    return ReportService(db, user_id).category_breakdown(period, TransactionType(kind))


@app.get("/api/reports/trend")
def report_trend(
    request: Request,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    period = period_from_request(request)
    return ReportService(db, user_id).daily_trend(period)


# Live subscriptions


@app.get("/api/stream/{collection}")
def stream_collection(
    collection: str,
    limit: Optional[int] = None,
    user_id: str = Depends(current_user),
):
    if collection not in COLLECTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {collection}")
    stream = SnapshotStream(SessionLocal, user_id, collection, limit=limit)
    logger.info(f"subscription_open: user={user_id} collection={collection}")
    return StreamingResponse(
        stream.sse(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
