from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ledger import LedgerClient

from . import schemas
from .core.config import settings
from .db import init_db
from .domain import DriftError, LedgerReadError, Token, ValidationError, normalize_address
from .services.cache_store import CacheStore
from .services.notifications import build_notifier
from .services.portfolio_service import PortfolioAggregator
from .services.prediction_service import PredictionQuery, PredictionService
from .services.reconciliation import ReconciliationEngine

app = FastAPI(title="Swipe Markets Sync API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Create the cache tables when the API boots."""

    init_db()


@app.exception_handler(ValidationError)
async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(LedgerReadError)
async def _ledger_read_error(_: Request, exc: LedgerReadError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@lru_cache
def _shared_cache_store() -> CacheStore:
    return CacheStore()


@lru_cache
def _shared_engine() -> ReconciliationEngine:
    return ReconciliationEngine(LedgerClient(), _shared_cache_store(), notifier=build_notifier())


def _cache_store() -> CacheStore:
    return _shared_cache_store()


def _prediction_service(cache: CacheStore = Depends(_cache_store)) -> PredictionService:
    return PredictionService(cache)


def _portfolio_aggregator(cache: CacheStore = Depends(_cache_store)) -> PortfolioAggregator:
    return PortfolioAggregator(cache)


def _reconciliation_engine() -> ReconciliationEngine:
    return _shared_engine()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _prediction_query(
    *,
    status: Annotated[
        str | None,
        Query(
            description="Status filter",
            pattern="^(active|open|resolved|cancelled|pending_approval)$",
        ),
    ] = None,
    category: Annotated[str | None, Query(description="Category filter")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> PredictionQuery:
    return PredictionQuery(status=status, category=category, limit=limit, offset=offset)


@app.get("/predictions", response_model=schemas.PredictionList, tags=["predictions"])
def list_predictions(
    *,
    query: PredictionQuery = Depends(_prediction_query),
    service: PredictionService = Depends(_prediction_service),
):
    """List cached predictions ordered by deadline."""

    result = service.list_predictions(query)
    return schemas.PredictionList(total=result.total, items=list(result.predictions))


@app.get("/predictions/{prediction_id}", response_model=schemas.Prediction, tags=["predictions"])
def get_prediction(prediction_id: str, service: PredictionService = Depends(_prediction_service)):
    prediction = service.get_prediction(prediction_id)
    if not prediction:
        raise HTTPException(status_code=404, detail="Prediction not found")
    return prediction


@app.get("/predictions/{prediction_id}/stakes", response_model=schemas.StakeList, tags=["predictions"])
def list_prediction_stakes(prediction_id: str, service: PredictionService = Depends(_prediction_service)):
    stakes = service.list_stakes(prediction_id)
    if stakes is None:
        raise HTTPException(status_code=404, detail="Prediction not found")
    return stakes


@app.post("/predictions/{prediction_id}/quote", response_model=schemas.Quote, tags=["predictions"])
def quote_stake(
    prediction_id: str,
    request: schemas.QuoteRequest,
    service: PredictionService = Depends(_prediction_service),
):
    """Preview payout and profit for a stake before it is signed."""

    quote = service.quote_stake(prediction_id, request.side, request.token, request.amount)
    if quote is None:
        raise HTTPException(status_code=404, detail="Prediction not found")
    return quote


@app.get("/portfolio/{user_address}", response_model=schemas.Portfolio, tags=["portfolio"])
def get_portfolio(user_address: str, aggregator: PortfolioAggregator = Depends(_portfolio_aggregator)):
    return aggregator.summarize(user_address).to_dict()


@app.get("/leaderboard", response_model=schemas.Leaderboard, tags=["portfolio"])
def get_leaderboard(
    *,
    token: Annotated[Token, Query(description="Pool token to rank by")] = Token.ETH,
    sort: Annotated[str, Query(pattern="^(profit|wins|staked)$")] = "profit",
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    aggregator: PortfolioAggregator = Depends(_portfolio_aggregator),
):
    """Rank users by settled profit, wins or total staked in one token."""

    entries = aggregator.leaderboard(token, sort_by=sort, limit=limit)
    return schemas.Leaderboard(
        token=token,
        sort=sort,
        total=len(entries),
        items=[schemas.LeaderboardEntry.model_validate(entry.to_dict()) for entry in entries],
    )


@app.get(
    "/users/{user_address}/transactions",
    response_model=schemas.TransactionList,
    tags=["portfolio"],
)
def list_user_transactions(user_address: str, cache: CacheStore = Depends(_cache_store)):
    transactions = cache.list_transactions(user_address)
    return schemas.TransactionList(
        user_address=normalize_address(user_address),
        total=len(transactions),
        items=[schemas.UserTransaction.model_validate(item.to_dict()) for item in transactions],
    )


@app.get("/market/stats", response_model=schemas.MarketStats, tags=["market"])
def market_stats(cache: CacheStore = Depends(_cache_store)):
    stats = cache.get_market_stats()
    if stats is None:
        raise HTTPException(status_code=404, detail="Market stats have not been computed yet")
    return stats.to_dict()


@app.post("/sync/reconcile", response_model=schemas.ReconcileResponse, tags=["sync"])
async def reconcile_now(
    request: schemas.ReconcileRequest,
    engine: ReconciliationEngine = Depends(_reconciliation_engine),
):
    """Mirror an already confirmed transaction into the cache; reports degraded instead of failing."""

    result = await engine.reconcile_now(
        request.prediction_id, request.user_address, request.transaction_id, request.kind
    )
    return schemas.ReconcileResponse(
        transaction_id=result.transaction_id,
        prediction_id=result.prediction_id,
        status=result.status,
        state=result.state.value,
        attempts=result.attempts,
        message=result.message,
    )


@app.post("/sync/resync-active", response_model=schemas.ResyncResponse, tags=["sync"])
async def resync_active(engine: ReconciliationEngine = Depends(_reconciliation_engine)):
    summary = await engine.resync_active_predictions()
    return summary.to_dict()


@app.get("/sync/verify/{prediction_id}", response_model=schemas.VerifyResponse, tags=["sync"])
async def verify_prediction(
    prediction_id: str, engine: ReconciliationEngine = Depends(_reconciliation_engine)
):
    try:
        await engine.verify_prediction(prediction_id)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except DriftError as exc:
        raise HTTPException(status_code=409, detail=f"{exc.key} differs from ledger state") from exc
    return schemas.VerifyResponse(prediction_id=prediction_id, status="in_sync")
