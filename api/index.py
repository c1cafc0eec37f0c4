from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum
import structlog

from core.config import get_settings
from core.container import RewardsEngine
from core.errors import NotFound, RewardsError, ValidationError
from core.logging import setup_logging
from core.periods import period_key
from ledger.models import LedgerHistoryResponse, PointsBalance
from referrals.ingest import EventIngestor
from payouts.models import (
    LeaderboardResponse,
    RedemptionRequest,
    RedemptionRequestIn,
    RedemptionResponse,
    RedemptionStatus,
)
from referrals.models import (
    ActivityItem,
    CodeUsage,
    CodeValidation,
    DeliveryCompleted,
    DriverReferralStats,
    GenerateCodeRequest,
    Referral,
    ReferralCode,
    ReferralListResponse,
    ReferralRedeemed,
    ReferralStatistics,
    ReferralStatus,
    UseCodeRequest,
)
from rules.models import (
    ConfigurationStatusChange,
    CreateConfigurationRequest,
    EvaluationOutcome,
    ProfitabilityAnalysis,
    ReviseConfigurationRequest,
    RewardConfiguration,
    UpdateStatusRequest,
)

settings = get_settings()
setup_logging(settings)
logger = structlog.get_logger()
_started: list[EventIngestor] = []


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    while _started:
        await _started.pop().stop()


app = FastAPI(
    title="Referral Rewards API",
    description="Referral policy evaluation, points ledger, leaderboard and redemptions",
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_engine() -> RewardsEngine:
    return RewardsEngine(settings)


async def get_ingestor(engine: RewardsEngine = Depends(get_engine)) -> EventIngestor:
    """The engine's shared intake, started on first use and drained at shutdown."""
    if not engine.intake.running:
        await engine.intake.start()
        _started.append(engine.intake)
    return engine.intake


@app.exception_handler(RewardsError)
async def rewards_error_handler(request: Request, exc: RewardsError) -> JSONResponse:
    if isinstance(exc, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFound):
        status_code = status.HTTP_404_NOT_FOUND
    else:
        status_code = status.HTTP_409_CONFLICT
    logger.info("api.request_failed", path=request.url.path, code=exc.code, detail=exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.app_name}


# --- Configuration ---

@app.get("/config/active", response_model=RewardConfiguration, tags=["Configuration"])
def get_active_configuration(
    scope: Optional[str] = None, engine: RewardsEngine = Depends(get_engine),
) -> RewardConfiguration:
    scope = scope or settings.default_scope
    config = engine.configurations.get_active(scope)
    if not config:
        raise NotFound(f"No active configuration for scope {scope}")
    return config


@app.get("/config/profitability", response_model=ProfitabilityAnalysis, tags=["Configuration"])
def get_profitability(
    period: Optional[str] = None,
    total_revenue: float = 0.0,
    configuration_id: Optional[UUID] = None,
    engine: RewardsEngine = Depends(get_engine),
) -> ProfitabilityAnalysis:
    return engine.budget.profitability(
        period or period_key(engine.clock()),
        configuration_id=configuration_id,
        total_revenue=total_revenue,
        scope=settings.default_scope,
    )


@app.get("/config", response_model=list[RewardConfiguration], tags=["Configuration"])
def list_configurations(
    scope: Optional[str] = None, engine: RewardsEngine = Depends(get_engine),
) -> list[RewardConfiguration]:
    return engine.configurations.list_configurations(scope)


@app.post("/config", response_model=RewardConfiguration, status_code=status.HTTP_201_CREATED, tags=["Configuration"])
def create_configuration(
    request: CreateConfigurationRequest, engine: RewardsEngine = Depends(get_engine),
) -> RewardConfiguration:
    return engine.configurations.get(engine.configurations.create(request))


@app.get("/config/{config_id}", response_model=RewardConfiguration, tags=["Configuration"])
def get_configuration(config_id: UUID, engine: RewardsEngine = Depends(get_engine)) -> RewardConfiguration:
    return engine.configurations.get(config_id)


@app.post(
    "/config/{config_id}/revise",
    response_model=RewardConfiguration,
    status_code=status.HTTP_201_CREATED,
    tags=["Configuration"],
)
def revise_configuration(
    config_id: UUID, request: ReviseConfigurationRequest, engine: RewardsEngine = Depends(get_engine),
) -> RewardConfiguration:
    return engine.configurations.get(engine.configurations.revise(config_id, request))


@app.put("/config/{config_id}/status", response_model=RewardConfiguration, tags=["Configuration"])
def update_configuration_status(
    config_id: UUID, request: UpdateStatusRequest, engine: RewardsEngine = Depends(get_engine),
) -> RewardConfiguration:
    return engine.configurations.set_status(config_id, request.status, request.changed_by)


@app.get("/config/{config_id}/history", response_model=list[ConfigurationStatusChange], tags=["Configuration"])
def get_configuration_history(
    config_id: UUID, engine: RewardsEngine = Depends(get_engine),
) -> list[ConfigurationStatusChange]:
    return engine.configurations.status_history(config_id)


# --- Admin ---

@app.get("/admin/statistics", response_model=ReferralStatistics, tags=["Admin"])
def get_statistics(engine: RewardsEngine = Depends(get_engine)) -> ReferralStatistics:
    return engine.referrals.statistics()


@app.get("/admin/referrals", response_model=ReferralListResponse, tags=["Admin"])
def list_referrals(
    status: Optional[ReferralStatus] = None,
    page: int = 1,
    limit: int = 20,
    engine: RewardsEngine = Depends(get_engine),
) -> ReferralListResponse:
    return engine.referrals.list_referrals(status, page, limit)


@app.put("/admin/referrals/{referral_id}/cancel", response_model=Referral, tags=["Admin"])
def cancel_referral(
    referral_id: UUID, performed_by: Optional[str] = None, engine: RewardsEngine = Depends(get_engine),
) -> Referral:
    return engine.referrals.cancel(referral_id, performed_by)


# --- Events ---

@app.post("/events/referral-redeemed", response_model=EvaluationOutcome, tags=["Events"])
async def referral_redeemed(
    event: ReferralRedeemed, ingestor: EventIngestor = Depends(get_ingestor),
) -> EvaluationOutcome:
    return await ingestor.process(event)


@app.post("/events/delivery-completed", response_model=EvaluationOutcome, tags=["Events"])
async def delivery_completed(
    event: DeliveryCompleted, ingestor: EventIngestor = Depends(get_ingestor),
) -> EvaluationOutcome:
    return await ingestor.process(event)


# --- Drivers ---

@app.get("/drivers/{driver_id}/code", response_model=ReferralCode, tags=["Drivers"])
def get_driver_code(driver_id: str, engine: RewardsEngine = Depends(get_engine)) -> ReferralCode:
    return engine.codes.get_for_driver(driver_id)


@app.post("/drivers/{driver_id}/code", response_model=ReferralCode, status_code=status.HTTP_201_CREATED, tags=["Drivers"])
def generate_driver_code(
    driver_id: str, request: GenerateCodeRequest, engine: RewardsEngine = Depends(get_engine),
) -> ReferralCode:
    return engine.codes.generate(driver_id, request.driver_name)


@app.get("/drivers/{driver_id}/stats", response_model=DriverReferralStats, tags=["Drivers"])
def get_driver_stats(driver_id: str, engine: RewardsEngine = Depends(get_engine)) -> DriverReferralStats:
    return engine.referrals.driver_stats(driver_id)


@app.get("/drivers/{driver_id}/points", response_model=PointsBalance, tags=["Drivers"])
def get_driver_points(driver_id: str, engine: RewardsEngine = Depends(get_engine)) -> PointsBalance:
    return engine.ledger.balance_of(driver_id)


@app.get("/drivers/{driver_id}/points/history", response_model=LedgerHistoryResponse, tags=["Drivers"])
def get_driver_points_history(
    driver_id: str, limit: int = 50, offset: int = 0, engine: RewardsEngine = Depends(get_engine),
) -> LedgerHistoryResponse:
    return engine.ledger.history(driver_id, limit, offset)


@app.post(
    "/drivers/{driver_id}/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Drivers"],
)
def request_redemption(driver_id: str, request: RedemptionRequestIn, engine: RewardsEngine = Depends(get_engine)):
    redemption = engine.redemptions.request_redemption(
        driver_id,
        request.amount,
        request.method,
        description=request.description,
        idempotency_key=request.idempotency_key,
    )
    if redemption.status == RedemptionStatus.REJECTED:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": redemption.detail,
                "code": redemption.reason,
                "request": redemption.model_dump(mode="json"),
            },
        )
    balance = engine.ledger.balance_of(driver_id)
    return RedemptionResponse(
        request=redemption,
        ledger_entry=engine.ledger.get_entry(redemption.ledger_entry_id),
        available_points=balance.available_points,
        message=f"Redeemed {redemption.points_debited} points",
    )


@app.get("/drivers/{driver_id}/redemptions", response_model=list[RedemptionRequest], tags=["Drivers"])
def list_redemptions(
    driver_id: str, status: Optional[RedemptionStatus] = None, engine: RewardsEngine = Depends(get_engine),
) -> list[RedemptionRequest]:
    return engine.redemptions.list_requests(driver_id, status)


@app.get("/activity", response_model=list[ActivityItem], tags=["Drivers"])
def get_activity(
    limit: int = 20, driver_id: Optional[str] = None, engine: RewardsEngine = Depends(get_engine),
) -> list[ActivityItem]:
    return engine.referrals.activity(limit, driver_id)


# --- Leaderboard ---

@app.get("/leaderboard", response_model=LeaderboardResponse, tags=["Leaderboard"])
def get_leaderboard(
    period: Optional[str] = None, limit: Optional[int] = None, engine: RewardsEngine = Depends(get_engine),
) -> LeaderboardResponse:
    return engine.leaderboard.standings(period, limit)


@app.post("/leaderboard/{period}/run", response_model=LeaderboardResponse, tags=["Leaderboard"])
def run_leaderboard(
    period: str, configuration_id: Optional[UUID] = None, engine: RewardsEngine = Depends(get_engine),
) -> LeaderboardResponse:
    return engine.leaderboard.run(period, configuration_id)


@app.get("/leaderboard/{period}", response_model=LeaderboardResponse, tags=["Leaderboard"])
def get_leaderboard_snapshot(period: str, engine: RewardsEngine = Depends(get_engine)) -> LeaderboardResponse:
    return engine.leaderboard.snapshot(period)


# --- Codes ---

@app.get("/codes", response_model=list[ReferralCode], tags=["Codes"])
def list_codes(engine: RewardsEngine = Depends(get_engine)) -> list[ReferralCode]:
    return engine.codes.list_active()


@app.get("/codes/{code}", response_model=CodeValidation, tags=["Codes"])
def validate_code(code: str, engine: RewardsEngine = Depends(get_engine)) -> CodeValidation:
    return engine.codes.validate(code)


@app.post("/codes/{code}/use", response_model=EvaluationOutcome, status_code=status.HTTP_201_CREATED, tags=["Codes"])
async def use_code(
    code: str, request: UseCodeRequest, ingestor: EventIngestor = Depends(get_ingestor),
) -> EvaluationOutcome:
    return await ingestor.process(ReferralRedeemed(referee_id=request.referee_id, code=code))


@app.get("/codes/{code}/usage", response_model=CodeUsage, tags=["Codes"])
def get_code_usage(code: str, engine: RewardsEngine = Depends(get_engine)) -> CodeUsage:
    return engine.codes.usage(code)


handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
