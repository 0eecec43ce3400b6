from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .config import configure_logging, get_settings
from .exceptions import LedgerServiceError
from .missions import MissionService
from .models import (
    ActionResult,
    AnonymousMergeResult,
    CreateMissionRequest,
    CreateUserRequest,
    CreateWithdrawalRequest,
    LedgerHistoryResponse,
    MergeAnonymousRequest,
    Mission,
    MissionProgressRequest,
    MissionView,
    ProcessWithdrawalRequest,
    ReconciliationReport,
    ReferralRequest,
    SubmitActionRequest,
    User,
    UserBalance,
    WalletAdjustmentRequest,
    WalletAdjustmentResponse,
    Withdrawal,
    WithdrawalResponse,
)
from .payouts import ReloadlyGateway
from .postbacks import OfferwallService, PostbackRegistry
from .service import LedgerService
from .withdrawals import WithdrawalService

# Providers whose servers expect a bare "1"/"0" body instead of JSON.
PLAIN_TEXT_PROVIDERS = ("kiwiwall",)


def _http_error(e: LedgerServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


def create_app(
    ledger: Optional[LedgerService] = None,
    withdrawals: Optional[WithdrawalService] = None,
    missions: Optional[MissionService] = None,
    offerwalls: Optional[OfferwallService] = None,
) -> FastAPI:
    settings = get_settings()
    ledger = ledger or LedgerService(settings=settings)
    if withdrawals is None:
        gateway = ReloadlyGateway.from_settings(settings)
        withdrawals = WithdrawalService(ledger, gateway=gateway if gateway.is_configured else None)
    missions = missions or MissionService(ledger)
    offerwalls = offerwalls or OfferwallService(ledger, PostbackRegistry.from_settings(settings))

    app = FastAPI(
        title="Points Ledger API",
        description="Points ledger for a reward app: idempotent credits, multipliers, withdrawals and offerwall postbacks",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "points-ledger"}

    # ---- users -----------------------------------------------------------

    @app.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def register_user(request: CreateUserRequest) -> User:
        try:
            return ledger.register_user(request)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    def get_user_balance(user_id: str) -> UserBalance:
        try:
            return ledger.get_balance(user_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_ledger(user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        try:
            return ledger.get_ledger_history(user_id, limit, offset)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/reconcile", response_model=ReconciliationReport, tags=["Users"])
    def reconcile_user(user_id: str) -> ReconciliationReport:
        try:
            return ledger.reconcile(user_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.post("/users/{user_id}/merge-anonymous", response_model=AnonymousMergeResult, tags=["Users"])
    def merge_anonymous(user_id: str, request: MergeAnonymousRequest) -> AnonymousMergeResult:
        try:
            return ledger.merge_anonymous(request.anon_id, user_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    # ---- earning ---------------------------------------------------------

    @app.post("/actions", response_model=ActionResult, tags=["Rewards"])
    def submit_action(request: SubmitActionRequest) -> ActionResult:
        try:
            return ledger.submit_action(request)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.post("/referrals", response_model=ActionResult, tags=["Rewards"])
    def credit_referral(request: ReferralRequest) -> ActionResult:
        try:
            return ledger.credit_referral(request.referrer_user_id, request.referred_user_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    # ---- missions --------------------------------------------------------

    @app.post("/missions", response_model=Mission, status_code=status.HTTP_201_CREATED, tags=["Missions"])
    def create_mission(request: CreateMissionRequest) -> Mission:
        return missions.create_mission(request)

    @app.get("/users/{user_id}/missions", response_model=list[MissionView], tags=["Missions"])
    def list_missions(user_id: str) -> list[MissionView]:
        try:
            return missions.list_for_user(user_id)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.post("/missions/{mission_id}/progress", response_model=MissionView, tags=["Missions"])
    def update_mission_progress(mission_id: str, request: MissionProgressRequest) -> MissionView:
        try:
            return missions.update_progress(mission_id, request)
        except LedgerServiceError as e:
            raise _http_error(e)

    # ---- offerwall postbacks ---------------------------------------------

    @app.api_route("/postbacks/{provider}", methods=["GET", "POST"], tags=["Postbacks"])
    async def receive_postback(provider: str, request: Request):
        raw = dict(request.query_params)
        if request.method == "POST" and request.headers.get("content-type", "").startswith("application/json"):
            body = await request.json()
            if isinstance(body, dict):
                raw.update(body)

        plain = provider.lower() in PLAIN_TEXT_PROVIDERS
        try:
            result = await run_in_threadpool(offerwalls.handle, provider, raw)
        except LedgerServiceError as e:
            if plain:
                return PlainTextResponse("0", status_code=e.status_code)
            raise _http_error(e)
        if plain:
            return PlainTextResponse("1")
        return result

    # ---- withdrawals -----------------------------------------------------

    @app.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
    def create_withdrawal(request: CreateWithdrawalRequest) -> WithdrawalResponse:
        try:
            return withdrawals.request_withdrawal(request)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.get("/users/{user_id}/withdrawals", response_model=list[Withdrawal], tags=["Withdrawals"])
    def list_withdrawals(user_id: str, limit: int = 20) -> list[Withdrawal]:
        return withdrawals.list_withdrawals(user_id, limit)

    @app.post("/admin/withdrawals/process", response_model=WithdrawalResponse, tags=["Admin"])
    def process_withdrawal(request: ProcessWithdrawalRequest) -> WithdrawalResponse:
        try:
            return withdrawals.process(request)
        except LedgerServiceError as e:
            raise _http_error(e)

    @app.post("/admin/wallet/adjust", response_model=WalletAdjustmentResponse, tags=["Admin"])
    def adjust_wallet(request: WalletAdjustmentRequest) -> WalletAdjustmentResponse:
        try:
            return ledger.adjust_balance(request)
        except LedgerServiceError as e:
            raise _http_error(e)

    app.state.ledger = ledger
    app.state.withdrawals = withdrawals
    app.state.missions = missions
    app.state.offerwalls = offerwalls
    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
