from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from infra.errors import (
    ApprovalNotFoundError,
    CodeGenerationExhaustedError,
    ErrorKind,
    InsufficientCreditsError,
    InvalidStateTransitionError,
    message_for,
)
from infra.logging_config import setup_logging
from invites.fraud import BanRequest, UserBan
from invites.models import (
    ActivationResult,
    CodeValidation,
    GenerateCodeRequest,
    InviteCode,
    RegisterRequest,
    RegistrationResult,
)
from ledger.models import CreditHistoryResponse, DebitRequest, UserCreditBalance
from rules.models import ApproveRequest, RejectRequest, RewardApproval

from .container import ReferralServices, build_services


def status_for(kind: ErrorKind) -> int:
    if kind == ErrorKind.ALREADY_REGISTERED:
        return status.HTTP_409_CONFLICT
    if kind == ErrorKind.INSUFFICIENT_CREDITS:
        return status.HTTP_429_TOO_MANY_REQUESTS
    if kind == ErrorKind.APPROVAL_NOT_FOUND:
        return status.HTTP_404_NOT_FOUND
    if kind == ErrorKind.CODE_GENERATION_EXHAUSTED:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


def _error(kind: ErrorKind, message: Optional[str] = None) -> HTTPException:
    return HTTPException(
        status_code=status_for(kind),
        detail={"error_kind": kind.value, "error": message or message_for(kind)},
    )


def _services(request: Request) -> ReferralServices:
    if request.app.state.services is None:
        request.app.state.services = build_services()
    return request.app.state.services


def create_app(services: Optional[ReferralServices] = None, root_path: str = "") -> FastAPI:
    setup_logging(services.settings if services is not None else None)

    app = FastAPI(
        title="Referral Core API",
        description="Invite codes, registrations, credit ledger and reward approvals",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "referral-core"}

    @app.post("/invite-codes", response_model=InviteCode, status_code=status.HTTP_201_CREATED, tags=["Invites"])
    def generate_code(body: GenerateCodeRequest, request: Request) -> InviteCode:
        try:
            return _services(request).registry.generate(body.inviter_id)
        except CodeGenerationExhaustedError as e:
            raise _error(ErrorKind.CODE_GENERATION_EXHAUSTED, str(e))

    @app.get("/invite-codes/{code}/validate", response_model=CodeValidation, tags=["Invites"])
    def validate_code(code: str, request: Request) -> CodeValidation:
        validation = _services(request).registry.validate(code)
        if not validation.is_valid:
            raise _error(validation.error_kind)
        return validation

    @app.delete("/invite-codes/{code_id}", tags=["Invites"])
    def deactivate_code(code_id: str, owner_id: str, request: Request):
        deactivated = _services(request).registry.deactivate(code_id, owner_id)
        return {"code_id": code_id, "deactivated": deactivated}

    @app.post(
        "/registrations",
        response_model=RegistrationResult,
        status_code=status.HTTP_201_CREATED,
        tags=["Registrations"],
    )
    def register(body: RegisterRequest, request: Request) -> RegistrationResult:
        result = _services(request).registrations.register(body.code, body.invitee_id, body.metadata())
        if not result.success:
            raise _error(result.error_kind)
        return result

    @app.post("/registrations/{user_id}/activate", response_model=ActivationResult, tags=["Registrations"])
    def activate(user_id: str, request: Request) -> ActivationResult:
        return _services(request).registrations.activate(user_id)

    @app.get("/users/{user_id}/balance", response_model=UserCreditBalance, tags=["Credits"])
    def get_balance(user_id: str, request: Request) -> UserCreditBalance:
        return _services(request).ledger.balance(user_id)

    @app.post("/users/{user_id}/debit", response_model=UserCreditBalance, tags=["Credits"])
    def debit(user_id: str, body: DebitRequest, request: Request) -> UserCreditBalance:
        ledger = _services(request).ledger
        if not ledger.debit(user_id, body.amount, body.purpose, body.metadata):
            shortfall = InsufficientCreditsError(body.amount, ledger.available_credits(user_id))
            raise _error(shortfall.kind, str(shortfall))
        return ledger.compute_balance(user_id)

    @app.get("/users/{user_id}/credits", response_model=CreditHistoryResponse, tags=["Credits"])
    def get_credits(user_id: str, request: Request, limit: int = 50) -> CreditHistoryResponse:
        ledger = _services(request).ledger
        return CreditHistoryResponse(
            user_id=user_id,
            records=ledger.history(user_id, limit),
            balance=ledger.compute_balance(user_id),
        )

    @app.post("/credits/sweep", tags=["Credits"])
    def sweep_expired(request: Request):
        return {"expired": _services(request).ledger.sweep_expired()}

    @app.post("/rewards/release", tags=["Rewards"])
    def release_deferred(request: Request):
        released = _services(request).rewards.release_due()
        return {"released": len(released)}

    @app.get("/users/{user_id}/risk", tags=["Risk"])
    def get_risk(user_id: str, request: Request):
        fraud = _services(request).fraud
        return {
            "user_id": user_id,
            "risk_level": fraud.risk_level(user_id).value,
            "banned": fraud.is_banned(user_id),
            "activities": fraud.activities(user_id),
        }

    @app.post("/users/{user_id}/ban", response_model=UserBan, status_code=status.HTTP_201_CREATED, tags=["Risk"])
    def ban_user(user_id: str, body: BanRequest, request: Request) -> UserBan:
        duration = timedelta(minutes=body.duration_minutes) if body.duration_minutes else None
        return _services(request).fraud.ban(user_id, body.reason, duration)

    @app.get("/approvals/pending", response_model=list[RewardApproval], tags=["Approvals"])
    def pending_approvals(request: Request) -> list[RewardApproval]:
        return _services(request).approvals.pending()

    @app.post("/approvals/{approval_id}/approve", response_model=RewardApproval, tags=["Approvals"])
    def approve(approval_id: str, body: ApproveRequest, request: Request) -> RewardApproval:
        try:
            return _services(request).approvals.approve(approval_id, body.admin_id, body.notes)
        except ApprovalNotFoundError as e:
            raise _error(ErrorKind.APPROVAL_NOT_FOUND, str(e))
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    @app.post("/approvals/{approval_id}/reject", response_model=RewardApproval, tags=["Approvals"])
    def reject(approval_id: str, body: RejectRequest, request: Request) -> RewardApproval:
        try:
            return _services(request).approvals.reject(approval_id, body.admin_id, body.reason)
        except ApprovalNotFoundError as e:
            raise _error(ErrorKind.APPROVAL_NOT_FOUND, str(e))
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return app


app = create_app(root_path="/api")

handler = Mangum(app)
