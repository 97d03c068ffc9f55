import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .config import GatewayConfig, configure_logging
from .errors import (
    AccessDenied,
    ConsistencyFault,
    GatewayError,
    NotFound,
    SettlementFailure,
    StateConflict,
    ValidationError,
)
from .models import (
    ApproveRequest,
    CreateVerificationRequest,
    CreateVerificationResponse,
    CreditRewardRequest,
    PendingReward,
    Principal,
    RejectRequest,
    RetryStatus,
    SettlementRetry,
    SubmitAssistedRequest,
    SubmitSignatureRequest,
    VerificationMethod,
    VerificationRequest,
    VerificationResult,
    VerificationStatus,
    VerificationStatusView,
    WalletSummary,
)
from .service import GatewayService

logger = logging.getLogger(__name__)


def http_error(e: GatewayError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, AccessDenied):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, StateConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, SettlementFailure):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Settlement is queued for retry")
    if isinstance(e, ConsistencyFault):
        logger.critical("Consistency fault surfaced to caller: %s", e)
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Ledger consistency error")
    logger.error("Unhandled gateway error: %s", e)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def create_app(service: Optional[GatewayService] = None) -> FastAPI:
    if service is None:
        config = GatewayConfig.from_env()
        configure_logging(config.log_level)
        service = GatewayService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if service.config.scheduler_enabled:
            scheduler = service.build_scheduler()
            scheduler.start()
            logger.info("Background scheduler started")
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)

    app = FastAPI(
        title="Verified Release Gateway",
        description="Escrowed rewards released to users after wallet-ownership verification",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=service.config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def current_principal(request: Request, x_user_id: Optional[int] = Header(default=None)) -> Principal:
        if x_user_id is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
        return service.principal(x_user_id, client_ip(request))

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "verified-release-gateway"}

    @app.post("/rewards", response_model=PendingReward, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
    def credit_reward(body: CreditRewardRequest, principal: Principal = Depends(current_principal)) -> PendingReward:
        try:
            return service.credit_reward(body, principal)
        except GatewayError as e:
            raise http_error(e)

    @app.get("/wallet", response_model=WalletSummary, tags=["Wallet"])
    def wallet_summary(principal: Principal = Depends(current_principal)) -> WalletSummary:
        return service.wallet_summary(principal.user_id)

    @app.post(
        "/verification/requests",
        response_model=CreateVerificationResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Verification"],
    )
    def create_verification(
        body: CreateVerificationRequest,
        principal: Principal = Depends(current_principal),
    ) -> CreateVerificationResponse:
        try:
            return service.create_verification(principal, body)
        except GatewayError as e:
            raise http_error(e)

    @app.post("/verification/signature", response_model=VerificationResult, tags=["Verification"])
    def submit_signature(
        body: SubmitSignatureRequest,
        principal: Principal = Depends(current_principal),
    ) -> VerificationResult:
        try:
            return service.submit_signature(principal, body)
        except GatewayError as e:
            raise http_error(e)

    @app.post("/verification/assisted", response_model=VerificationResult, tags=["Verification"])
    def submit_assisted(
        body: SubmitAssistedRequest,
        principal: Principal = Depends(current_principal),
    ) -> VerificationResult:
        try:
            return service.submit_assisted(principal, body)
        except GatewayError as e:
            raise http_error(e)

    @app.get("/verification/requests/{request_id}", response_model=VerificationStatusView, tags=["Verification"])
    def get_verification(request_id: UUID, principal: Principal = Depends(current_principal)) -> VerificationStatusView:
        try:
            return service.get_verification(principal, request_id)
        except GatewayError as e:
            raise http_error(e)

    @app.get("/admin/verification/{request_id}", response_model=VerificationRequest, tags=["Review"])
    def admin_verification(request_id: UUID, principal: Principal = Depends(current_principal)) -> VerificationRequest:
        try:
            return service.admin_verification(principal, request_id)
        except GatewayError as e:
            raise http_error(e)

    @app.post("/admin/verification/{request_id}/approve", response_model=VerificationResult, tags=["Review"])
    def approve_verification(
        request_id: UUID,
        body: Optional[ApproveRequest] = None,
        principal: Principal = Depends(current_principal),
    ) -> VerificationResult:
        try:
            return service.approve(request_id, principal, body.reason if body else None)
        except GatewayError as e:
            raise http_error(e)

    @app.post("/admin/verification/{request_id}/reject", response_model=VerificationResult, tags=["Review"])
    def reject_verification(
        request_id: UUID,
        body: RejectRequest,
        principal: Principal = Depends(current_principal),
    ) -> VerificationResult:
        try:
            return service.reject(request_id, principal, body.reason)
        except GatewayError as e:
            raise http_error(e)

    @app.get("/compliance/reports/{request_id}", tags=["Compliance"])
    def compliance_report(request_id: UUID, principal: Principal = Depends(current_principal)) -> dict:
        try:
            return service.compliance_report(request_id, principal)
        except GatewayError as e:
            raise http_error(e)

    @app.get("/admin/compliance/export", tags=["Compliance"])
    def compliance_export(
        start_date: date,
        end_date: date,
        format: str = "json",
        include_sensitive: bool = False,
        scope: Optional[str] = None,
        verification_status: Optional[VerificationStatus] = None,
        method: Optional[VerificationMethod] = None,
        principal: Principal = Depends(current_principal),
    ):
        try:
            result = service.compliance_export(
                principal,
                start_date,
                end_date,
                fmt=format,
                include_sensitive=include_sensitive,
                scope=scope,
                status=verification_status,
                method=method,
            )
        except GatewayError as e:
            raise http_error(e)
        if format == "csv":
            filename = f"verification_compliance_{start_date.isoformat()}_{end_date.isoformat()}.csv"
            return Response(
                content=result,
                media_type="text/csv",
                headers={"Content-Disposition": f'attachment; filename="{filename}"'},
            )
        return result

    @app.get("/admin/compliance/stats", tags=["Compliance"])
    def compliance_stats(
        start_date: date,
        end_date: date,
        principal: Principal = Depends(current_principal),
    ) -> dict:
        try:
            return service.compliance_stats(principal, start_date, end_date)
        except GatewayError as e:
            raise http_error(e)

    @app.get("/admin/settlements/retries", response_model=list[SettlementRetry], tags=["Operations"])
    def settlement_retries(
        retry_status: Optional[RetryStatus] = None,
        principal: Principal = Depends(current_principal),
    ) -> list[SettlementRetry]:
        try:
            return service.settlement_retries(principal, retry_status)
        except GatewayError as e:
            raise http_error(e)

    @app.post("/admin/settlements/{request_id}/retry", response_model=SettlementRetry, tags=["Operations"])
    def requeue_settlement(request_id: UUID, principal: Principal = Depends(current_principal)) -> SettlementRetry:
        try:
            return service.requeue_settlement(request_id, principal)
        except GatewayError as e:
            raise http_error(e)

    @app.post("/admin/jobs/expire", tags=["Operations"])
    def expire_overdue(principal: Principal = Depends(current_principal)) -> dict:
        try:
            return {"expired": service.expire_overdue(principal)}
        except GatewayError as e:
            raise http_error(e)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
