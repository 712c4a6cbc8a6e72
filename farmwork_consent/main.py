"""
FarmWork Hub Consent Service - FastAPI Application
Records cookie and data-processing consent, and exposes retention and audit tooling
"""

import asyncio
import hmac
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import ConsentSettings
from .constants import (
    ConsentTokenDefaults, ErrorCodes, ErrorTypes, LogFiles,
    SERVICE_NAME, SERVICE_VERSION, TRACKED_HEADERS, UNKNOWN,
)
from .crypto.jwt import JWTError, extract_bearer_token, verify_access_token
from .exceptions import (
    AuditMirrorFailureError, ConsentServiceError, ConsentTokenRequiredError,
    InvalidConsentTokenError, UnauthorizedError,
)
from .runtime import ConsentRuntime

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


class ConsentRequest(BaseModel):
    """Body of both consent recording endpoints"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    consent: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, description="Overrides the User-Agent header")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WithdrawRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _success(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=body)


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _endpoint_error(message: str, code: str) -> ConsentServiceError:
    return ConsentServiceError(message, code, status_code=500)


# =============================================================================
# REQUEST DEPENDENCIES
# =============================================================================

def get_runtime(request: Request) -> ConsentRuntime:
    return request.app.state.runtime


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop behind a trusted proxy, otherwise the socket peer"""
    runtime = get_runtime(request)
    if runtime.settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else UNKNOWN


def get_user_agent(request: Request, override: Optional[str] = None) -> str:
    return override or request.headers.get("user-agent") or UNKNOWN


def require_admin(request: Request) -> None:
    """Static admin key from the Authorization header, compared in constant time"""
    settings = get_runtime(request).settings
    header = request.headers.get("authorization") or ""
    if not settings.admin_api_key or not hmac.compare_digest(
        header.encode("utf-8"), f"Bearer {settings.admin_api_key}".encode("utf-8")
    ):
        logger.warning("Rejected admin request", path=request.url.path, ip=get_client_ip(request))
        raise UnauthorizedError("Unauthorized access", ErrorCodes.UNAUTHORIZED)


def _user_from_token(request: Request) -> str:
    settings = get_runtime(request).settings
    token = extract_bearer_token(request.headers.get("authorization"))
    return verify_access_token(token, settings.jwt_secret, settings.jwt_algorithm)


def require_user(request: Request) -> str:
    try:
        return _user_from_token(request)
    except JWTError as e:
        logger.info("User authentication failed", path=request.url.path, error=str(e))
        raise UnauthorizedError("User authentication required", ErrorCodes.AUTH_REQUIRED)


def optional_user(request: Request) -> Optional[str]:
    if not request.headers.get("authorization"):
        return None
    try:
        return _user_from_token(request)
    except JWTError:
        return None


async def require_consent_token(request: Request) -> str:
    """
    Gate a route on a consent token from X-Consent-Token or ?consentToken

    The token is the id returned when consent was logged. Accepted tokens
    are recorded in the consented-access log.
    """
    runtime = get_runtime(request)
    token = (request.headers.get(ConsentTokenDefaults.HEADER)
             or request.query_params.get(ConsentTokenDefaults.QUERY_PARAM))
    if not token:
        raise ConsentTokenRequiredError()

    max_age = timedelta(days=runtime.settings.consent_token_max_age_days)
    if not await asyncio.to_thread(runtime.audit_logger.verify_consent_token, token, max_age):
        logger.info("Rejected consent token", path=request.url.path, ip=get_client_ip(request))
        raise InvalidConsentTokenError()

    try:
        await asyncio.to_thread(
            runtime.audit_logger.log_consented_access,
            token, request.url.path, request.method,
            get_client_ip(request), get_user_agent(request),
        )
    except AuditMirrorFailureError as e:
        logger.error("Failed to log consented access", path=request.url.path, error=str(e))
        await asyncio.to_thread(runtime.audit_logger.log_error, ErrorTypes.AUDIT_MIRROR_FAILURE, e,
                                {"endpoint": request.url.path})
    return token


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.post("/consent")
async def log_consent(body: ConsentRequest, request: Request):
    """Legacy cookie-banner endpoint; writes the consent log only"""
    runtime = get_runtime(request)
    headers = {name: request.headers.get(name) or UNKNOWN for name in TRACKED_HEADERS}
    try:
        entry = await asyncio.to_thread(
            runtime.service.record_anonymous_log_consent,
            body.consent,
            ip=get_client_ip(request),
            user_agent=get_user_agent(request, body.user_agent),
            metadata=body.metadata,
            headers=headers,
        )
    except ConsentServiceError as e:
        if e.status_code < 500:
            raise
        logger.error("Error logging consent", error=str(e))
        raise _endpoint_error("Failed to log consent", ErrorCodes.CONSENT_LOG_ERROR)

    return {
        "message": "Consent logged successfully",
        "sessionId": entry["id"],
        "timestamp": entry["timestamp"],
    }


@router.post("/api/consent")
async def record_consent(body: ConsentRequest, request: Request,
                         user_id: Optional[str] = Depends(optional_user)):
    """Record a consent decision in the database and the consent log"""
    runtime = get_runtime(request)
    metadata = {
        **body.metadata,
        "headers": {name: request.headers.get(name) or UNKNOWN for name in TRACKED_HEADERS},
    }
    try:
        record = await runtime.service.record_consent(
            body.consent,
            ip=get_client_ip(request),
            user_agent=get_user_agent(request, body.user_agent),
            metadata=metadata,
            user_id=user_id,
        )
    except ConsentServiceError as e:
        if e.status_code < 500:
            raise
        raise _endpoint_error("Failed to record consent", ErrorCodes.CONSENT_RECORD_ERROR)

    return _success(
        {
            "id": record.id,
            "sessionId": record.session_id,
            "timestamp": record.timestamp.isoformat(),
            "consent": record.consent.value,
        },
        message="Consent recorded successfully",
        status_code=201,
    )


@router.get("/api/consent/stats", dependencies=[Depends(require_admin)])
async def consent_stats(request: Request,
                        start_date: Optional[datetime] = Query(default=None, alias="startDate"),
                        end_date: Optional[datetime] = Query(default=None, alias="endDate"),
                        consent: Optional[str] = Query(default=None)):
    """Aggregate consent counts for administrators"""
    runtime = get_runtime(request)
    try:
        stats = await runtime.service.get_consent_stats(
            {"start_date": start_date, "end_date": end_date, "consent": consent}
        )
    except ConsentServiceError as e:
        if e.status_code < 500:
            raise
        raise _endpoint_error("Failed to retrieve consent statistics", ErrorCodes.STATS_ERROR)
    return _success(_dump(stats))


@router.get("/api/consent/history")
async def consent_history(request: Request, user_id: str = Depends(require_user)):
    runtime = get_runtime(request)
    try:
        history = await runtime.service.get_user_consent_history(user_id)
    except ConsentServiceError:
        raise _endpoint_error("Failed to retrieve consent history", ErrorCodes.HISTORY_ERROR)
    return _success({"userId": user_id, "history": [_dump(r) for r in history]})


@router.get("/api/consent/latest")
async def latest_consent(request: Request, user_id: str = Depends(require_user)):
    runtime = get_runtime(request)
    try:
        latest = await runtime.service.get_latest_user_consent(user_id)
    except ConsentServiceError:
        raise _endpoint_error("Failed to retrieve latest consent", ErrorCodes.LATEST_CONSENT_ERROR)
    return _success({"userId": user_id, "latestConsent": _dump(latest) if latest else None})


@router.get("/api/consent/valid")
async def valid_consent(request: Request, user_id: str = Depends(require_user)):
    runtime = get_runtime(request)
    try:
        has_valid = await runtime.service.has_valid_consent(user_id)
    except Exception as e:
        logger.error("Error checking valid consent", user_id=user_id, error=str(e))
        raise _endpoint_error("Failed to check consent validity", ErrorCodes.CONSENT_CHECK_ERROR)
    return _success({"userId": user_id, "hasValidConsent": has_valid, "timestamp": _now()})


@router.post("/api/consent/withdraw")
async def withdraw_consent(request: Request, body: Optional[WithdrawRequest] = None,
                           user_id: str = Depends(require_user)):
    runtime = get_runtime(request)
    body = body or WithdrawRequest()
    try:
        record = await runtime.service.withdraw_consent(
            user_id,
            ip=get_client_ip(request),
            user_agent=get_user_agent(request, body.user_agent),
            metadata=body.metadata,
        )
    except ConsentServiceError:
        raise _endpoint_error("Failed to withdraw consent", ErrorCodes.WITHDRAW_ERROR)
    return _success({"id": record.id, "timestamp": record.timestamp.isoformat()},
                    message="Consent withdrawn successfully")


@router.get("/api/consent/export")
async def export_consent(request: Request, user_id: str = Depends(require_user)):
    runtime = get_runtime(request)
    try:
        export = await runtime.service.export_user_consent_data(user_id)
    except ConsentServiceError:
        raise _endpoint_error("Failed to export consent data", ErrorCodes.EXPORT_ERROR)
    return _success(_dump(export))


@router.post("/api/consent/cleanup", dependencies=[Depends(require_admin)])
async def cleanup_consents(request: Request):
    runtime = get_runtime(request)
    try:
        removed = await runtime.service.cleanup_old_records()
    except Exception as e:
        logger.error("Error cleaning up consent records", error=str(e))
        raise _endpoint_error("Failed to cleanup old records", ErrorCodes.CLEANUP_ERROR)
    return _success({"deletedCount": removed, "timestamp": _now()},
                    message="Old consent records cleaned up successfully")


@router.get("/api/consent/token")
async def consent_token_status(request: Request, token: str = Depends(require_consent_token)):
    """Confirm that a consent token grants access"""
    return _success({"consentToken": token, "valid": True, "timestamp": _now()})


@router.get("/api/consent/health")
async def consent_health(request: Request):
    """Probe the full recording path with a test consent"""
    runtime = get_runtime(request)
    try:
        record = await runtime.service.check_health()
    except ConsentServiceError as e:
        logger.error("Consent service health check failed", error=str(e))
        return JSONResponse(status_code=500, content={
            "success": False,
            "status": "unhealthy",
            "service": SERVICE_NAME,
            "error": e.message,
            "code": ErrorCodes.HEALTH_CHECK_ERROR,
            "timestamp": _now(),
        })

    return {
        "success": True,
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "database": "connected",
        "timestamp": _now(),
        "testRecordId": record.id,
    }


@router.get("/api/consent/retention", dependencies=[Depends(require_admin)])
async def retention_overview(request: Request):
    runtime = get_runtime(request)
    try:
        stats = await runtime.retention.get_retention_stats()
    except Exception as e:
        logger.error("Error reading retention statistics", error=str(e))
        raise _endpoint_error("Failed to retrieve retention statistics", ErrorCodes.RETENTION_ERROR)

    settings: ConsentSettings = runtime.settings
    return _success({
        "stats": _dump(stats),
        "configuration": {
            "retentionPeriodDays": settings.retention_period_days,
            "retentionPolicy": settings.retention_policy.value,
            "batchSize": settings.batch_size,
            "logRetentionDays": settings.log_retention_days,
            "maintenanceEnabled": settings.maintenance_enabled,
            "maintenanceIntervalHours": settings.maintenance_interval_hours,
        },
    })


@router.post("/api/consent/maintenance", dependencies=[Depends(require_admin)])
async def run_maintenance(request: Request):
    runtime = get_runtime(request)
    try:
        report = await runtime.retention.perform_maintenance()
    except Exception as e:
        logger.error("Error running maintenance", error=str(e))
        raise _endpoint_error("Failed to run maintenance", ErrorCodes.MAINTENANCE_ERROR)
    return _success({**_dump(report), "success": report.success})


@router.get("/api/consent/logs", dependencies=[Depends(require_admin)])
async def read_logs(request: Request,
                    page: int = Query(default=1, ge=1),
                    limit: int = Query(default=50, ge=1, le=500)):
    runtime = get_runtime(request)
    try:
        log_page = await asyncio.to_thread(runtime.audit_logger.read_consent_logs, page, limit)
    except OSError as e:
        logger.error("Error reading consent logs", error=str(e))
        raise _endpoint_error("Failed to read consent logs", ErrorCodes.LOG_READ_ERROR)
    return _success(_dump(log_page))


@router.get("/api/consent/logs/integrity", dependencies=[Depends(require_admin)])
async def log_integrity(request: Request, file: str = Query(default="audit")):
    if file not in LogFiles.BY_NAME:
        raise ConsentServiceError(
            f"Unknown log file. Must be one of: {', '.join(LogFiles.BY_NAME)}",
            ErrorCodes.VALIDATION_ERROR,
            status_code=400,
        )
    runtime = get_runtime(request)
    try:
        report = await asyncio.to_thread(runtime.audit_logger.validate_log_integrity, file)
    except OSError as e:
        logger.error("Error validating log integrity", file=file, error=str(e))
        raise _endpoint_error("Failed to validate log integrity", ErrorCodes.LOG_READ_ERROR)
    return _success(_dump(report))


# =============================================================================
# APPLICATION
# =============================================================================

def create_app(runtime: Optional[ConsentRuntime] = None,
               settings: Optional[ConsentSettings] = None) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        runtime: Prebuilt service graph; built from settings at startup when absent
        settings: Settings used to build the runtime

    Returns:
        Configured FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        active = runtime or ConsentRuntime(settings)
        app.state.runtime = active

        logger.info("Starting FarmWork Hub consent service", version=SERVICE_VERSION,
                    environment=active.settings.environment)
        active.start()

        yield

        logger.info("Shutting down FarmWork Hub consent service")
        if owned:
            active.close()
        elif active.scheduler is not None and active.scheduler.running:
            active.scheduler.shutdown(wait=False)

    app = FastAPI(
        title="FarmWork Hub Consent Service",
        description="Consent recording, retention enforcement and audit logging",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ConsentServiceError)
    async def consent_error_handler(request: Request, exc: ConsentServiceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": "Invalid request",
            "code": ErrorCodes.VALIDATION_ERROR,
        })

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={
            "success": False,
            "error": "Internal server error",
            "code": ErrorCodes.UNKNOWN_ERROR,
        })

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
