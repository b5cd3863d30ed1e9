from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..errors import AuditWriteError, PricingIntegrityError
from ..service import PricingIntegrityService, build_service
from ..settings import settings
from .models import ErrorCode, PurchaseRequest, ValidateRequest, ValidationResult

_service: PricingIntegrityService | None = None
_service_lock = threading.Lock()


def get_service() -> PricingIntegrityService:
    """Build the process-wide service on first use; tests override this dependency."""
    global _service
    with _service_lock:
        if _service is None:
            _service = build_service(settings)
            _service.start()
        return _service


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - process lifecycle
    global _service
    yield
    with _service_lock:
        if _service is not None:
            _service.stop()
            _service = None


app = FastAPI(title="Pricing Integrity Service", lifespan=lifespan)


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data, "error": None}, status_code=status_code)


def _fail(code: str, message: str, status_code: int, data: Any = None) -> JSONResponse:
    return JSONResponse(
        {"success": False, "data": data, "error": {"code": code, "message": message}},
        status_code=status_code,
    )


def _result_response(result: ValidationResult) -> JSONResponse:
    body = result.model_dump(mode="json")
    if result.is_valid:
        return _ok(body)
    status = 503 if result.error_code == ErrorCode.VALIDATION_SERVICE_ERROR else 400
    return _fail(result.error_code.value, result.error_message or "", status, data=body)


def _client_context(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError):
    detail = jsonable_encoder(exc.errors())
    return _fail(ErrorCode.INVALID_REQUEST.value, "Malformed request body", 400, data={"detail": detail})


@app.exception_handler(AuditWriteError)
async def _audit_unavailable(request: Request, exc: AuditWriteError):
    logging.error("Rejecting request: tampering audit could not be written: %s", exc)
    return _fail("INTERNAL_ERROR", "Request could not be processed", 500)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/pricing/plans")
def list_plans(svc: PricingIntegrityService = Depends(get_service)):  # noqa: B008 FastAPI dependency pattern
    try:
        plans = svc.get_validated_plans()
    except PricingIntegrityError as e:
        logging.error("Plan listing unavailable: %s", e)
        return _fail(ErrorCode.VALIDATION_SERVICE_ERROR.value, "Pricing is temporarily unavailable", 503)
    return _ok([p.model_dump(mode="json") for p in plans])


@app.get("/pricing/plans/{plan_id}")
def get_plan(plan_id: str, svc: PricingIntegrityService = Depends(get_service)):  # noqa: B008
    try:
        plan = svc.get_validated_plan(plan_id)
    except PricingIntegrityError as e:
        logging.error("Plan lookup unavailable: %s", e)
        return _fail(ErrorCode.VALIDATION_SERVICE_ERROR.value, "Pricing is temporarily unavailable", 503)
    if plan is None:
        return _fail(ErrorCode.PLAN_NOT_FOUND.value, f"Plan {plan_id} not found", 404)
    return _ok(plan.model_dump(mode="json"))


@app.post("/pricing/validate")
def validate_price(
    body: ValidateRequest,
    request: Request,
    x_actor_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
    svc: PricingIntegrityService = Depends(get_service),  # noqa: B008
):
    result = svc.validate(
        body.plan_id,
        body.amount,
        body.currency,
        x_actor_id,
        x_tenant_id,
        billing_cycle=body.billing_cycle,
        **_client_context(request),
    )
    return _result_response(result)


@app.post("/pricing/purchase")
def validate_purchase(
    body: PurchaseRequest,
    request: Request,
    x_actor_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
    svc: PricingIntegrityService = Depends(get_service),  # noqa: B008
):
    if not x_actor_id or not x_tenant_id:
        return _fail(ErrorCode.IDENTITY_REQUIRED.value, "Authentication required", 401)
    result = svc.validate_purchase(
        body.plan_id,
        body.amount,
        body.currency,
        x_actor_id,
        x_tenant_id,
        **_client_context(request),
    )
    return _result_response(result)


@app.post("/pricing/cache/refresh")
def refresh_cache(svc: PricingIntegrityService = Depends(get_service)):  # noqa: B008
    try:
        stats = svc.refresh_cache()
    except PricingIntegrityError as e:
        logging.error("Catalog refresh failed: %s", e)
        return _fail(ErrorCode.VALIDATION_SERVICE_ERROR.value, "Catalog refresh failed", 503)
    return _ok(stats.model_dump(mode="json"))


@app.get("/pricing/cache/stats")
def cache_stats(svc: PricingIntegrityService = Depends(get_service)):  # noqa: B008
    return _ok(svc.get_cache_statistics().model_dump(mode="json"))


@app.get("/pricing/tampering/stats")
def tampering_stats(
    timeframe: str = "day",
    since_ms: int | None = None,
    until_ms: int | None = None,
    svc: PricingIntegrityService = Depends(get_service),  # noqa: B008
):
    try:
        stats = svc.get_tampering_statistics(timeframe, since_ms=since_ms, until_ms=until_ms)
    except ValueError as e:
        return _fail(ErrorCode.INVALID_REQUEST.value, str(e), 400)
    return _ok(stats.model_dump(mode="json"))
