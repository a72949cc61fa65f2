from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskcoda.apps.api.response import error_response, is_versioned_request
from taskcoda.core import errors


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class wins; lookup walks the exception's MRO.
_DOMAIN_ERRORS: dict[type[errors.TaskcodaError], tuple[int, str]] = {
    errors.AuthenticationError: (401, "AUTH_UNAUTHORIZED"),
    errors.PermissionDeniedError: (403, "AUTH_FORBIDDEN"),
    errors.OrganizationNotFoundError: (404, "ORGANIZATION_NOT_FOUND"),
    errors.SubscriptionNotFoundError: (404, "SUBSCRIPTION_NOT_FOUND"),
    errors.MembershipNotFoundError: (404, "MEMBERSHIP_NOT_FOUND"),
    errors.UserNotFoundError: (404, "USER_NOT_FOUND"),
    errors.FeatureFlagNotFoundError: (404, "FEATURE_FLAG_NOT_FOUND"),
    errors.NotFoundError: (404, "NOT_FOUND"),
    errors.ConflictError: (409, "CONFLICT"),
    errors.ValidationFailedError: (400, "BAD_REQUEST"),
    errors.WebhookVerificationError: (403, "WEBHOOK_VERIFICATION_FAILED"),
    errors.BillingConfigError: (502, "BILLING_NOT_CONFIGURED"),
    errors.BillingProviderError: (502, "BILLING_PROVIDER_ERROR"),
    errors.LLMConfigError: (502, "LLM_NOT_CONFIGURED"),
    errors.LLMProviderError: (502, "LLM_PROVIDER_ERROR"),
    errors.EmailDeliveryError: (502, "EMAIL_DELIVERY_ERROR"),
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for_error(exc: errors.TaskcodaError) -> tuple[int, str]:
    for cls in type(exc).__mro__:
        mapped = _DOMAIN_ERRORS.get(cls)
        if mapped is not None:
            return mapped
    return 500, "INTERNAL_ERROR"


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def taskcoda_error_handler(request: Request, exc: errors.TaskcodaError) -> JSONResponse:
    status_code, code = status_for_error(exc)
    message = str(exc) or "Request failed"
    if status_code >= 500:
        # Upstream failures keep their detail in logs only.
        logger.warning("upstream_error path=%s code=%s", request.url.path, code, exc_info=exc)
        message = "Upstream service error"
    if not is_versioned_request(request):
        return JSONResponse(content={"error": message}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Router-level 404/405s get the same envelope as handler errors.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"error": "Internal server error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
