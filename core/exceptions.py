"""
业务码到 HTTP 状态的映射与全局异常处理器
"""
import traceback
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as http_status

from .response import error_response
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from shared.codes.ledger_codes import LedgerCode
from shared.codes.payment_codes import PaymentCode


_STATUS_BY_CODE: dict[int, int] = {
    BusinessCode.PARAM_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_MISSING: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_TYPE_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    BusinessCode.BUSINESS_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.CONFLICT: http_status.HTTP_409_CONFLICT,
    BusinessCode.PERMISSION_ERROR: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.NETWORK_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    BusinessCode.REQUEST_TIMEOUT: http_status.HTTP_408_REQUEST_TIMEOUT,
    BusinessCode.TOO_MANY_REQUESTS: http_status.HTTP_429_TOO_MANY_REQUESTS,

    LedgerCode.ORDER_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    LedgerCode.EVENT_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    LedgerCode.AMOUNT_GUARD_VIOLATION: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    LedgerCode.ORDER_ALREADY_PAID: http_status.HTTP_409_CONFLICT,
    LedgerCode.ORDER_NOT_FULLY_PAID: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    LedgerCode.ORDER_AMOUNT_BELOW_MINIMUM: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    LedgerCode.NOTHING_TO_REFUND: http_status.HTTP_409_CONFLICT,
    LedgerCode.ILLEGAL_STATUS_TRANSITION: http_status.HTTP_422_UNPROCESSABLE_ENTITY,
    LedgerCode.ORDER_NOT_ACTIVE: http_status.HTTP_409_CONFLICT,
    LedgerCode.EVENT_ALREADY_VOIDED: http_status.HTTP_409_CONFLICT,
    LedgerCode.EVENT_NOT_VOIDABLE: http_status.HTTP_409_CONFLICT,
    LedgerCode.ONLINE_TRANSACTION_IN_PROGRESS: http_status.HTTP_409_CONFLICT,
    LedgerCode.PROVIDER_NOT_CONFIGURED: http_status.HTTP_400_BAD_REQUEST,
    LedgerCode.CONCURRENT_MODIFICATION: http_status.HTTP_409_CONFLICT,

    PaymentCode.PROVIDER_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.PROVIDER_RECOVERABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
}


def business_code_to_http_status(code: int) -> int:
    """根据业务码映射HTTP状态码（默认400）。"""
    return _STATUS_BY_CODE.get(int(code), http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def register_exception_handlers(app: FastAPI):
    """
    注册全局异常处理器

    Args:
        app: FastAPI应用实例
    """
    logger = get_logger(__name__)

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        """处理业务异常"""
        response = error_response(
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=exc.details,
            field=exc.field,
            request_id=_request_id(request),
        )
        logger.info(
            "business_rejection",
            code=int(exc.code),
            error_type=exc.error_type,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=business_code_to_http_status(exc.code),
            content=response.model_dump(mode="json"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理参数验证异常"""
        errors = exc.errors()
        first_error = errors[0] if errors else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", [])[1:])
        response = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first_error.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": [{k: v for k, v in e.items() if k != "ctx"} for e in errors]},
            field=field,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response.model_dump(mode="json"),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理HTTP异常"""
        code_mapping = {
            403: BusinessCode.FORBIDDEN,
            404: BusinessCode.NOT_FOUND,
            408: BusinessCode.REQUEST_TIMEOUT,
            409: BusinessCode.CONFLICT,
            429: BusinessCode.TOO_MANY_REQUESTS,
            503: BusinessCode.SERVICE_UNAVAILABLE,
        }
        response = error_response(
            code=code_mapping.get(exc.status_code, BusinessCode.SYSTEM_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """处理所有未捕获的异常"""
        request_id = _request_id(request)
        details = None
        if app.debug:
            details = {"exception": str(exc), "traceback": traceback.format_exc()}

        logger.error("unhandled_exception", request_id=request_id, error=str(exc), exc_info=True)
        response = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        return JSONResponse(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode="json"),
        )
