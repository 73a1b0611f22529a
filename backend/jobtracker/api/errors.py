"""
Exception to HTTP response mapping.

    AttachmentValidationError / request validation  -> 400
    AttachmentNotFoundError / BlobNotFoundError     -> 404
    SignedUrlRejectedError                          -> 403
    other StorageError                              -> 502
    anything else                                   -> 500

Bodies are {"error": ..., "detail": ...}; detail is omitted in production.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from jobtracker.services.upload_service import AttachmentNotFoundError, AttachmentValidationError
from jobtracker.storage.errors import BlobNotFoundError, SignedUrlRejectedError, StorageError
from jobtracker.utils.metrics import errors_total

logger = logging.getLogger(__name__)


def _show_detail(request: Request) -> bool:
    return not request.app.state.settings_provider().is_production


def error_response(
    request: Request,
    status_code: int,
    error: str,
    detail: Optional[str] = None,
) -> JSONResponse:
    body = {"error": error}
    if detail and _show_detail(request):
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


async def _validation_error(request: Request, exc: AttachmentValidationError) -> JSONResponse:
    return error_response(request, status.HTTP_400_BAD_REQUEST, str(exc))


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        "invalid request",
        f"invalid fields: {', '.join(fields)}" if fields else None,
    )


async def _not_found(request: Request, exc: LookupError) -> JSONResponse:
    return error_response(request, status.HTTP_404_NOT_FOUND, "not found", str(exc))


async def _blob_not_found(request: Request, exc: BlobNotFoundError) -> JSONResponse:
    return error_response(request, status.HTTP_404_NOT_FOUND, "file not found", str(exc))


async def _signed_url_rejected(request: Request, exc: SignedUrlRejectedError) -> JSONResponse:
    logger.warning(f"Signed URL rejected: {exc}", extra={"event": "signed_url_rejected", "backend": exc.backend})
    return error_response(request, status.HTTP_403_FORBIDDEN, "signed URL rejected", str(exc))


async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
    errors_total.labels(error_type="storage").inc()
    logger.error(f"Storage error: {exc}", extra={"event": "storage_error", "backend": exc.backend})
    return error_response(request, status.HTTP_502_BAD_GATEWAY, "storage failure", str(exc))


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "internal error", str(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AttachmentValidationError, _validation_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(AttachmentNotFoundError, _not_found)
    app.add_exception_handler(BlobNotFoundError, _blob_not_found)
    app.add_exception_handler(SignedUrlRejectedError, _signed_url_rejected)
    app.add_exception_handler(StorageError, _storage_error)
    app.add_exception_handler(Exception, _unhandled)
