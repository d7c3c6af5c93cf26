import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from tokenguard.core.errors import ReuseDetected, StorageUnavailable, TokenError
from tokenguard.services.registry import TRANSIENT_ERRORS

logger = logging.getLogger(__name__)


def error_response(message: str, status_code: int, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message}, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ReuseDetected)
    async def reuse_detected(request: Request, exc: ReuseDetected):
        logger.warning("Rejected refresh from %s: family %s revoked after reuse", _client(request), exc.family_id)
        return error_response("Refresh token reuse detected; sign in again", status.HTTP_403_FORBIDDEN)

    # expired and invalid look the same to the caller
    @app.exception_handler(TokenError)
    async def token_error(request: Request, exc: TokenError):
        logger.info("Rejected token from %s: %s", _client(request), exc.code)
        return error_response(
            "Invalid token",
            status.HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable(request: Request, exc: StorageUnavailable):
        logger.error("Token storage unavailable: %s", exc)
        return _unavailable()

    # database outages outside the registry still surface as storage errors
    async def database_unavailable(request: Request, exc: Exception):
        logger.error("Database unavailable during %s %s: %s", request.method, request.url.path, exc)
        return _unavailable()

    for error_class in TRANSIENT_ERRORS:
        app.add_exception_handler(error_class, database_unavailable)


def _unavailable() -> JSONResponse:
    return error_response(
        "Token storage temporarily unavailable",
        status.HTTP_503_SERVICE_UNAVAILABLE,
        headers={"Retry-After": "1"},
    )


def _client(request: Request) -> str:
    return request.client.host if request.client else "unknown"
