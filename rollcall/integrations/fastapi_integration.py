import logging
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from rollcall.core.database import User, db_manager
from rollcall.core.exceptions import RollcallError
from rollcall.manager.asynchronous import RollcallAsync

logger = logging.getLogger(__name__)

# The primary asynchronous service used by FastAPI dependencies.
auth_service = RollcallAsync(db_manager)


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None


async def get_current_user(request: Request) -> User:
    """
    FastAPI dependency that resolves the bearer session token to a user.

    Login tickets are rejected here: only a token minted as a session is accepted.
    The user is cached at request.state.user_object for later dependencies.
    """
    if getattr(request.state, "user_object", None) is not None:
        return request.state.user_object

    token = _bearer_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated",
                            headers={"WWW-Authenticate": "Bearer"})
    user = await auth_service.get_session_user(token)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired session",
                            headers={"WWW-Authenticate": "Bearer"})
    request.state.user_id = user.id
    request.state.user_object = user
    return user


class RoleChecker:
    """
    A dependency factory for checking that the session user has one of the given roles.

    Usage: `user: User = Depends(RoleChecker("student"))`
    """

    def __init__(self, *roles: str):
        self.roles = set(roles)

    async def __call__(self, request: Request) -> User:
        user = await get_current_user(request)
        if user.role not in self.roles:
            logger.warning(f"User {user.id} with role {user.role!r} denied access to {request.url.path}.")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user


def register_exception_handlers(app: FastAPI) -> None:
    """
    Renders every error as `{"error": <kind>, "detail": <message>}`.

    Only the fixed public message of a RollcallError is sent; the internal message
    (which may say exactly which check failed) stays in the logs.
    """

    @app.exception_handler(RollcallError)
    async def rollcall_error_handler(request: Request, exc: RollcallError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{exc.kind} on {request.url.path}: {exc}")
        else:
            logger.info(f"{exc.kind} on {request.url.path}: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": exc.public_message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info(f"Malformed request on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "MalformedRequest", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        try:
            error = HTTPStatus(exc.status_code).phrase
        except ValueError:
            error = "Error"
        detail = exc.detail if exc.status_code < 500 else "An unexpected error occurred."
        return JSONResponse(status_code=exc.status_code, content={"error": error, "detail": detail},
                            headers=getattr(exc, "headers", None))
