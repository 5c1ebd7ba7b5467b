"""
Rollcall
========

Layered login for an institutional attendance service, built on FastAPI.

- Password check against bcrypt or legacy crypt(3) hashes.
- Students then complete a WebAuthn ceremony: first login registers a device, later logins prove it.
- A short-lived signed login ticket carries the caller from the password step to the ceremony finish.
- Staff accounts get a bearer session token straight after the password step.
- Async SQLAlchemy storage with PostgreSQL and SQLite support, and an audit trail of every outcome.
"""

__version__ = "0.1.0"
__description__ = "Password plus WebAuthn login for an attendance-tracking service"

from fastapi import FastAPI

from .core.config import settings, init_settings


def init_app(app: FastAPI):
    """
    Wires Rollcall into a FastAPI app: the /api routers, /health and the error handlers.
    :param app:
    :return:
    """
    from rollcall.integrations import register_exception_handlers
    from rollcall.routers import auth_router, webauthn_router

    register_exception_handlers(app)
    app.include_router(auth_router)
    app.include_router(webauthn_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {"ok": True}


__all__ = [
    "settings",
    "init_settings",
    "init_app"
]
