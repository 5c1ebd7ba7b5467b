from .auth import router as auth_router
from .webauthn import router as webauthn_router

__all__ = ["auth_router", "webauthn_router"]
