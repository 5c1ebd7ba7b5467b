import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from rollcall.core.database import User
from rollcall.core.exceptions import RollcallError
from rollcall.helpers import get_remote_address
from rollcall.integrations.fastapi_integration import RoleChecker, auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webauthn", tags=["webauthn"])


class CeremonyResponse(BaseModel):
    credential: Dict[str, Any]


@router.get("/status")
async def webauthn_status(user: User = Depends(RoleChecker("student"))):
    """Whether the student has a device registered and has proven it recently."""
    return await auth_service.webauthn_status(user)


@router.post("/register/start")
async def register_start(request: Request, user: User = Depends(RoleChecker("student"))):
    """Starts enrolling an additional device for the logged-in student."""
    try:
        return await auth_service.start_session_registration(user, ip_address=await get_remote_address(request))
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error starting WebAuthn registration: {e}", exc_info=True)
        raise RollcallError("Registration start failed unexpectedly.") from e


@router.post("/register/finish")
async def register_finish(payload: CeremonyResponse, request: Request, user: User = Depends(RoleChecker("student"))):
    try:
        return await auth_service.finish_session_registration(user, payload.credential,
                                                              ip_address=await get_remote_address(request))
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error finishing WebAuthn registration: {e}", exc_info=True)
        raise RollcallError("Registration finish failed unexpectedly.") from e


@router.post("/authenticate/start")
async def authenticate_start(request: Request, user: User = Depends(RoleChecker("student"))):
    """Asks the logged-in student to prove possession of a registered device."""
    try:
        return await auth_service.start_session_authentication(user, ip_address=await get_remote_address(request))
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error starting WebAuthn authentication: {e}", exc_info=True)
        raise RollcallError("Authentication start failed unexpectedly.") from e


@router.post("/authenticate/finish")
async def authenticate_finish(payload: CeremonyResponse, request: Request,
                              user: User = Depends(RoleChecker("student"))):
    """Verifies the assertion and records the time of the device check."""
    try:
        return await auth_service.finish_session_authentication(user, payload.credential,
                                                                ip_address=await get_remote_address(request))
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error finishing WebAuthn authentication: {e}", exc_info=True)
        raise RollcallError("Authentication finish failed unexpectedly.") from e
