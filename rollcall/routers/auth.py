import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field, field_validator

from rollcall.core.config import settings
from rollcall.core.exceptions import RollcallError
from rollcall.helpers import get_remote_address
from rollcall.integrations.fastapi_integration import auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])


class _PasswordModel(BaseModel):
    password: str

    @field_validator("password")
    @classmethod
    def password_long_enough(cls, value: str) -> str:
        if len(value) < settings.MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {settings.MIN_PASSWORD_LENGTH} characters.")
        return value


class StudentSignup(_PasswordModel):
    email: str = Field(..., min_length=3, max_length=255)
    surname: str = Field(..., min_length=1, max_length=100)
    first_name: str = Field(..., min_length=1, max_length=100)
    middle_name: Optional[str] = Field(None, max_length=100)
    matric_number: str = Field(..., min_length=1, max_length=64)


class TeacherSignup(_PasswordModel):
    email: str = Field(..., min_length=3, max_length=255)
    surname: str = Field(..., min_length=1, max_length=100)
    first_name: str = Field(..., min_length=1, max_length=100)
    middle_name: Optional[str] = Field(None, max_length=100)
    title: str = Field(..., min_length=1, max_length=32)
    sex: str = Field(..., min_length=1, max_length=16)
    staff_id: str = Field(..., min_length=1, max_length=64)


class LoginStart(_PasswordModel):
    identifier: str = Field(..., min_length=1, max_length=255)


class RegisterFinish(BaseModel):
    ticket: str = Field(..., min_length=1)
    attestation_response: Dict[str, Any]


class LoginFinish(BaseModel):
    ticket: str = Field(..., min_length=1)
    assertion_response: Dict[str, Any]


@router.post("/signup")
async def signup_student(payload: StudentSignup, request: Request):
    """
    Creates a student account and starts the registration of their first device.
    The returned ticket must accompany the attestation to /api/login/register-finish.
    """
    try:
        ip_address = await get_remote_address(request)
        challenge = await auth_service.signup_student(
            email=payload.email, surname=payload.surname, first_name=payload.first_name,
            middle_name=payload.middle_name, matric_number=payload.matric_number,
            password=payload.password, ip_address=ip_address,
        )
        return challenge.as_response()
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error during student signup: {e}", exc_info=True)
        raise RollcallError("Student signup failed unexpectedly.") from e


@router.post("/teacher-signup")
async def signup_teacher(payload: TeacherSignup, request: Request):
    try:
        ip_address = await get_remote_address(request)
        success = await auth_service.signup_teacher(
            email=payload.email, surname=payload.surname, first_name=payload.first_name,
            middle_name=payload.middle_name, title=payload.title, sex=payload.sex,
            staff_id=payload.staff_id, password=payload.password, ip_address=ip_address,
        )
        return success.as_response()
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error during teacher signup: {e}", exc_info=True)
        raise RollcallError("Teacher signup failed unexpectedly.") from e


@router.post("/login/start")
@router.post("/login")
async def login_start(payload: LoginStart, request: Request):
    """
    Checks the password. Staff are logged in directly; students get a login ticket
    and the parameters for the WebAuthn ceremony they must complete next.
    """
    try:
        ip_address = await get_remote_address(request)
        result = await auth_service.login(payload.identifier, payload.password, ip_address=ip_address)
        return result.as_response()
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error during login: {e}", exc_info=True)
        raise RollcallError("Login failed unexpectedly.") from e


@router.post("/login/register-finish")
async def login_register_finish(payload: RegisterFinish, request: Request):
    try:
        ip_address = await get_remote_address(request)
        success = await auth_service.finish_registration(payload.ticket, payload.attestation_response,
                                                         ip_address=ip_address)
        return success.as_response()
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error finishing WebAuthn registration: {e}", exc_info=True)
        raise RollcallError("Registration finish failed unexpectedly.") from e


@router.post("/login/finish")
async def login_finish(payload: LoginFinish, request: Request):
    try:
        ip_address = await get_remote_address(request)
        success = await auth_service.finish_login(payload.ticket, payload.assertion_response, ip_address=ip_address)
        return success.as_response()
    except RollcallError:
        raise
    except Exception as e:
        logger.error(f"Error finishing WebAuthn login: {e}", exc_info=True)
        raise RollcallError("Login finish failed unexpectedly.") from e
