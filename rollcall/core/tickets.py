"""
Signed tokens for the login handshake.

Two kinds of token are minted here and they must never be accepted in place of
each other:

- login tickets, `{sub, stage, typ="login_ticket"}`, live for a few minutes and carry
  a student between the `start` and `finish` halves of a WebAuthn ceremony;
- session tokens, `{sub, role, typ="session"}`, are what a fully logged-in caller
  presents as a bearer token.

Both are stateless JWTs; validity is purely signature plus expiry.
"""
import logging
import time
from typing import Any, Dict, Literal, Optional

from jose import JWTError, jwt

from rollcall.core.exceptions import InvalidTicketError

logger = logging.getLogger(__name__)

Stage = Literal["register", "authenticate"]
STAGES = ("register", "authenticate")

TICKET_TYPE = "login_ticket"
SESSION_TYPE = "session"


class TicketManager:
    """Issues and reads login tickets and session tokens."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", ticket_lifetime: int = 300,
                 session_lifetime: int = 28800):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ticket_lifetime = ticket_lifetime
        self.session_lifetime = session_lifetime

    def _encode(self, claims: Dict[str, Any], lifetime: int) -> str:
        now = time.time()
        to_encode = dict(claims, iat=int(now), exp=now + lifetime)
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def _decode(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Checks the signature and expiry of a token and returns its claims, or None.
        Expiry is compared here rather than by jose so there is a single clock.
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm],
                                 options={"verify_exp": False, "verify_iat": False})
        except JWTError as e:
            logger.debug(f"JWT decoding failed: {e}")
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or time.time() > exp:
            logger.debug("JWT rejected: expired or missing expiry.")
            return None
        return payload

    def issue(self, user_id: str, stage: Stage) -> str:
        """Mints a login ticket binding `user_id` to one ceremony stage."""
        if stage not in STAGES:
            raise ValueError(f"Unknown login ticket stage: {stage}")
        return self._encode({"sub": user_id, "stage": stage, "typ": TICKET_TYPE}, self.ticket_lifetime)

    def read(self, ticket: str, expected_stage: Stage) -> str:
        """
        Validates a login ticket for `expected_stage` and returns the user id it names.

        Every failure raises the same InvalidTicketError; the reason only goes to the log.
        """
        payload = self._decode(ticket)
        if payload is None:
            raise InvalidTicketError("Login ticket signature invalid or ticket expired.")
        if payload.get("typ") != TICKET_TYPE:
            raise InvalidTicketError("Token is not a login ticket.")
        if payload.get("stage") != expected_stage:
            raise InvalidTicketError(
                f"Login ticket stage mismatch: got {payload.get('stage')!r}, expected {expected_stage!r}."
            )
        user_id = payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTicketError("Login ticket has no subject.")
        return user_id

    def issue_session(self, user_id: str, role: str) -> str:
        """Mints the bearer session token handed out once login completes."""
        return self._encode({"sub": user_id, "role": role, "typ": SESSION_TYPE}, self.session_lifetime)

    def read_session(self, token: str) -> Optional[Dict[str, Any]]:
        payload = self._decode(token)
        if payload is None or payload.get("typ") != SESSION_TYPE or not payload.get("sub"):
            return None
        return payload
