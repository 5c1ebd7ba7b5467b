import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rollcall.core.config import Settings, get_settings
from rollcall.core.database import ROLES, DatabaseManager, User, WebAuthnCredential
from rollcall.core.encryption import encryption_utils
from rollcall.core.exceptions import (
    CredentialNotFoundError,
    InvalidCredentialsError,
    InvalidStoredCredentialError,
    InvalidTicketError,
    NoChallengePendingError,
    NoCredentialsRegisteredError,
    NoUsableDeviceError,
    RollcallError,
    UnknownUserError,
    UserAlreadyExistsError,
)
from rollcall.core.passkeys import PasskeysCore, VerifiedAuthentication, VerifiedRegistration
from rollcall.core.tickets import Stage, TicketManager
from rollcall.helpers import is_email_valid

logger = logging.getLogger(__name__)


class UserManager:
    """Looks up and creates users, asynchronously."""

    def __init__(self, db_manager: DatabaseManager, bcrypt_rounds: int = 10, email_domains: Sequence[str] = ()):
        self._db_manager = db_manager
        self.bcrypt_rounds = bcrypt_rounds
        self.email_domains = list(email_domains)

    async def get_by_id(self, user_id: str, db: AsyncSession = None) -> Optional[User]:
        async def _get(session: AsyncSession):
            return await session.get(User, user_id)

        if db:
            return await _get(db)
        async with self._db_manager.get_db() as db:
            return await _get(db)

    async def get_by_identifier(self, identifier: str, db: AsyncSession = None) -> Optional[User]:
        """Case-insensitive exact match on email, matric number or staff id."""
        ident = (identifier or "").strip()
        if not ident:
            return None

        async def _get(session: AsyncSession):
            stmt = select(User).where(or_(
                func.lower(User.email) == ident.lower(),
                func.upper(User.matric_number) == ident.upper(),
                func.upper(User.staff_id) == ident.upper(),
            )).limit(1)
            return (await session.execute(stmt)).scalars().first()

        if db:
            return await _get(db)
        async with self._db_manager.get_db() as db:
            return await _get(db)

    async def create(self, role: str, email: str, password: str, ip_address: str = 'system', **kwargs) -> User:
        """Creates a user with a bcrypt password and logs the audit event in one transaction."""
        if role not in ROLES:
            raise ValueError(f"Unknown role {role!r}, expected one of {ROLES}.")
        email = email.strip().lower()
        is_email_valid(email, self.email_domains)
        matric_number, staff_id = kwargs.get("matric_number"), kwargs.get("staff_id")

        async with self._db_manager.get_db() as db:
            clauses = [func.lower(User.email) == email]
            if matric_number:
                clauses.append(func.upper(User.matric_number) == matric_number.upper())
            if staff_id:
                clauses.append(func.upper(User.staff_id) == staff_id.upper())
            existing_user = (await db.execute(select(User.id).where(or_(*clauses)).limit(1))).first()
            if existing_user:
                raise UserAlreadyExistsError(f"A user with email {email} or the same matric/staff id already exists.")

            new_user = User(
                id=encryption_utils.gen_random_string(32),
                role=role,
                email=email,
                password_hash=encryption_utils.hash_password(password, self.bcrypt_rounds),
                **kwargs
            )
            db.add(new_user)
            await self._db_manager.log_audit_event(new_user.id, "USER_CREATED", ip_address, {"role": role}, db=db)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise UserAlreadyExistsError(f"Unique constraint hit while creating {email}: {e.orig}")
            await db.refresh(new_user)
            logger.info(f"Created {role} account {new_user.id}.")
            return new_user

    async def mark_webauthn_verified(self, user_id: str, credential_id: bytes):
        """Stamps the time and credential of a successful session-scoped device check."""
        async with self._db_manager.get_db() as db:
            await db.execute(update(User).where(User.id == user_id).values(
                webauthn_verified_at=time.time(), webauthn_verified_credential=credential_id
            ))
            await db.commit()


class CredentialManager:
    """Persists the WebAuthn credentials registered by users."""

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def get_for_user(self, user_id: str) -> List[WebAuthnCredential]:
        async with self._db_manager.get_db() as db:
            stmt = select(WebAuthnCredential).where(WebAuthnCredential.user_id == user_id).order_by(
                WebAuthnCredential.id)
            return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    def usable(credentials: Sequence[WebAuthnCredential]) -> List[WebAuthnCredential]:
        return [cred for cred in credentials if cred.is_usable]

    async def get_for_user_by_credential_id(self, user_id: str, credential_id: bytes) -> Optional[WebAuthnCredential]:
        """A credential owned by someone else is treated the same as a missing one."""
        async with self._db_manager.get_db() as db:
            stmt = select(WebAuthnCredential).where(
                WebAuthnCredential.credential_id == credential_id,
                WebAuthnCredential.user_id == user_id,
            )
            return (await db.execute(stmt)).scalars().first()

    async def upsert(self, user_id: str, verified: VerifiedRegistration) -> WebAuthnCredential:
        """
        Stores a verified credential. Re-registering an existing credential id overwrites
        its owner, key, counter and transports in a single statement, keeping the row.
        """
        now = time.time()
        async with self._db_manager.get_db() as db:
            insert = pg_insert if self._db_manager.dialect_name == 'postgresql' else sqlite_insert
            stmt = insert(WebAuthnCredential).values(
                user_id=user_id,
                credential_id=verified.credential_id,
                public_key=verified.public_key,
                sign_count=verified.sign_count,
                transports=verified.transports or None,
                created_at=now,
                last_used_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[WebAuthnCredential.credential_id],
                set_={
                    "user_id": stmt.excluded.user_id,
                    "public_key": stmt.excluded.public_key,
                    "sign_count": stmt.excluded.sign_count,
                    "transports": stmt.excluded.transports,
                    "last_used_at": stmt.excluded.last_used_at,
                },
            )
            await db.execute(stmt)
            await db.commit()
            result = await db.execute(
                select(WebAuthnCredential).where(WebAuthnCredential.credential_id == verified.credential_id)
            )
            return result.scalars().one()

    async def update_counter(self, row_id: int, new_sign_count: int):
        """Updates the sign count and last_used_at timestamp after a successful assertion."""
        async with self._db_manager.get_db() as db:
            await db.execute(update(WebAuthnCredential).where(WebAuthnCredential.id == row_id).values(
                sign_count=new_sign_count, last_used_at=time.time()
            ))
            await db.commit()


class ChallengeLedger:
    """
    The single pending-challenge slot on each user row.

    Writes are unconditional, so the most recent ceremony start wins. Reading does
    not consume the challenge; only a successful finish clears it.
    """

    def __init__(self, db_manager: DatabaseManager):
        self._db_manager = db_manager

    async def set_challenge(self, user_id: str, value: Optional[bytes]):
        stored = encryption_utils.base64url_encode(value) if value is not None else None
        async with self._db_manager.get_db() as db:
            await db.execute(update(User).where(User.id == user_id).values(webauthn_current_challenge=stored))
            await db.commit()

    async def take_challenge(self, user_id: str) -> Optional[bytes]:
        async with self._db_manager.get_db() as db:
            stored = await db.scalar(select(User.webauthn_current_challenge).where(User.id == user_id))
        if not stored:
            return None
        return encryption_utils.base64url_decode(stored)

    async def clear_challenge(self, user_id: str):
        await self.set_challenge(user_id, None)


def _descriptors(credentials: Sequence[WebAuthnCredential]):
    return [(cred.credential_id, cred.transports) for cred in credentials]


class RegistrationCeremony:
    """Enrols a new authenticator for a user."""

    def __init__(self, core: PasskeysCore, credentials: CredentialManager, challenges: ChallengeLedger,
                 db_manager: DatabaseManager):
        self.core = core
        self.credentials = credentials
        self.challenges = challenges
        self._db_manager = db_manager

    async def start(self, user: User, ip_address: str = 'system') -> Dict[str, Any]:
        existing = CredentialManager.usable(await self.credentials.get_for_user(user.id))
        options, challenge = self.core.generate_registration_options(
            user_id=user.id, username=user.email, display_name=user.display_name,
            exclude_credentials=_descriptors(existing),
        )
        await self.challenges.set_challenge(user.id, challenge)
        await self._db_manager.log_audit_event(user.id, "WEBAUTHN_REGISTRATION_STARTED", ip_address,
                                               {"existing_credentials": len(existing)})
        logger.info(f"WebAuthn registration started for user {user.id}.")
        return options

    async def finish(self, user: User, response: Any, ip_address: str = 'system') -> VerifiedRegistration:
        try:
            expected_challenge = await self.challenges.take_challenge(user.id)
            if expected_challenge is None:
                raise NoChallengePendingError(f"No registration challenge pending for user {user.id}.")
            payload = self.core.parse_attestation(response)
            verified = self.core.verify_registration(payload, expected_challenge)
        except RollcallError as e:
            logger.warning(f"WebAuthn registration rejected for user {user.id}: {e}")
            await self._db_manager.log_audit_event(user.id, "WEBAUTHN_REGISTRATION_FAILED", ip_address,
                                                   {"reason": e.kind, "detail": str(e)})
            raise

        credential = await self.credentials.upsert(user.id, verified)
        await self.challenges.clear_challenge(user.id)
        await self._db_manager.log_audit_event(
            user.id, "WEBAUTHN_REGISTERED", ip_address,
            {"credential_id": encryption_utils.base64url_encode(verified.credential_id), "fmt": verified.fmt,
             "row_id": credential.id}
        )
        logger.info(f"WebAuthn credential registered for user {user.id}.")
        return verified


class AuthenticationCeremony:
    """Proves possession of an already registered authenticator."""

    def __init__(self, core: PasskeysCore, credentials: CredentialManager, challenges: ChallengeLedger,
                 db_manager: DatabaseManager):
        self.core = core
        self.credentials = credentials
        self.challenges = challenges
        self._db_manager = db_manager

    async def start(self, user: User, credentials: Optional[Sequence[WebAuthnCredential]] = None,
                    ip_address: str = 'system') -> Dict[str, Any]:
        if credentials is None:
            credentials = await self.credentials.get_for_user(user.id)
        usable = CredentialManager.usable(credentials)
        if not usable:
            raise NoCredentialsRegisteredError(f"User {user.id} has no usable credential to authenticate with.")
        options, challenge = self.core.generate_authentication_options(_descriptors(usable))
        await self.challenges.set_challenge(user.id, challenge)
        await self._db_manager.log_audit_event(user.id, "WEBAUTHN_AUTHENTICATION_STARTED", ip_address,
                                               {"allowed_credentials": len(usable)})
        logger.info(f"WebAuthn authentication started for user {user.id}.")
        return options

    async def finish(self, user: User, response: Any, ip_address: str = 'system') -> VerifiedAuthentication:
        try:
            expected_challenge = await self.challenges.take_challenge(user.id)
            if expected_challenge is None:
                raise NoChallengePendingError(f"No authentication challenge pending for user {user.id}.")
            payload = self.core.parse_assertion(response)
            credential = await self.credentials.get_for_user_by_credential_id(user.id, payload.credential_id)
            if credential is None:
                raise CredentialNotFoundError(f"Credential not registered to user {user.id}.")
            if not credential.is_usable:
                raise InvalidStoredCredentialError(f"Stored credential row {credential.id} is empty.")
            verified = self.core.verify_authentication(
                payload, expected_challenge, user.id, credential.public_key, credential.sign_count
            )
        except RollcallError as e:
            logger.warning(f"WebAuthn authentication rejected for user {user.id}: {e}")
            await self._db_manager.log_audit_event(user.id, "WEBAUTHN_AUTHENTICATION_FAILED", ip_address,
                                                   {"reason": e.kind, "detail": str(e)})
            raise

        await self.credentials.update_counter(credential.id, verified.new_sign_count)
        await self.challenges.clear_challenge(user.id)
        await self._db_manager.log_audit_event(
            user.id, "WEBAUTHN_AUTHENTICATED", ip_address,
            {"credential_id": encryption_utils.base64url_encode(verified.credential_id),
             "sign_count": verified.new_sign_count}
        )
        logger.info(f"WebAuthn authentication succeeded for user {user.id}.")
        return verified


@dataclass
class LoginSuccess:
    """The caller is fully logged in."""
    session_token: str
    profile: Dict[str, Any] = field(default_factory=dict)

    def as_response(self) -> Dict[str, Any]:
        return {"login_complete": True, "session_token": self.session_token, **self.profile}


@dataclass
class CeremonyChallenge:
    """The caller must complete a WebAuthn ceremony and come back with `ticket`."""
    stage: Stage
    ticket: str
    ceremony_params: Dict[str, Any]

    def as_response(self) -> Dict[str, Any]:
        return {"login_complete": False, "stage": self.stage, "ticket": self.ticket,
                "ceremony_params": self.ceremony_params}


class RollcallAsync:
    """High-level facade for the login handshake and the WebAuthn ceremonies."""

    def __init__(self, db_manager: DatabaseManager, config: Optional[Settings] = None):
        self.config = config or get_settings()
        self.db_manager = db_manager
        self.tickets = TicketManager(
            secret_key=self.config.JWT_SECRET_KEY.get_secret_value(),
            algorithm=self.config.ALGORITHM,
            ticket_lifetime=self.config.LOGIN_TICKET_LIFETIME_SECONDS,
            session_lifetime=self.config.SESSION_TOKEN_LIFETIME_SECONDS,
        )
        self.core = PasskeysCore(
            rp_id=self.config.WEBAUTHN_RP_ID,
            rp_name=self.config.WEBAUTHN_RP_NAME,
            origin=self.config.WEBAUTHN_ORIGIN,
            timeout=self.config.WEBAUTHN_TIMEOUT_MS,
            require_user_verification=self.config.WEBAUTHN_REQUIRE_USER_VERIFICATION,
        )
        self.users = UserManager(db_manager, bcrypt_rounds=self.config.BCRYPT_ROUNDS,
                                 email_domains=self.config.INSTITUTION_EMAIL_DOMAINS)
        self.credentials = CredentialManager(db_manager)
        self.challenges = ChallengeLedger(db_manager)
        self.registration = RegistrationCeremony(self.core, self.credentials, self.challenges, db_manager)
        self.authentication = AuthenticationCeremony(self.core, self.credentials, self.challenges, db_manager)
        self._timing_hash: Optional[str] = None

    @property
    def timing_hash(self) -> str:
        """A throwaway bcrypt hash, checked when no user matches so that both login failures cost one bcrypt run."""
        if self._timing_hash is None:
            self._timing_hash = encryption_utils.hash_password(encryption_utils.gen_random_string(32),
                                                               self.config.BCRYPT_ROUNDS)
        return self._timing_hash

    def issue_session(self, user: User) -> LoginSuccess:
        return LoginSuccess(session_token=self.tickets.issue_session(user.id, user.role), profile=user.profile())

    async def get_session_user(self, token: str) -> Optional[User]:
        """Resolves a bearer session token to its user, or None if the token is not a live session."""
        payload = self.tickets.read_session(token)
        if payload is None:
            return None
        return await self.users.get_by_id(payload["sub"])

    async def verify_ticket(self, ticket: str, expected_stage: Stage) -> User:
        """
        Resolves a login ticket to its user. Every failure surfaces as InvalidTicketError
        (UnknownUserError is a subclass); the precise reason is only logged.
        """
        try:
            user_id = self.tickets.read(ticket, expected_stage)
            user = await self.users.get_by_id(user_id)
            if user is None:
                raise UnknownUserError(f"Login ticket names unknown user {user_id}.")
        except InvalidTicketError as e:
            logger.warning(f"Rejected login ticket: {e}")
            raise
        return user

    async def _begin_ceremony(self, user: User, ip_address: str) -> CeremonyChallenge:
        """Chooses the WebAuthn ceremony a student must complete after the password check."""
        credentials = await self.credentials.get_for_user(user.id)
        if not credentials:
            options = await self.registration.start(user, ip_address)
            return CeremonyChallenge("register", self.tickets.issue(user.id, "register"), options)
        if not CredentialManager.usable(credentials):
            await self.db_manager.log_audit_event(user.id, "LOGIN_FAILED", ip_address,
                                                  {"reason": "no_usable_credential"})
            raise NoUsableDeviceError(f"User {user.id} has {len(credentials)} credential rows, none usable.")
        options = await self.authentication.start(user, credentials, ip_address)
        return CeremonyChallenge("authenticate", self.tickets.issue(user.id, "authenticate"), options)

    async def signup_student(self, email: str, surname: str, first_name: str, matric_number: str, password: str,
                             middle_name: Optional[str] = None, ip_address: str = 'system') -> CeremonyChallenge:
        user = await self.users.create(
            "student", email, password, ip_address,
            surname=surname.strip(), first_name=first_name.strip(),
            middle_name=(middle_name or "").strip() or None,
            matric_number=matric_number.strip().upper(),
        )
        options = await self.registration.start(user, ip_address)
        return CeremonyChallenge("register", self.tickets.issue(user.id, "register"), options)

    async def signup_teacher(self, email: str, surname: str, first_name: str, title: str, sex: str, staff_id: str,
                             password: str, middle_name: Optional[str] = None,
                             ip_address: str = 'system') -> LoginSuccess:
        user = await self.users.create(
            "teacher", email, password, ip_address,
            surname=surname.strip(), first_name=first_name.strip(),
            middle_name=(middle_name or "").strip() or None,
            title=title.strip().lower(), sex=sex.strip().lower(),
            staff_id=staff_id.strip().upper(),
        )
        return self.issue_session(user)

    async def login(self, identifier: str, password: str,
                    ip_address: str = 'system') -> Union[LoginSuccess, CeremonyChallenge]:
        """
        Password step of the login. Staff get a session straight away; students are
        sent into a registration or authentication ceremony with a matching ticket.
        """
        async with self.db_manager.get_db() as db:
            user = await self.users.get_by_identifier(identifier, db=db)
            if not user:
                encryption_utils.verify_password(password, self.timing_hash)
                await self.db_manager.log_audit_event(
                    None, "LOGIN_FAILED", ip_address, {"reason": "user_not_found", "identifier": identifier}, db=db
                )
                await db.commit()
                raise InvalidCredentialsError(f"No user matches identifier {identifier!r}.")

            if not encryption_utils.verify_password(password, user.password_hash):
                await self.db_manager.log_audit_event(
                    user.id, "LOGIN_FAILED", ip_address, {"reason": "bad_password"}, db=db
                )
                await db.commit()
                raise InvalidCredentialsError(f"Wrong password for user {user.id}.")

            await self.db_manager.log_audit_event(user.id, "LOGIN_PASSWORD_VERIFIED", ip_address,
                                                  {"role": user.role}, db=db)
            await db.commit()

        if user.role != "student":
            return self.issue_session(user)
        return await self._begin_ceremony(user, ip_address)

    async def finish_registration(self, ticket: str, attestation_response: Any,
                                  ip_address: str = 'system') -> LoginSuccess:
        user = await self.verify_ticket(ticket, "register")
        await self.registration.finish(user, attestation_response, ip_address)
        return self.issue_session(user)

    async def finish_login(self, ticket: str, assertion_response: Any, ip_address: str = 'system') -> LoginSuccess:
        user = await self.verify_ticket(ticket, "authenticate")
        await self.authentication.finish(user, assertion_response, ip_address)
        return self.issue_session(user)

    # --- Session-scoped ceremonies, for a student who is already logged in ---

    async def webauthn_status(self, user: User) -> Dict[str, bool]:
        registered = bool(CredentialManager.usable(await self.credentials.get_for_user(user.id)))
        verified_at = user.webauthn_verified_at
        recently_verified = bool(verified_at) and (
            time.time() - verified_at <= self.config.WEBAUTHN_VERIFY_WINDOW_SECONDS
        )
        return {"registered": registered, "recently_verified": recently_verified}

    async def start_session_registration(self, user: User, ip_address: str = 'system') -> Dict[str, Any]:
        return await self.registration.start(user, ip_address)

    async def finish_session_registration(self, user: User, response: Any,
                                          ip_address: str = 'system') -> Dict[str, bool]:
        await self.registration.finish(user, response, ip_address)
        return {"verified": True}

    async def start_session_authentication(self, user: User, ip_address: str = 'system') -> Dict[str, Any]:
        return await self.authentication.start(user, ip_address=ip_address)

    async def finish_session_authentication(self, user: User, response: Any,
                                            ip_address: str = 'system') -> Dict[str, bool]:
        verified = await self.authentication.finish(user, response, ip_address)
        await self.users.mark_webauthn_verified(user.id, verified.credential_id)
        return {"verified": True}
