import hashlib
import json
import os

import cbor2
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

os.environ["JWT_SECRET_KEY"] = "test-secret"
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test_rollcall.db"
os.environ["DEFAULT_DATABASE_URI"] = TEST_DATABASE_URL
os.environ["WEBAUTHN_RP_ID"] = "localhost"
os.environ["WEBAUTHN_ORIGIN"] = "http://localhost:8000"
os.environ["INSTITUTION_EMAIL_DOMAINS"] = '["uni.edu"]'
os.environ["BCRYPT_ROUNDS"] = "4"
from rollcall.core.database import db_manager
from rollcall.core.encryption import encryption_utils
from rollcall.manager.asynchronous import RollcallAsync

RP_ID = "localhost"
ORIGIN = "http://localhost:8000"
PASSWORD = "secret123"

b64 = encryption_utils.base64url_encode


def _challenge_of(options_or_challenge) -> str:
    if isinstance(options_or_challenge, dict):
        return options_or_challenge["challenge"]
    return options_or_challenge


class SoftAuthenticator:
    """
    A software WebAuthn authenticator with an EC P-256 key.

    `sign_count` is the last counter value emitted; every assertion adds `counter_step`
    first (a step of 0 behaves like an authenticator that never counts).
    """

    def __init__(self, rp_id: str = RP_ID, origin: str = ORIGIN, counter_step: int = 1):
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = os.urandom(16)
        self.rp_id = rp_id
        self.origin = origin
        self.sign_count = 0
        self.counter_step = counter_step

    def cose_public_key(self) -> dict:
        numbers = self.private_key.public_key().public_numbers()
        return {1: 2, 3: -7, -1: 1, -2: numbers.x.to_bytes(32, "big"), -3: numbers.y.to_bytes(32, "big")}

    def sign(self, data: bytes) -> bytes:
        return self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))

    def client_data(self, ceremony_type: str, challenge: str, origin: str = None) -> bytes:
        return json.dumps({
            "type": ceremony_type,
            "challenge": challenge,
            "origin": origin or self.origin,
            "crossOrigin": False,
        }).encode("utf-8")

    def authenticator_data(self, flags: int, sign_count: int, attested: bytes = b"", rp_id: str = None) -> bytes:
        rp_id_hash = hashlib.sha256((rp_id or self.rp_id).encode("utf-8")).digest()
        return rp_id_hash + bytes([flags]) + sign_count.to_bytes(4, "big") + attested

    def attestation(self, options_or_challenge, fmt: str = "none", origin: str = None, rp_id: str = None,
                    flags: int = 0x45, ceremony_type: str = "webauthn.create", cose_key=None,
                    attested_credential_id: bytes = None, att_stmt: dict = None) -> dict:
        """Builds a registration response. `cose_key` may be raw bytes to send a broken key."""
        credential_id = self.credential_id if attested_credential_id is None else attested_credential_id
        if isinstance(cose_key, bytes):
            key_bytes = cose_key
        else:
            key_bytes = cbor2.dumps(self.cose_public_key() if cose_key is None else cose_key)
        attested = bytes(16) + len(credential_id).to_bytes(2, "big") + credential_id + key_bytes
        auth_data = self.authenticator_data(flags, self.sign_count, attested, rp_id)
        client_data = self.client_data(ceremony_type, _challenge_of(options_or_challenge), origin)

        if att_stmt is None:
            att_stmt = {}
            if fmt == "packed":
                att_stmt = {"alg": -7, "sig": self.sign(auth_data + hashlib.sha256(client_data).digest())}
        attestation_object = cbor2.dumps({"fmt": fmt, "attStmt": att_stmt, "authData": auth_data})
        return {
            "id": b64(self.credential_id),
            "rawId": b64(self.credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": b64(client_data),
                "attestationObject": b64(attestation_object),
                "transports": ["internal", "hybrid"],
            },
        }

    def assertion(self, options_or_challenge, origin: str = None, rp_id: str = None, flags: int = 0x05,
                  ceremony_type: str = "webauthn.get", user_handle: bytes = None, sign_count: int = None,
                  signer: "SoftAuthenticator" = None) -> dict:
        """Builds an authentication response, signed by `signer` (default: this authenticator)."""
        if sign_count is None:
            self.sign_count += self.counter_step
            sign_count = self.sign_count
        auth_data = self.authenticator_data(flags, sign_count, rp_id=rp_id)
        client_data = self.client_data(ceremony_type, _challenge_of(options_or_challenge), origin)
        signature = (signer or self).sign(auth_data + hashlib.sha256(client_data).digest())
        response = {
            "id": b64(self.credential_id),
            "rawId": b64(self.credential_id),
            "type": "public-key",
            "response": {
                "authenticatorData": b64(auth_data),
                "clientDataJSON": b64(client_data),
                "signature": b64(signature),
            },
        }
        if user_handle is not None:
            response["response"]["userHandle"] = b64(user_handle)
        return response


@pytest.fixture
def authenticator():
    return SoftAuthenticator()


@pytest.fixture
def make_authenticator():
    return SoftAuthenticator


@pytest.fixture
async def database():
    """A freshly reset test database; the engine is disposed after every test."""
    await db_manager.reset_database()
    yield db_manager
    await db_manager.dispose()


@pytest.fixture
def service(database):
    return RollcallAsync(database)


@pytest.fixture
def signup_data():
    return {
        "email": "Jane.Doe@uni.edu",
        "surname": "Doe",
        "first_name": "Jane",
        "matric_number": "csc/2021/001",
        "password": PASSWORD,
    }


@pytest.fixture
async def registered_student(service, authenticator, signup_data):
    """A student who signed up and registered `authenticator`. Returns the user row."""
    challenge = await service.signup_student(**signup_data)
    await service.finish_registration(challenge.ticket, authenticator.attestation(challenge.ceremony_params))
    return await service.users.get_by_identifier(signup_data["email"])


@pytest.fixture
def app():
    """A minimal FastAPI app with Rollcall wired in."""
    from rollcall import init_app
    app = FastAPI()
    init_app(app)
    return app


@pytest.fixture
async def client(app, database):
    """Provide an AsyncClient for testing the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
