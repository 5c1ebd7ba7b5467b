import binascii
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cbor2
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from rollcall.core.encryption import encryption_utils
from rollcall.core.exceptions import (
    InvalidCredentialDataError,
    InvalidStoredCredentialError,
    MalformedPayloadError,
    VerificationFailedError,
)

logger = logging.getLogger(__name__)

# Authenticator data flags
FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_ATTESTED_CREDENTIAL_DATA = 0x40
FLAG_EXTENSION_DATA = 0x80

# COSE algorithm identifiers, in order of preference.
COSE_ALG_ES256 = -7
COSE_ALG_EDDSA = -8
COSE_ALG_RS256 = -257
COSE_ALG_ES384 = -35
COSE_ALG_ES512 = -36
COSE_ALG_PS256 = -37
SUPPORTED_ALGORITHMS = (COSE_ALG_ES256, COSE_ALG_EDDSA, COSE_ALG_RS256, COSE_ALG_ES384, COSE_ALG_ES512,
                        COSE_ALG_PS256)

_EC_HASHES = {-7: hashes.SHA256, -35: hashes.SHA384, -36: hashes.SHA512}
_RSA_PKCS1_HASHES = {-257: hashes.SHA256, -258: hashes.SHA384, -259: hashes.SHA512}
_RSA_PSS_HASHES = {-37: hashes.SHA256, -38: hashes.SHA384, -39: hashes.SHA512}
_EC_CURVES = {1: ec.SECP256R1, 2: ec.SECP384R1, 3: ec.SECP521R1}
_COSE_CRV_ED25519 = 6


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: bytes = b""
    credential_id: bytes = b""
    cose_key: Any = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)

    @property
    def has_attested_credential(self) -> bool:
        return bool(self.flags & FLAG_ATTESTED_CREDENTIAL_DATA)


@dataclass
class ClientData:
    raw: bytes
    type: str
    challenge: bytes
    origin: str

    @property
    def hash(self) -> bytes:
        return hashlib.sha256(self.raw).digest()


@dataclass
class AttestationPayload:
    """A registration response after structural decoding, before any cryptographic check."""
    credential_id: bytes
    client_data: ClientData
    fmt: str
    att_stmt: Dict[Any, Any]
    auth_data_raw: bytes
    auth_data: AuthenticatorData
    transports: List[str] = field(default_factory=list)


@dataclass
class AssertionPayload:
    """An authentication response after structural decoding."""
    credential_id: bytes
    client_data: ClientData
    authenticator_data_raw: bytes
    authenticator_data: AuthenticatorData
    signature: bytes
    user_handle: Optional[bytes] = None


@dataclass
class VerifiedRegistration:
    """The one shape a verified registration is reduced to before it is stored."""
    credential_id: bytes
    public_key: bytes
    sign_count: int
    transports: List[str]
    aaguid: bytes
    fmt: str


@dataclass
class VerifiedAuthentication:
    credential_id: bytes
    new_sign_count: int
    user_verified: bool


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    """
    Splits raw authenticator data into its fields.
    Raises ValueError if the byte layout is truncated or the attested key is not valid CBOR.
    """
    if len(data) < 37:
        raise ValueError(f"Authenticator data too short ({len(data)} bytes).")
    parsed = AuthenticatorData(
        rp_id_hash=data[:32],
        flags=data[32],
        sign_count=int.from_bytes(data[33:37], "big"),
    )
    if not parsed.has_attested_credential:
        return parsed

    if len(data) < 55:
        raise ValueError("Attested credential data truncated.")
    parsed.aaguid = data[37:53]
    cred_id_len = int.from_bytes(data[53:55], "big")
    if len(data) < 55 + cred_id_len:
        raise ValueError("Credential id truncated.")
    parsed.credential_id = data[55:55 + cred_id_len]

    # An authenticator that sends no key at all is reported as bad credential data, not a broken payload.
    if len(data) > 55 + cred_id_len:
        key_stream = BytesIO(data[55 + cred_id_len:])
        parsed.cose_key = cbor2.load(key_stream)
        remaining = key_stream.read()
        if remaining and parsed.flags & FLAG_EXTENSION_DATA:
            cbor2.loads(remaining)
    return parsed


def load_cose_key(cose_key: Any) -> Tuple[Any, int]:
    """
    Builds a `cryptography` public key from a decoded COSE_Key map.
    Returns the key and its COSE algorithm. Raises ValueError for anything unsupported.
    """
    if not isinstance(cose_key, dict):
        raise ValueError("COSE key is not a map.")
    key_type, alg = cose_key.get(1), cose_key.get(3)
    if alg not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported COSE algorithm: {alg}")

    if key_type == 2 and alg in _EC_HASHES:  # EC2
        crv, x, y = cose_key.get(-1), cose_key.get(-2), cose_key.get(-3)
        curve = _EC_CURVES.get(crv) if isinstance(crv, int) else None
        if curve is None or not isinstance(x, bytes) or not isinstance(y, bytes):
            raise ValueError(f"Unsupported EC key (crv={crv}).")
        numbers = ec.EllipticCurvePublicNumbers(int.from_bytes(x, "big"), int.from_bytes(y, "big"), curve())
        return numbers.public_key(), alg

    if key_type == 1 and alg == COSE_ALG_EDDSA:  # OKP
        crv, x = cose_key.get(-1), cose_key.get(-2)
        if crv != _COSE_CRV_ED25519 or not isinstance(x, bytes):
            raise ValueError(f"Unsupported OKP key (crv={crv}).")
        return ed25519.Ed25519PublicKey.from_public_bytes(x), alg

    if key_type == 3 and (alg in _RSA_PKCS1_HASHES or alg in _RSA_PSS_HASHES):  # RSA
        n, e = cose_key.get(-1), cose_key.get(-2)
        if not isinstance(n, bytes) or not isinstance(e, bytes):
            raise ValueError("RSA key is missing modulus or exponent.")
        return rsa.RSAPublicNumbers(int.from_bytes(e, "big"), int.from_bytes(n, "big")).public_key(), alg

    raise ValueError(f"Unsupported key type {key_type} for algorithm {alg}.")


def verify_signature(public_key: Any, alg: int, signature: bytes, data: bytes) -> None:
    """Raises InvalidSignature (or ValueError on a key/alg mismatch) unless `signature` is valid."""
    if alg in _EC_HASHES:
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise ValueError("Algorithm requires an EC key.")
        public_key.verify(signature, data, ec.ECDSA(_EC_HASHES[alg]()))
    elif alg == COSE_ALG_EDDSA:
        if not isinstance(public_key, ed25519.Ed25519PublicKey):
            raise ValueError("Algorithm requires an Ed25519 key.")
        public_key.verify(signature, data)
    elif alg in _RSA_PKCS1_HASHES:
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError("Algorithm requires an RSA key.")
        public_key.verify(signature, data, padding.PKCS1v15(), _RSA_PKCS1_HASHES[alg]())
    elif alg in _RSA_PSS_HASHES:
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ValueError("Algorithm requires an RSA key.")
        hash_alg = _RSA_PSS_HASHES[alg]()
        public_key.verify(signature, data, padding.PSS(mgf=padding.MGF1(hash_alg), salt_length=hash_alg.digest_size),
                          hash_alg)
    else:
        raise ValueError(f"Unsupported algorithm: {alg}")


def _b64_field(container: Dict[str, Any], name: str, required: bool = True) -> Optional[bytes]:
    value = container.get(name)
    if value is None or value == "":
        if required:
            raise ValueError(f"Missing field '{name}'.")
        return None
    if not isinstance(value, str):
        raise ValueError(f"Field '{name}' must be a base64url string.")
    decoded = encryption_utils.base64url_decode(value)
    if required and not decoded:
        raise ValueError(f"Field '{name}' is empty.")
    return decoded


def _parse_client_data(raw: bytes) -> ClientData:
    client_data = json.loads(raw)
    if not isinstance(client_data, dict):
        raise ValueError("clientDataJSON is not an object.")
    ceremony_type, challenge, origin = client_data.get("type"), client_data.get("challenge"), client_data.get("origin")
    if not isinstance(ceremony_type, str) or not isinstance(challenge, str) or not isinstance(origin, str):
        raise ValueError("clientDataJSON is missing type, challenge or origin.")
    return ClientData(raw=raw, type=ceremony_type, challenge=encryption_utils.base64url_decode(challenge),
                      origin=origin)


_DECODE_ERRORS = (ValueError, TypeError, KeyError, IndexError, RecursionError, binascii.Error, cbor2.CBORDecodeError)


class PasskeysCore:
    """
    Stateless WebAuthn option generation and response verification.

    Nothing here touches storage: callers hand in the expected challenge and, for
    assertions, the stored key and counter, and persist whatever comes back.
    """

    def __init__(self, rp_id: str, rp_name: str, origin: str, timeout: int = 120000,
                 require_user_verification: bool = False):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.timeout = timeout
        self.require_user_verification = require_user_verification
        self._rp_id_hash = hashlib.sha256(rp_id.encode("utf-8")).digest()

    @property
    def user_verification(self) -> str:
        return "required" if self.require_user_verification else "preferred"

    @staticmethod
    def _descriptor(credential_id: bytes, transports: Optional[Sequence[str]]) -> Dict[str, Any]:
        descriptor = {"type": "public-key", "id": encryption_utils.base64url_encode(credential_id)}
        if transports:
            descriptor["transports"] = list(transports)
        return descriptor

    def generate_registration_options(
            self, user_id: str, username: str, display_name: str,
            exclude_credentials: Sequence[Tuple[bytes, Optional[Sequence[str]]]] = (),
    ) -> Tuple[Dict[str, Any], bytes]:
        """Generate creation options for a registration ceremony. Returns (options, challenge)."""
        challenge = os.urandom(32)
        options = {
            "rp": {"name": self.rp_name, "id": self.rp_id},
            "user": {
                "id": encryption_utils.base64url_encode(user_id.encode("utf-8")),
                "name": username,
                "displayName": display_name,
            },
            "challenge": encryption_utils.base64url_encode(challenge),
            "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS],
            "authenticatorSelection": {
                "residentKey": "preferred",
                "userVerification": self.user_verification,
            },
            "timeout": self.timeout,
            "attestation": "none",
            "excludeCredentials": [self._descriptor(cid, transports) for cid, transports in exclude_credentials],
            "extensions": {"credProps": True},
        }
        return options, challenge

    def generate_authentication_options(
            self, allow_credentials: Sequence[Tuple[bytes, Optional[Sequence[str]]]],
    ) -> Tuple[Dict[str, Any], bytes]:
        challenge = os.urandom(32)
        options = {
            "challenge": encryption_utils.base64url_encode(challenge),
            "allowCredentials": [self._descriptor(cid, transports) for cid, transports in allow_credentials],
            "userVerification": self.user_verification,
            "rpId": self.rp_id,
            "timeout": self.timeout,
        }
        return options, challenge

    # --- Structural decoding ---

    def parse_attestation(self, response: Any) -> AttestationPayload:
        """Decodes a registration response. Raises MalformedPayloadError on any structural problem."""
        try:
            if not isinstance(response, dict) or not isinstance(response.get("response"), dict):
                raise ValueError("Credential or its response object is missing.")
            raw_id = _b64_field(response, "rawId")
            if _b64_field(response, "id") != raw_id:
                raise ValueError("Credential id and rawId differ.")
            body = response["response"]
            client_data = _parse_client_data(_b64_field(body, "clientDataJSON"))
            attestation_object = cbor2.loads(_b64_field(body, "attestationObject"))
            if not isinstance(attestation_object, dict):
                raise ValueError("attestationObject is not a map.")
            fmt, att_stmt, auth_data_raw = (attestation_object.get("fmt"), attestation_object.get("attStmt", {}),
                                            attestation_object.get("authData"))
            if not isinstance(fmt, str) or not isinstance(att_stmt, dict) or not isinstance(auth_data_raw, bytes):
                raise ValueError("attestationObject is missing fmt, attStmt or authData.")
            transports = body.get("transports") or []
            if not isinstance(transports, list) or not all(isinstance(t, str) for t in transports):
                raise ValueError("transports must be a list of strings.")
            return AttestationPayload(
                credential_id=raw_id,
                client_data=client_data,
                fmt=fmt,
                att_stmt=att_stmt,
                auth_data_raw=auth_data_raw,
                auth_data=parse_authenticator_data(auth_data_raw),
                transports=transports,
            )
        except _DECODE_ERRORS as e:
            raise MalformedPayloadError(f"Malformed attestation response: {e}")

    def parse_assertion(self, response: Any) -> AssertionPayload:
        """Decodes an authentication response. `rawId` is optional and defaults to `id`."""
        try:
            if not isinstance(response, dict) or not isinstance(response.get("response"), dict):
                raise ValueError("Credential or its response object is missing.")
            credential_id = _b64_field(response, "id")
            raw_id = _b64_field(response, "rawId", required=False)
            if raw_id is not None and raw_id != credential_id:
                raise ValueError("Credential id and rawId differ.")
            body = response["response"]
            authenticator_data_raw = _b64_field(body, "authenticatorData")
            return AssertionPayload(
                credential_id=credential_id,
                client_data=_parse_client_data(_b64_field(body, "clientDataJSON")),
                authenticator_data_raw=authenticator_data_raw,
                authenticator_data=parse_authenticator_data(authenticator_data_raw),
                signature=_b64_field(body, "signature"),
                user_handle=_b64_field(body, "userHandle", required=False),
            )
        except _DECODE_ERRORS as e:
            raise MalformedPayloadError(f"Malformed assertion response: {e}")

    # --- Verification ---

    def _check_client_data(self, client_data: ClientData, expected_type: str, expected_challenge: bytes):
        if client_data.type != expected_type:
            raise VerificationFailedError(f"Invalid client data type: {client_data.type!r}.")
        if not hmac.compare_digest(client_data.challenge, expected_challenge):
            raise VerificationFailedError("Challenge mismatch.")
        if client_data.origin != self.origin:
            raise VerificationFailedError(f"Unexpected origin {client_data.origin!r}.")

    def _check_authenticator_data(self, auth_data: AuthenticatorData):
        if not hmac.compare_digest(auth_data.rp_id_hash, self._rp_id_hash):
            raise VerificationFailedError("RP ID hash mismatch.")
        if not auth_data.user_present:
            raise VerificationFailedError("User Present flag not set.")
        if self.require_user_verification and not auth_data.user_verified:
            raise VerificationFailedError("User Verified flag not set.")

    def _verify_attestation_statement(self, payload: AttestationPayload):
        if payload.fmt == "none":
            if payload.att_stmt:
                raise VerificationFailedError("'none' attestation must have an empty statement.")
            return
        if payload.fmt != "packed":
            raise VerificationFailedError(f"Unsupported attestation format: {payload.fmt}")

        alg, sig = payload.att_stmt.get("alg"), payload.att_stmt.get("sig")
        if not isinstance(alg, int) or not isinstance(sig, bytes):
            raise VerificationFailedError("Packed attestation statement is missing alg or sig.")
        signed_data = payload.auth_data_raw + payload.client_data.hash
        x5c = payload.att_stmt.get("x5c")
        if x5c is not None and (not isinstance(x5c, list) or not x5c or not isinstance(x5c[0], bytes)):
            raise VerificationFailedError("Packed attestation x5c must be a non-empty list of certificates.")
        try:
            if x5c:
                certificate = x509.load_der_x509_certificate(x5c[0])
                verify_signature(certificate.public_key(), alg, sig, signed_data)
            else:
                try:
                    public_key, key_alg = load_cose_key(payload.auth_data.cose_key)
                except ValueError as e:
                    raise InvalidCredentialDataError(f"Credential public key unusable: {e}")
                if key_alg != alg:
                    raise VerificationFailedError("Self attestation algorithm does not match the credential key.")
                verify_signature(public_key, alg, sig, signed_data)
        except (InvalidSignature, ValueError, TypeError) as e:
            raise VerificationFailedError(f"Attestation signature invalid: {e}")

    def verify_registration(self, payload: AttestationPayload, expected_challenge: bytes) -> VerifiedRegistration:
        """
        Verifies a decoded registration response against the pending challenge.

        Raises VerificationFailedError for any failed check and InvalidCredentialDataError
        when the attested credential cannot be stored.
        """
        self._check_client_data(payload.client_data, "webauthn.create", expected_challenge)
        auth_data = payload.auth_data
        self._check_authenticator_data(auth_data)
        if not auth_data.has_attested_credential:
            raise VerificationFailedError("Attested Credential Data flag not set.")
        self._verify_attestation_statement(payload)

        if not auth_data.credential_id:
            raise InvalidCredentialDataError("Authenticator returned an empty credential id.")
        if auth_data.cose_key is None:
            raise InvalidCredentialDataError("Authenticator returned no public key.")
        try:
            load_cose_key(auth_data.cose_key)
        except (ValueError, TypeError) as e:
            raise InvalidCredentialDataError(f"Credential public key unusable: {e}")

        return VerifiedRegistration(
            credential_id=auth_data.credential_id,
            public_key=cbor2.dumps(auth_data.cose_key),
            sign_count=auth_data.sign_count,
            transports=payload.transports,
            aaguid=auth_data.aaguid,
            fmt=payload.fmt,
        )

    def verify_authentication(self, payload: AssertionPayload, expected_challenge: bytes, user_id: str,
                              credential_public_key: bytes, stored_sign_count: int) -> VerifiedAuthentication:
        """
        Verifies a decoded assertion with the stored credential key.

        The counter must strictly increase, except that an authenticator which never
        counts (both values zero) is accepted.
        """
        self._check_client_data(payload.client_data, "webauthn.get", expected_challenge)
        auth_data = payload.authenticator_data
        self._check_authenticator_data(auth_data)
        if payload.user_handle is not None and payload.user_handle != user_id.encode("utf-8"):
            raise VerificationFailedError("User handle does not match the ticket's user.")

        try:
            public_key, alg = load_cose_key(cbor2.loads(credential_public_key))
        except (ValueError, TypeError, RecursionError, cbor2.CBORDecodeError) as e:
            raise InvalidStoredCredentialError(f"Stored public key unusable: {e}")
        try:
            verify_signature(public_key, alg, payload.signature,
                             payload.authenticator_data_raw + payload.client_data.hash)
        except (InvalidSignature, ValueError) as e:
            raise VerificationFailedError(f"Assertion signature invalid: {type(e).__name__}")

        new_sign_count = auth_data.sign_count
        stored_sign_count = stored_sign_count or 0
        if (new_sign_count or stored_sign_count) and new_sign_count <= stored_sign_count:
            raise VerificationFailedError(
                f"Sign count {new_sign_count} is not greater than stored {stored_sign_count}. Possible clone detected."
            )
        return VerifiedAuthentication(
            credential_id=payload.credential_id,
            new_sign_count=new_sign_count,
            user_verified=auth_data.user_verified,
        )
