import hashlib
import json

import cbor2
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from rollcall.core.encryption import encryption_utils
from rollcall.core.exceptions import (
    InvalidCredentialDataError,
    InvalidStoredCredentialError,
    MalformedPayloadError,
    VerificationFailedError,
)
from rollcall.core.passkeys import PasskeysCore, parse_authenticator_data

RP_ID = "localhost"
ORIGIN = "http://localhost:8000"
USER_ID = "u" * 32

b64 = encryption_utils.base64url_encode


@pytest.fixture
def passkeys_core():
    """Provides a PasskeysCore instance for testing."""
    return PasskeysCore(rp_id=RP_ID, rp_name="Secure Attendance", origin=ORIGIN, timeout=60000)


def _register(core, authenticator, **kwargs):
    options, challenge = core.generate_registration_options(USER_ID, "jane@uni.edu", "Jane Doe")
    response = authenticator.attestation(options, **kwargs)
    return core.verify_registration(core.parse_attestation(response), challenge)


def _authenticate(core, authenticator, stored_key=None, stored_count=0, **kwargs):
    options, challenge = core.generate_authentication_options([(authenticator.credential_id, ["internal"])])
    response = authenticator.assertion(options, **kwargs)
    stored_key = cbor2.dumps(authenticator.cose_public_key()) if stored_key is None else stored_key
    return core.verify_authentication(core.parse_assertion(response), challenge, USER_ID, stored_key, stored_count)


def test_generate_registration_options(passkeys_core):
    options, challenge = passkeys_core.generate_registration_options(
        USER_ID, "jane@uni.edu", "Jane Doe", exclude_credentials=[(b"cred1", ["usb"]), (b"cred2", None)]
    )
    assert len(challenge) == 32
    assert encryption_utils.base64url_decode(options["challenge"]) == challenge
    assert options["rp"] == {"name": "Secure Attendance", "id": RP_ID}
    assert encryption_utils.base64url_decode(options["user"]["id"]) == USER_ID.encode()
    assert options["user"]["name"] == "jane@uni.edu"
    assert options["user"]["displayName"] == "Jane Doe"
    assert [p["alg"] for p in options["pubKeyCredParams"]] == [-7, -8, -257, -35, -36, -37]
    assert options["authenticatorSelection"] == {"residentKey": "preferred", "userVerification": "preferred"}
    assert options["attestation"] == "none"
    assert options["timeout"] == 60000
    assert options["excludeCredentials"] == [
        {"type": "public-key", "id": b64(b"cred1"), "transports": ["usb"]},
        {"type": "public-key", "id": b64(b"cred2")},
    ]


def test_every_start_gets_a_fresh_challenge(passkeys_core):
    _, first = passkeys_core.generate_authentication_options([])
    _, second = passkeys_core.generate_authentication_options([])
    assert first != second


def test_generate_authentication_options(passkeys_core):
    options, challenge = passkeys_core.generate_authentication_options([(b"cred1", ["internal", "hybrid"])])
    assert encryption_utils.base64url_decode(options["challenge"]) == challenge
    assert options["rpId"] == RP_ID
    assert options["userVerification"] == "preferred"
    assert options["allowCredentials"] == [
        {"type": "public-key", "id": b64(b"cred1"), "transports": ["internal", "hybrid"]}
    ]

    strict = PasskeysCore(RP_ID, "x", ORIGIN, require_user_verification=True)
    assert strict.generate_authentication_options([])[0]["userVerification"] == "required"


# --- Registration ---

def test_verify_registration_none_attestation(passkeys_core, authenticator):
    verified = _register(passkeys_core, authenticator)
    assert verified.credential_id == authenticator.credential_id
    assert cbor2.loads(verified.public_key) == authenticator.cose_public_key()
    assert verified.sign_count == 0
    assert verified.transports == ["internal", "hybrid"]
    assert verified.aaguid == bytes(16)
    assert verified.fmt == "none"


def test_verify_registration_packed_self_attestation(passkeys_core, authenticator):
    verified = _register(passkeys_core, authenticator, fmt="packed")
    assert verified.fmt == "packed"
    assert verified.credential_id == authenticator.credential_id


def test_packed_attestation_with_bad_signature_fails(passkeys_core, authenticator, make_authenticator):
    other = make_authenticator()
    with pytest.raises(VerificationFailedError):
        _register(passkeys_core, authenticator, fmt="packed", att_stmt={"alg": -7, "sig": other.sign(b"junk")})


@pytest.mark.parametrize("kwargs", [
    {"ceremony_type": "webauthn.get"},
    {"origin": "http://evil.localhost:8000"},
    {"origin": "https://localhost:8000"},
    {"rp_id": "example.com"},
    {"flags": 0x44},  # user not present
    {"flags": 0x01},  # no attested credential data
    {"fmt": "tpm"},
    {"fmt": "none", "att_stmt": {"sig": b"x"}},
])
def test_registration_verification_failures(passkeys_core, authenticator, kwargs):
    with pytest.raises(VerificationFailedError):
        _register(passkeys_core, authenticator, **kwargs)


def test_registration_challenge_mismatch(passkeys_core, authenticator):
    options, _ = passkeys_core.generate_registration_options(USER_ID, "jane@uni.edu", "Jane Doe")
    _, other_challenge = passkeys_core.generate_registration_options(USER_ID, "jane@uni.edu", "Jane Doe")
    payload = passkeys_core.parse_attestation(authenticator.attestation(options))
    with pytest.raises(VerificationFailedError, match="Challenge mismatch"):
        passkeys_core.verify_registration(payload, other_challenge)


def test_registration_requires_user_verification_when_configured(authenticator):
    strict = PasskeysCore(RP_ID, "x", ORIGIN, require_user_verification=True)
    with pytest.raises(VerificationFailedError, match="User Verified"):
        _register(strict, authenticator, flags=0x41)
    assert _register(strict, authenticator, flags=0x45).credential_id == authenticator.credential_id


@pytest.mark.parametrize("kwargs,match", [
    ({"attested_credential_id": b""}, "empty credential id"),
    ({"cose_key": b""}, "no public key"),
    ({"cose_key": {1: 2, 3: -999}}, "public key unusable"),
    ({"cose_key": {1: 2, 3: -7, -1: 9, -2: b"x", -3: b"y"}}, "public key unusable"),
    ({"cose_key": "not-a-map"}, "public key unusable"),
    ({"cose_key": {1: 2, 3: -7, -1: [1], -2: b"x" * 32, -3: b"y" * 32}}, "public key unusable"),
])
def test_registration_with_unusable_credential_data(passkeys_core, authenticator, kwargs, match):
    with pytest.raises(InvalidCredentialDataError, match=match):
        _register(passkeys_core, authenticator, **kwargs)


def _mutate(response, path, value):
    target = response
    for key in path[:-1]:
        target = target[key]
    if value is None:
        target.pop(path[-1], None)
    else:
        target[path[-1]] = value
    return response


@pytest.mark.parametrize("path,value", [
    (("rawId",), None),
    (("id",), None),
    (("rawId",), b64(b"something-else")),
    (("response", "clientDataJSON"), None),
    (("response", "clientDataJSON"), b64(b"{not json")),
    (("response", "clientDataJSON"), b64(json.dumps({"type": "webauthn.create"}).encode())),
    (("response", "clientDataJSON"), b64(b"[" * 200000)),
    (("response", "attestationObject"), None),
    (("response", "attestationObject"), b64(b"\xff\xff\xff")),
    (("response", "attestationObject"), b64(cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": b"short"}))),
    (("response", "attestationObject"), b64(cbor2.dumps(["not", "a", "map"]))),
    (("response", "transports"), "usb"),
    (("response",), None),
])
def test_structurally_broken_attestations_are_malformed(passkeys_core, authenticator, path, value):
    options, _ = passkeys_core.generate_registration_options(USER_ID, "jane@uni.edu", "Jane Doe")
    response = _mutate(authenticator.attestation(options), path, value)
    with pytest.raises(MalformedPayloadError):
        passkeys_core.parse_attestation(response)


def test_non_dict_attestation_is_malformed(passkeys_core):
    with pytest.raises(MalformedPayloadError):
        passkeys_core.parse_attestation(["nope"])


def test_parse_authenticator_data_truncated():
    data = hashlib.sha256(b"localhost").digest() + bytes([0x41]) + (0).to_bytes(4, "big") + bytes(16) + b"\x00\x10"
    with pytest.raises(ValueError, match="Credential id truncated"):
        parse_authenticator_data(data)
    with pytest.raises(ValueError, match="too short"):
        parse_authenticator_data(b"\x00" * 36)


# --- Authentication ---

def test_verify_authentication(passkeys_core, authenticator):
    verified = _authenticate(passkeys_core, authenticator)
    assert verified.credential_id == authenticator.credential_id
    assert verified.new_sign_count == 1
    assert verified.user_verified is True


def test_assertion_signed_by_another_key_fails(passkeys_core, authenticator, make_authenticator):
    with pytest.raises(VerificationFailedError, match="signature"):
        _authenticate(passkeys_core, authenticator, signer=make_authenticator())


@pytest.mark.parametrize("kwargs", [
    {"ceremony_type": "webauthn.create"},
    {"origin": "http://localhost:9999"},
    {"rp_id": "evil.example"},
    {"flags": 0x04},  # user not present
])
def test_authentication_verification_failures(passkeys_core, authenticator, kwargs):
    with pytest.raises(VerificationFailedError):
        _authenticate(passkeys_core, authenticator, **kwargs)


def test_user_handle_must_match(passkeys_core, authenticator):
    assert _authenticate(passkeys_core, authenticator, user_handle=USER_ID.encode()).new_sign_count == 1
    with pytest.raises(VerificationFailedError, match="User handle"):
        _authenticate(passkeys_core, authenticator, user_handle=b"someone-else")


@pytest.mark.parametrize("stored,presented,ok", [
    (0, 0, True),
    (0, 1, True),
    (5, 6, True),
    (5, 5, False),
    (5, 3, False),
    (5, 0, False),
])
def test_counter_rule(passkeys_core, authenticator, stored, presented, ok):
    if ok:
        assert _authenticate(passkeys_core, authenticator, stored_count=stored,
                             sign_count=presented).new_sign_count == presented
    else:
        with pytest.raises(VerificationFailedError, match="Sign count"):
            _authenticate(passkeys_core, authenticator, stored_count=stored, sign_count=presented)


def test_corrupt_stored_key(passkeys_core, authenticator):
    with pytest.raises(InvalidStoredCredentialError):
        _authenticate(passkeys_core, authenticator, stored_key=b"\xff\x00garbage")
    with pytest.raises(InvalidStoredCredentialError):
        _authenticate(passkeys_core, authenticator, stored_key=cbor2.dumps({1: 4, 3: -7}))
    with pytest.raises(InvalidStoredCredentialError):
        _authenticate(passkeys_core, authenticator,
                      stored_key=cbor2.dumps({1: 2, 3: -7, -1: [1], -2: b"x" * 32, -3: b"y" * 32}))


@pytest.mark.parametrize("field", ["authenticatorData", "clientDataJSON", "signature"])
def test_assertion_missing_fields_are_malformed(passkeys_core, authenticator, field):
    response = authenticator.assertion("Y2hhbGxlbmdl")
    del response["response"][field]
    with pytest.raises(MalformedPayloadError):
        passkeys_core.parse_assertion(response)


def test_assertion_raw_id_defaults_to_id(passkeys_core, authenticator):
    response = authenticator.assertion("Y2hhbGxlbmdl")
    del response["rawId"]
    assert passkeys_core.parse_assertion(response).credential_id == authenticator.credential_id

    response["rawId"] = b64(b"different")
    with pytest.raises(MalformedPayloadError):
        passkeys_core.parse_assertion(response)


def _signed_assertion(sign, challenge_b64: str, sign_count: int = 1) -> dict:
    auth_data = hashlib.sha256(RP_ID.encode()).digest() + bytes([0x05]) + sign_count.to_bytes(4, "big")
    client_data = json.dumps({"type": "webauthn.get", "challenge": challenge_b64, "origin": ORIGIN}).encode()
    return {
        "id": b64(b"cred"),
        "response": {
            "authenticatorData": b64(auth_data),
            "clientDataJSON": b64(client_data),
            "signature": b64(sign(auth_data + hashlib.sha256(client_data).digest())),
        },
    }


def test_ed25519_credentials(passkeys_core):
    key = ed25519.Ed25519PrivateKey.generate()
    raw = key.public_key().public_bytes_raw()
    cose = cbor2.dumps({1: 1, 3: -8, -1: 6, -2: raw})
    options, challenge = passkeys_core.generate_authentication_options([])
    response = _signed_assertion(key.sign, options["challenge"])
    verified = passkeys_core.verify_authentication(passkeys_core.parse_assertion(response), challenge, USER_ID, cose, 0)
    assert verified.new_sign_count == 1


def test_rsa_credentials(passkeys_core):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    numbers = key.public_key().public_numbers()
    cose = cbor2.dumps({1: 3, 3: -257, -1: numbers.n.to_bytes(256, "big"), -2: numbers.e.to_bytes(3, "big")})
    options, challenge = passkeys_core.generate_authentication_options([])
    response = _signed_assertion(lambda data: key.sign(data, padding.PKCS1v15(), hashes.SHA256()),
                                 options["challenge"])
    verified = passkeys_core.verify_authentication(passkeys_core.parse_assertion(response), challenge, USER_ID, cose, 0)
    assert verified.new_sign_count == 1


def test_deeply_nested_client_data_is_malformed(passkeys_core, authenticator):
    response = authenticator.assertion("Y2hhbGxlbmdl")
    response["response"]["clientDataJSON"] = b64(b"[" * 200000)
    with pytest.raises(MalformedPayloadError):
        passkeys_core.parse_assertion(response)
