import pytest
from passlib.hash import bsdi_crypt, des_crypt, md5_crypt

from rollcall.core.encryption import EncryptionUtils


@pytest.fixture
def encryption_utils():
    """Fixture to create an EncryptionUtils instance."""
    return EncryptionUtils()


def test_hash_and_verify_password(encryption_utils):
    """Test that password hashing and verification works correctly."""
    password = "test_password"
    hashed_password = encryption_utils.hash_password(password, bcrypt_rounds=4)
    assert hashed_password.startswith("$2")
    assert encryption_utils.verify_password(password, hashed_password)
    assert not encryption_utils.verify_password("wrong_password", hashed_password)


def test_verify_legacy_md5_crypt(encryption_utils):
    hashed_password = md5_crypt.hash("legacy-pass")
    assert hashed_password.startswith("$1$")
    assert encryption_utils.verify_password("legacy-pass", hashed_password)
    assert not encryption_utils.verify_password("legacy-pas", hashed_password)


def test_verify_legacy_des_crypt(encryption_utils):
    hashed_password = des_crypt.hash("oldpass")
    assert encryption_utils.verify_password("oldpass", hashed_password)
    assert not encryption_utils.verify_password("newpass", hashed_password)


def test_verify_legacy_bsdi_crypt(encryption_utils):
    hashed_password = bsdi_crypt.hash("xdes-pass")
    assert hashed_password.startswith("_")
    assert encryption_utils.verify_password("xdes-pass", hashed_password)
    assert not encryption_utils.verify_password("xdes-pas", hashed_password)


@pytest.mark.parametrize("stored", [None, "", "not-a-hash", "$2b$04$truncated", "$6$unsupported$scheme"])
def test_unknown_or_corrupt_hash_never_matches(encryption_utils, stored):
    assert encryption_utils.verify_password("anything", stored) is False


def test_base64url_has_no_padding(encryption_utils):
    encoded = encryption_utils.base64url_encode(b"\xfb\xff\x01")
    assert "=" not in encoded and "+" not in encoded and "/" not in encoded
    assert encryption_utils.base64url_decode(encoded) == b"\xfb\xff\x01"
    assert encryption_utils.base64url_decode(encryption_utils.base64url_encode(b"ab")) == b"ab"


def test_gen_random_string(encryption_utils):
    value = encryption_utils.gen_random_string(32)
    assert len(value) == 32
    assert value.isalnum()
    assert value != encryption_utils.gen_random_string(32)
