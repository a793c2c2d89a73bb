import base64
import re
from urllib.parse import parse_qs, urlparse

import pytest

from warden.config import Settings
from warden.service.two_factor import TwoFactorService

# RFC 6238 appendix B seed, SHA-1 variant
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


@pytest.fixture
def service(settings, clock):
    return TwoFactorService(settings, clock=clock)


@pytest.mark.parametrize(
    "timestamp,expected",
    [
        (59, "287082"),
        (1111111109, "081804"),
        (1234567890, "005924"),
        (2000000000, "279037"),
    ],
)
def test_rfc6238_vectors(service, timestamp, expected):
    assert service.generate_code(RFC_SECRET, timestamp) == expected


def test_verify_accepts_adjacent_steps(service, clock):
    secret = service.generate_secret()
    now = clock().timestamp()
    assert service.verify_code(secret, service.generate_code(secret, now))
    assert service.verify_code(secret, service.generate_code(secret, now - 30))
    assert service.verify_code(secret, service.generate_code(secret, now + 30))
    assert not service.verify_code(secret, service.generate_code(secret, now - 90))


@pytest.mark.parametrize(
    "code", [None, "", "12345", "abcdef", "1234567", "١٢٣٤٥٦", "１２３４５６"]
)
def test_verify_rejects_malformed(service, code):
    assert not service.verify_code(service.generate_secret(), code)


def test_secret_encryption_round_trip(service, settings):
    secret = service.generate_secret()
    stored = service.encrypt_secret(secret)
    assert stored != secret
    assert service.decrypt_secret(stored) == secret

    other = TwoFactorService(settings.model_copy(update={"mfa_secret_key": "different-key"}))
    assert other.decrypt_secret(stored) is None


def test_backup_codes(service):
    codes = service.generate_backup_codes()
    assert len(codes) == 10
    assert len(set(codes)) == 10
    assert all(re.fullmatch(r"[0-9A-F]{8}", c) for c in codes)
    assert len(service.generate_backup_codes(3)) == 3


def test_provisioning_uri(service):
    uri = service.provisioning_uri("JBSWY3DPEHPK3PXP", "ada@example.com")
    parsed = urlparse(uri)
    assert parsed.scheme == "otpauth"
    assert parsed.netloc == "totp"
    query = parse_qs(parsed.query)
    assert query["secret"] == ["JBSWY3DPEHPK3PXP"]
    assert query["issuer"] == ["Warden"]
    assert query["digits"] == ["6"]


def test_generated_secret_is_base32(service):
    secret = service.generate_secret()
    assert len(secret) == 32
    base64.b32decode(secret)


def test_key_defaults_to_jwt_secret(tmp_path):
    settings = Settings(jwt_secret="shared-secret-material-for-both-1234567890", shared_fs_root=str(tmp_path))
    first = TwoFactorService(settings)
    second = TwoFactorService(settings)
    assert second.decrypt_secret(first.encrypt_secret("ABC")) == "ABC"
