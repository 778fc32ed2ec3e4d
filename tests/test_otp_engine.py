from datetime import datetime, timezone

import pytest

from ga_otp import (
    Algorithm, Credential, DigitCount, OtpType, generate, hotp,
    is_expiring, seconds_to_rollover, totp,
)

RFC_SECRET = b"12345678901234567890"
RFC_SECRET_256 = b"12345678901234567890123456789012"
RFC_SECRET_512 = b"1234567890" * 6 + b"1234"


def test_hotp_rfc4226_vectors():
    expected = ["755224", "287082", "359152", "969429", "338314",
                "254676", "287922", "162583", "399871", "520489"]
    assert [hotp(RFC_SECRET, counter) for counter in range(10)] == expected


@pytest.mark.parametrize("now, secret, algorithm, code", [
    (59, RFC_SECRET, Algorithm.SHA1, "94287082"),
    (59, RFC_SECRET_256, Algorithm.SHA256, "46119246"),
    (59, RFC_SECRET_512, Algorithm.SHA512, "90693936"),
    (1111111109, RFC_SECRET, Algorithm.SHA1, "07081804"),
    (1234567890, RFC_SECRET_256, Algorithm.SHA256, "91819424"),
    (1234567890, RFC_SECRET_512, Algorithm.SHA512, "93441116"),
])
def test_totp_rfc6238_vectors(now, secret, algorithm, code):
    assert totp(secret, now, digits=8, algorithm=algorithm) == code


def test_generate_honors_digits():
    credential = Credential(account_id="rfc", secret=RFC_SECRET)
    assert generate(credential, 59) == "287082"
    assert generate(Credential(account_id="rfc", secret=RFC_SECRET, digits=DigitCount.EIGHT), 59) == "94287082"


def test_generate_accepts_datetime():
    credential = Credential(account_id="rfc", secret=RFC_SECRET)
    now = datetime(1970, 1, 1, 0, 0, 59, tzinfo=timezone.utc)
    assert generate(credential, now) == "287082"


def test_generate_hotp_uses_stored_counter():
    credential = Credential(account_id="rfc", secret=RFC_SECRET, type=OtpType.HOTP, counter=3)
    assert generate(credential, 59) == "969429"
    assert generate(credential, 99999) == "969429"
    assert credential.counter == 3


def test_generate_defaults_unspecified_fields():
    credential = Credential(account_id="rfc", secret=RFC_SECRET, algorithm=Algorithm.UNSPECIFIED,
                            digits=DigitCount.UNSPECIFIED, type=OtpType.UNSPECIFIED)
    assert generate(credential, 59) == "287082"


def test_md5_codes_are_zero_padded_digits():
    code = generate(Credential(account_id="m", secret=RFC_SECRET, algorithm=Algorithm.MD5), 59)
    assert len(code) == 6 and code.isdigit()


def test_rollover():
    assert seconds_to_rollover(59) == 1
    assert seconds_to_rollover(60) == 30
    assert seconds_to_rollover(75.9) == 15
    assert is_expiring(59)
    assert not is_expiring(31)


def test_md5_codes_for_every_counter():
    # MD5 digests are 16 bytes, so low nibbles 13..15 need the window clamped
    codes = [hotp(RFC_SECRET, counter, algorithm=Algorithm.MD5) for counter in range(200)]
    assert all(len(code) == 6 and code.isdigit() for code in codes)
    assert len(set(codes)) > 100


def test_md5_eight_digit_totp():
    for step in range(100):
        code = totp(RFC_SECRET, step * 30, digits=8, algorithm=Algorithm.MD5)
        assert len(code) == 8 and code.isdigit()


def test_expiring_window_is_last_four_seconds():
    assert not is_expiring(55)
    assert [is_expiring(t) for t in range(56, 60)] == [True] * 4
    assert not is_expiring(60)
    assert is_expiring(55, threshold=5)
