import pytest

from ga_otp import (
    Algorithm, Credential, DecodeFailure, DigitCount, MissingRequiredField,
    OtpType, UnsupportedScheme, credential_to_uri, parse_otpauth_uri,
)

SECRET = b"Hello!\xde\xad\xbe\xef"


def test_parse_label_with_issuer():
    c = parse_otpauth_uri(
        "otpauth://totp/ACME%20Co:john@example.com?secret=JBSWY3DPEHPK3PXP&issuer=ACME%20Co")
    assert c.account_id == "john@example.com"
    assert c.issuer == "ACME Co"
    assert c.secret == SECRET
    assert c.display_key == "ACME Co"
    assert (c.algorithm, c.digits, c.type) == (Algorithm.SHA1, DigitCount.SIX, OtpType.TOTP)


def test_parse_label_without_colon():
    c = parse_otpauth_uri("otpauth://totp/alice?secret=jbswy3dpehpk3pxp")
    assert c.account_id == "alice"
    assert c.issuer == ""
    assert c.display_key == "alice"
    assert c.secret == SECRET


def test_issuer_param_overrides_label():
    c = parse_otpauth_uri("otpauth://totp/Old:alice?secret=JBSWY3DPEHPK3PXP&issuer=New")
    assert c.issuer == "New"
    assert c.account_id == "alice"


def test_missing_secret():
    with pytest.raises(MissingRequiredField):
        parse_otpauth_uri("otpauth://totp/Example:alice?issuer=Example")


def test_missing_account():
    with pytest.raises(MissingRequiredField):
        parse_otpauth_uri("otpauth://totp/Example:?secret=JBSWY3DPEHPK3PXP")


def test_bad_base32_secret():
    with pytest.raises(DecodeFailure):
        parse_otpauth_uri("otpauth://totp/Example:alice?secret=1111")


def test_other_schemes_are_unsupported():
    with pytest.raises(UnsupportedScheme):
        parse_otpauth_uri("otpauth://hotp/Example:alice?secret=JBSWY3DPEHPK3PXP&counter=1")
    with pytest.raises(UnsupportedScheme):
        parse_otpauth_uri("https://example.com/totp")


def test_uri_round_trip():
    c = Credential(account_id="john@example.com", secret=SECRET, issuer="ACME Co")
    uri = credential_to_uri(c)
    assert uri == "otpauth://totp/ACME%20Co:john@example.com?secret=JBSWY3DPEHPK3PXP&issuer=ACME%20Co"
    assert parse_otpauth_uri(uri) == c


def test_uri_carries_non_default_parameters():
    c = Credential(account_id="bob", secret=SECRET, algorithm=Algorithm.SHA256,
                   digits=DigitCount.EIGHT, type=OtpType.HOTP, counter=7)
    assert credential_to_uri(c) == (
        "otpauth://hotp/bob?secret=JBSWY3DPEHPK3PXP&algorithm=SHA256&digits=8&counter=7")
