"""
ga_otp - core of the ga-cli key ring manager

Codecs for the authenticator "bulk migration" QR payloads, the single-account
otpauth:// parser, the on-disk key ring store, the export batch planner and
the HOTP/TOTP engine. Nothing in here touches pixels or the terminal.
"""

import base64
import binascii
import copy
import hashlib
import hmac
import json
import logging
import math
import os
import re
import shutil
import struct
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from urllib.parse import parse_qs, quote, unquote, urlparse

log = logging.getLogger(__name__)

MIGRATION_PREFIX = "otpauth-migration://offline"
PROVISIONING_PREFIX = "otpauth://totp/"
SCHEMA_VERSION = 1
STORE_VERSION = 1
DEFAULT_BATCH_SIZE = 10
TOTP_PERIOD = 30
UINT64_MASK = 0xFFFFFFFFFFFFFFFF


# ==================== Errors ====================

class GaError(Exception):
    """Base class for every error raised by ga_otp"""


class DecodeError(GaError, ValueError):
    """A single payload or URI could not be turned into credentials"""


class UnsupportedScheme(DecodeError):
    pass


class DecodeFailure(DecodeError):
    pass


class MalformedEnvelope(DecodeError):
    pass


class MalformedEntry(MalformedEnvelope):
    pass


class MissingRequiredField(DecodeError):
    pass


class EmptyKeyRing(GaError):
    pass


class IOFailure(GaError):
    pass


# ==================== Data Model ====================

class Algorithm(IntEnum):
    UNSPECIFIED = 0
    SHA1 = 1
    SHA256 = 2
    SHA512 = 3
    MD5 = 4

    @property
    def digestmod(self):
        return {
            Algorithm.SHA1: hashlib.sha1,
            Algorithm.SHA256: hashlib.sha256,
            Algorithm.SHA512: hashlib.sha512,
            Algorithm.MD5: hashlib.md5,
        }.get(self, hashlib.sha1)


class DigitCount(IntEnum):
    UNSPECIFIED = 0
    SIX = 1
    EIGHT = 2

    @property
    def length(self) -> int:
        return 8 if self is DigitCount.EIGHT else 6


class OtpType(IntEnum):
    UNSPECIFIED = 0
    HOTP = 1
    TOTP = 2


@dataclass
class Credential:
    """A single OTP account"""
    account_id: str
    secret: bytes
    issuer: str = ""
    algorithm: Algorithm = Algorithm.SHA1
    digits: DigitCount = DigitCount.SIX
    type: OtpType = OtpType.TOTP
    counter: int = 0

    @property
    def display_key(self) -> str:
        return self.issuer if self.issuer else self.account_id

    def normalized(self) -> "Credential":
        """Return a copy with every UNSPECIFIED enum resolved to its default"""
        return replace(
            self,
            algorithm=Algorithm(self.algorithm) or Algorithm.SHA1,
            digits=DigitCount(self.digits) or DigitCount.SIX,
            type=OtpType(self.type) or OtpType.TOTP,
        )

    def validate(self) -> "Credential":
        if not self.secret:
            raise MissingRequiredField(f"'{self.display_key}' has no secret")
        if not self.account_id and not self.issuer:
            raise MissingRequiredField("credential has neither account id nor issuer")
        return self


def _sort_key(display_key: str) -> tuple:
    # case-insensitive, ties broken by the exact key so the order is stable
    return display_key.casefold(), display_key


class KeyRing:
    """Credentials keyed by display key; always enumerated in sorted order"""

    def __init__(self, credentials=()):
        self._entries: dict[str, Credential] = {}
        for credential in credentials:
            self.add(credential)

    def add(self, credential: Credential):
        self._entries[credential.display_key] = credential

    def get(self, display_key: str) -> Credential | None:
        return self._entries.get(display_key)

    def keys(self) -> list[str]:
        return sorted(self._entries, key=_sort_key)

    def credentials(self) -> list[Credential]:
        return [self._entries[k] for k in self.keys()]

    def matching(self, pattern: str | None) -> list[Credential]:
        """Credentials whose display key contains pattern, ignoring case"""
        if not pattern:
            return self.credentials()
        needle = pattern.casefold()
        return [c for c in self.credentials() if needle in c.display_key.casefold()]

    def copy(self) -> "KeyRing":
        return KeyRing(copy.copy(c) for c in self._entries.values())

    def __iter__(self):
        return iter(self.credentials())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, display_key) -> bool:
        return display_key in self._entries

    def __eq__(self, other) -> bool:
        if not isinstance(other, KeyRing):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"KeyRing({self.keys()!r})"


@dataclass
class MigrationEnvelope:
    """Wire form of one export batch; never persisted"""
    entries: list[Credential] = field(default_factory=list)
    schema_version: int = SCHEMA_VERSION
    batch_count: int = 1
    batch_index: int = 0


# ==================== Transcoding ====================

def b32encode(data: bytes) -> str:
    """RFC 4648 Base32, uppercase, no padding"""
    return base64.b32encode(data).decode("ascii").rstrip("=")


def b32decode(text: str) -> bytes:
    """Decode unpadded, case-insensitive Base32"""
    clean = text.replace(" ", "").upper().rstrip("=")
    clean += "=" * (-len(clean) % 8)
    try:
        return base64.b32decode(clean)
    except (binascii.Error, ValueError) as e:
        raise DecodeFailure(f"Invalid base32 secret: {e}") from e


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    clean = text.strip().translate(_URLSAFE)
    clean += "=" * (-len(clean) % 4)
    try:
        return base64.b64decode(clean, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeFailure(f"Invalid base64 data: {e}") from e


_RESERVED = re.compile(r"[^A-Za-z0-9]")
_URLSAFE = str.maketrans("-_", "+/")


def percent_encode(text: str) -> str:
    """Escape everything except ASCII letters and digits as %XX"""
    return _RESERVED.sub(
        lambda m: "".join(f"%{b:02X}" for b in m.group(0).encode("utf-8")), text)


def percent_decode(text: str) -> str:
    # plain unquote: '+' is a base64 character here, not a space
    return unquote(text, errors="strict")


# ==================== Migration Envelope Codec ====================

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LEN = 2
WIRE_FIXED32 = 5


def encode_varint(value: int) -> bytes:
    if value < 0:
        raise ValueError(f"Cannot encode negative varint: {value}")
    out = bytearray()
    while True:
        to_write = value & 0x7F
        value >>= 7
        if value:
            out.append(to_write | 0x80)
        else:
            out.append(to_write)
            return bytes(out)


def parse_varint(data: bytes, offset: int) -> tuple:
    """Parse a protobuf varint and return (value, new_offset)

    At most ten bytes are read and the value is cut to 64 bits, as the app's
    own protobuf runtime does for uint64 fields.
    """
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise MalformedEnvelope("Truncated varint")
        byte = data[offset]
        result |= (byte & 0x7F) << shift
        offset += 1
        if not (byte & 0x80):
            return result & UINT64_MASK, offset
        shift += 7
        if shift > 63:
            raise MalformedEnvelope("Varint too long")


def _key(field_number: int, wire_type: int) -> bytes:
    return encode_varint((field_number << 3) | wire_type)


def _len_field(field_number: int, payload: bytes) -> bytes:
    return _key(field_number, WIRE_LEN) + encode_varint(len(payload)) + payload


def _varint_field(field_number: int, value: int) -> bytes:
    return _key(field_number, WIRE_VARINT) + encode_varint(value)


def iter_fields(data: bytes):
    """Yield (field_number, wire_type, value) for each field in a message"""
    offset = 0
    while offset < len(data):
        tag, offset = parse_varint(data, offset)
        field_number, wire_type = tag >> 3, tag & 0x07
        if field_number == 0:
            raise MalformedEnvelope("Invalid field number 0")

        if wire_type == WIRE_VARINT:
            value, offset = parse_varint(data, offset)
        elif wire_type == WIRE_LEN:
            length, offset = parse_varint(data, offset)
            if offset + length > len(data):
                raise MalformedEnvelope(f"Field {field_number} overruns payload")
            value = data[offset:offset + length]
            offset += length
        elif wire_type in (WIRE_FIXED64, WIRE_FIXED32):
            size = 8 if wire_type == WIRE_FIXED64 else 4
            if offset + size > len(data):
                raise MalformedEnvelope(f"Field {field_number} overruns payload")
            value = data[offset:offset + size]
            offset += size
        else:
            raise MalformedEnvelope(f"Unsupported wire type {wire_type}")
        yield field_number, wire_type, value


def _text(value: bytes, name: str) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedEnvelope(f"{name} is not valid UTF-8") from e


def _enum(enum_type, value: int, name: str):
    try:
        return enum_type(value)
    except ValueError as e:
        raise MalformedEntry(f"Unknown {name} value {value}") from e


def encode_entry(credential: Credential) -> bytes:
    parts = [
        _len_field(1, credential.secret),
        _len_field(2, credential.account_id.encode("utf-8")),
    ]
    if credential.issuer:
        parts.append(_len_field(3, credential.issuer.encode("utf-8")))
    for number, value in ((4, credential.algorithm), (5, credential.digits),
                          (6, credential.type), (7, credential.counter)):
        if value:
            parts.append(_varint_field(number, int(value)))
    return b"".join(parts)


def decode_entry(data: bytes) -> Credential:
    values = {}
    for number, wire_type, value in iter_fields(data):
        if number > 7:
            continue
        expected = WIRE_LEN if number in (1, 2, 3) else WIRE_VARINT
        if wire_type != expected:
            raise MalformedEntry(f"Field {number} has wire type {wire_type}")
        values[number] = value

    secret = values.get(1, b"")
    account_id = _text(values.get(2, b""), "account id")
    if not secret:
        raise MalformedEntry("Entry has no secret")
    if not account_id:
        raise MalformedEntry("Entry has no account id")

    return Credential(
        account_id=account_id,
        secret=bytes(secret),
        issuer=_text(values.get(3, b""), "issuer"),
        algorithm=_enum(Algorithm, values.get(4, 0), "algorithm"),
        digits=_enum(DigitCount, values.get(5, 0), "digits"),
        type=_enum(OtpType, values.get(6, 0), "type"),
        counter=values.get(7, 0),
    ).normalized()


def encode_envelope(envelope: MigrationEnvelope) -> bytes:
    parts = [_len_field(1, encode_entry(c)) for c in envelope.entries]
    parts.append(_varint_field(2, envelope.schema_version))
    parts.append(_varint_field(3, envelope.batch_count))
    parts.append(_varint_field(4, envelope.batch_index))
    return b"".join(parts)


def decode_envelope(data: bytes) -> MigrationEnvelope:
    envelope = MigrationEnvelope()
    for number, wire_type, value in iter_fields(data):
        if number == 1:
            if wire_type != WIRE_LEN:
                raise MalformedEnvelope("Entry field is not length-delimited")
            envelope.entries.append(decode_entry(value))
        elif number in (2, 3, 4) and wire_type == WIRE_VARINT:
            if number == 2:
                envelope.schema_version = value
            elif number == 3:
                envelope.batch_count = value
            else:
                envelope.batch_index = value
        elif number in (2, 3, 4):
            raise MalformedEnvelope(f"Field {number} has wire type {wire_type}")
    return envelope


def encode_migration_uri(envelope: MigrationEnvelope) -> str:
    data = percent_encode(b64encode(encode_envelope(envelope)))
    return f"{MIGRATION_PREFIX}?data={data}"


def decode_migration_uri(uri: str) -> MigrationEnvelope:
    rest = uri[len(MIGRATION_PREFIX):]
    if not uri.startswith(MIGRATION_PREFIX) or not rest.startswith(("?", "/?")):
        raise UnsupportedScheme(f"Not a migration URI: {uri[:40]}")

    # keep the raw value: parse_qs would turn a literal '+' into a space
    query = rest.split("?", 1)[1]
    raw = None
    for part in query.split("&"):
        name, _, value = part.partition("=")
        if name == "data":
            raw = value
            break
    if not raw:
        raise DecodeFailure("No data parameter in migration URI")

    try:
        text = percent_decode(raw.strip())
    except UnicodeDecodeError as e:
        raise DecodeFailure(f"Invalid percent-encoding: {e}") from e
    payload = b64decode(text)
    log.debug("migration payload: %d bytes", len(payload))
    return decode_envelope(payload)


# ==================== Provisioning URI Parser ====================

def parse_otpauth_uri(uri: str) -> Credential:
    """Parse a standard otpauth://totp/ URI"""
    if not uri.startswith(PROVISIONING_PREFIX):
        raise UnsupportedScheme(f"Not an otpauth://totp/ URI: {uri[:40]}")

    parsed = urlparse(uri)
    params = parse_qs(parsed.query)

    # Label format: "issuer:account" or just "account"
    label = unquote(parsed.path.lstrip("/"))
    if ":" in label:
        issuer_from_label, account_id = label.split(":", 1)
    else:
        issuer_from_label, account_id = "", label
    account_id = account_id.strip()
    issuer = params.get("issuer", [issuer_from_label])[0].strip()

    secret32 = params.get("secret", [""])[0]
    if not account_id:
        raise MissingRequiredField("No account to add to key ring")
    if not secret32:
        raise MissingRequiredField(f"No secret for '{account_id}'")

    secret = b32decode(secret32)
    if not secret:
        raise MissingRequiredField(f"Empty secret for '{account_id}'")

    return Credential(account_id=account_id, secret=secret, issuer=issuer)


def credential_to_uri(credential: Credential) -> str:
    """Render a single-account otpauth:// URI for credential"""
    credential = credential.normalized()
    kind = "hotp" if credential.type is OtpType.HOTP else "totp"
    label = quote(credential.account_id, safe="@")
    if credential.issuer:
        label = f"{quote(credential.issuer, safe='')}:{label}"
    uri = f"otpauth://{kind}/{label}?secret={b32encode(credential.secret)}"
    if credential.issuer:
        uri += f"&issuer={quote(credential.issuer, safe='')}"
    if credential.algorithm is not Algorithm.SHA1:
        uri += f"&algorithm={credential.algorithm.name}"
    if credential.digits is not DigitCount.SIX:
        uri += f"&digits={credential.digits.length}"
    if credential.type is OtpType.HOTP:
        uri += f"&counter={credential.counter}"
    return uri


def credentials_from_payload(text: str) -> list[Credential]:
    """Turn one decoded QR payload (or pasted URI) into credentials"""
    text = text.strip()
    if text.startswith(MIGRATION_PREFIX):
        envelope = decode_migration_uri(text)
        log.debug("batch %d of %d, %d entries", envelope.batch_index + 1,
                  envelope.batch_count, len(envelope.entries))
        return envelope.entries
    if text.startswith(PROVISIONING_PREFIX):
        return [parse_otpauth_uri(text)]
    raise UnsupportedScheme("No Google Authenticator Export Data found")


# ==================== Key Ring Store ====================

def escape_secret(secret: bytes) -> str:
    """Printable, reversible form of secret bytes (\\xNN for non-printables)"""
    return secret.decode("latin-1").encode("unicode_escape").decode("ascii")


def unescape_secret(text: str) -> bytes:
    return text.encode("ascii").decode("unicode_escape").encode("latin-1")


def _credential_to_record(credential: Credential) -> dict:
    return {
        "display_key": credential.display_key,
        "keyid": credential.account_id,
        "issuer": credential.issuer,
        "secret": escape_secret(credential.secret),
        "algorithm": credential.algorithm.name,
        "digits": credential.digits.name,
        "type": credential.type.name,
        "counter": credential.counter,
    }


def _record_to_credential(record: dict) -> Credential:
    counter = int(record.get("counter", 0))
    if not 0 <= counter <= UINT64_MASK:
        raise ValueError(f"counter {counter} out of range")
    credential = Credential(
        account_id=record.get("keyid", ""),
        secret=unescape_secret(record.get("secret", "")),
        issuer=record.get("issuer", ""),
        algorithm=Algorithm[record.get("algorithm", "SHA1")],
        digits=DigitCount[record.get("digits", "SIX")],
        type=OtpType[record.get("type", "TOTP")],
        counter=counter,
    )
    return credential.normalized().validate()


def load_keyring(path) -> KeyRing:
    """Load the key ring; a missing store is an empty ring"""
    path = Path(path)
    if not path.exists():
        log.debug("no key ring at %s", path)
        return KeyRing()

    try:
        with open(path, "r", encoding="utf-8") as f:
            stored = json.load(f)
    except (OSError, ValueError) as e:
        raise IOFailure(f"Can't read key ring {path}: {e}") from e

    if not isinstance(stored, dict) or stored.get("version") != STORE_VERSION:
        raise IOFailure(f"Unsupported key ring format in {path}")

    try:
        ring = KeyRing(_record_to_credential(r) for r in stored.get("keys", []))
    except (AttributeError, KeyError, TypeError, ValueError, MissingRequiredField) as e:
        raise IOFailure(f"Corrupted key ring {path}: {e}") from e
    log.debug("loaded %d keys from %s", len(ring), path)
    return ring


def merge(ring: KeyRing, new_entries, clear_first: bool = False) -> KeyRing:
    """Merge new credentials into a copy of ring; later entries win"""
    merged = KeyRing() if clear_first else ring.copy()
    for credential in new_entries:
        merged.add(credential)
    return merged


def backup_path(path) -> Path:
    path = Path(path)
    return path.with_name(path.name + ".back")


def persist(ring: KeyRing, path) -> Path:
    """Write the key ring, moving any previous store to <name>.back first"""
    path = Path(path)
    stored = {
        "version": STORE_VERSION,
        "keys": [_credential_to_record(c) for c in ring],
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            shutil.move(str(path), str(backup_path(path)))
        with open(path, "w", encoding="utf-8") as f:
            json.dump(stored, f, indent=2, ensure_ascii=False)
            f.write("\n")
        # Set restrictive permissions
        os.chmod(path, 0o600)
    except OSError as e:
        raise IOFailure(f"Can't write key ring {path}: {e}") from e
    log.debug("wrote %d keys to %s", len(ring), path)
    return path


# ==================== Batch Export Planner ====================

def plan_batches(ring: KeyRing, batch_size: int = DEFAULT_BATCH_SIZE) -> list[MigrationEnvelope]:
    """Split the sorted key ring into migration envelopes of batch_size entries"""
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    credentials = ring.credentials()
    if not credentials:
        raise EmptyKeyRing("No keys to process")

    batch_count = math.ceil(len(credentials) / batch_size)
    return [
        MigrationEnvelope(
            entries=credentials[start:start + batch_size],
            schema_version=SCHEMA_VERSION,
            batch_count=batch_count,
            batch_index=index,
        )
        for index, start in enumerate(range(0, len(credentials), batch_size))
    ]


def export_filename(envelope: MigrationEnvelope, day=None) -> str:
    day = day or datetime.now()
    return (f"export_keys_{day:%Y%m%d}_{envelope.batch_index + 1:02d}"
            f"_of_{envelope.batch_count:02d}.jpg")


def bulk_filename(envelope: MigrationEnvelope) -> str:
    return f"bulk_keys_{envelope.batch_index + 1:02d}.jpg"


# ==================== OTP Engine ====================

def unix_seconds(now=None) -> int:
    if now is None:
        return int(time.time())
    if isinstance(now, datetime):
        return math.floor(now.timestamp())
    return math.floor(now)


def hotp(secret: bytes, counter: int, digits: int = 6,
         algorithm: Algorithm = Algorithm.SHA1) -> str:
    """Generate HOTP code (RFC 4226)"""
    # Counter as 8-byte big-endian
    counter_bytes = struct.pack(">Q", counter)

    digest = hmac.new(secret, counter_bytes, Algorithm(algorithm).digestmod).digest()

    # Dynamic truncation; the window must fit inside a 16 byte MD5 digest
    offset = min(digest[-1] & 0x0F, len(digest) - 4)
    truncated = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF

    otp = truncated % (10 ** digits)
    return str(otp).zfill(digits)


def totp(secret: bytes, now=None, digits: int = 6,
         algorithm: Algorithm = Algorithm.SHA1) -> str:
    """Generate TOTP code (RFC 6238) with a fixed 30 second step"""
    return hotp(secret, unix_seconds(now) // TOTP_PERIOD, digits, algorithm)


def generate(credential: Credential, now=None) -> str:
    """Current code for credential; HOTP counters are not advanced"""
    credential = credential.normalized()
    digits = credential.digits.length
    if credential.type is OtpType.HOTP:
        return hotp(credential.secret, credential.counter, digits, credential.algorithm)
    return totp(credential.secret, now, digits, credential.algorithm)


def seconds_to_rollover(now=None) -> int:
    """Get seconds remaining until next TOTP rotation"""
    return TOTP_PERIOD - (unix_seconds(now) % TOTP_PERIOD)


def is_expiring(now=None, threshold: int = 4) -> bool:
    """True during the last few seconds of a step (26..29 with the default)"""
    return seconds_to_rollover(now) <= threshold
