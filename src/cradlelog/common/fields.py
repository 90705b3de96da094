from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Optional, Union

from .crypto import DECRYPTION_PLACEHOLDER, IV_HEX_LEN, IV_SIZE, FieldCodec


# base64("Salted__"), the prefix of every payload the earlier client wrote
LEGACY_MARKER = "U2FsdGVkX1"

_HEX_PREFIX_RE = re.compile(r"^[0-9a-fA-F]{%d}" % IV_HEX_LEN)


@dataclass(frozen=True)
class PlaintextField:
    value: str


@dataclass(frozen=True)
class EncryptedField:
    envelope: str


Field = Union[PlaintextField, EncryptedField]


def seal(codec: FieldCodec, value: Optional[str]) -> Optional[EncryptedField]:
    """Encrypt a value for storage; None stays None (optional columns)."""
    if value is None:
        return None
    return EncryptedField(codec.encrypt(value))


def open_field(codec: FieldCodec, field: Field, placeholder: str = DECRYPTION_PLACEHOLDER) -> str:
    if isinstance(field, PlaintextField):
        return field.value
    return codec.safe_decrypt(field.envelope, placeholder)


def looks_like_envelope(raw: str) -> bool:
    """Shape check for envelopes written by FieldCodec.encrypt."""
    if len(raw) <= IV_HEX_LEN or not _HEX_PREFIX_RE.match(raw):
        return False
    try:
        body = base64.b64decode(raw[IV_HEX_LEN:], validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(body) > 0 and len(body) % IV_SIZE == 0


def classify(raw: str) -> Field:
    """Guess whether an untagged stored string is encrypted.

    Legacy-compat path only: rows stored as bare strings carry no tag, so the
    old marker substring and the current envelope shape are used as hints.
    New code should keep the Field it got from `seal` instead of guessing.
    """
    if LEGACY_MARKER in raw or looks_like_envelope(raw):
        return EncryptedField(raw)
    return PlaintextField(raw)


def reveal(codec: FieldCodec, raw: Optional[str], placeholder: str = DECRYPTION_PLACEHOLDER) -> str:
    """Readable form of a stored column value; empty for missing values."""
    if not raw:
        return ""
    if not isinstance(raw, str):
        return str(raw)
    return open_field(codec, classify(raw), placeholder)
