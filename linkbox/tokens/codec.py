"""
Token payload codec.

A payload is serialized as a compact JSON array with a fixed field order:

    [version, purpose, {ref: id, ...}, issued_at, expires_at, nonce]

then base64url-encoded without padding, so the result is safe to drop into a
path segment or query parameter as-is. ``decode`` is strict: anything that does
not come back as exactly that shape raises MalformedToken.
"""
import json
import re
import secrets
from dataclasses import dataclass, field
from typing import Dict, Optional

from itsdangerous.encoding import base64_decode, base64_encode
from itsdangerous import BadData

from linkbox.datetime_utils import from_epoch, to_epoch, utcnow
from linkbox.tokens.errors import MalformedToken
from linkbox.tokens.purposes import TokenPurpose, parse_purpose, policy_for

CODEC_VERSION = 1
MIN_SINGLE_USE_NONCE_LENGTH = 16

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_REF_VALUE_RE = re.compile(r"^[A-Za-z0-9_.:@-]{1,128}$")
_NONCE_RE = re.compile(r"^[A-Za-z0-9_-]{0,64}$")


@dataclass(frozen=True)
class TokenPayload:
    purpose: TokenPurpose
    subject_refs: Dict[str, str] = field(default_factory=dict)
    issued_at: int = 0
    expires_at: int = 0
    nonce: str = ""

    @property
    def issued_at_dt(self):
        return from_epoch(self.issued_at)

    @property
    def expires_at_dt(self):
        return from_epoch(self.expires_at)

    def is_expired(self, now: Optional[int] = None) -> bool:
        if now is None:
            now = to_epoch(utcnow())
        return now > self.expires_at

    def to_dict(self):
        return {
            "purpose": self.purpose.value,
            "subject_refs": dict(self.subject_refs),
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
        }


def new_nonce() -> str:
    """128 random bits, base64url."""
    return b64url_encode(secrets.token_bytes(16))


def b64url_encode(data: bytes) -> str:
    """Base64 URL-safe encode without padding."""
    return base64_encode(data).decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Base64 URL-safe decode with padding restoration."""
    if not data or not _B64URL_RE.match(data):
        raise ValueError("not base64url")
    return base64_decode(data)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_payload(payload: TokenPayload) -> None:
    """Raise ValueError unless the payload fits its purpose's declared shape."""
    if not isinstance(payload.purpose, TokenPurpose):
        raise ValueError("purpose must be a TokenPurpose")
    policy = policy_for(payload.purpose)

    refs = payload.subject_refs
    if not isinstance(refs, dict):
        raise ValueError("subject_refs must be a mapping")
    if set(refs) != set(policy.subject_refs):
        raise ValueError(
            f"{payload.purpose.value} requires subject refs {sorted(policy.subject_refs)}, "
            f"got {sorted(refs)}"
        )
    for key, value in refs.items():
        if not isinstance(value, str) or not _REF_VALUE_RE.match(value):
            raise ValueError(f"subject ref {key!r} must be a short opaque identifier")

    if not _is_int(payload.issued_at) or not _is_int(payload.expires_at):
        raise ValueError("issued_at and expires_at must be integer epoch seconds")
    if payload.expires_at <= payload.issued_at:
        raise ValueError("expires_at must be after issued_at")

    if not isinstance(payload.nonce, str) or not _NONCE_RE.match(payload.nonce):
        raise ValueError("nonce must be base64url text of at most 64 characters")
    if policy.single_use and len(payload.nonce) < MIN_SINGLE_USE_NONCE_LENGTH:
        raise ValueError(f"{payload.purpose.value} tokens require a random nonce")


def encode(payload: TokenPayload) -> str:
    validate_payload(payload)
    canonical = [
        CODEC_VERSION,
        payload.purpose.value,
        {key: payload.subject_refs[key] for key in sorted(payload.subject_refs)},
        payload.issued_at,
        payload.expires_at,
        payload.nonce,
    ]
    raw = json.dumps(canonical, separators=(",", ":"), ensure_ascii=True)
    return b64url_encode(raw.encode("utf-8"))


def decode(value: str) -> TokenPayload:
    if not isinstance(value, str):
        raise MalformedToken("token payload must be text")
    try:
        raw = b64url_decode(value)
        fields = json.loads(raw.decode("utf-8"))
    except (ValueError, BadData, UnicodeDecodeError) as exc:
        raise MalformedToken(f"undecodable payload: {exc}") from exc

    if not isinstance(fields, list) or len(fields) != 6:
        raise MalformedToken("wrong field count")

    version, purpose, refs, issued_at, expires_at, nonce = fields
    if not _is_int(version) or version != CODEC_VERSION:
        raise MalformedToken(f"unsupported codec version: {version!r}")
    if not isinstance(purpose, str) or not isinstance(refs, dict) or not isinstance(nonce, str):
        raise MalformedToken("wrong field types")
    if not _is_int(issued_at) or not _is_int(expires_at):
        raise MalformedToken("timestamps must be integers")

    try:
        payload = TokenPayload(
            purpose=parse_purpose(purpose),
            subject_refs=dict(refs),
            issued_at=issued_at,
            expires_at=expires_at,
            nonce=nonce,
        )
        validate_payload(payload)
    except ValueError as exc:
        raise MalformedToken(str(exc)) from exc
    return payload
