"""
Signed token strings.

Token format: base64url(payload) + "." + base64url(HMAC-SHA256(key, base64url(payload)))

Signing and signature checks go through ``itsdangerous.Signer``; the payload
segment is produced by ``linkbox.tokens.codec``. Verification is pure computation
over the server secrets, so forged or expired links are rejected without
touching the database.
"""
import hashlib
from datetime import timedelta
from typing import Iterable, Optional

from flask import current_app
from itsdangerous import BadSignature, Signer
from itsdangerous.encoding import base64_decode, base64_encode

from linkbox.datetime_utils import to_epoch, utcnow
from linkbox.logging_config import get_logger
from linkbox.tokens import codec
from linkbox.tokens.codec import TokenPayload
from linkbox.tokens.errors import Expired, InvalidSignature, MalformedToken, PurposeMismatch
from linkbox.tokens.purposes import parse_purpose, policy_for

logger = get_logger(__name__)

SEPARATOR = "."
SALT = "linkbox.token"


def _now_epoch(now) -> int:
    if now is None:
        return to_epoch(utcnow())
    if isinstance(now, int):
        return now
    return to_epoch(now)


def _is_canonical(signature: str) -> bool:
    # base64 tolerates stray characters and unused trailing bits; only the exact encoding is accepted
    return base64_encode(base64_decode(signature)) == signature.encode("ascii")


class TokenSigner:
    """Signs payloads with the active secret; verifies against active + fallback secrets."""

    def __init__(self, secret, fallback_secrets: Iterable = (), max_length: int = 2048):
        if not secret:
            raise ValueError("TOKEN_SECRET is not configured")
        # itsdangerous signs with the last key and accepts any of them
        keys = [s for s in fallback_secrets if s] + [secret]
        self._signer = Signer(
            keys,
            salt=SALT,
            sep=SEPARATOR,
            key_derivation="hmac",
            digest_method=hashlib.sha256,
        )
        self.max_length = max_length

    @property
    def key_count(self) -> int:
        return len(self._signer.secret_keys)

    def sign_segment(self, encoded_payload: str) -> str:
        """Sign an already-encoded payload segment."""
        return self._signer.sign(encoded_payload).decode("ascii")

    def sign(self, payload: TokenPayload) -> str:
        return self._signer.get_signature(codec.encode(payload)).decode("ascii")

    def dumps(self, payload: TokenPayload) -> str:
        return self.sign_segment(codec.encode(payload))

    def mint(self, purpose, subject_refs, ttl: Optional[timedelta] = None, now=None) -> str:
        """Build a fresh payload for ``purpose`` and return the signed token string."""
        policy = policy_for(purpose)
        issued_at = _now_epoch(now)
        lifetime = policy.resolve_ttl(ttl)
        payload = TokenPayload(
            purpose=policy.purpose,
            subject_refs={str(k): str(v) for k, v in subject_refs.items()},
            issued_at=issued_at,
            expires_at=issued_at + int(lifetime.total_seconds()),
            nonce=codec.new_nonce(),
        )
        return self.dumps(payload)

    def verify(self, token: str, purpose=None, now=None) -> TokenPayload:
        """
        Check a token string and return its payload.

        Raises:
            MalformedToken: not two non-empty segments, too long, or undecodable
            InvalidSignature: MAC mismatch (PurposeMismatch if the purpose is wrong)
            Expired: valid signature but now > expires_at
        """
        if not isinstance(token, str) or not token:
            raise MalformedToken("empty token")
        if len(token) > self.max_length:
            raise MalformedToken("token too long")

        parts = token.split(SEPARATOR)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise MalformedToken("wrong number of segments")
        encoded_payload, signature = parts

        # The MAC covers the raw segment, so it is checked before any decoding
        if not token.isascii():
            raise InvalidSignature("signature mismatch")
        try:
            self._signer.unsign(token)
        except BadSignature as exc:
            raise InvalidSignature("signature mismatch") from exc
        if not _is_canonical(signature):
            raise InvalidSignature("non-canonical signature encoding")

        payload = codec.decode(encoded_payload)

        if purpose is not None and payload.purpose != parse_purpose(purpose):
            raise PurposeMismatch(
                f"expected {parse_purpose(purpose).value}, got {payload.purpose.value}"
            )

        if payload.is_expired(_now_epoch(now)):
            raise Expired(f"expired at {payload.expires_at}")

        return payload


def signer_from_config(config) -> TokenSigner:
    return TokenSigner(
        config.get("TOKEN_SECRET"),
        fallback_secrets=config.get("TOKEN_SECRET_FALLBACKS") or (),
        max_length=config.get("TOKEN_MAX_LENGTH", 2048),
    )


def get_signer() -> TokenSigner:
    """Signer for the current Flask app, built once per app."""
    signer = current_app.extensions.get("linkbox.token_signer")
    if signer is None:
        signer = signer_from_config(current_app.config)
        current_app.extensions["linkbox.token_signer"] = signer
        logger.debug("Token signer initialised", fallback_keys=signer.key_count - 1)
    return signer
