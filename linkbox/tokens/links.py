from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app

from linkbox.logging_config import get_logger, token_prefix
from linkbox.tokens.errors import AlreadyUsed, Expired, InvalidSignature, MalformedToken, Revoked, TokenError
from linkbox.tokens.purposes import policy_for
from linkbox.tokens.replay_guard import ReplayGuard
from linkbox.tokens.signer import get_signer

logger = get_logger(__name__)


@dataclass
class IssuedLink:
    token: str
    url: str
    expires_at: datetime


def build_link_url(purpose, token, base_url=None):
    """Map a purpose to its public path, e.g. /t/<token> for trial requests."""
    policy = policy_for(purpose)
    base = (base_url or current_app.config.get("PUBLIC_BASE_URL") or "").rstrip("/")
    return f"{base}/{policy.url_path}/{token}"


def issue_link(purpose, subject_refs, ttl=None, now=None, base_url=None):
    """Mint a token for ``purpose`` and wrap it in a ready-to-send URL."""
    signer = get_signer()
    token = signer.mint(purpose, subject_refs, ttl=ttl, now=now)
    payload = signer.verify(token, purpose=purpose, now=now)
    logger.info(
        "Link issued",
        purpose=payload.purpose.value,
        subject_refs=payload.subject_refs,
        expires_at=payload.expires_at,
    )
    return IssuedLink(token=token, url=build_link_url(purpose, token, base_url), expires_at=payload.expires_at_dt)


def redeem(token, purpose, now=None, consumed_by=None, consume=True):
    """
    Verify an inbound link token and, for single-use purposes, consume it.

    With ``consume=False`` a single-use token is only checked against the
    consumed-nonce table, so it can be shown again and redeemed later.

    Returns:
        TokenPayload

    Raises:
        TokenError subclass; each is logged under its own event name first.
    """
    policy = policy_for(purpose)
    try:
        payload = get_signer().verify(token, purpose=policy.purpose, now=now)
        if policy.single_use:
            if consume:
                ReplayGuard.check_and_consume(
                    payload.purpose, payload.nonce, payload.expires_at, consumed_by=consumed_by
                )
            elif ReplayGuard.is_consumed(payload.purpose, payload.nonce):
                raise AlreadyUsed(f"{payload.purpose.value} nonce already consumed")
        elif payload.nonce and ReplayGuard.is_consumed(payload.purpose, payload.nonce):
            raise Revoked(f"{payload.purpose.value} token revoked")
    except InvalidSignature as e:
        # Security event: tampering, a wrong key, or a token replayed across purposes
        logger.warning(
            "Token signature rejected",
            log_event="token_invalid_signature",
            purpose=policy.purpose.value,
            reason=e.code,
            token=token_prefix(token),
            client=consumed_by,
        )
        raise
    except Expired:
        logger.info("Expired token presented", log_event="token_expired",
                    purpose=policy.purpose.value, token=token_prefix(token))
        raise
    except MalformedToken as e:
        logger.info("Malformed token presented", log_event="token_malformed",
                    purpose=policy.purpose.value, detail=e.detail)
        raise
    except Revoked:
        logger.info("Revoked token presented", log_event="token_revoked",
                    purpose=policy.purpose.value, token=token_prefix(token))
        raise

    if consume:
        logger.info("Token redeemed", purpose=payload.purpose.value, subject_refs=payload.subject_refs)
    return payload


def inspect_link(token, purpose, now=None):
    """Verify a link without consuming it; safe for GET requests and link scanners."""
    return redeem(token, purpose, now=now, consume=False)


def revoke_link(token, purpose, now=None) -> Optional[bool]:
    """Revoke a link of any purpose. Returns None when the token does not verify."""
    try:
        payload = get_signer().verify(token, purpose=purpose, now=now)
    except TokenError:
        return None
    return ReplayGuard.revoke(payload)
