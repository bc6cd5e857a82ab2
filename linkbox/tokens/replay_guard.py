from sqlalchemy.exc import IntegrityError

from linkbox.datetime_utils import from_epoch, to_naive_utc, utcnow
from linkbox.logging_config import get_logger
from linkbox.models import ConsumedNonce, db
from linkbox.tokens.errors import AlreadyUsed
from linkbox.tokens.purposes import parse_purpose

logger = get_logger(__name__)


def _as_datetime(value):
    if isinstance(value, int):
        return from_epoch(value)
    return to_naive_utc(value)


class ReplayGuard:
    """Single-use enforcement for password-reset and invitation links, and revocation of any link."""

    @staticmethod
    def check_and_consume(purpose, nonce, expires_at, consumed_by=None):
        """
        Record (purpose, nonce) as used, or raise AlreadyUsed if it already was.

        The insert is the check: the unique constraint on (purpose, nonce) makes
        exactly one of several racing requests succeed. Runs in its own unit of
        work, so call it before making any business writes.

        Args:
            purpose: TokenPurpose or its string value
            nonce: the token's nonce
            expires_at: epoch seconds or datetime; the row may be purged after this
            consumed_by: optional tag for audit (client IP, user agent...)

        Returns:
            True when this call consumed the nonce
        """
        purpose = parse_purpose(purpose)
        if not nonce:
            raise ValueError("single-use tokens must carry a nonce")

        record = ConsumedNonce(
            purpose=purpose.value,
            nonce=nonce,
            expires_at=_as_datetime(expires_at),
            consumed_at=utcnow(),
            consumed_by=consumed_by,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(
                "Single-use token replayed",
                log_event="token_already_used",
                purpose=purpose.value,
                nonce=nonce[:8],
            )
            raise AlreadyUsed(f"{purpose.value} nonce already consumed")

        logger.debug("Nonce consumed", purpose=purpose.value, nonce=nonce[:8])
        return True

    @staticmethod
    def is_consumed(purpose, nonce):
        purpose = parse_purpose(purpose)
        return db.session.query(
            ConsumedNonce.query.filter_by(purpose=purpose.value, nonce=nonce).exists()
        ).scalar()

    @staticmethod
    def revoke(payload, consumed_by="revoked"):
        """
        Burn a token before it is redeemed (single-use) or before it expires (multi-use).

        The nonce is recorded until the token's own expiry, so a revoked
        portal link stays dead for as long as it would have verified.

        Returns:
            bool: True if this call revoked it, False if it was already used/revoked
        """
        if not payload.nonce:
            raise ValueError(f"{payload.purpose.value} token has no nonce and cannot be revoked")
        try:
            ReplayGuard.check_and_consume(
                payload.purpose, payload.nonce, payload.expires_at, consumed_by=consumed_by
            )
        except AlreadyUsed:
            return False
        logger.info("Token revoked", purpose=payload.purpose.value, nonce=payload.nonce[:8])
        return True

    @staticmethod
    def purge_expired(now=None):
        """Delete consumed-nonce rows whose token can no longer verify anyway."""
        now = to_naive_utc(now) or utcnow()
        deleted = ConsumedNonce.query.filter(ConsumedNonce.expires_at < now).delete(
            synchronize_session=False
        )
        db.session.commit()
        if deleted:
            logger.info("Purged expired nonces", count=deleted)
        return deleted
