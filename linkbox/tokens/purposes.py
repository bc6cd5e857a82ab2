from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional


class TokenPurpose(Enum):
    MARKETING_CLICK = "marketing-click"
    TRIAL_REQUEST = "trial-request"
    QUOTE_ACTION = "quote-action"
    PORTAL_ACCESS = "portal-access"
    UNSUBSCRIBE = "unsubscribe"
    PASSWORD_RESET = "password-reset"
    INVITATION_ACCEPT = "invitation-accept"


@dataclass(frozen=True)
class PurposePolicy:
    purpose: TokenPurpose
    subject_refs: FrozenSet[str]      # exact set of refs the token must carry
    default_ttl: timedelta
    single_use: bool
    url_path: str                     # first path segment of the link
    max_ttl: Optional[timedelta] = None

    def resolve_ttl(self, ttl: Optional[timedelta] = None) -> timedelta:
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= timedelta(0):
            raise ValueError(f"TTL for {self.purpose.value} must be positive")
        if self.max_ttl is not None and ttl > self.max_ttl:
            raise ValueError(
                f"TTL for {self.purpose.value} may not exceed {self.max_ttl}"
            )
        return ttl


_YEAR = timedelta(days=365)

POLICIES: Dict[TokenPurpose, PurposePolicy] = {
    TokenPurpose.MARKETING_CLICK: PurposePolicy(
        TokenPurpose.MARKETING_CLICK, frozenset({"company", "contact"}),
        timedelta(weeks=4), single_use=False, url_path="c",
    ),
    TokenPurpose.TRIAL_REQUEST: PurposePolicy(
        TokenPurpose.TRIAL_REQUEST, frozenset({"company", "contact"}),
        timedelta(days=7), single_use=False, url_path="t",
    ),
    TokenPurpose.QUOTE_ACTION: PurposePolicy(
        TokenPurpose.QUOTE_ACTION, frozenset({"company", "contact", "quote"}),
        timedelta(days=3), single_use=False, url_path="q",
    ),
    # Portal links live until revoked; five years is the practical ceiling
    TokenPurpose.PORTAL_ACCESS: PurposePolicy(
        TokenPurpose.PORTAL_ACCESS, frozenset({"company", "contact"}),
        5 * _YEAR, single_use=False, url_path="p",
    ),
    TokenPurpose.UNSUBSCRIBE: PurposePolicy(
        TokenPurpose.UNSUBSCRIBE, frozenset({"contact"}),
        5 * _YEAR, single_use=False, url_path="u",
    ),
    TokenPurpose.PASSWORD_RESET: PurposePolicy(
        TokenPurpose.PASSWORD_RESET, frozenset({"user"}),
        timedelta(hours=1), single_use=True, url_path="reset",
        max_ttl=timedelta(hours=1),
    ),
    TokenPurpose.INVITATION_ACCEPT: PurposePolicy(
        TokenPurpose.INVITATION_ACCEPT, frozenset({"user"}),
        timedelta(days=7), single_use=True, url_path="invite",
    ),
}


def parse_purpose(value) -> TokenPurpose:
    """Accept a TokenPurpose or its string value; raise ValueError otherwise."""
    if isinstance(value, TokenPurpose):
        return value
    try:
        return TokenPurpose(value)
    except ValueError:
        raise ValueError(f"Unknown token purpose: {value!r}") from None


def policy_for(purpose) -> PurposePolicy:
    return POLICIES[parse_purpose(purpose)]
