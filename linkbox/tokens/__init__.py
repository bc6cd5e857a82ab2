# Package
from linkbox.tokens.codec import TokenPayload, decode, encode, new_nonce
from linkbox.tokens.errors import (
    AlreadyUsed,
    Expired,
    InvalidSignature,
    MalformedToken,
    PurposeMismatch,
    Revoked,
    TokenError,
)
from linkbox.tokens.purposes import TokenPurpose, policy_for
from linkbox.tokens.signer import TokenSigner, get_signer
