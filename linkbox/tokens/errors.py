"""
Token verification errors.

Each error carries a stable ``code`` for logs and API responses, the HTTP
status a route should answer with, and the message shown to the person who
clicked the link. Invalid and expired links get different messages; a
tampered link and a malformed one look the same to the user.
"""


class TokenError(Exception):
    code = "token_error"
    http_status = 400
    user_message = "This link is invalid."

    def __init__(self, detail=None):
        self.detail = detail or self.code
        super().__init__(self.detail)

    def to_dict(self):
        return {"error": self.code, "message": self.user_message}


class MalformedToken(TokenError):
    """Structurally invalid token string. Always a client error."""
    code = "malformed_token"
    http_status = 400


class InvalidSignature(TokenError):
    """MAC mismatch: tampering or a key this server does not hold."""
    code = "invalid_signature"
    http_status = 403


class PurposeMismatch(InvalidSignature):
    """A genuine token presented where a different purpose is required."""
    code = "purpose_mismatch"


class Expired(TokenError):
    code = "expired"
    http_status = 410
    user_message = "This link has expired."


class AlreadyUsed(TokenError):
    code = "already_used"
    http_status = 409
    user_message = "This link has already been used."


class Revoked(TokenError):
    """A multi-use link an operator has withdrawn before it expired."""
    code = "revoked"
    http_status = 410
    user_message = "This link has been revoked."
