"""
Tests for the token payload codec.
Run with: pytest tests/test_token_codec.py -v
"""
import base64
import json
import re

import pytest

from linkbox.tokens.codec import TokenPayload, decode, encode, new_nonce
from linkbox.tokens.errors import MalformedToken
from linkbox.tokens.purposes import TokenPurpose

NOW = 1_760_000_000


def _payload(**overrides):
    fields = dict(
        purpose=TokenPurpose.TRIAL_REQUEST,
        subject_refs={"company": "cmp_42", "contact": "ct_7"},
        issued_at=NOW,
        expires_at=NOW + 3600,
        nonce=new_nonce(),
    )
    fields.update(overrides)
    return TokenPayload(**fields)


def _raw(fields):
    data = json.dumps(fields, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


# ==============================================================================
# ENCODE
# ==============================================================================

class TestEncode:

    def test_output_is_url_safe(self):
        encoded = encode(_payload())
        assert re.fullmatch(r"[A-Za-z0-9_-]+", encoded)

    def test_decode_returns_equal_payload(self):
        payload = _payload(purpose=TokenPurpose.QUOTE_ACTION,
                           subject_refs={"quote": "q_1", "company": "cmp_1", "contact": "ct_1"})
        assert decode(encode(payload)) == payload

    def test_ref_order_does_not_change_encoding(self):
        nonce = new_nonce()
        a = _payload(subject_refs={"company": "cmp_1", "contact": "ct_1"}, nonce=nonce)
        b = _payload(subject_refs={"contact": "ct_1", "company": "cmp_1"}, nonce=nonce)
        assert encode(a) == encode(b)

    def test_missing_ref_rejected(self):
        with pytest.raises(ValueError):
            encode(_payload(subject_refs={"company": "cmp_1"}))

    def test_extra_ref_rejected(self):
        with pytest.raises(ValueError):
            encode(_payload(subject_refs={"company": "cmp_1", "contact": "ct_1", "email": "x"}))

    def test_free_form_ref_value_rejected(self):
        with pytest.raises(ValueError):
            encode(_payload(subject_refs={"company": "cmp_1", "contact": "Jane Doe <jane@example.com>"}))

    def test_expiry_must_follow_issue(self):
        with pytest.raises(ValueError):
            encode(_payload(expires_at=NOW))

    def test_single_use_purpose_requires_nonce(self):
        with pytest.raises(ValueError):
            encode(_payload(purpose=TokenPurpose.PASSWORD_RESET, subject_refs={"user": "u_1"}, nonce=""))

    def test_multi_use_purpose_allows_empty_nonce(self):
        payload = _payload(nonce="")
        assert decode(encode(payload)).nonce == ""


def test_new_nonce_is_128_bits():
    nonce = new_nonce()
    assert len(nonce) == 22
    assert new_nonce() != nonce


# ==============================================================================
# DECODE
# ==============================================================================

class TestDecodeMalformed:

    @pytest.mark.parametrize("value", ["", "!!!", "a b", "abc=", "x"])
    def test_not_base64url(self, value):
        with pytest.raises(MalformedToken):
            decode(value)

    def test_not_json(self):
        with pytest.raises(MalformedToken):
            decode(base64.urlsafe_b64encode(b"not json").rstrip(b"=").decode("ascii"))

    def test_wrong_field_count(self):
        with pytest.raises(MalformedToken):
            decode(_raw([1, "trial-request", {"company": "c", "contact": "d"}, NOW, NOW + 1]))

    def test_object_instead_of_array(self):
        with pytest.raises(MalformedToken):
            decode(_raw({"purpose": "trial-request"}))

    def test_unknown_version(self):
        with pytest.raises(MalformedToken):
            decode(_raw([2, "trial-request", {"company": "c", "contact": "d"}, NOW, NOW + 1, ""]))

    def test_boolean_version(self):
        with pytest.raises(MalformedToken):
            decode(_raw([True, "trial-request", {"company": "c", "contact": "d"}, NOW, NOW + 1, ""]))

    def test_unknown_purpose(self):
        with pytest.raises(MalformedToken):
            decode(_raw([1, "admin-login", {"user": "u_1"}, NOW, NOW + 1, ""]))

    def test_refs_not_matching_purpose(self):
        with pytest.raises(MalformedToken):
            decode(_raw([1, "unsubscribe", {"company": "c", "contact": "d"}, NOW, NOW + 1, ""]))

    def test_string_timestamp(self):
        with pytest.raises(MalformedToken):
            decode(_raw([1, "unsubscribe", {"contact": "d"}, str(NOW), NOW + 1, ""]))

    def test_valid_raw_array_decodes(self):
        payload = decode(_raw([1, "unsubscribe", {"contact": "ct_1"}, NOW, NOW + 60, ""]))
        assert payload.purpose is TokenPurpose.UNSUBSCRIBE
        assert payload.subject_refs == {"contact": "ct_1"}
        assert payload.expires_at == NOW + 60
