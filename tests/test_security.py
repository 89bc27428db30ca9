"""
tests.test_security
~~~~~~~~~~~~~~~~~~~

ClaimsVerifier 单元测试。
"""
from __future__ import annotations

import time

from chatroom.core.security import ClaimsVerifier
from tests.conftest import TEST_ISSUER, TEST_SECRET, make_token


class TestClaimsVerifier:
    """测试 JWT 校验。"""

    def setup_method(self) -> None:
        self.verifier = ClaimsVerifier(TEST_SECRET, TEST_ISSUER)

    def test_valid_token_returns_claims(self) -> None:
        claims = self.verifier.verify(make_token(sub="adv-9", user_type="advisor", user_name="Bob"))

        assert claims is not None
        assert claims.sub == "adv-9"
        assert claims.reading_id == "r1"
        assert claims.user_type == "advisor"
        assert claims.user_name == "Bob"

    def test_numeric_correlation_ids_become_strings(self) -> None:
        claims = self.verifier.verify(make_token())

        assert claims.client_id == "11"
        assert claims.advisor_id == "22"

    def test_unknown_claims_are_kept(self) -> None:
        claims = self.verifier.verify(make_token(jti="abc"))

        assert claims.model_extra["jti"] == "abc"

    def test_wrong_secret_rejected(self) -> None:
        assert self.verifier.verify(make_token(secret="other-secret")) is None

    def test_wrong_issuer_rejected(self) -> None:
        assert self.verifier.verify(make_token(iss="evil.example")) is None

    def test_expired_token_rejected(self) -> None:
        token = make_token(iat=int(time.time()) - 7200, exp=int(time.time()) - 3600)
        assert self.verifier.verify(token) is None

    def test_missing_required_claim_rejected(self) -> None:
        assert self.verifier.verify(make_token(reading_id=None)) is None

    def test_bad_user_type_rejected(self) -> None:
        assert self.verifier.verify(make_token(user_type="admin")) is None

    def test_garbage_rejected(self) -> None:
        assert self.verifier.verify("not-a-jwt") is None
