import json
from datetime import timedelta

import pytest
from jose import jwt
from jose.utils import base64url_encode

from tokenguard.core.config import PLACEHOLDER_SECRET
from tokenguard.core.errors import InvalidToken, SigningKeyError, TokenExpired
from tokenguard.core.security import SigningKeyProvider
from tokenguard.services.verifier import AccessVerifier
from tokenguard.tests.conftest import ACCESS_TTL, AUDIENCE, ISSUER, build_services


def test_verify_accepts_fresh_token(services, user_id):
    tokens = services.issuer.issue(user_id)

    claims = services.verifier.verify(tokens.access_token)

    assert claims.user_id == user_id
    assert claims.family_id == tokens.family_id
    assert claims.expires_at == services.clock() + ACCESS_TTL
    assert claims.issued_at == services.clock()


def test_verify_accepts_one_millisecond_before_expiry(services, user_id):
    tokens = services.issuer.issue(user_id)
    services.clock.advance(seconds=ACCESS_TTL.total_seconds(), milliseconds=-1)

    assert services.verifier.verify(tokens.access_token).user_id == user_id


def test_verify_rejects_expired_token(services, user_id):
    tokens = services.issuer.issue(user_id)
    services.clock.advance(seconds=ACCESS_TTL.total_seconds())

    with pytest.raises(TokenExpired):
        services.verifier.verify(tokens.access_token)


def test_leeway_is_explicit_and_bounded(db, clock, user_id):
    lenient = build_services(db, clock, leeway_seconds=5)
    tokens = lenient.issuer.issue(user_id)

    clock.advance(seconds=ACCESS_TTL.total_seconds() + 4)
    lenient.verifier.verify(tokens.access_token)

    clock.advance(seconds=1)
    with pytest.raises(TokenExpired):
        lenient.verifier.verify(tokens.access_token)


def test_verify_does_not_consult_storage(services, user_id):
    tokens = services.issuer.issue(user_id)
    services.rotation.revoke_family(tokens.family_id)

    # already issued access tokens live until they expire
    assert services.verifier.verify(tokens.access_token).family_id == tokens.family_id


def _unsigned(header: dict, claims: dict, signature: str = "") -> str:
    return ".".join(
        [
            base64url_encode(json.dumps(header).encode()).decode(),
            base64url_encode(json.dumps(claims).encode()).decode(),
            signature,
        ]
    )


@pytest.mark.parametrize(
    "token",
    [
        "",
        "garbage",
        "a.b.c",
        "eyJhbGciOiJIUzI1NiJ9.e30.",
        _unsigned({"alg": "HS256", "kid": []}, {}, "c2ln"),
        _unsigned({"alg": "HS256", "kid": {"nested": 1}}, {}, "c2ln"),
    ],
)
def test_verify_rejects_malformed_input(services, token):
    with pytest.raises(InvalidToken):
        services.verifier.verify(token)


def test_verify_rejects_foreign_signature(services, user_id):
    tokens = services.issuer.issue(user_id)
    other = SigningKeyProvider("someone-elses-secret", verification_keys=["someone-elses-secret"])
    verifier = AccessVerifier(other, issuer=ISSUER, audience=AUDIENCE, clock=services.clock)

    with pytest.raises(InvalidToken):
        verifier.verify(tokens.access_token)


def test_verify_rejects_unsigned_token(services, user_id):
    claims = jwt.get_unverified_claims(services.issuer.issue(user_id).access_token)
    forged = _unsigned({"alg": "none", "typ": "JWT"}, claims)

    with pytest.raises(InvalidToken):
        services.verifier.verify(forged)


def test_verify_rejects_wrong_audience_and_type(services, user_id):
    tokens = services.issuer.issue(user_id)
    elsewhere = AccessVerifier(services.signer, issuer=ISSUER, audience="another-service", clock=services.clock)
    with pytest.raises(InvalidToken):
        elsewhere.verify(tokens.access_token)

    claims = jwt.get_unverified_claims(tokens.access_token)
    claims["type"] = "refresh"
    with pytest.raises(InvalidToken):
        services.verifier.verify(services.signer.sign(claims))


def test_previous_key_still_verifies_after_rollover(db, clock, user_id):
    old = SigningKeyProvider("old-secret", verification_keys=["old-secret"])
    tokens = build_services(db, clock, signer=old).issuer.issue(user_id)

    rolled = SigningKeyProvider("new-secret", verification_keys=["new-secret", "old-secret"])
    verifier = AccessVerifier(rolled, issuer=ISSUER, audience=AUDIENCE, clock=clock)

    assert verifier.verify(tokens.access_token).user_id == user_id
    assert jwt.get_unverified_header(rolled.sign({"sub": "1"}))["kid"] == rolled.key_id


def test_signing_key_checks_abort_startup():
    with pytest.raises(SigningKeyError):
        SigningKeyProvider("").ensure_ready()
    with pytest.raises(SigningKeyError):
        SigningKeyProvider(PLACEHOLDER_SECRET, verification_keys=[PLACEHOLDER_SECRET]).ensure_ready(production=True)
    SigningKeyProvider(PLACEHOLDER_SECRET, verification_keys=[PLACEHOLDER_SECRET]).ensure_ready()


def test_issued_timestamps_keep_millisecond_precision(services, user_id):
    services.clock.advance(milliseconds=250)
    tokens = services.issuer.issue(user_id)

    claims = jwt.get_unverified_claims(tokens.access_token)

    assert claims["exp"] - claims["iat"] == pytest.approx(ACCESS_TTL.total_seconds())
    assert claims["iat"] == pytest.approx((services.clock()).timestamp())
    assert services.verifier.verify(tokens.access_token).issued_at - services.clock() < timedelta(milliseconds=1)
