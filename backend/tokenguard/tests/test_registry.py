from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from tokenguard.core.errors import StorageUnavailable
from tokenguard.core.security import hash_token
from tokenguard.models import RefreshToken, TokenStatus
from tokenguard.services.registry import RefreshTokenRegistry
from tokenguard.services.retention import sweep_refresh_tokens
from tokenguard.tests.conftest import REFRESH_TTL


def test_compare_and_set_only_moves_from_expected_status(services, user_id):
    tokens = services.issuer.issue(user_id)
    registry = services.registry

    assert registry.compare_and_set_status(tokens.token_id, TokenStatus.ACTIVE, TokenStatus.ROTATED)
    registry.commit()
    assert not registry.compare_and_set_status(tokens.token_id, TokenStatus.ACTIVE, TokenStatus.ROTATED)
    registry.rollback()
    assert registry.get(tokens.token_id).status == TokenStatus.ROTATED


def test_secret_is_stored_hashed(services, user_id):
    tokens = services.issuer.issue(user_id)

    record = services.registry.get(tokens.token_id)

    assert record.token_hash == hash_token(tokens.refresh_token)
    assert services.db.query(RefreshToken).filter(RefreshToken.token_hash == tokens.refresh_token).first() is None


def test_second_active_token_in_family_is_rejected(services, user_id):
    tokens = services.issuer.issue(user_id)

    services.issuer.mint(user_id, tokens.family_id)
    with pytest.raises(IntegrityError):
        services.db.commit()
    services.db.rollback()


def test_token_cannot_have_two_successors(services, user_id):
    tokens = services.issuer.issue(user_id)
    services.rotation.rotate(tokens.refresh_token)
    services.registry.revoke_family(tokens.family_id)

    services.issuer.mint(user_id, tokens.family_id, previous_token_id=tokens.token_id)
    with pytest.raises(IntegrityError):
        services.db.commit()
    services.db.rollback()


def test_revoke_user_covers_all_families(services, user_id):
    first = services.issuer.issue(user_id)
    second = services.issuer.issue(user_id)

    assert services.registry.revoke_user(user_id) >= 2

    assert services.registry.get(first.token_id).status == TokenStatus.REVOKED
    assert services.registry.get(second.token_id).status == TokenStatus.REVOKED
    assert services.registry.get(first.token_id).revoked_at is not None


def test_sweep_removes_only_records_past_grace(services, user_id):
    stale = services.issuer.issue(user_id)
    services.clock.advance(days=3)
    recent = services.issuer.issue(user_id)

    services.clock.advance(days=REFRESH_TTL.days, hours=-1)
    sweep_refresh_tokens(services.db, now=services.clock(), grace=timedelta(days=1), include_revoked=False)

    assert services.registry.get(stale.token_id) is None
    assert services.registry.get(recent.token_id) is not None


def test_sweep_can_purge_revoked_records(services, user_id):
    tokens = services.issuer.issue(user_id)
    rotated = services.rotation.rotate(tokens.refresh_token)
    services.registry.revoke_family(tokens.family_id)

    sweep_refresh_tokens(services.db, now=services.clock(), grace=timedelta(hours=24), include_revoked=True)

    assert services.registry.get(tokens.token_id) is None
    assert services.registry.get(rotated.token_id) is None


def test_sweep_detaches_surviving_successors(services, user_id):
    tokens = services.issuer.issue(user_id)
    services.clock.advance(days=REFRESH_TTL.days - 1)
    rotated = services.rotation.rotate(tokens.refresh_token)

    services.clock.advance(days=2)
    sweep_refresh_tokens(services.db, now=services.clock(), grace=timedelta(hours=1), include_revoked=False)

    assert services.registry.get(tokens.token_id) is None
    assert services.registry.get(rotated.token_id).previous_token_id is None


def test_transient_errors_are_retried(db):
    registry = RefreshTokenRegistry(db, retry_attempts=3, retry_delay_seconds=0)
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))
        return "ok"

    assert registry._run(flaky, "Flaky read") == "ok"
    assert len(calls) == 3


def test_retries_are_bounded(db):
    registry = RefreshTokenRegistry(db, retry_attempts=2, retry_delay_seconds=0)

    def down():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    with pytest.raises(StorageUnavailable):
        registry._run(down, "Read")
