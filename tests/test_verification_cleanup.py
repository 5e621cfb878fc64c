from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from verigate.models.account_lockout import AccountLockout
from verigate.models.pending_registration import PendingRegistration
from verigate.models.security_log import SecurityLog, SecurityEventType
from verigate.models.verification_code import VerificationCode, VerificationType
from verigate.services.verification_cleanup import (
    purge_expired_pending_registrations,
    purge_stale_codes,
    release_expired_lockouts,
)

from conftest import BrokenSession

NOW = datetime(2026, 1, 2, 2, 0, 0)


def _code(email: str, created_at: datetime) -> VerificationCode:
    return VerificationCode(
        email=email,
        type=VerificationType.EMAIL_REGISTRATION.value,
        code_hash="hash",
        attempts=0,
        max_attempts=3,
        expires_at=created_at + timedelta(minutes=15),
        verified=False,
        invalidated=False,
        created_at=created_at,
        updated_at=created_at,
    )


def _lockout(identifier: str, expires_at: datetime) -> AccountLockout:
    return AccountLockout(
        identifier_type="email",
        identifier=identifier,
        reason="test",
        locked_at=expires_at - timedelta(hours=1),
        expires_at=expires_at,
        unlocked=False,
    )


async def _add(session_factory, *records):
    async with session_factory() as db:
        db.add_all(records)
        await db.commit()


@pytest.mark.anyio
async def test_purge_stale_codes_uses_creation_time(session_factory):
    await _add(
        session_factory,
        _code("old@x.com", NOW - timedelta(hours=25)),
        _code("expired@x.com", NOW - timedelta(hours=2)),
        _code("fresh@x.com", NOW - timedelta(minutes=1)),
    )

    async with session_factory() as db:
        stats = await purge_stale_codes(db, now=NOW)
    assert stats["deleted"] == 1

    async with session_factory() as db:
        remaining = (await db.execute(select(VerificationCode.email))).scalars().all()
    assert sorted(remaining) == ["expired@x.com", "fresh@x.com"]


@pytest.mark.anyio
async def test_purge_stale_codes_dry_run(session_factory):
    await _add(session_factory, _code("old@x.com", NOW - timedelta(hours=30)))

    async with session_factory() as db:
        stats = await purge_stale_codes(db, now=NOW, dry_run=True)
    assert stats["dry_run"] is True
    assert stats["deleted"] == 1

    async with session_factory() as db:
        assert len((await db.execute(select(VerificationCode))).scalars().all()) == 1


@pytest.mark.anyio
async def test_release_expired_lockouts(session_factory):
    await _add(
        session_factory,
        _lockout("expired@x.com", NOW - timedelta(minutes=5)),
        _lockout("boundary@x.com", NOW),
        _lockout("active@x.com", NOW + timedelta(minutes=5)),
    )

    async with session_factory() as db:
        stats = await release_expired_lockouts(db, now=NOW)
    assert stats["unlocked"] == 2

    async with session_factory() as db:
        lockouts = {l.identifier: l for l in (await db.execute(select(AccountLockout))).scalars().all()}
        events = (await db.execute(select(SecurityLog))).scalars().all()

    assert lockouts["expired@x.com"].unlocked is True
    assert lockouts["boundary@x.com"].unlocked is True
    assert lockouts["active@x.com"].unlocked is False
    assert {e.email for e in events} == {"expired@x.com", "boundary@x.com"}
    assert all(e.event_type == SecurityEventType.ACCOUNT_UNLOCKED.value for e in events)
    assert all(e.details["source"] == "cleanup" for e in events)

    # 再次执行不会重复解锁
    async with session_factory() as db:
        assert (await release_expired_lockouts(db, now=NOW))["unlocked"] == 0


@pytest.mark.anyio
async def test_purge_expired_pending_registrations(session_factory):
    await _add(
        session_factory,
        PendingRegistration(
            email="stale@x.com", password_hash="h", name="Stale",
            created_at=NOW - timedelta(hours=25), expires_at=NOW - timedelta(hours=1),
        ),
        PendingRegistration(
            email="live@x.com", password_hash="h", name="Live",
            created_at=NOW - timedelta(hours=1), expires_at=NOW + timedelta(hours=23),
        ),
    )

    async with session_factory() as db:
        stats = await purge_expired_pending_registrations(db, now=NOW)
    assert stats["deleted"] == 1

    async with session_factory() as db:
        remaining = (await db.execute(select(PendingRegistration.email))).scalars().all()
    assert remaining == ["live@x.com"]


@pytest.mark.anyio
async def test_sweeps_swallow_storage_errors():
    db = BrokenSession()

    codes = await purge_stale_codes(db, now=NOW)
    lockouts = await release_expired_lockouts(db, now=NOW)
    pending = await purge_expired_pending_registrations(db, now=NOW)

    assert codes["deleted"] == 0 and "error" in codes
    assert lockouts["unlocked"] == 0 and "error" in lockouts
    assert pending["deleted"] == 0 and "error" in pending
