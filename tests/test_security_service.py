import pytest
from sqlalchemy import select

from verigate.models.account_lockout import AccountLockout
from verigate.models.security_log import SecurityLog, SecurityEventType
from verigate.models.verification_code import VerificationType
from verigate.schemas.security import SecurityEventCreate
from verigate.services.email_service import NotificationTemplate
from verigate.services.security_service import SecurityService
from verigate.utils.identifier import Identifier

from conftest import broken_session_factory

EMAIL = Identifier.by_email("a@x.com")
REGISTRATION = VerificationType.EMAIL_REGISTRATION


async def _fail(security, identifier=EMAIL, times=1):
    for _ in range(times):
        await security.record_verification_attempt(identifier, REGISTRATION, success=False, ip_address="10.0.0.1")


async def _lockout(session_factory, identifier=EMAIL):
    async with session_factory() as db:
        result = await db.execute(
            select(AccountLockout).where(
                AccountLockout.identifier_type == identifier.kind.value,
                AccountLockout.identifier == identifier.value,
            )
        )
        return result.scalar_one_or_none()


@pytest.mark.anyio
async def test_nine_failures_do_not_lock(security):
    await _fail(security, times=9)

    assert await security.get_failure_count(EMAIL) == 9
    assert await security.is_locked(EMAIL) is False


@pytest.mark.anyio
async def test_tenth_failure_locks_identifier(security, session_factory, notifier, clock):
    await _fail(security, times=10)

    assert await security.is_locked(EMAIL) is True

    lockout = await _lockout(session_factory)
    assert lockout.locked_at == clock()
    assert (lockout.expires_at - lockout.locked_at).total_seconds() == 3600
    assert "10 failed verification attempts" in lockout.reason

    locked_events = await security.get_events_by_type(SecurityEventType.ACCOUNT_LOCKED)
    assert len(locked_events) == 1
    assert locked_events[0].metadata["reason"] == lockout.reason

    assert notifier.templates_for("a@x.com") == [NotificationTemplate.ACCOUNT_LOCKOUT_NOTIFICATION]


@pytest.mark.anyio
async def test_failures_outside_window_are_not_counted(security, clock):
    await _fail(security, times=5)
    clock.advance(hours=1, seconds=1)
    await _fail(security, times=5)

    assert await security.get_failure_count(EMAIL) == 5
    assert await security.is_locked(EMAIL) is False


@pytest.mark.anyio
async def test_successes_do_not_count(security):
    await _fail(security, times=9)
    await security.record_verification_attempt(EMAIL, REGISTRATION, success=True)

    assert await security.is_locked(EMAIL) is False
    success = await security.get_events_by_identifier(EMAIL, SecurityEventType.VERIFICATION_SUCCESS)
    assert success[0].metadata == {"verification_type": "email_registration", "success": True}


@pytest.mark.anyio
async def test_lock_is_identifier_wide(security):
    user = Identifier.by_user("user-1")
    await _fail(security, identifier=user, times=10)

    assert await security.is_locked(user) is True
    assert await security.is_locked(EMAIL) is False


@pytest.mark.anyio
async def test_expired_lockout_is_lazily_released(security, session_factory, clock):
    await security.lock_account(EMAIL, "manual")
    clock.advance(hours=1)

    assert await security.is_locked(EMAIL) is False

    lockout = await _lockout(session_factory)
    assert lockout.unlocked is True
    assert lockout.unlocked_at == clock()

    unlocked = await security.get_events_by_type(SecurityEventType.ACCOUNT_UNLOCKED)
    assert len(unlocked) == 1
    assert unlocked[0].metadata["reason"] == "automatic unlock after expiry"


@pytest.mark.anyio
async def test_lock_account_is_noop_while_locked(security, session_factory, clock):
    assert await security.lock_account(EMAIL, "first") is True
    first = await _lockout(session_factory)

    clock.advance(minutes=30)
    assert await security.lock_account(EMAIL, "second") is False

    lockout = await _lockout(session_factory)
    assert lockout.reason == "first"
    assert lockout.expires_at == first.expires_at


@pytest.mark.anyio
async def test_relock_after_expiry(security, session_factory, clock):
    await security.lock_account(EMAIL, "first")
    clock.advance(hours=2)

    assert await security.lock_account(EMAIL, "second") is True

    lockout = await _lockout(session_factory)
    assert lockout.reason == "second"
    assert lockout.unlocked is False
    assert lockout.unlocked_at is None
    assert await security.is_locked(EMAIL) is True


@pytest.mark.anyio
async def test_unlock_account(security, session_factory):
    assert await security.unlock_account(EMAIL) is False

    await security.lock_account(EMAIL, "manual")
    assert await security.unlock_account(EMAIL) is True
    assert await security.unlock_account(EMAIL) is False

    assert await security.is_locked(EMAIL) is False
    assert len(await security.get_events_by_type(SecurityEventType.ACCOUNT_UNLOCKED)) == 1


@pytest.mark.anyio
async def test_log_event_defaults_metadata(security, session_factory):
    await security.log_event(SecurityEventCreate(event_type=SecurityEventType.PASSWORD_CHANGED, user_id="user-1"))

    async with session_factory() as db:
        log = (await db.execute(select(SecurityLog))).scalar_one()
    assert log.details == {}


@pytest.mark.anyio
async def test_statistics_and_recent_failures(security, clock):
    await security.log_event(SecurityEventCreate.for_identifier(EMAIL, SecurityEventType.VERIFICATION_SENT))
    await _fail(security, times=2)
    clock.advance(minutes=1)
    await _fail(security)
    await security.record_verification_attempt(EMAIL, REGISTRATION, success=True)
    await security.lock_account(EMAIL, "manual")

    stats = await security.get_statistics(EMAIL)
    assert stats.verifications_sent == 1
    assert stats.verifications_failed == 3
    assert stats.verifications_succeeded == 1
    assert stats.total_events == 6
    assert stats.account_locked is True
    assert stats.last_lockout_at == clock()

    recent = await security.get_recent_failures(EMAIL, limit=2)
    assert len(recent) == 2
    assert recent[0].created_at == clock()
    assert recent[0].ip_address == "10.0.0.1"

    limited = await security.get_events_by_identifier(EMAIL, limit=1)
    assert len(limited) == 1


@pytest.mark.anyio
async def test_reads_fail_closed_and_writes_are_swallowed(notifier, clock):
    security = SecurityService(broken_session_factory, notifier=notifier, clock=clock)

    await security.log_event(SecurityEventCreate.for_identifier(EMAIL, SecurityEventType.VERIFICATION_SENT))
    await security.record_verification_attempt(EMAIL, REGISTRATION, success=False)
    assert await security.lock_account(EMAIL, "manual") is False
    assert await security.unlock_account(EMAIL) is False

    assert await security.is_locked(EMAIL) is False
    assert await security.get_failure_count(EMAIL) == 0
    assert await security.get_events_by_identifier(EMAIL) == []
    assert await security.get_events_by_type(SecurityEventType.ACCOUNT_LOCKED) == []
    assert await security.get_recent_failures(EMAIL) == []

    stats = await security.get_statistics(EMAIL)
    assert stats.total_events == 0
    assert stats.account_locked is False
    assert notifier.sent == []
