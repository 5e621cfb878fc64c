import logging

import pytest
from sqlalchemy import select

from verigate.errors import Outcome, RecordNotFoundError
from verigate.models.pending_registration import PendingRegistration
from verigate.models.security_log import SecurityLog, SecurityEventType
from verigate.models.user import User
from verigate.models.verification_code import VerificationCode, VerificationType
from verigate.services.email_service import DeliveryStatus, NotificationTemplate
from verigate.services.verification_service import VerificationService
from verigate.utils.codes import CodeHasher
from verigate.utils.identifier import Identifier

from conftest import TEST_HASH_ROUNDS, broken_session_factory, create_user

EMAIL = "a@x.com"


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


async def _codes(session_factory, **filters):
    async with session_factory() as db:
        query = select(VerificationCode).order_by(VerificationCode.created_at)
        for name, value in filters.items():
            query = query.where(getattr(VerificationCode, name) == value)
        result = await db.execute(query)
        return result.scalars().all()


async def _events(session_factory, event_type: SecurityEventType):
    async with session_factory() as db:
        result = await db.execute(select(SecurityLog).where(SecurityLog.event_type == event_type.value))
        return result.scalars().all()


@pytest.mark.anyio
async def test_issue_registration_code_stages_pending_and_delivers(verification, session_factory, notifier):
    result = await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")

    assert result.success
    assert result.pending_id

    code = notifier.last_code(EMAIL)
    stored = await _codes(session_factory, email=EMAIL)
    assert len(stored) == 1
    assert stored[0].code_hash != code
    assert stored[0].type == VerificationType.EMAIL_REGISTRATION.value
    assert stored[0].max_attempts == 3
    assert (stored[0].expires_at - stored[0].created_at).total_seconds() == 15 * 60

    async with session_factory() as db:
        pending = (await db.execute(select(PendingRegistration))).scalar_one()
    assert pending.id == result.pending_id
    assert (pending.expires_at - pending.created_at).total_seconds() == 24 * 3600

    assert len(await _events(session_factory, SecurityEventType.VERIFICATION_SENT)) == 1


@pytest.mark.anyio
async def test_registration_refused_for_existing_account(verification, session_factory, notifier):
    await create_user(session_factory, email=EMAIL)

    result = await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")

    assert not result.success
    assert result.outcome is Outcome.EMAIL_IN_USE
    assert notifier.sent == []


@pytest.mark.anyio
async def test_valid_registration_code_promotes_pending(verification, session_factory, notifier):
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice", "+86 138 0000 0000")

    result = await verification.validate_registration_code(EMAIL, notifier.last_code(EMAIL))

    assert result.success
    assert result.outcome is Outcome.SUCCESS
    assert result.account.email == EMAIL
    assert result.account.email_verified is True

    async with session_factory() as db:
        user = (await db.execute(select(User).where(User.email == EMAIL))).scalar_one()
        pending = (await db.execute(select(PendingRegistration))).scalar_one_or_none()
    assert user.password_hash == "hashed-password"
    assert user.phone == "+86 138 0000 0000"
    assert pending is None

    stored = await _codes(session_factory, email=EMAIL)
    assert stored[0].verified is True
    assert stored[0].verified_at is not None


@pytest.mark.anyio
async def test_remaining_attempts_then_invalidated(verification, notifier):
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")
    code = notifier.last_code(EMAIL)

    first = await verification.validate_registration_code(EMAIL, _wrong(code))
    assert first.outcome is Outcome.INCORRECT
    assert first.remaining_attempts == 2

    second = await verification.validate_registration_code(EMAIL, _wrong(code))
    assert second.outcome is Outcome.INCORRECT
    assert second.remaining_attempts == 1

    third = await verification.validate_registration_code(EMAIL, _wrong(code))
    assert third.outcome is Outcome.INVALIDATED

    # 即使验证码正确，第四次也只能得到 invalidated
    fourth = await verification.validate_registration_code(EMAIL, code)
    assert fourth.outcome is Outcome.INVALIDATED
    assert not fourth.success


@pytest.mark.anyio
async def test_attempt_counter_is_persisted(verification, session_factory, notifier):
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")
    await verification.validate_registration_code(EMAIL, _wrong(notifier.last_code(EMAIL)))

    stored = await _codes(session_factory, email=EMAIL)
    assert stored[0].attempts == 1
    assert stored[0].invalidated is False


@pytest.mark.anyio
async def test_expired_code_is_rejected_without_counting(verification, session_factory, notifier, clock):
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")
    code = notifier.last_code(EMAIL)

    clock.advance(minutes=15, seconds=1)
    result = await verification.validate_registration_code(EMAIL, code)

    assert result.outcome is Outcome.EXPIRED
    stored = await _codes(session_factory, email=EMAIL)
    assert stored[0].attempts == 0
    assert len(await _events(session_factory, SecurityEventType.CODE_EXPIRED)) == 1


@pytest.mark.anyio
async def test_code_still_valid_at_exact_expiry(verification, notifier, clock):
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")
    code = notifier.last_code(EMAIL)

    clock.advance(minutes=15)
    result = await verification.validate_registration_code(EMAIL, code)

    assert result.success


@pytest.mark.anyio
async def test_resend_invalidates_previous_code(verification, session_factory, notifier, clock):
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")
    first_code = notifier.last_code(EMAIL)

    clock.advance(seconds=30)
    resent = await verification.resend_registration_code(EMAIL)
    assert resent.success
    second_code = notifier.last_code(EMAIL)

    stored = await _codes(session_factory, email=EMAIL)
    assert [c.invalidated for c in stored] == [True, False]

    if first_code != second_code:
        # 旧验证码被拒绝，且不消耗新验证码的尝试次数
        for _ in range(3):
            stale = await verification.validate_registration_code(EMAIL, first_code)
            assert not stale.success
            assert stale.outcome in (Outcome.NOT_FOUND, Outcome.INVALIDATED)

        active = await _codes(session_factory, email=EMAIL, invalidated=False)
        assert [c.attempts for c in active] == [0]

    result = await verification.validate_registration_code(EMAIL, second_code)
    assert result.success
    assert result.account.email_verified is True

    async with session_factory() as db:
        assert (await db.execute(select(PendingRegistration))).scalar_one_or_none() is None


@pytest.mark.anyio
async def test_unrelated_code_after_resend_counts_against_new_code(verification, notifier, clock):
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")
    first_code = notifier.last_code(EMAIL)
    clock.advance(seconds=30)
    await verification.resend_registration_code(EMAIL)
    second_code = notifier.last_code(EMAIL)

    unrelated = next(c for c in ("000000", "111111", "222222") if c not in (first_code, second_code))
    result = await verification.validate_registration_code(EMAIL, unrelated)

    assert result.outcome is Outcome.INCORRECT
    assert result.remaining_attempts == 2


@pytest.mark.anyio
async def test_resend_requires_pending_registration(verification, notifier):
    result = await verification.resend_registration_code("nobody@x.com")

    assert result.outcome is Outcome.USER_NOT_FOUND
    assert notifier.sent == []


@pytest.mark.anyio
async def test_email_change_flow(verification, session_factory, notifier):
    user = await create_user(session_factory, email="old@x.com")

    issued = await verification.issue_email_change_code(user.id, "new@x.com")
    assert issued.success
    assert notifier.templates_for("old@x.com") == [NotificationTemplate.EMAIL_CHANGE_NOTIFICATION]
    assert notifier.templates_for("new@x.com") == [NotificationTemplate.EMAIL_CHANGE_VERIFICATION]

    code = notifier.last_code("new@x.com")
    result = await verification.validate_email_change_code(user.id, code)
    assert result.success
    assert result.account.email == "new@x.com"

    stored = await _codes(session_factory, user_id=user.id)
    assert stored[0].verified is True
    assert stored[0].target == "new@x.com"

    changed = await _events(session_factory, SecurityEventType.EMAIL_CHANGED)
    assert changed[0].details == {"old_email": "old@x.com", "new_email": "new@x.com"}

    again = await verification.validate_email_change_code(user.id, code)
    assert again.outcome is Outcome.NOT_FOUND


@pytest.mark.anyio
async def test_email_change_ignores_old_address_notification_failure(verification, session_factory, notifier):
    user = await create_user(session_factory, email="old@x.com")
    notifier.status = DeliveryStatus.FAILED

    result = await verification.issue_email_change_code(user.id, "new@x.com")

    assert result.success
    assert len(await _codes(session_factory, user_id=user.id)) == 1


@pytest.mark.anyio
async def test_email_change_to_taken_address(verification, session_factory):
    user = await create_user(session_factory, email="old@x.com")
    await create_user(session_factory, email="taken@x.com")

    result = await verification.issue_email_change_code(user.id, "taken@x.com")

    assert result.outcome is Outcome.EMAIL_IN_USE


@pytest.mark.anyio
async def test_change_codes_require_existing_user(verification):
    assert (await verification.issue_email_change_code("missing", "new@x.com")).outcome is Outcome.USER_NOT_FOUND
    assert (await verification.issue_phone_change_code("missing", "+1 555 0100")).outcome is Outcome.USER_NOT_FOUND


@pytest.mark.anyio
async def test_phone_change_code_goes_to_current_email(verification, session_factory, notifier):
    user = await create_user(session_factory, email="owner@x.com", phone="+1 555 0100")

    issued = await verification.issue_phone_change_code(user.id, "+1 555 0199")
    assert issued.success
    assert notifier.templates_for("owner@x.com") == [NotificationTemplate.PHONE_CHANGE_VERIFICATION]

    result = await verification.validate_phone_change_code(user.id, notifier.last_code("owner@x.com"))
    assert result.success
    assert result.account.phone == "+1 555 0199"

    changed = await _events(session_factory, SecurityEventType.PHONE_CHANGED)
    assert changed[0].details["old_phone"] == "+1 555 0100"


@pytest.mark.anyio
async def test_change_codes_are_scoped_by_type(verification, session_factory, notifier):
    user = await create_user(session_factory, email="owner@x.com")
    await verification.issue_phone_change_code(user.id, "+1 555 0199")

    result = await verification.validate_email_change_code(user.id, notifier.last_code("owner@x.com"))

    assert result.outcome is Outcome.NOT_FOUND


@pytest.mark.anyio
async def test_undelivered_code_is_logged_outside_production(verification, notifier, caplog):
    notifier.status = DeliveryStatus.FAILED

    with caplog.at_level(logging.WARNING, logger="verigate.services.verification_service"):
        result = await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")

    assert result.success
    assert notifier.last_code(EMAIL) in caplog.text


@pytest.mark.anyio
async def test_undelivered_code_is_not_logged_in_production(session_factory, notifier, clock, caplog):
    service = VerificationService(
        session_factory, notifier, clock=clock, hasher=CodeHasher(TEST_HASH_ROUNDS), expose_codes_in_logs=False
    )
    notifier.status = DeliveryStatus.FAILED

    with caplog.at_level(logging.WARNING, logger="verigate.services.verification_service"):
        await service.issue_registration_code(EMAIL, "hashed-password", "Alice")

    assert notifier.last_code(EMAIL) not in caplog.text


@pytest.mark.anyio
async def test_notifier_exception_keeps_code(verification, session_factory, notifier):
    notifier.raise_error = True

    result = await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")

    assert result.success
    assert len(await _codes(session_factory, email=EMAIL)) == 1


@pytest.mark.anyio
async def test_storage_failure_becomes_result(notifier, clock):
    service = VerificationService(broken_session_factory, notifier, clock=clock, hasher=CodeHasher(TEST_HASH_ROUNDS))

    issued = await service.issue_registration_code(EMAIL, "hashed-password", "Alice")
    validated = await service.validate_registration_code(EMAIL, "123456")
    changed = await service.issue_email_change_code("user-1", "new@x.com")

    assert issued.outcome is Outcome.STORAGE_FAILURE
    assert validated.outcome is Outcome.STORAGE_FAILURE
    assert changed.outcome is Outcome.STORAGE_FAILURE
    assert notifier.sent == []


@pytest.mark.anyio
async def test_audit_queries(verification, session_factory, notifier, clock):
    identifier = Identifier.by_email(EMAIL)
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")
    clock.advance(minutes=20)
    await verification.resend_registration_code(EMAIL)

    codes = await verification.get_codes(identifier)
    assert len(codes) == 2
    assert codes[0].created_at > codes[1].created_at
    assert codes[1].invalidated is True

    expired = await verification.get_expired_codes(identifier)
    assert [c.id for c in expired] == [codes[1].id]

    stats = await verification.get_code_statistics(identifier)
    assert stats.total == 2
    assert stats.invalidated == 1
    assert stats.pending == 1
    assert stats.verified == 0


@pytest.mark.anyio
async def test_audit_queries_fail_closed(notifier, clock):
    service = VerificationService(broken_session_factory, notifier, clock=clock)
    identifier = Identifier.by_email(EMAIL)

    assert await service.get_codes(identifier) == []
    assert await service.get_expired_codes() == []
    assert (await service.get_code_statistics(identifier)).total == 0


@pytest.mark.anyio
async def test_invalidate_code_by_id(verification, session_factory, notifier):
    await verification.issue_registration_code(EMAIL, "hashed-password", "Alice")
    stored = await _codes(session_factory, email=EMAIL)

    await verification.invalidate_code(stored[0].id)
    result = await verification.validate_registration_code(EMAIL, notifier.last_code(EMAIL))

    assert result.outcome is Outcome.INVALIDATED
    with pytest.raises(RecordNotFoundError):
        await verification.invalidate_code("missing-id")


@pytest.mark.anyio
async def test_code_primitives(verification, clock):
    code = verification.generate_code()
    code_hash = await verification.hash_code(code)

    assert code_hash != code
    assert await verification.verify_code_hash(code, code_hash) is True
    assert await verification.verify_code_hash(_wrong(code), code_hash) is False
    assert await verification.verify_code_hash(code, "not-a-bcrypt-hash") is False

    deadline = clock()
    assert verification.is_code_expired(deadline) is False
    clock.advance(seconds=1)
    assert verification.is_code_expired(deadline) is True
