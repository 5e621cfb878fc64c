import pytest

from verigate.tasks import base, cleanup_tasks


class DummySession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


@pytest.fixture(autouse=True)
def dummy_sessions(monkeypatch):
    monkeypatch.setattr("verigate.database.AsyncSessionLocal", DummySession)


def test_run_async_calls_coroutine_function():
    async def add(a, b):
        return a + b

    assert base.run_async(add, 1, 2) == 3


def test_run_sweep_records_success():
    async def sweep(db):
        assert isinstance(db, DummySession)
        return {"deleted": 3, "dry_run": False}

    result = cleanup_tasks._run_sweep("task-1", "cleanup_verification_codes", sweep)

    assert result["status"] == "success"
    assert result["result"]["deleted"] == 3


def test_run_sweep_reports_swallowed_errors():
    async def sweep(db):
        return {"deleted": 0, "error": "database unavailable"}

    result = cleanup_tasks._run_sweep("task-2", "cleanup_verification_codes", sweep)

    assert result["status"] == "failed"
    assert result["error"] == "database unavailable"


def test_run_sweep_reraises_unexpected_errors():
    async def sweep(db):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        cleanup_tasks._run_sweep("task-3", "cleanup_verification_codes", sweep)


def test_release_task_passes_dry_run(monkeypatch):
    calls = []

    async def fake_release(db, dry_run=False):
        calls.append(dry_run)
        return {"unlocked": 2, "dry_run": dry_run}

    monkeypatch.setattr("verigate.services.verification_cleanup.release_expired_lockouts", fake_release)

    result = cleanup_tasks.release_expired_lockouts_task.run(dry_run=True)

    assert calls == [True]
    assert result["result"] == {"unlocked": 2, "dry_run": True}
