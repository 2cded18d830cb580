import asyncio

from reportguard.service import cleanup_worker
from reportguard.service.cleanup_worker import LOCK_NAME, CleanupWorker


async def _seed(session_manager, token_service, make_user, clock):
    user = make_user()
    session = await session_manager.create_session(
        user.id, fingerprint="fp", ip_address="203.0.113.1", user_agent="curl/8"
    )
    token_service.issue_pair(user, session_id=session.id)
    return user, session


class TestRunOnce:
    async def test_sweeps_sessions_and_tokens(self, session_manager, token_service, make_user, clock, store):
        user, session = await _seed(session_manager, token_service, make_user, clock)
        worker = CleanupWorker(session_manager, token_service, interval_seconds=60)

        clock.advance(days=40)
        result = await worker.run_once()

        assert result == {"expired_sessions": 1, "purged_tokens": 1, "skipped": 0}
        assert store.get_session(session.id).is_revoked
        assert store.list_refresh_tokens(user_id=user.id, include_revoked=True) == []

    async def test_second_run_is_a_noop(self, session_manager, token_service, make_user, clock):
        await _seed(session_manager, token_service, make_user, clock)
        worker = CleanupWorker(session_manager, token_service, interval_seconds=60)
        clock.advance(hours=9)

        first = await worker.run_once()
        second = await worker.run_once()

        assert first["expired_sessions"] == 1
        assert second["expired_sessions"] == 0

    async def test_skips_when_lock_held_elsewhere(self, session_manager, token_service, make_user, clock, cache):
        await _seed(session_manager, token_service, make_user, clock)
        worker = CleanupWorker(session_manager, token_service, interval_seconds=60, cache=cache)
        held = await cache.acquire_lock(LOCK_NAME, 60)
        clock.advance(hours=9)

        assert (await worker.run_once())["skipped"] == 1

        await cache.release_lock(LOCK_NAME, held)
        assert (await worker.run_once())["expired_sessions"] == 1
        assert cache.locks == {}


class TestLifecycle:
    async def test_start_and_stop_promptly(self, session_manager, token_service):
        worker = CleanupWorker(session_manager, token_service, interval_seconds=3600)

        await worker.start()
        await asyncio.sleep(0)
        assert worker.running

        await asyncio.wait_for(worker.stop(), timeout=1)
        assert not worker.running

    async def test_loop_survives_errors(self, session_manager, token_service, monkeypatch):
        worker = CleanupWorker(session_manager, token_service, interval_seconds=3600)
        calls = {"n": 0}

        async def failing():
            calls["n"] += 1
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(session_manager, "cleanup_expired_sessions", failing)
        await worker.start()
        await asyncio.sleep(0.01)
        await worker.stop()

        assert calls["n"] == 1

    async def test_first_failure_retries_before_next_interval(self, session_manager, token_service, monkeypatch):
        monkeypatch.setattr(cleanup_worker, "INITIAL_BACKOFF_SECONDS", 0.01)
        worker = CleanupWorker(session_manager, token_service, interval_seconds=3600)
        calls = {"n": 0}

        async def failing():
            calls["n"] += 1
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(session_manager, "cleanup_expired_sessions", failing)
        await worker.start()
        await asyncio.sleep(0.2)
        await worker.stop()

        assert calls["n"] >= 2


class TestBackoff:
    def test_starts_short_and_doubles(self, session_manager, token_service):
        worker = CleanupWorker(session_manager, token_service, interval_seconds=3600)

        assert worker._backoff_delay(1) == 30
        assert worker._backoff_delay(2) == 60
        assert worker._backoff_delay(3) == 120

    def test_capped_at_interval(self, session_manager, token_service):
        worker = CleanupWorker(session_manager, token_service, interval_seconds=90)

        assert worker._backoff_delay(1) == 30
        assert worker._backoff_delay(3) == 90
        assert worker._backoff_delay(20) == 90
