"""Racing requests against the memory store from real threads.

Each worker thread runs its own event loop; a barrier holds the racers until
all of them have read the row, so the conditional writes are what decide.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

from reportguard.service.errors import ServiceError, TokenReuseDetectedError
from reportguard.service.mfa import generate_totp
from reportguard.service.sessions import REASON_EXPIRED

UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"


def _hold_after_read(monkeypatch, targets, parties=2):
    """Make the first ``parties`` reads through ``targets`` wait for each other."""
    barrier = threading.Barrier(parties, timeout=5)
    lock = threading.Lock()
    seen = {"n": 0}

    for obj, name in targets:
        real = getattr(obj, name)

        def held(*args, _real=real, **kwargs):
            result = _real(*args, **kwargs)
            with lock:
                seen["n"] += 1
                wait = seen["n"] <= parties
            if wait:
                barrier.wait()
            return result

        monkeypatch.setattr(obj, name, held)


def _race(auditor, *steps):
    def run(step):
        async def main():
            try:
                return await step()
            except ServiceError as exc:
                return exc
            finally:
                await auditor.drain()

        return asyncio.run(main())

    with ThreadPoolExecutor(max_workers=len(steps)) as pool:
        futures = [pool.submit(run, step) for step in steps]
        return [future.result(timeout=10) for future in futures]


def test_store_rotation_has_one_winner(store, token_service, make_user, clock):
    user = make_user()
    pair = token_service.issue_pair(user)
    replacements = [
        token_service._new_refresh_record(user.id, ip_address=None, session_id=None) for _ in range(8)
    ]
    barrier = threading.Barrier(len(replacements), timeout=5)

    def rotate(record):
        barrier.wait()
        return store.rotate_refresh_token(
            pair.refresh_token, record, revoked_at=clock.now(), revoked_by_ip=None, reason="Token refresh"
        )

    with ThreadPoolExecutor(max_workers=len(replacements)) as pool:
        results = list(pool.map(rotate, replacements))

    assert results.count(True) == 1
    winner = replacements[results.index(True)]
    assert store.get_refresh_token(pair.refresh_token).replaced_by_token == winner.token
    assert [r.token for r in store.list_refresh_tokens(user_id=user.id)] == [winner.token]


def test_concurrent_refresh_loser_sees_reuse(store, token_service, make_user, auditor, audit_sink, monkeypatch):
    user = make_user()
    pair = token_service.issue_pair(user)
    _hold_after_read(monkeypatch, [(store, "get_refresh_token")])

    outcomes = _race(
        auditor,
        lambda: token_service.refresh(pair.refresh_token, ip_address="203.0.113.1"),
        lambda: token_service.refresh(pair.refresh_token, ip_address="203.0.113.2"),
    )

    errors = [o for o in outcomes if isinstance(o, Exception)]
    winners = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(winners) == 1
    assert len(errors) == 1 and isinstance(errors[0], TokenReuseDetectedError)
    _, winning_pair = winners[0]
    old = store.get_refresh_token(pair.refresh_token)
    assert old.replaced_by_token == winning_pair.refresh_token
    # reuse revokes the whole lineage, including the winner's fresh token
    assert store.list_refresh_tokens(user_id=user.id) == []
    assert len(audit_sink.find("REFRESH_TOKEN_REUSE_DETECTED")) == 1


def test_backup_code_is_consumed_once(store, mfa_manager, make_user, clock, auditor, monkeypatch):
    user = make_user()

    async def enroll():
        setup = await mfa_manager.generate_setup(user.id, user.username)
        await mfa_manager.enable(user.id, generate_totp(setup.secret, clock.now().timestamp()))
        return setup

    setup = asyncio.run(enroll())
    code = setup.backup_codes[0]
    _hold_after_read(monkeypatch, [(store, "get_mfa_enrollment")])

    outcomes = _race(
        auditor,
        lambda: mfa_manager.verify_backup_code(user.id, code),
        lambda: mfa_manager.verify_backup_code(user.id, code),
    )

    assert sorted(outcomes) == [False, True]
    assert mfa_manager.remaining_backup_codes(user.id) == 9


def test_cleanup_and_validation_expire_a_session_once(
    store, session_manager, make_user, clock, auditor, audit_sink, monkeypatch
):
    user = make_user()
    session = asyncio.run(
        session_manager.create_session(user.id, fingerprint=None, ip_address="203.0.113.1", user_agent=UA)
    )
    clock.advance(hours=9)
    _hold_after_read(monkeypatch, [(store, "get_session"), (store, "list_expired_active_sessions")])

    outcomes = _race(
        auditor,
        lambda: session_manager.validate_session(session.id, ip_address="203.0.113.1", user_agent=UA),
        session_manager.cleanup_expired_sessions,
    )

    assert outcomes[0] is None
    assert outcomes[1] in (0, 1)
    stored = store.get_session(session.id)
    assert stored.is_revoked
    assert stored.revocation_reason == REASON_EXPIRED
    assert len(audit_sink.find("SESSION_EXPIRED")) == 1
