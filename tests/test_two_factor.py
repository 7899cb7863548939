"""One-time login codes: single use, expiry, overwrite, lockout and races."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

from conftest import RecordingNotifier

from coopapp.config import get_settings
from coopapp.service.two_factor import TwoFactorChallengeManager
from coopapp.storage.memory import MemoryStore
from coopapp.storage.models import User, new_id


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _setup(**settings_overrides):
    store = MemoryStore(persist=False)
    org = store.create_organization("acme")
    user = store.create_user(
        User(id=new_id(), tenant_id=org.id, email="member@acme.test", is_active=True)
    )
    settings = get_settings().model_copy(update=settings_overrides)
    clock = FakeClock()
    notifier = RecordingNotifier()
    manager = TwoFactorChallengeManager(store, notifier, None, settings, clock=clock)
    return store, org, user, manager, notifier, clock


class TestIssue:
    async def test_code_is_six_digits_and_delivered(self):
        store, org, user, manager, notifier, clock = _setup()
        code = await manager.issue_challenge(user, org)
        assert len(code) == 6 and code.isdigit()
        assert notifier.last_code(user.id) == code
        stored = store.get_user(user.id)
        assert stored.code == code
        assert stored.code_expires_at == clock.now + timedelta(minutes=5)

    async def test_new_challenge_overwrites_previous(self):
        store, org, user, manager, notifier, clock = _setup()
        first = await manager.issue_challenge(user, org)
        second = await manager.issue_challenge(user, org)
        if first == second:
            second = await manager.issue_challenge(user, org)
        if first != second:
            assert await manager.verify_and_consume(user, first, session_token="ref") is None
        assert await manager.verify_and_consume(user, second, session_token="ref") is not None

    def test_generate_code_pads_with_zeros(self):
        for _ in range(50):
            code = TwoFactorChallengeManager.generate_code()
            assert len(code) == 6


class TestConsume:
    async def test_success_stores_reference_and_clears_code(self):
        store, org, user, manager, _notifier, clock = _setup()
        code = await manager.issue_challenge(user, org)
        consumed = await manager.verify_and_consume(user, code, session_token="ref-1")
        assert consumed is not None
        assert consumed.session_token == "ref-1"
        assert consumed.code is None and consumed.code_expires_at is None
        assert consumed.last_login_at == clock.now

    async def test_code_is_single_use(self):
        _store, org, user, manager, _notifier, _clock = _setup()
        code = await manager.issue_challenge(user, org)
        assert await manager.verify_and_consume(user, code, session_token="a") is not None
        assert await manager.verify_and_consume(user, code, session_token="b") is None

    async def test_code_fails_at_expiry_instant(self):
        _store, org, user, manager, _notifier, clock = _setup()
        code = await manager.issue_challenge(user, org)
        clock.advance(minutes=5)
        assert await manager.verify_and_consume(user, code, session_token="a") is None

    async def test_code_works_just_before_expiry(self):
        _store, org, user, manager, _notifier, clock = _setup()
        code = await manager.issue_challenge(user, org)
        clock.advance(minutes=4, seconds=59)
        assert await manager.verify_and_consume(user, code, session_token="a") is not None

    async def test_wrong_code_keeps_challenge_alive(self):
        store, org, user, manager, _notifier, _clock = _setup()
        code = await manager.issue_challenge(user, org)
        wrong = "000000" if code != "000000" else "111111"
        assert await manager.verify_and_consume(user, wrong, session_token="a") is None
        assert store.get_user(user.id).code == code
        assert await manager.verify_and_consume(user, code, session_token="a") is not None


class TestLockout:
    async def test_repeated_failures_discard_code_and_lock(self):
        store, org, user, manager, _notifier, clock = _setup(
            two_factor_max_attempts=3, two_factor_lockout_seconds=60
        )
        code = await manager.issue_challenge(user, org)
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(3):
            assert await manager.verify_and_consume(user, wrong, session_token="a") is None
        assert store.get_user(user.id).code is None
        # Even the right code is refused while locked out
        assert await manager.verify_and_consume(user, code, session_token="a") is None

    async def test_lockout_expires(self):
        store, org, user, manager, _notifier, clock = _setup(
            two_factor_max_attempts=2, two_factor_lockout_seconds=60
        )
        await manager.issue_challenge(user, org)
        for _ in range(2):
            await manager.verify_and_consume(user, "999999", session_token="a")
        assert await manager._is_locked_out(user.id)
        clock.advance(seconds=61)
        assert not await manager._is_locked_out(user.id)

    async def test_fresh_challenge_clears_lockout(self):
        _store, org, user, manager, _notifier, _clock = _setup(two_factor_max_attempts=1)
        await manager.issue_challenge(user, org)
        await manager.verify_and_consume(user, "999999", session_token="a")
        assert await manager._is_locked_out(user.id)
        code = await manager.issue_challenge(user, org)
        assert await manager.verify_and_consume(user, code, session_token="a") is not None


class TestConcurrentConsumption:
    def test_only_one_racer_wins(self):
        store, org, user, manager, _notifier, clock = _setup()
        code = asyncio.run(manager.issue_challenge(user, org))
        results = []
        barrier = threading.Barrier(8)

        def _race(i):
            barrier.wait()
            results.append(
                store.consume_two_factor_code(
                    user.id, code, now=clock.now, session_token=f"ref-{i}"
                )
            )

        threads = [threading.Thread(target=_race, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert store.get_user(user.id).session_token == winners[0].session_token
