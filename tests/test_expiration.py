"""Tests for the session expiration handler."""

import asyncio

import pytest

from sessionlife.service.activity import ActivityAggregator
from sessionlife.service.errors import TransientError
from sessionlife.service.expiration import SessionExpirationHandler
from sessionlife.service.inactivity import InactivityMonitor
from sessionlife.service.keepalive import KeepAliveScheduler
from sessionlife.storage.credentials import MemoryCredentialStore
from sessionlife.storage.errors import CredentialStoreError
from sessionlife.storage.models import Phase, SessionEndReason


class FailingEraseStore(MemoryCredentialStore):
    def _erase(self):
        raise CredentialStoreError("disk gone", {"path": "/nowhere"})


class Harness:
    def __init__(self, clock, store, backend, navigator, surface, *, logout_timeout=5.0):
        self.clock = clock
        self.store = store
        self.backend = backend
        self.navigator = navigator
        self.onboarding_cleared = 0
        self.activity = ActivityAggregator(clock, surface, debounce=1.0)
        self.keepalive = KeepAliveScheduler(
            clock, store, backend, self.activity, interval=120, initial_delay=1.0
        )
        self.monitor = InactivityMonitor(
            clock, self.activity, inactivity_timeout=300, warning_window=60
        )
        self.handler = SessionExpirationHandler(
            clock,
            store,
            backend,
            navigator,
            keepalive=self.keepalive,
            monitor=self.monitor,
            clear_onboarding=self._clear_onboarding,
            logout_timeout=logout_timeout,
        )

    def _clear_onboarding(self):
        self.onboarding_cleared += 1

    def start(self, credential):
        self.activity.enable()
        self.monitor.start()
        self.keepalive.start(credential)


@pytest.fixture
def harness(clock, store, backend, navigator, surface):
    return Harness(clock, store, backend, navigator, surface)


class TestExpire:
    @pytest.mark.asyncio
    async def test_local_cleanup_then_remote_logout_then_redirect(self, clock, harness, credential):
        harness.start(credential)
        await clock.advance(5)
        renewed = harness.store.current()
        observed = []

        def _on_end(reason):
            observed.append(
                (reason, harness.store.current(), len(harness.navigator.redirects),
                 len(harness.backend.invalidated))
            )

        harness.handler.subscribe(_on_end)
        task = harness.handler.expire(SessionEndReason.INACTIVITY)

        assert not harness.keepalive.running
        assert not harness.monitor.running
        assert harness.monitor.current_phase().kind is Phase.EXPIRED
        assert harness.store.current() is None
        assert harness.onboarding_cleared == 1
        assert observed == [(SessionEndReason.INACTIVITY, None, 0, 0)]

        await task
        assert harness.backend.invalidated == [renewed]
        assert harness.navigator.redirects == [SessionEndReason.INACTIVITY]
        assert clock.pending_timers == 0

    @pytest.mark.asyncio
    async def test_second_expire_is_a_no_op(self, harness, credential):
        harness.start(credential)
        ended = []
        harness.handler.subscribe(ended.append)

        first = harness.handler.expire(SessionEndReason.REJECTED)
        second = harness.handler.expire(SessionEndReason.INACTIVITY)
        await first

        assert second is None
        assert ended == [SessionEndReason.REJECTED]
        assert harness.handler.reason is SessionEndReason.REJECTED
        assert harness.navigator.redirects == [SessionEndReason.REJECTED]
        assert len(harness.backend.invalidated) == 1

    @pytest.mark.asyncio
    async def test_remote_logout_failure_is_not_fatal(self, harness, credential):
        harness.backend.invalidate_error = TransientError("logout endpoint down")
        harness.start(credential)

        await harness.handler.expire(SessionEndReason.LOGOUT)
        assert harness.store.current() is None
        assert harness.navigator.redirects == [SessionEndReason.LOGOUT]

    @pytest.mark.asyncio
    async def test_remote_logout_is_bounded_by_timeout(self, clock, store, backend, navigator, surface, credential):
        harness = Harness(clock, store, backend, navigator, surface, logout_timeout=0.01)
        backend.invalidate_gate = asyncio.Event()
        harness.start(credential)

        await asyncio.wait_for(harness.handler.expire(SessionEndReason.LOGOUT), timeout=1)
        assert navigator.redirects == [SessionEndReason.LOGOUT]
        assert store.current() is None

    @pytest.mark.asyncio
    async def test_store_failure_still_redirects(self, clock, backend, navigator, surface, credential):
        store = FailingEraseStore()
        harness = Harness(clock, store, backend, navigator, surface)
        harness.start(credential)

        await harness.handler.expire(SessionEndReason.REJECTED)
        assert store.current() is None
        assert navigator.redirects == [SessionEndReason.REJECTED]

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_block_cleanup(self, harness, credential):
        harness.start(credential)
        seen = []

        def _broken(reason):
            raise RuntimeError("consumer bug")

        harness.handler.subscribe(_broken)
        harness.handler.subscribe(seen.append)
        await harness.handler.expire(SessionEndReason.INACTIVITY)

        assert seen == [SessionEndReason.INACTIVITY]
        assert harness.navigator.redirects == [SessionEndReason.INACTIVITY]

    @pytest.mark.asyncio
    async def test_expire_without_credential_skips_remote_logout(self, harness):
        await harness.handler.expire(SessionEndReason.INVALID_ON_RESUME)
        assert harness.backend.invalidated == []
        assert harness.navigator.redirects == [SessionEndReason.INVALID_ON_RESUME]

    @pytest.mark.asyncio
    async def test_reset_rearms_for_next_session(self, harness, credential):
        harness.start(credential)
        await harness.handler.expire(SessionEndReason.LOGOUT)
        assert harness.handler.expiring

        harness.handler.reset()
        assert not harness.handler.expiring
        assert harness.handler.reason is None
        harness.store.replace(credential)
        task = harness.handler.expire(SessionEndReason.INACTIVITY)
        assert task is not None
        await task
        assert harness.navigator.redirects == [SessionEndReason.LOGOUT, SessionEndReason.INACTIVITY]

    @pytest.mark.asyncio
    async def test_reset_during_pending_logout_skips_stale_redirect(self, clock, harness, credential):
        harness.backend.invalidate_gate = asyncio.Event()
        harness.start(credential)
        task = harness.handler.expire(SessionEndReason.INACTIVITY)
        await clock.settle()
        assert harness.backend.invalidated == [credential]

        # A new login re-arms the handler before the old logout call returns
        harness.handler.reset()
        harness.backend.invalidate_gate.set()
        await task

        assert harness.navigator.redirects == []
        assert not harness.handler.expiring

    @pytest.mark.asyncio
    async def test_unsubscribe_removes_listener(self, harness, credential):
        seen = []
        unsubscribe = harness.handler.subscribe(seen.append)
        unsubscribe()
        harness.start(credential)
        await harness.handler.expire(SessionEndReason.LOGOUT)
        assert seen == []
