"""Tests for the interactive pfSense shell session state machine."""

from __future__ import annotations

import asyncio
import itertools
from concurrent.futures import ThreadPoolExecutor

import pytest

from app.config import Settings
from app.services.ssh_manager import (
    SHELL_OPTION,
    TIMEOUT_ERROR,
    EventKind,
    SessionEvent,
    SessionState,
    ShellSession,
    SSHSessionManager,
    marker_pattern,
)
from tests.mock_ssh import (
    COMMAND_OUTPUT,
    TEST_MARKER,
    FakeShellChannel,
    channel_factory_for,
    make_target,
)

COMMANDS = f"uname -a; uptime; printf '%s\\n' '{TEST_MARKER}'"


@pytest.fixture
def fast_settings():
    return Settings(
        fwmon_ssh_session_timeout_seconds=3.0,
        fwmon_ssh_menu_fallback_seconds=0.05,
        fwmon_ssh_command_delay_seconds=0.01,
        fwmon_ssh_drain_timeout_seconds=0.3,
        fwmon_ssh_close_grace_seconds=0.0,
    )


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="test-ssh")
    yield pool
    pool.shutdown(wait=False, cancel_futures=True)


def _session(channel, executor, cfg, **kwargs) -> ShellSession:
    return ShellSession(channel, COMMANDS, TEST_MARKER, executor=executor, cfg=cfg, **kwargs)


class TestMarkerPattern:
    def test_marker_on_own_line(self):
        assert marker_pattern(TEST_MARKER).search(f"output\r\n{TEST_MARKER}\r\n")

    def test_marker_at_end_of_buffer(self):
        assert marker_pattern(TEST_MARKER).search(f"output\n{TEST_MARKER}")

    def test_echoed_command_does_not_match(self):
        echo = f"/root: uname -a; printf '%s\\n' '{TEST_MARKER}'\r\n"
        assert not marker_pattern(TEST_MARKER).search(echo)

    def test_marker_is_literal(self):
        assert not marker_pattern("__END__a.b__").search("\n__END__axb__\n")


class TestShellSession:
    async def test_menu_prompt_then_marker(self, fast_settings, executor):
        channel = FakeShellChannel()
        session = _session(channel, executor, fast_settings)

        result = await session.run()

        assert result.success is True
        assert result.error is None
        assert channel.writes[0] == SHELL_OPTION
        assert channel.writes[1] == f"sh\r\n{COMMANDS}\r\nexit\r\n"
        assert len(channel.writes) == 2
        assert "hw.ncpu: 4" in result.transcript
        assert TEST_MARKER in result.transcript
        assert channel.closed.is_set()
        assert session.state is SessionState.DONE

    async def test_fallback_selects_shell_without_prompt(self, fast_settings, executor):
        channel = FakeShellChannel(banner="*** Welcome to pfSense ***\n")
        result = await _session(channel, executor, fast_settings).run()

        assert result.success is True
        assert channel.writes.count(SHELL_OPTION) == 1
        assert channel.writes[-1].startswith("sh\r\n")

    async def test_connect_failure(self, fast_settings, executor):
        channel = FakeShellChannel(open_error=ConnectionRefusedError("Connection refused"))
        session = _session(channel, executor, fast_settings)

        result = await session.run()

        assert result.success is False
        assert result.error == "Connection refused"
        assert channel.writes == []
        assert session.state is SessionState.FAILED

    async def test_hard_timeout(self, fast_settings, executor):
        channel = FakeShellChannel(open_delay=0.5)
        result = await _session(channel, executor, fast_settings, timeout=0.1).run()

        assert result.success is False
        assert result.error == TIMEOUT_ERROR
        assert channel.closed.is_set()

    async def test_remote_close_resolves_success(self, fast_settings, executor):
        channel = FakeShellChannel(emit_marker=False, close_after_output=True)
        result = await _session(channel, executor, fast_settings).run()

        assert result.success is True
        assert COMMAND_OUTPUT.splitlines()[0] in result.transcript

    async def test_drain_cap_without_marker(self, fast_settings, executor):
        channel = FakeShellChannel(emit_marker=False)
        result = await _session(channel, executor, fast_settings).run()

        # the marker inside the echoed command line must not end the session
        assert result.success is True
        assert result.elapsed_time >= fast_settings.fwmon_ssh_drain_timeout_seconds
        assert channel.closed.is_set()

    async def test_late_events_are_discarded(self, fast_settings, executor):
        session = _session(FakeShellChannel(), executor, fast_settings)
        result = await session.run()
        transcript = session.transcript

        session.handle(SessionEvent(EventKind.DATA, data="late output"))
        session.handle(SessionEvent(EventKind.TIMEOUT))

        assert session.transcript == transcript
        assert result.success is True
        assert session.state is SessionState.DONE


class TestResolutionGuard:
    TERMINAL = [
        SessionEvent(EventKind.DATA, data=f"hw.ncpu: 4\r\n{TEST_MARKER}\r\n"),
        SessionEvent(EventKind.TIMEOUT),
        SessionEvent(EventKind.STREAM_CLOSED),
        SessionEvent(EventKind.CONNECT_FAILED, error="Connection reset"),
    ]

    @pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
    async def test_first_terminal_event_wins(self, order, fast_settings, executor):
        session = _session(FakeShellChannel(), executor, fast_settings)
        # commands already on the wire, so the marker line counts
        session._commands_sent = True
        events = [self.TERMINAL[i] for i in order]

        session.handle(events[0])
        first = session.result
        for event in events[1:]:
            session.handle(event)

        assert session.resolved
        assert session.result is first
        expected_success = events[0].kind in (EventKind.DATA, EventKind.STREAM_CLOSED)
        assert first.success is expected_success
        assert (TEST_MARKER in session.transcript) is (events[0].kind is EventKind.DATA)


class TestSessionManager:
    async def test_run_session_uses_channel_factory(self, fast_settings):
        channel = FakeShellChannel()
        manager = SSHSessionManager(fast_settings, channel_factory=channel_factory_for(channel))
        try:
            result = await manager.run_session(make_target(), COMMANDS, TEST_MARKER)
        finally:
            manager.shutdown()

        assert result.success is True
        assert channel.opened.is_set()
        assert result.elapsed_time > 0

    async def test_more_sessions_than_workers(self, fast_settings):
        fast_settings.fwmon_ssh_max_workers = 2
        channels = [FakeShellChannel() for _ in range(5)]
        pending = iter(channels)
        manager = SSHSessionManager(fast_settings, channel_factory=lambda target, cfg: next(pending))
        try:
            results = await asyncio.wait_for(
                asyncio.gather(*(
                    manager.run_session(make_target(id=f"fw-{i}"), COMMANDS, TEST_MARKER)
                    for i in range(len(channels))
                )),
                timeout=5,
            )
        finally:
            manager.shutdown()

        for result, channel in zip(results, channels):
            assert result.success is True
            # command output only arrives once the bundle was written
            assert "hw.ncpu: 4" in result.transcript
            assert marker_pattern(TEST_MARKER).search(result.transcript)
            assert channel.closed.is_set()
