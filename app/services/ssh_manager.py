"""Interactive SSH sessions against the pfSense console menu.

Each session is a small state machine fed by an :class:`asyncio.Queue`.
Short blocking transport calls (scrapli ``Driver`` over paramiko: connect,
write, close) run inside a shared thread pool so the FastAPI event loop is
never blocked.  The reader, which sits in ``recv`` for the whole session,
gets a dedicated thread so it can never starve that pool.  Worker threads
hand their results back with ``loop.call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import re
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from scrapli.driver import Driver

from app.config import Settings, settings
from app.models.commands import SessionResult
from app.models.firewall import ConnectionTarget
from app.utils.logging import get_logger

log = get_logger(__name__)

MENU_PROMPT = "Enter an option:"
SHELL_OPTION = "8\r\n"
TIMEOUT_ERROR = "SSH timeout"


class ShellChannel(Protocol):
    """Blocking byte stream to a remote interactive shell (PTY)."""

    def open(self) -> None: ...

    def read(self) -> bytes:
        """Block until output arrives; ``b""`` once the stream is closed."""
        ...

    def write(self, data: str) -> None: ...

    def close(self) -> None: ...


ChannelFactory = Callable[[ConnectionTarget, Settings], ShellChannel]


# ── scrapli / paramiko channel ────────────────────────────────────────────

class ScrapliShellChannel:
    """PTY shell opened by a bare scrapli ``Driver`` on the paramiko transport.

    No prompt handling is done by scrapli here; the pfSense menu is driven
    by :class:`ShellSession` directly through the transport.
    """

    def __init__(self, target: ConnectionTarget, cfg: Settings) -> None:
        self._target = target
        self._cfg = cfg
        self._driver: Optional[Driver] = None
        self._key_path: Optional[str] = None
        self._closed = False

    def _write_key(self, key: str) -> str:
        fd, path = tempfile.mkstemp(prefix="fwmon-key-")
        with os.fdopen(fd, "w") as fh:
            fh.write(key if key.endswith("\n") else key + "\n")
        os.chmod(path, 0o600)
        return path

    def _build_driver(self) -> Driver:
        auth_kwargs: dict = dict(
            host=self._target.host,
            port=self._target.port,
            auth_username=self._target.username,
            auth_strict_key=False,
            transport="paramiko",
            timeout_socket=self._cfg.fwmon_ssh_connect_timeout_seconds,
            timeout_transport=self._cfg.fwmon_ssh_session_timeout_seconds,
            timeout_ops=self._cfg.fwmon_ssh_session_timeout_seconds,
        )
        if self._target.private_key:
            self._key_path = self._write_key(self._target.private_key)
            auth_kwargs["auth_private_key"] = self._key_path
        else:
            auth_kwargs["auth_password"] = self._target.password or ""
        return Driver(**auth_kwargs)

    def open(self) -> None:
        self._driver = self._build_driver()
        self._driver.open()
        if self._closed:
            # session gave up while we were still connecting
            self.close()
            raise ConnectionAbortedError("session closed during connect")

    def read(self) -> bytes:
        if self._driver is None:
            return b""
        return self._driver.transport.read()

    def write(self, data: str) -> None:
        if self._driver is None:
            raise ConnectionError("channel is not open")
        self._driver.transport.write(data.encode())

    def close(self) -> None:
        self._closed = True
        try:
            if self._driver is not None:
                self._driver.close()
        finally:
            self._driver = None
            if self._key_path:
                try:
                    os.unlink(self._key_path)
                except FileNotFoundError:
                    pass
                self._key_path = None


def scrapli_channel_factory(target: ConnectionTarget, cfg: Settings) -> ShellChannel:
    return ScrapliShellChannel(target, cfg)


# ── session state machine ─────────────────────────────────────────────────

class SessionState(str, Enum):
    CONNECTING = "connecting"
    SHELL_OPENING = "shell_opening"
    AWAITING_MENU = "awaiting_menu"
    COMMANDS_SENT = "commands_sent"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


class EventKind(str, Enum):
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    DATA = "data"
    MENU_TIMER = "menu_timer"
    COMMAND_TIMER = "command_timer"
    DRAIN_TIMER = "drain_timer"
    STREAM_CLOSED = "stream_closed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    data: str = ""
    error: Optional[str] = None


def marker_pattern(end_marker: str) -> re.Pattern[str]:
    """Match *end_marker* only when it stands on a line of its own."""
    return re.compile(rf"(?:^|\n)\r*{re.escape(end_marker)}\r*(?:\n|$)")


class ShellSession:
    """One interactive session: menu → shell → command bundle → end marker.

    Only the first resolution counts.  Events arriving after that are
    discarded and every pending timer is cancelled.
    """

    def __init__(
        self,
        channel: ShellChannel,
        commands: str,
        end_marker: str,
        *,
        executor: ThreadPoolExecutor,
        cfg: Settings | None = None,
        timeout: float | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._channel = channel
        self._commands = commands
        self._marker_re = marker_pattern(end_marker)
        self._executor = executor
        self._timeout = timeout or self._cfg.fwmon_ssh_session_timeout_seconds

        self.state = SessionState.CONNECTING
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timers: dict[EventKind, asyncio.TimerHandle] = {}
        self._closing = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._transcript = ""
        self._started = 0.0
        self._menu_selected = False
        self._commands_sent = False
        self._close_delay = 0.0
        self._result: Optional[SessionResult] = None

    @property
    def resolved(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> Optional[SessionResult]:
        return self._result

    @property
    def transcript(self) -> str:
        return self._transcript

    # ── plumbing ──────────────────────────────────────────────────────

    def post(self, event: SessionEvent) -> None:
        """Thread-safe: enqueue *event* on the session's loop."""
        if self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # loop already closed, the session is long over
            log.debug("ssh.event_dropped", kind=event.kind.value)

    def _schedule(self, kind: EventKind, delay: float) -> None:
        assert self._loop is not None
        self._timers[kind] = self._loop.call_later(
            delay, self._queue.put_nowait, SessionEvent(kind),
        )

    def _cancel_timers(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _submit(self, fn, *args) -> None:
        assert self._loop is not None
        self._loop.run_in_executor(self._executor, fn, *args)

    def _start_reader(self) -> None:
        self._reader = threading.Thread(
            target=self._read_worker, name="ssh-reader", daemon=True,
        )
        self._reader.start()

    # ── worker-thread bodies ──────────────────────────────────────────

    def _connect_worker(self) -> None:
        try:
            self._channel.open()
        except Exception as exc:
            self.post(SessionEvent(
                EventKind.CONNECT_FAILED, error=str(exc) or exc.__class__.__name__,
            ))
            return
        self.post(SessionEvent(EventKind.CONNECTED))

    def _read_worker(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        error: Optional[str] = None
        while not self._closing.is_set():
            try:
                chunk = self._channel.read()
            except Exception as exc:
                if not self._closing.is_set():
                    error = str(exc) or exc.__class__.__name__
                break
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self.post(SessionEvent(EventKind.DATA, data=text))
        self.post(SessionEvent(EventKind.STREAM_CLOSED, error=error))

    def _write_worker(self, data: str) -> None:
        try:
            self._channel.write(data)
        except Exception as exc:
            log.warning("ssh.write_failed", error=str(exc))
            self.post(SessionEvent(EventKind.STREAM_CLOSED, error=str(exc)))

    def _close_channel(self) -> None:
        self._closing.set()
        try:
            self._channel.close()
        except Exception as exc:
            log.debug("ssh.close_failed", error=str(exc))

    # ── transitions ───────────────────────────────────────────────────

    def _select_shell(self, *, fallback: bool) -> None:
        if self._menu_selected:
            return
        self._menu_selected = True
        timer = self._timers.pop(EventKind.MENU_TIMER, None)
        if timer is not None:
            timer.cancel()
        log.debug("ssh.shell_selected", fallback=fallback)
        self._submit(self._write_worker, SHELL_OPTION)
        self._schedule(EventKind.COMMAND_TIMER, self._cfg.fwmon_ssh_command_delay_seconds)

    def _send_commands(self) -> None:
        if self._commands_sent:
            return
        self._commands_sent = True
        self.state = SessionState.COMMANDS_SENT
        self._submit(self._write_worker, f"sh\r\n{self._commands}\r\nexit\r\n")
        self._schedule(EventKind.DRAIN_TIMER, self._cfg.fwmon_ssh_drain_timeout_seconds)
        log.debug("ssh.commands_sent")

    def _resolve(self, success: bool, error: Optional[str] = None) -> None:
        if self._result is not None:
            return
        self._cancel_timers()
        self._result = SessionResult(
            success=success,
            transcript=self._transcript,
            error=error,
            elapsed_time=time.monotonic() - self._started,
        )
        if not success:
            self.state = SessionState.FAILED

    def handle(self, event: SessionEvent) -> None:
        """Apply one event to the state machine."""
        if self._result is not None:
            return

        kind = event.kind
        if kind is EventKind.TIMEOUT:
            log.warning("ssh.timeout", state=self.state.value)
            self._resolve(False, TIMEOUT_ERROR)

        elif kind is EventKind.CONNECT_FAILED:
            log.warning("ssh.connect_failed", error=event.error)
            self._resolve(False, event.error or "connection failed")

        elif kind is EventKind.CONNECTED:
            self.state = SessionState.SHELL_OPENING
            self._start_reader()
            self.state = SessionState.AWAITING_MENU
            self._schedule(EventKind.MENU_TIMER, self._cfg.fwmon_ssh_menu_fallback_seconds)

        elif kind is EventKind.DATA:
            self._transcript += event.data
            if not self._menu_selected and MENU_PROMPT in self._transcript:
                self._select_shell(fallback=False)
            if self._commands_sent and self._marker_re.search(self._transcript):
                log.debug("ssh.marker_seen")
                self.state = SessionState.DRAINING
                self._close_delay = self._cfg.fwmon_ssh_close_grace_seconds
                self._resolve(True)

        elif kind is EventKind.MENU_TIMER:
            self._timers.pop(EventKind.MENU_TIMER, None)
            if self.state is SessionState.AWAITING_MENU:
                self._select_shell(fallback=True)

        elif kind is EventKind.COMMAND_TIMER:
            self._timers.pop(EventKind.COMMAND_TIMER, None)
            self._send_commands()

        elif kind is EventKind.DRAIN_TIMER:
            log.info("ssh.drain_timeout")
            self.state = SessionState.DRAINING
            self._resolve(True)

        elif kind is EventKind.STREAM_CLOSED:
            if event.error:
                log.info("ssh.stream_error", error=event.error)
            self.state = SessionState.DRAINING
            self._resolve(True)

    # ── driver ────────────────────────────────────────────────────────

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._started = time.monotonic()
        self._schedule(EventKind.TIMEOUT, self._timeout)
        self._submit(self._connect_worker)

    async def run(self) -> SessionResult:
        self.start()
        while self._result is None:
            event = await self._queue.get()
            self.handle(event)

        if self._close_delay:
            await asyncio.sleep(self._close_delay)
        assert self._loop is not None
        try:
            await asyncio.wait_for(
                self._loop.run_in_executor(self._executor, self._close_channel),
                timeout=self._cfg.fwmon_ssh_connect_timeout_seconds,
            )
        except asyncio.TimeoutError:
            # pool busy with slow connects; the close still runs once a worker frees up
            self._closing.set()
            log.warning("ssh.close_timeout")
        if self._result.success:
            self.state = SessionState.DONE
        return self._result


# ── manager ───────────────────────────────────────────────────────────────

class SSHSessionManager:
    """Runs independent menu-driven sessions on a shared worker pool."""

    def __init__(
        self,
        cfg: Settings | None = None,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._channel_factory = channel_factory or scrapli_channel_factory
        self._executor = ThreadPoolExecutor(
            max_workers=self._cfg.fwmon_ssh_max_workers, thread_name_prefix="ssh",
        )

    async def run_session(
        self,
        target: ConnectionTarget,
        commands: str,
        end_marker: str,
        timeout: float | None = None,
    ) -> SessionResult:
        log.info("ssh.connecting", host=target.host, port=target.port)
        channel = self._channel_factory(target, self._cfg)
        session = ShellSession(
            channel,
            commands,
            end_marker,
            executor=self._executor,
            cfg=self._cfg,
            timeout=timeout,
        )
        result = await session.run()
        log.info(
            "ssh.session_finished",
            host=target.host,
            success=result.success,
            error=result.error,
            elapsed=round(result.elapsed_time, 3),
            bytes=len(result.transcript),
        )
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
