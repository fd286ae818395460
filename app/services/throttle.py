"""Per-target connect throttle: in-flight dedup, cooldown and backoff.

State lives in memory only and is keyed by firewall id.  All checks and
updates happen on the event loop thread without a suspension point between
"is anything in flight?" and "record the new in-flight operation", so two
concurrent callers can never both start a connection to the same target.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from app.config import Settings, settings
from app.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

MAX_FAILURE_COUNT = 20
MAX_BACKOFF_EXPONENT = 6


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ThrottleState:
    in_flight: Optional[asyncio.Task] = None
    last_attempt_at: int = 0
    last_success_at: int = 0
    last_fail_at: int = 0
    failure_count: int = 0


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after_ms: int = 0
    in_flight: bool = False


@dataclass(frozen=True)
class ThrottleOutcome(Generic[T]):
    """What happened to one :meth:`ConnectThrottle.run` call."""

    allowed: bool
    deduped: bool = False
    retry_after_ms: int = 0
    result: Optional[T] = None


def _default_success(result: Any) -> bool:
    return bool(getattr(result, "success", True))


class ConnectThrottle:
    def __init__(
        self,
        cfg: Settings | None = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._clock = clock_ms or _now_ms
        self._states: dict[str, ThrottleState] = {}

    # ── policy ────────────────────────────────────────────────────────

    def state(self, target_id: str) -> ThrottleState:
        st = self._states.get(target_id)
        if st is None:
            st = self._states[target_id] = ThrottleState()
        return st

    def backoff_ms(self, failure_count: int) -> int:
        exponent = min(MAX_BACKOFF_EXPONENT, max(0, failure_count - 1))
        return min(
            self._cfg.fwmon_connect_backoff_max_ms,
            self._cfg.fwmon_connect_backoff_base_ms * (2 ** exponent),
        )

    def retry_after_ms(self, target_id: str) -> int:
        st = self.state(target_id)
        now = self._clock()
        if st.failure_count > 0 and st.last_fail_at:
            wait = st.last_fail_at + self.backoff_ms(st.failure_count) - now
        elif st.last_attempt_at:
            wait = st.last_attempt_at + self._cfg.fwmon_connect_cooldown_ms - now
        else:
            wait = 0
        return max(0, wait)

    def admit(self, target_id: str) -> Admission:
        """Decide whether a new connection attempt may start now.

        Granting a fresh attempt stamps ``last_attempt_at``, so the caller
        must start its operation without yielding to the loop first.
        """
        st = self.state(target_id)
        if st.in_flight is not None:
            return Admission(allowed=True, in_flight=True)
        wait = self.retry_after_ms(target_id)
        if wait > 0:
            return Admission(allowed=False, retry_after_ms=wait)
        st.last_attempt_at = self._clock()
        return Admission(allowed=True)

    # ── bookkeeping ───────────────────────────────────────────────────

    def record_success(self, target_id: str) -> None:
        st = self.state(target_id)
        st.failure_count = 0
        st.last_success_at = self._clock()

    def record_failure(self, target_id: str) -> None:
        st = self.state(target_id)
        st.failure_count = min(MAX_FAILURE_COUNT, st.failure_count + 1)
        st.last_fail_at = self._clock()

    # ── execution ─────────────────────────────────────────────────────

    async def _execute(
        self,
        target_id: str,
        operation: Callable[[], Awaitable[T]],
        is_success: Callable[[T], bool],
    ) -> T:
        st = self.state(target_id)
        try:
            try:
                result = await operation()
            except Exception:
                self.record_failure(target_id)
                raise
            if is_success(result):
                self.record_success(target_id)
            else:
                self.record_failure(target_id)
                log.info(
                    "throttle.failure_recorded",
                    target=target_id,
                    failures=st.failure_count,
                    retry_after_ms=self.backoff_ms(st.failure_count),
                )
            return result
        finally:
            st.in_flight = None

    async def run(
        self,
        target_id: str,
        operation: Callable[[], Awaitable[T]],
        is_success: Callable[[T], bool] = _default_success,
    ) -> ThrottleOutcome[T]:
        """Run *operation* for *target_id* unless throttled.

        A caller arriving while an operation is in flight shares that
        operation's result (``deduped=True``).  A throttled caller gets
        ``allowed=False`` and the time to wait.
        """
        st = self.state(target_id)
        admission = self.admit(target_id)
        if admission.in_flight:
            log.debug("throttle.deduped", target=target_id)
            result = await asyncio.shield(st.in_flight)
            return ThrottleOutcome(allowed=True, deduped=True, result=result)

        if not admission.allowed:
            log.debug("throttle.denied", target=target_id, retry_after_ms=admission.retry_after_ms)
            return ThrottleOutcome(allowed=False, retry_after_ms=admission.retry_after_ms)

        task = asyncio.ensure_future(self._execute(target_id, operation, is_success))
        st.in_flight = task
        result = await asyncio.shield(task)
        return ThrottleOutcome(allowed=True, result=result)
