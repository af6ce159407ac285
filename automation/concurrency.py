"""Concurrency Controller.

Decides whether a new execution may start given the flow's
``ConcurrencyPolicy``. Slots are counted per lock key; a slot is held from
admission until the execution reaches a terminal status (paused runs keep
theirs). Admission and release for one key are serialised by a per-key
``asyncio.Lock``.

    admission = await controller.try_admit(flow.name, flow.concurrency, key, execution_id)
    ...
    await controller.release(key, execution_id)
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from automation.context import TriggerContext
from automation.models import ConcurrencyPolicy
from core.constants import ConflictPolicy, LockScope
from core.exceptions import ConcurrencyLimitError

logger = structlog.get_logger(__name__)

Canceller = Callable[[str], Awaitable[bool]]


class AdmissionDecision(str, Enum):
    ADMITTED = "admitted"
    QUEUED = "queued"
    CANCELLED_EXISTING = "cancelled_existing"


@dataclass
class Admission:
    decision: AdmissionDecision
    lock_key: str
    execution_id: str
    queue_position: Optional[int] = None
    cancelled_execution_id: Optional[str] = None
    waited_ms: int = 0


@dataclass
class _Waiter:
    execution_id: str
    future: asyncio.Future


@dataclass
class _LockState:
    max_concurrent: int = 1
    in_flight: dict[str, float] = field(default_factory=dict)  # execution_id -> admitted at (monotonic)
    waiters: deque = field(default_factory=deque)


def lock_key_for(flow_name: str, policy: ConcurrencyPolicy, context: Optional[TriggerContext]) -> str:
    """Compute the lock key an execution competes on."""
    if policy.lock_scope == LockScope.PER_RECORD:
        record_id = context.record_id if context else None
        if record_id:
            return f"{flow_name}:record:{record_id}"
        logger.warning("lock_scope_fallback", flow_name=flow_name, scope="per_record")
    elif policy.lock_scope == LockScope.PER_USER:
        user_id = context.user_id if context else None
        if user_id:
            return f"{flow_name}:user:{user_id}"
        logger.warning("lock_scope_fallback", flow_name=flow_name, scope="per_user")
    return flow_name


class ConcurrencyController:
    """The only state shared across executions."""

    def __init__(self, canceller: Optional[Canceller] = None):
        self._canceller = canceller
        self._states: dict[str, _LockState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def set_canceller(self, canceller: Canceller) -> None:
        """Callback used by ``cancel_existing`` to stop the oldest in-flight run."""
        self._canceller = canceller

    def _lock(self, lock_key: str) -> asyncio.Lock:
        lock = self._locks.get(lock_key)
        if lock is None:
            lock = self._locks[lock_key] = asyncio.Lock()
        return lock

    def _state(self, lock_key: str) -> _LockState:
        state = self._states.get(lock_key)
        if state is None:
            state = self._states[lock_key] = _LockState()
        return state

    async def try_admit(
        self,
        flow_name: str,
        policy: ConcurrencyPolicy,
        lock_key: str,
        execution_id: str,
    ) -> Admission:
        """
        Admit, queue or reject an execution.

        Returns once the execution holds a slot.

        Raises:
            ConcurrencyLimitError: Rejected by policy, or the queue wait exceeded ``queue_timeout_ms``
        """
        victim: Optional[str] = None
        async with self._lock(lock_key):
            state = self._state(lock_key)
            state.max_concurrent = policy.max_concurrent

            if len(state.in_flight) < policy.max_concurrent and not state.waiters:
                state.in_flight[execution_id] = time.monotonic()
                logger.debug("execution_admitted", lock_key=lock_key, execution_id=execution_id)
                return Admission(AdmissionDecision.ADMITTED, lock_key, execution_id)

            if policy.on_conflict == ConflictPolicy.REJECT:
                logger.info(
                    "execution_rejected",
                    flow_name=flow_name,
                    lock_key=lock_key,
                    in_flight=len(state.in_flight),
                )
                raise ConcurrencyLimitError(lock_key)

            waiter = _Waiter(execution_id, asyncio.get_running_loop().create_future())
            if policy.on_conflict == ConflictPolicy.CANCEL_EXISTING and state.in_flight:
                victim = next(iter(state.in_flight))
                state.waiters.appendleft(waiter)
                decision = AdmissionDecision.CANCELLED_EXISTING
                position = 1
            else:
                state.waiters.append(waiter)
                decision = AdmissionDecision.QUEUED
                position = len(state.waiters)

        logger.info(
            "execution_waiting_for_slot",
            flow_name=flow_name,
            lock_key=lock_key,
            execution_id=execution_id,
            decision=decision.value,
            queue_position=position,
            cancelling=victim,
        )

        if victim is not None and self._canceller is not None:
            try:
                await self._canceller(victim)
            except BaseException:
                await self._withdraw(lock_key, waiter)
                raise

        started = time.monotonic()
        timeout = policy.queue_timeout_ms / 1000 if policy.queue_timeout_ms else None
        try:
            await asyncio.wait_for(asyncio.shield(waiter.future), timeout)
        except asyncio.TimeoutError:
            async with self._lock(lock_key):
                # The slot may have been handed over between the timeout and this lock
                if not waiter.future.done():
                    waiter.future.cancel()
                    self._remove_waiter(lock_key, waiter)
                    logger.info("execution_queue_timeout", lock_key=lock_key, execution_id=execution_id)
                    raise ConcurrencyLimitError(
                        lock_key,
                        f"Timed out after {policy.queue_timeout_ms}ms waiting for a slot on '{lock_key}'",
                    )
        except asyncio.CancelledError:
            await self._withdraw(lock_key, waiter)
            raise

        return Admission(
            decision,
            lock_key,
            execution_id,
            queue_position=position,
            cancelled_execution_id=victim,
            waited_ms=int((time.monotonic() - started) * 1000),
        )

    async def release(self, lock_key: str, execution_id: str) -> None:
        """Free the slot held by ``execution_id`` and hand it to the oldest waiter."""
        async with self._lock(lock_key):
            state = self._state(lock_key)
            if state.in_flight.pop(execution_id, None) is None:
                return
            logger.debug("execution_slot_released", lock_key=lock_key, execution_id=execution_id)
            self._hand_over(lock_key)

    async def restore(self, lock_key: str, execution_id: str, max_concurrent: int = 1) -> None:
        """Re-occupy a slot for a paused execution found at startup."""
        async with self._lock(lock_key):
            state = self._state(lock_key)
            state.max_concurrent = max(state.max_concurrent, max_concurrent)
            state.in_flight.setdefault(execution_id, time.monotonic())

    def _hand_over(self, lock_key: str) -> None:
        state = self._state(lock_key)
        while state.waiters and len(state.in_flight) < state.max_concurrent:
            waiter = state.waiters.popleft()
            if waiter.future.done():
                continue
            state.in_flight[waiter.execution_id] = time.monotonic()
            waiter.future.set_result(True)
            logger.debug("execution_slot_handed_over", lock_key=lock_key, execution_id=waiter.execution_id)

    async def _withdraw(self, lock_key: str, waiter: _Waiter) -> None:
        """Take an abandoned waiter out of the queue, or give back the slot it was already handed."""
        async with self._lock(lock_key):
            if waiter.future.done() and not waiter.future.cancelled():
                self._state(lock_key).in_flight.pop(waiter.execution_id, None)
                self._hand_over(lock_key)
            else:
                waiter.future.cancel()
                self._remove_waiter(lock_key, waiter)
        logger.debug("execution_waiter_withdrawn", lock_key=lock_key, execution_id=waiter.execution_id)

    def _remove_waiter(self, lock_key: str, waiter: _Waiter) -> None:
        state = self._state(lock_key)
        try:
            state.waiters.remove(waiter)
        except ValueError:
            pass

    def in_flight(self, lock_key: str) -> list[str]:
        state = self._states.get(lock_key)
        return list(state.in_flight) if state else []

    def queue_length(self, lock_key: str) -> int:
        state = self._states.get(lock_key)
        return len(state.waiters) if state else 0

    def snapshot(self) -> dict[str, dict]:
        """Current occupancy per lock key."""
        return {
            key: {
                "max_concurrent": state.max_concurrent,
                "in_flight": list(state.in_flight),
                "queued": [w.execution_id for w in state.waiters],
            }
            for key, state in self._states.items()
            if state.in_flight or state.waiters
        }
