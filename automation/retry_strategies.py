"""Node retry strategies.

A strategy answers two questions for the engine's per-node retry loop:
may a failed attempt be retried, and how long to wait before the next one.

Policies: fixed, exponential (optionally jittered), linear and none. A
node's ``retry.policy`` may also name a preset (``http``, ``connector``,
``records``, ``patient``), whose delays apply with the node's own
``max_retries``.

Precedence: the node's ``retry`` block, then the flow's ``error_handling``
(strategy ``retry``), then the ``DEFAULT_MAX_RETRIES`` / ``RETRY_*``
settings.
"""

import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from automation.models import FlowDefinition, FlowErrorHandling, FlowNode, NodeRetryConfig
from core.constants import ErrorStrategy
from core.exceptions import NodeExecutionError


class RetryPolicy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass(frozen=True)
class RetryStrategy:
    """Delay schedule plus retry budget. Delays are in seconds."""

    policy: RetryPolicy
    max_retries: int = 0
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = False
    jitter_range: float = 0.5

    @classmethod
    def none(cls) -> "RetryStrategy":
        return cls(policy=RetryPolicy.NONE)

    @classmethod
    def fixed(cls, max_retries: int, delay: float) -> "RetryStrategy":
        return cls(policy=RetryPolicy.FIXED, max_retries=max_retries, base_delay=delay, max_delay=delay)

    @classmethod
    def exponential(
        cls, max_retries: int, base_delay: float = 1.0, max_delay: float = 60.0, jitter: bool = True
    ) -> "RetryStrategy":
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def linear(cls, max_retries: int, base_delay: float = 2.0, max_delay: float = 30.0) -> "RetryStrategy":
        return cls(policy=RetryPolicy.LINEAR, max_retries=max_retries, base_delay=base_delay, max_delay=max_delay)

    @classmethod
    def from_node_config(cls, config: NodeRetryConfig) -> "RetryStrategy":
        """Build the strategy a node's ``retry`` block asks for."""
        preset = RETRY_PRESETS.get(config.policy)
        if preset is not None:
            return replace(preset, max_retries=config.max_retries)
        policy = RetryPolicy(config.policy)
        if policy == RetryPolicy.NONE or config.max_retries == 0:
            return cls.none()
        return cls(
            policy=policy,
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    @classmethod
    def from_error_handling(cls, handling: FlowErrorHandling) -> "RetryStrategy":
        """Flow-wide retry: fixed delay of ``retry_delay_ms``."""
        if handling.max_retries == 0:
            return cls.none()
        return cls.fixed(max_retries=handling.max_retries, delay=handling.retry_delay_ms / 1000)

    def compute_delay(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1 = first retry)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0
        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (retry_number - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * retry_number
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)
        if self.jitter and delay > 0:
            spread = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Whether failed attempt ``attempt`` (0-based) gets another try.

        Node errors carry their own ``retryable`` flag. Other exceptions are
        retried only when they are connection or timeout failures.
        """
        if self.policy == RetryPolicy.NONE or attempt >= self.max_retries:
            return False
        if error is None:
            return True
        if isinstance(error, NodeExecutionError):
            return error.retryable
        return isinstance(error, (ConnectionError, TimeoutError))


RETRY_PRESETS: dict[str, RetryStrategy] = {
    "http": RetryStrategy.exponential(max_retries=5, base_delay=1.0, max_delay=60.0),
    "connector": RetryStrategy.exponential(max_retries=3, base_delay=2.0, max_delay=30.0),
    "records": RetryStrategy.fixed(max_retries=3, delay=2.0),
    "patient": RetryStrategy.linear(max_retries=10, base_delay=30.0, max_delay=600.0),
}


def resolve_retry_strategy(node: FlowNode, flow: FlowDefinition, settings) -> RetryStrategy:
    """Pick the retry strategy that applies to ``node``."""
    if node.retry is not None:
        return RetryStrategy.from_node_config(node.retry)

    handling = flow.error_handling
    if handling is not None and handling.strategy == ErrorStrategy.RETRY:
        return RetryStrategy.from_error_handling(handling)

    if settings.DEFAULT_MAX_RETRIES <= 0:
        return RetryStrategy.none()
    return RetryStrategy.from_node_config(
        NodeRetryConfig(
            max_retries=settings.DEFAULT_MAX_RETRIES,
            policy=settings.RETRY_POLICY,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )
    )
