"""
Guarded execution of plugin calls.

Every call the managers make into a Tracker, SCM, Runtime, Workspace, Agent
or Notifier plugin goes through ExternalCaller.call(), which:
- bounds the call with a timeout
- converts plugin exceptions into the orchestrator error taxonomy
- retries transient failures with exponential backoff plus jitter
- stops retrying as soon as the session is cancelled
"""

from __future__ import annotations

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from agent_orchestrator.config import ExternalCallConfig
from agent_orchestrator.coordination import CancellationToken, CancelledError
from agent_orchestrator.errors import TransientExternalError, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with additive random jitter."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    jitter_seconds: float = 0.0

    @classmethod
    def from_config(cls, config: ExternalCallConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retries,
            base_delay_seconds=config.base_delay_seconds,
            backoff_multiplier=config.backoff_multiplier,
            max_delay_seconds=config.max_delay_seconds,
            jitter_seconds=config.jitter_seconds,
        )

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """
        Delay before the attempt after `attempt` (1-indexed).

        Returns:
            base * multiplier^(attempt-1), capped, plus up to jitter_seconds.
        """
        backoff = self.base_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        backoff = min(backoff, self.max_delay_seconds)
        return backoff + rng() * self.jitter_seconds


class ExternalCaller:
    """
    Runs plugin calls with a timeout and a bounded retry policy.

    Usage:
        caller = ExternalCaller(config.external)
        status = caller.call("scm.get_ci_status", scm.get_ci_status, pr, token=token)
    """

    def __init__(
        self,
        config: Optional[ExternalCallConfig] = None,
        max_workers: int = 16,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """
        Initialize the caller.

        Args:
            config: Timeout and retry settings.
            max_workers: Threads available for timed calls.
            sleep: Sleep function used when no cancellation token is given.
            rng: Source of jitter in [0, 1).
        """
        self.config = config or ExternalCallConfig()
        self.policy = RetryPolicy.from_config(self.config)
        self._sleep = sleep
        self._rng = rng
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ao-call"
        )

    def _run_with_timeout(
        self,
        describe: str,
        fn: Callable[..., T],
        args: tuple,
        kwargs: dict,
        timeout: Optional[float],
    ) -> T:
        if not timeout or timeout <= 0:
            return fn(*args, **kwargs)

        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            # A running thread cannot be interrupted; the result is discarded.
            future.cancel()
            raise TransientExternalError(f"{describe}: timed out after {timeout:g}s")

    def call(
        self,
        describe: str,
        fn: Callable[..., T],
        *args: Any,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        retry: bool = True,
        **kwargs: Any,
    ) -> T:
        """
        Call a plugin function.

        Args:
            describe: Short name of the call for errors and logs.
            fn: The plugin callable.
            token: Cancellation token checked before every attempt.
            timeout: Per-attempt timeout, defaults to config.timeout_seconds.
            retry: Set False for side effects that must not repeat.

        Returns:
            Whatever fn returns.

        Raises:
            TransientExternalError: After max_retries transient failures.
            PermanentExternalError: On the first non-retryable failure.
            CancelledError: If the token is set before or between attempts.
        """
        if timeout is None:
            timeout = self.config.timeout_seconds
        max_attempts = self.policy.max_attempts if retry else 1

        attempt = 0
        while True:
            attempt += 1
            if token is not None:
                token.raise_if_cancelled()
            try:
                return self._run_with_timeout(describe, fn, args, kwargs, timeout)
            except CancelledError:
                raise
            except Exception as exc:
                error = classify_exception(exc, describe)
                if not error.should_retry or attempt >= max_attempts:
                    if error is exc:
                        raise
                    raise error from exc

                delay = self.policy.delay(attempt, self._rng)
                retry_after = getattr(error, "retry_after", None)
                if retry_after:
                    delay = min(max(delay, retry_after), self.policy.max_delay_seconds)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    describe, attempt, max_attempts, delay, error,
                )
                if token is not None:
                    if token.sleep(delay):
                        raise CancelledError(token.session_id)
                else:
                    self._sleep(delay)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
