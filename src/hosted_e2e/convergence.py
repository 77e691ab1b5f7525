"""Convergence poller: block until an eventually-consistent read matches, or fail.

The control plane's write path is asynchronous relative to the provider's
reconciliation, so a single read straight after a write is flaky. ``wait_for``
calls a read on a fixed interval until a matcher accepts the observed value
or the window's deadline passes, then fails with ``ConvergenceTimeout``.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

import structlog
from tenacity import RetryCallState, RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from hosted_e2e.errors import ConvergenceTimeout
from hosted_e2e.versions import is_upgrade_satisfied

log = structlog.get_logger()

T = TypeVar("T")

MINUTE = 60.0


@dataclass(frozen=True)
class ConvergenceWindow:
    """How long (timeout) and how often (interval) to sample, in seconds."""

    timeout: float
    interval: float

    def __post_init__(self) -> None:
        if self.interval <= 0:
            msg = f"interval must be positive, got {self.interval}"
            raise ValueError(msg)
        if self.timeout < 0:
            msg = f"timeout must not be negative, got {self.timeout}"
            raise ValueError(msg)

    @property
    def max_samples(self) -> int:
        return math.ceil(self.timeout / self.interval) + 1

    def scaled(self, factor: float) -> ConvergenceWindow:
        return ConvergenceWindow(timeout=self.timeout * factor, interval=self.interval * factor)


@dataclass(frozen=True)
class Timeouts:
    """Windows per operation class. Heavy operations (upgrades, scaling) get the longest."""

    cluster_ready: ConvergenceWindow = ConvergenceWindow(30 * MINUTE, 30)
    state_transition: ConvergenceWindow = ConvergenceWindow(30 * MINUTE, 10)
    control_plane_upgrade: ConvergenceWindow = ConvergenceWindow(15 * MINUTE, 30)
    node_group_upgrade: ConvergenceWindow = ConvergenceWindow(15 * MINUTE, 30)
    node_group_count: ConvergenceWindow = ConvergenceWindow(15 * MINUTE, 10)
    node_group_scale: ConvergenceWindow = ConvergenceWindow(15 * MINUTE, 10)
    metadata: ConvergenceWindow = ConvergenceWindow(10 * MINUTE, 15)
    provider_sync: ConvergenceWindow = ConvergenceWindow(5 * MINUTE, 10)
    new_node_group_version: ConvergenceWindow = ConvergenceWindow(5 * MINUTE, 15)
    update_while_updating: ConvergenceWindow = ConvergenceWindow(15 * MINUTE, 30)
    validation_error: ConvergenceWindow = ConvergenceWindow(1 * MINUTE, 3)
    missing_node_group_error: ConvergenceWindow = ConvergenceWindow(10 * MINUTE, 30)
    invalid_endpoint_error: ConvergenceWindow = ConvergenceWindow(2 * MINUTE, 3)

    def scaled(self, factor: float) -> Timeouts:
        if factor == 1:
            return self
        changes = {name: window.scaled(factor) for name, window in vars(self).items()}
        return replace(self, **changes)


# --- Matchers ---


class Matcher(Generic[T]):
    """A named predicate; ``describe`` is what failure messages print as "expected"."""

    def matches(self, value: T) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.describe()}>"


class _Predicate(Matcher[Any]):
    def __init__(self, fn: Callable[[Any], bool], description: str) -> None:
        self._fn = fn
        self._description = description

    def matches(self, value: Any) -> bool:
        return bool(self._fn(value))

    def describe(self) -> str:
        return self._description


def equal_to(expected: Any) -> Matcher[Any]:
    return _Predicate(lambda value: value == expected, f"== {expected!r}")


def is_true() -> Matcher[Any]:
    return _Predicate(lambda value: value is True, "True")


def contains_all(items: Iterable[Any]) -> Matcher[Any]:
    wanted = list(items)
    return _Predicate(
        lambda value: value is not None and all(item in value for item in wanted),
        f"containing all of {wanted!r}",
    )


def has_exact_elements(items: Iterable[Any]) -> Matcher[Any]:
    wanted = list(items)
    return _Predicate(lambda value: value is not None and list(value) == wanted, f"exactly {wanted!r}")


def has_entries(entries: Mapping[str, Any]) -> Matcher[Any]:
    wanted = dict(entries)
    return _Predicate(
        lambda value: value is not None and all(k in value and value[k] == v for k, v in wanted.items()),
        f"with entries {wanted!r}",
    )


def mapping_equal_to(expected: Mapping[str, Any]) -> Matcher[Any]:
    wanted = dict(expected)
    return _Predicate(lambda value: dict(value or {}) == wanted, f"mapping == {wanted!r}")


def has_length(length: int) -> Matcher[Any]:
    return _Predicate(lambda value: value is not None and len(value) == length, f"length {length}")


def version_at_least(version: str) -> Matcher[Any]:
    """Upgrade-satisfied check using numeric ordering, not string equality."""
    return _Predicate(lambda value: is_upgrade_satisfied(value, version), f">= {version}")


def all_of(*targets: Any) -> Matcher[Any]:
    matchers = [as_matcher(t) for t in targets]
    return _Predicate(
        lambda value: all(m.matches(value) for m in matchers),
        " and ".join(m.describe() for m in matchers),
    )


def as_matcher(target: Any) -> Matcher[Any]:
    """Normalise a matcher, a one-argument predicate, or a plain value into a Matcher."""
    if isinstance(target, Matcher):
        return target
    if callable(target):
        name = getattr(target, "__name__", repr(target))
        return _Predicate(target, f"satisfying {name}")
    return equal_to(target)


# --- Polling ---


@dataclass(frozen=True)
class _Sample:
    value: Any
    satisfied: bool


def _log_pending(description: str, matcher: Matcher[Any]) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        sample = retry_state.outcome.result() if retry_state.outcome else None
        log.info(
            "waiting_for_convergence",
            description=description,
            expected=matcher.describe(),
            observed=repr(sample.value) if sample else None,
            attempt=retry_state.attempt_number,
        )

    return before_sleep


def wait_for(
    observe: Callable[[], T],
    target: Any,
    window: ConvergenceWindow,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``observe`` every ``window.interval`` seconds until ``target`` accepts the value.

    Args:
        observe: Zero-argument read of the observed state (usually a management API GET).
        target: A Matcher, a one-argument predicate, or a value compared by equality.
        window: Timeout and sampling interval.
        description: What is being waited for; used in logs and failure messages.
        sleep: Sleep function, replaceable in tests.

    Returns:
        The first observed value that satisfied the target.

    Raises:
        ConvergenceTimeout: The deadline elapsed; carries the last observed value.
        Exception: Anything ``observe`` raises propagates immediately, unretried.
    """
    matcher = as_matcher(target)

    def sample() -> _Sample:
        value = observe()
        return _Sample(value=value, satisfied=matcher.matches(value))

    retrying = Retrying(
        stop=stop_after_delay(window.timeout),
        wait=wait_fixed(window.interval),
        retry=retry_if_result(lambda s: not s.satisfied),
        before_sleep=_log_pending(description, matcher),
        sleep=sleep,
    )
    start = time.monotonic()
    try:
        result: _Sample = retrying(sample)
    except RetryError as err:
        last: _Sample = err.last_attempt.result()
        elapsed = time.monotonic() - start
        log.error(
            "convergence_timeout",
            description=description,
            expected=matcher.describe(),
            observed=repr(last.value),
            elapsed_seconds=round(elapsed, 1),
        )
        raise ConvergenceTimeout(
            description,
            expected=matcher.describe(),
            last_observed=last.value,
            elapsed=elapsed,
            samples=err.last_attempt.attempt_number,
            timeout=window.timeout,
            interval=window.interval,
        ) from None
    log.debug("converged", description=description, attempts=retrying.statistics.get("attempt_number"))
    return result.value


def expect_that(value: T, target: Any, description: str) -> T:
    """One-shot assertion sharing the poller's matchers.

    Raises:
        AssertionError: If the value does not satisfy the target.
    """
    matcher = as_matcher(target)
    if not matcher.matches(value):
        msg = f"{description}: expected {matcher.describe()}, got {value!r}"
        raise AssertionError(msg)
    return value
