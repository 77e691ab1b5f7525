"""Exception taxonomy shared by the mutator, the poller and the provider verifiers."""

from __future__ import annotations

from typing import Any


class HostedE2EError(Exception):
    """Base class for every error raised by hosted_e2e."""


class ConfigError(HostedE2EError, ValueError):
    """The test configuration file or an environment override is invalid."""


class SynchronousRejection(HostedE2EError):
    """The management API refused a write immediately (bad input, invalid combination)."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        self.message = message
        self.status_code = status_code
        self.code = code
        detail = message
        if status_code is not None:
            detail = f"[{status_code}{' ' + code if code else ''}] {message}"
        super().__init__(detail)


class ManagementAPIError(HostedE2EError):
    """The management API failed in a way that is not a validation rejection."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NotFound(ManagementAPIError):
    """The management API returned 404."""


class ClusterNotFound(NotFound):
    """A cluster get, update or delete by ID returned 404."""


class SettingNotFound(NotFound):
    """The named setting does not exist on this server."""


class ConvergenceTimeout(HostedE2EError, AssertionError):
    """Observed state did not satisfy the expectation inside its window."""

    def __init__(
        self,
        description: str,
        *,
        expected: str,
        last_observed: Any,
        elapsed: float,
        samples: int,
        timeout: float,
        interval: float,
    ) -> None:
        self.description = description
        self.expected = expected
        self.last_observed = last_observed
        self.elapsed = elapsed
        self.samples = samples
        self.timeout = timeout
        self.interval = interval
        super().__init__(
            f"Timed out after {elapsed:.1f}s ({samples} samples, window {timeout:g}s every {interval:g}s) "
            f"waiting for {description}: expected {expected}, last observed {last_observed!r}"
        )


class SubprocessFailure(HostedE2EError):
    """A provider CLI exited non-zero or could not be started."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str],
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        output = "\n".join(part for part in (stdout.strip(), stderr.strip()) if part)
        super().__init__(f"{message}: {' '.join(command)} (exit {returncode}): {output}")


class ScenarioSkipped(HostedE2EError):
    """Raised by the scenario runner when a scenario must not run in this environment."""
