"""Provider CLI invocation and JSON field extraction."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping
from typing import Any

import jmespath
import structlog

from hosted_e2e.errors import SubprocessFailure

log = structlog.get_logger()

DEFAULT_CLI_TIMEOUT_SECONDS = 60 * 60


def run_cli(binary: str, args: list[str], timeout: float = DEFAULT_CLI_TIMEOUT_SECONDS, action: str = "") -> str:
    """Run a provider CLI and return its stdout.

    Args:
        binary: Executable name, e.g. ``eksctl`` or ``gcloud``.
        args: Flag list passed verbatim (no shell).
        timeout: Seconds before the process is killed.
        action: Human description used in the error message.

    Raises:
        SubprocessFailure: Non-zero exit, timeout, or the binary is missing.
            Carries captured stdout and stderr.
    """
    command = [binary, *args]
    what = action or f"{binary} {args[0] if args else ''}".strip()
    log.info("running_command", command=" ".join(command))
    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as err:
        raise SubprocessFailure(
            f"Failed to {what}: timed out after {timeout:g}s",
            command=command,
            returncode=None,
            stdout=_decode(err.stdout),
            stderr=_decode(err.stderr),
        ) from err
    except OSError as err:
        raise SubprocessFailure(f"Failed to {what}: {err}", command=command, returncode=None) from err

    if result.returncode != 0:
        log.error("command_failed", command=" ".join(command), returncode=result.returncode)
        raise SubprocessFailure(
            f"Failed to {what}",
            command=command,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result.stdout


def _decode(output: str | bytes | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output


def query_json(document: str | Any, expression: str) -> Any:
    """Select a value from JSON output with a JMESPath expression.

    ``document`` may be the raw CLI output or an already-parsed object.
    """
    data = json.loads(document) if isinstance(document, str) else document
    return jmespath.search(expression, data)


def format_tags(tags: Mapping[str, str]) -> str:
    """Render tags as the sorted ``k=v,k=v`` selector string provider CLIs accept."""
    return ",".join(f"{key}={tags[key]}" for key in sorted(tags))
