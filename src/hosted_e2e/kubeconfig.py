"""Scoped changes to process environment, KUBECONFIG in particular.

KUBECONFIG is process-global; anything that points it at a downstream cluster
must put the previous value back on every exit path.
"""

from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

log = structlog.get_logger()

KUBECONFIG_VAR = "KUBECONFIG"


@contextmanager
def scoped_env(name: str, value: str | None) -> Iterator[None]:
    """Set (or unset, for None) an environment variable for the duration of the block."""
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    try:
        yield
    finally:
        if previous is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = previous


@contextmanager
def scoped_kubeconfig(path: str | Path | None = None) -> Iterator[None]:
    """Point KUBECONFIG at ``path`` inside the block; with no path, only guarantee restoration."""
    value = str(path) if path is not None else os.environ.get(KUBECONFIG_VAR)
    with scoped_env(KUBECONFIG_VAR, value):
        yield


def downstream_kubeconfig_var(cluster_name: str) -> str:
    """Name of the variable holding a downstream cluster's kubeconfig path."""
    return "DOWNSTREAM_KUBECONFIG_" + re.sub(r"[^A-Z0-9]", "_", cluster_name.upper())


def set_temp_kubeconfig(cluster_name: str, directory: str | Path | None = None) -> Path:
    """Create an empty kubeconfig file for a downstream cluster and export it.

    Sets both KUBECONFIG (so provider CLIs write credentials there) and the
    per-cluster variable (so cleanup can find the file again). Callers wrap this
    in ``scoped_kubeconfig`` to restore the original KUBECONFIG afterwards.
    """
    fd, name = tempfile.mkstemp(prefix=f"{cluster_name}-", suffix=".kubeconfig", dir=directory)
    os.close(fd)
    os.environ[KUBECONFIG_VAR] = name
    os.environ[downstream_kubeconfig_var(cluster_name)] = name
    log.info("downstream_kubeconfig_set", cluster=cluster_name, path=name)
    return Path(name)


def downstream_kubeconfig(cluster_name: str) -> Path | None:
    value = os.environ.get(downstream_kubeconfig_var(cluster_name))
    return Path(value) if value else None


def write_kubeconfig(content: str, cluster_name: str, directory: str | Path | None = None) -> Path:
    """Write kubeconfig content (e.g. generated by the management API) to a temp file."""
    fd, name = tempfile.mkstemp(prefix=f"{cluster_name}-", suffix=".kubeconfig", dir=directory)
    with os.fdopen(fd, "w") as handle:
        handle.write(content)
    return Path(name)


def forget_downstream_kubeconfig(cluster_name: str) -> None:
    """Delete the downstream kubeconfig file, if any, and unset its per-cluster variable."""
    path = downstream_kubeconfig(cluster_name)
    if path is not None:
        path.unlink(missing_ok=True)
    os.environ.pop(downstream_kubeconfig_var(cluster_name), None)
