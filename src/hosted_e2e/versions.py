"""Kubernetes version parsing, ordering and default-version selection."""

from __future__ import annotations

import re

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.(\d+))?(?:[-+].*)?$")
# UI range settings look like "<=v1.31.x" or ">=v1.28.x <=v1.31.x"
_RANGE_RE = re.compile(r"(<=|>=|<|>|=)?\s*v?(\d+)\.(\d+)(?:\.(?:\d+|x))?")


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse "1.29", "v1.29.8" or "1.30.2-eks-1234" into (major, minor, patch).

    Raises:
        ValueError: If the string is not a Kubernetes version.
    """
    match = _VERSION_RE.match(version.strip())
    if not match:
        msg = f"Invalid Kubernetes version: {version!r}"
        raise ValueError(msg)
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


def minor_version(version: str) -> str:
    """Return the "major.minor" part of a version string."""
    major, minor, _ = parse_version(version)
    return f"{major}.{minor}"


def compare_versions(left: str, right: str) -> int:
    """Return 1, 0 or -1 as left is newer than, equal to, or older than right."""
    a, b = parse_version(left), parse_version(right)
    return (a > b) - (a < b)


def is_upgrade_satisfied(observed: str | None, desired: str) -> bool:
    """True when the observed version has reached (or passed) the desired one.

    Unlike string equality this holds for "1.30.2" observed against "1.29"
    desired, and fails for "1.29.8" observed against "1.30".
    """
    if not observed:
        return False
    return parse_version(observed) >= parse_version(desired)


def sort_versions(versions: list[str], descending: bool = True) -> list[str]:
    return sorted(versions, key=parse_version, reverse=descending)


def _ui_bounds(ui_range: str) -> list[tuple[str, tuple[int, int]]]:
    bounds: list[tuple[str, tuple[int, int]]] = []
    for op, major, minor in _RANGE_RE.findall(ui_range):
        bounds.append((op or "=", (int(major), int(minor))))
    return bounds


def filter_ui_unsupported(versions: list[str], ui_range: str | None) -> list[str]:
    """Drop versions whose minor falls outside the UI's supported range setting."""
    if not ui_range:
        return list(versions)
    bounds = _ui_bounds(ui_range)
    kept: list[str] = []
    for version in versions:
        major, minor, _ = parse_version(version)
        key = (major, minor)
        ok = True
        for op, bound in bounds:
            if op == "<=":
                ok = ok and key <= bound
            elif op == "<":
                ok = ok and key < bound
            elif op == ">=":
                ok = ok and key >= bound
            elif op == ">":
                ok = ok and key > bound
            else:
                ok = ok and key == bound
        if ok:
            kept.append(version)
    return kept


def default_k8s_version(versions: list[str], for_upgrade: bool) -> str:
    """Pick the newest version of the highest minor, or of the second highest for upgrade tests.

    Upgrade scenarios start one minor behind so that an upgrade target exists.

    Raises:
        ValueError: If there are no versions, or fewer than two minors for an upgrade.
    """
    if not versions:
        msg = "No Kubernetes versions available"
        raise ValueError(msg)
    by_minor: dict[tuple[int, int], str] = {}
    for version in sort_versions(versions):
        major, minor, _ = parse_version(version)
        by_minor.setdefault((major, minor), version)
    minors = sorted(by_minor, reverse=True)
    if for_upgrade:
        if len(minors) < 2:
            msg = f"Need at least two minor versions for an upgrade scenario, got {versions}"
            raise ValueError(msg)
        return by_minor[minors[1]]
    return by_minor[minors[0]]
