"""
Package version selection against the repository's available version list.
"""

import re
from typing import Iterable, List, Optional, Tuple

from percona_common import ConfigError

_REQUESTED_RE = re.compile(r"^\d+(\.\d+){0,2}(-[0-9A-Za-z.]+)?$")


def validate_version(requested: str):
    if not _REQUESTED_RE.match(requested):
        raise ConfigError(f"invalid version: {requested}, use semantic versioning (MAJOR.MINOR.PATCH)")


def version_key(version: str) -> Tuple[int, ...]:
    """Numeric sort key: '8.0.31-24-1.focal' -> (8, 0, 31, 24, 1)."""
    return tuple(int(n) for n in re.findall(r"\d+", version))


def parse_version_list(output: str) -> List[str]:
    versions = []
    for line in output.splitlines():
        line = line.strip()
        if line and line not in versions:
            versions.append(line)
    return versions


def select_version(available: Iterable[str], requested: Optional[str]) -> str:
    """Pick the package version to install.

    An empty request picks the newest available version. Otherwise the request
    (major, major.minor, major.minor.patch, or a full package version) must
    prefix-match a candidate; the newest match wins. No match is an error.
    """
    candidates = [v for v in available if v]
    if not candidates:
        raise ConfigError("no available versions")
    if not requested:
        return max(candidates, key=version_key)

    validate_version(requested)
    if requested in candidates:
        return requested
    wanted = version_key(requested)
    matches = [v for v in candidates if version_key(v)[:len(wanted)] == wanted]
    if not matches:
        raise ConfigError(f"version {requested} not found, available versions: {candidates}")
    return max(matches, key=version_key)
