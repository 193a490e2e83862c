"""Version parsing, filtering and sign handling.

Handles conversion between npm manifest values and semver objects. Range
operators (``^``, ``~``) are split off and re-attached around upgrades;
anything more complex than a single operator is treated as an opaque exact
value and never rewritten.
"""

from __future__ import annotations

import re

import semver

from .errors import InvalidVersion
from .models import Sign

_LOOSE_VERSION = re.compile(r"^(?P<core>\d+(?:\.\d+){0,2})(?P<rest>[-+].*)?$")
_COMPLEX_MARKERS = (">", "<", "=", "*")
_DIST_TAGS = {"latest", "next"}


def _strip(version_str: str) -> str:
    """Drop surrounding whitespace and a leading ``=`` or ``v`` (npm clean)."""
    return version_str.strip().lstrip("=v").strip()


def clean(version_str: str) -> str:
    """Return the canonical form of a full semver string.

    Examples:
        "v1.2.3" → "1.2.3"
        " =1.2.3 " → "1.2.3"

    Raises:
        InvalidVersion: If the value is not a complete ``major.minor.patch``
            version (``"1.2"`` is rejected here, unlike ``parse_version``).
    """
    try:
        return str(semver.Version.parse(_strip(version_str)))
    except (ValueError, TypeError) as exc:
        raise InvalidVersion(f"Invalid version: {version_str}") from exc


def parse_version(version_str: str) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Handles incomplete versions by padding with zeros:
    - "1" → "1.0.0"
    - "1.2" → "1.2.0"
    - "1.2.3-beta.1" → "1.2.3-beta.1"
    """
    match = _LOOSE_VERSION.match(_strip(version_str))
    if not match:
        raise InvalidVersion(f"Invalid version: {version_str}")
    parts = match["core"].split(".")
    # Pad with zeros to ensure we have at least 3 parts
    while len(parts) < 3:
        parts.append("0")
    try:
        return semver.Version.parse(".".join(parts) + (match["rest"] or ""))
    except ValueError as exc:
        raise InvalidVersion(f"Invalid version: {version_str}") from exc


def _precedence(version: semver.Version) -> tuple[int, int, int, int]:
    # Build metadata never affects ordering; a pre-release sorts below its release.
    return (version.major, version.minor, version.patch, 0 if version.prerelease else 1)


def is_stable(version_str: str) -> bool:
    """True for a complete semver version without a pre-release suffix."""
    try:
        return semver.Version.parse(_strip(version_str)).prerelease is None
    except (ValueError, TypeError):
        return False


def is_newer(candidate: str, current: str) -> bool:
    """True if ``candidate`` has strictly higher precedence than ``current``.

    Unparseable values on either side are never newer.
    """
    try:
        return _precedence(parse_version(candidate)) > _precedence(parse_version(current))
    except InvalidVersion:
        return False


def sort_descending_stable(versions: list[str]) -> list[str]:
    """Sort versions newest first, dropping invalid and pre-release entries.

    Versions of equal precedence (``1.0.0`` vs ``1.0.0+build``) keep their
    input order, so repeated runs over the same registry data try candidates
    in the same sequence. Applying the function twice is the same as
    applying it once.
    """
    stable = [v for v in versions if is_stable(v)]
    return sorted(stable, key=lambda v: _precedence(parse_version(v)), reverse=True)


def parse_sign(version_str: str) -> tuple[Sign, str]:
    """Split a manifest value into its range operator and bare version.

    Examples:
        "^4.17.20" → (Sign.CARET, "4.17.20")
        "~1.2.3" → (Sign.TILDE, "1.2.3")
        "1.2.3" → (Sign.EXACT, "1.2.3")
        ">=1.2.3 <2.0.0" → (Sign.EXACT, ">=1.2.3 <2.0.0")

    Complex ranges, wildcards and dist-tags are returned unmodified with an
    exact sign so that they round-trip through a snapshot untouched.
    """
    if _is_complex_range(version_str):
        return Sign.EXACT, version_str
    if version_str.startswith("^"):
        return Sign.CARET, version_str[1:]
    if version_str.startswith("~"):
        return Sign.TILDE, version_str[1:]
    return Sign.EXACT, version_str


def _is_complex_range(version_str: str) -> bool:
    return (
        any(ch.isspace() for ch in version_str)
        or any(marker in version_str for marker in _COMPLEX_MARKERS)
        or version_str in _DIST_TAGS
    )


def bump_preserving_sign(current: str, candidate: str) -> str:
    """Replace the version in ``current`` while keeping its range operator.

    Examples:
        bump_preserving_sign("^4.17.20", "4.17.21") → "^4.17.21"
        bump_preserving_sign("~1.2.3", "v1.3.0") → "~1.3.0"
        bump_preserving_sign("1.2.3", "2.0.0") → "2.0.0"

    Raises:
        InvalidVersion: If ``candidate`` is not parseable semver.
    """
    sign = current[:1] if current[:1] in ("^", "~") else ""
    return sign + clean(candidate)
