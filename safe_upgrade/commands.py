"""Package manager command construction.

Translates an abstract ``(kind, verb, args)`` request into the concrete
executable and arguments for npm, yarn, pnpm, bun or a plain shell,
hiding per-tool verb differences (``install`` vs ``add``, ``run test`` vs
``test``).
"""

from __future__ import annotations

import shlex
import shutil
from collections.abc import Sequence
from enum import Enum

from .errors import ValidationFailed
from .models import PackageManagerKind, ScriptConfig


class Verb(str, Enum):
    INSTALL = "install"
    RUN = "run"
    TEST = "test"


_INSTALL_ALIASES = {"install", "i", "add"}


def _coerce_kind(kind: PackageManagerKind | str) -> PackageManagerKind:
    try:
        return PackageManagerKind(kind)
    except ValueError:
        raise ValidationFailed(f"Unknown package manager: {kind}") from None


def build_command(
    kind: PackageManagerKind | str, verb: Verb | str, args: Sequence[str] = ()
) -> tuple[str, list[str]]:
    """Build the executable and its arguments for one package manager call.

    Args:
        kind: Package manager (``npm``, ``yarn``, ``pnpm``, ``bun``, ``shell``).
        verb: What to do. ``install`` with no packages is a lockfile sync.
        args: Packages for ``install``, the script name (plus extra
            arguments) for ``run``, extra arguments for ``test``. For
            ``shell`` the single literal command line.

    Returns:
        ``(executable, argv)`` where argv excludes the executable itself.

    Raises:
        ValidationFailed: For an unknown kind, or a verb the kind cannot run.

    Examples:
        build_command("yarn", "install", ["lodash@4.17.21"]) → ("yarn", ["add", "lodash@4.17.21"])
        build_command("pnpm", "test") → ("pnpm", ["run", "test"])
        build_command("yarn", "run", ["build"]) → ("yarn", ["build"])
    """
    kind = _coerce_kind(kind)
    try:
        verb = Verb(verb)
    except ValueError:
        raise ValidationFailed(f"Unknown verb: {verb}") from None
    args = list(args)

    if kind is PackageManagerKind.SHELL:
        if verb is not Verb.RUN:
            raise ValidationFailed(f"shell does not support the {verb.value} verb")
        if len(args) != 1 or not args[0].strip():
            raise ValidationFailed("shell expects exactly one non-empty command line")
        return "sh", ["-c", args[0]]

    executable = kind.value

    if verb is Verb.INSTALL:
        # A bare install is the lockfile sync; `add` without packages is an error.
        if not args:
            return executable, ["install"]
        if kind is PackageManagerKind.NPM:
            return executable, ["install", *args]
        return executable, ["add", *args]

    if verb is Verb.TEST:
        if kind is PackageManagerKind.PNPM:
            return executable, ["run", "test", *args]
        return executable, ["test", *args]

    if not args:
        raise ValidationFailed(f"{executable} run requires a script name")
    if kind is PackageManagerKind.YARN:
        return executable, args
    return executable, ["run", *args]


def sync_command(kind: PackageManagerKind | str) -> tuple[str, list[str]]:
    """The lockfile sync: an install with no explicit package list."""
    return build_command(kind, Verb.INSTALL, [])


def script_command(config: ScriptConfig) -> tuple[str, list[str]]:
    """Turn a configured script into an executable and argv.

    The first word selects the verb: ``install``/``i``/``add`` install,
    ``test`` tests, ``run X`` runs X, and anything else is taken as a
    script name. A leading word naming the package manager itself
    (``npm test``) is accepted and dropped.
    """
    if config.kind is PackageManagerKind.SHELL:
        return build_command(config.kind, Verb.RUN, [config.command])

    try:
        words = shlex.split(config.command)
    except ValueError as exc:
        raise ValidationFailed(f"Cannot parse command {config.command!r}: {exc}") from exc
    if words and words[0] == config.kind.value:
        words = words[1:]
    if not words:
        raise ValidationFailed(f"Command {config.command!r} names no script")

    first, rest = words[0], words[1:]
    if first in _INSTALL_ALIASES:
        return build_command(config.kind, Verb.INSTALL, rest)
    if first == "test":
        return build_command(config.kind, Verb.TEST, rest)
    if first == "run":
        return build_command(config.kind, Verb.RUN, rest)
    return build_command(config.kind, Verb.RUN, words)


def is_available(kind: PackageManagerKind | str) -> bool:
    """Check whether the tool behind ``kind`` is on PATH."""
    kind = _coerce_kind(kind)
    executable = "sh" if kind is PackageManagerKind.SHELL else kind.value
    return shutil.which(executable) is not None
