"""Configuration loading.

Options come from four layers, highest priority first: CLI flags, the
project's ``safe-upgrade.toml`` (read with tomlkit), scripts defined in
``package.json``, and built-in defaults.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import tomlkit
from pydantic import ValidationError
from tomlkit.exceptions import ParseError

from .errors import ValidationFailed
from .manifest import MANIFEST_NAME
from .models import (
    DEFAULT_TIMEOUT_MS,
    PackageManagerKind,
    ScriptConfig,
    UpgradeOptions,
)

CONFIG_FILENAME = "safe-upgrade.toml"
SCRIPT_NAMES = ("install", "test", "build", "lint", "admin")

# Top-level TOML keys and the UpgradeOptions field each one sets.
_OPTION_KEYS = {
    "package-manager": "package_manager",
    "rollback-on-failure": "rollback_on_failure",
    "fast-path": "fast_path",
    "require-full-gate": "require_full_gate",
    "registry": "registry_url",
    "max-output-bytes": "max_output_bytes",
}

CONFIG_TEMPLATE = """\
# safe-upgrade configuration
#
# Scripts default to the test/build/lint entries of package.json.
# Each script is either a command string or a table:
#   test = { kind = "shell", command = "make check", timeout-ms = 600000 }

package-manager = "npm"
rollback-on-failure = true
fast-path = false
require-full-gate = true
timeout-ms = 300000

[scripts]
# install = "install"
# test = "test"
# build = "run build"
# lint = "run lint"
# admin = "run ci:admin"
"""


def load_config(project_dir: Path) -> tomlkit.TOMLDocument:
    """Load ``safe-upgrade.toml``; an absent file is an empty document."""
    path = project_dir / CONFIG_FILENAME
    if not path.exists():
        return tomlkit.document()
    try:
        return tomlkit.parse(path.read_text(encoding="utf-8"))
    except ParseError as exc:
        raise ValidationFailed(f"Invalid {CONFIG_FILENAME}: {exc}") from exc


def package_json_scripts(project_dir: Path) -> dict[str, str]:
    """The ``scripts`` table of package.json, or empty if unreadable.

    A missing or broken manifest is reported later by the snapshot step.
    """
    try:
        doc = json.loads((project_dir / MANIFEST_NAME).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    scripts = doc.get("scripts") if isinstance(doc, dict) else None
    if not isinstance(scripts, dict):
        return {}
    return {k: v for k, v in scripts.items() if isinstance(v, str)}


def default_scripts(
    kind: PackageManagerKind, scripts: Mapping[str, str], timeout_ms: int = DEFAULT_TIMEOUT_MS
) -> dict[str, ScriptConfig]:
    """Gate scripts implied by package.json.

    A defined ``test`` script becomes the manager's test verb; ``build`` and
    ``lint`` become ``run build`` / ``run lint``.
    """
    defaults: dict[str, ScriptConfig] = {}
    if "test" in scripts:
        defaults["test"] = ScriptConfig(kind=kind, command="test", timeout_ms=timeout_ms)
    for name in ("build", "lint"):
        if name in scripts:
            defaults[name] = ScriptConfig(kind=kind, command=f"run {name}", timeout_ms=timeout_ms)
    return defaults


def _script_from_value(
    name: str, value: Any, kind: PackageManagerKind, timeout_ms: int
) -> ScriptConfig:
    if isinstance(value, str):
        return ScriptConfig(kind=kind, command=value, timeout_ms=timeout_ms)
    if isinstance(value, Mapping):
        return ScriptConfig(
            kind=value.get("kind", kind),
            command=value.get("command", ""),
            timeout_ms=value.get("timeout-ms", timeout_ms),
        )
    raise ValidationFailed(f"scripts.{name} must be a string or a table")


def build_options(
    project_dir: Path | str, overrides: Mapping[str, Any] | None = None
) -> UpgradeOptions:
    """Merge CLI overrides, the config file and package.json into options.

    Args:
        project_dir: Project root holding package.json.
        overrides: UpgradeOptions field values from the command line; a
            None value means "not given". ``timeout_ms`` applies to every
            script without its own timeout, and ``admin_command`` sets the
            admin script.

    Raises:
        ValidationFailed: For unknown keys, bad values or a malformed file.
    """
    project_dir = Path(project_dir)
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    doc = load_config(project_dir).unwrap()

    unknown = set(doc) - set(_OPTION_KEYS) - {"timeout-ms", "scripts"}
    if unknown:
        raise ValidationFailed(
            f"Unknown keys in {CONFIG_FILENAME}: {', '.join(sorted(unknown))}"
        )

    fields: dict[str, Any] = {"project_dir": project_dir}
    for key, field_name in _OPTION_KEYS.items():
        if key in doc:
            fields[field_name] = doc[key]
    timeout_ms = overrides.pop("timeout_ms", doc.get("timeout-ms", DEFAULT_TIMEOUT_MS))
    fields["sync_timeout_ms"] = timeout_ms
    admin_command = overrides.pop("admin_command", None)
    fields.update(overrides)

    try:
        kind = PackageManagerKind(fields.get("package_manager", PackageManagerKind.NPM))
        scripts = default_scripts(kind, package_json_scripts(project_dir), timeout_ms)

        configured = doc.get("scripts", {})
        if not isinstance(configured, Mapping):
            raise ValidationFailed("[scripts] must be a table")
        for name, value in configured.items():
            if name not in SCRIPT_NAMES:
                raise ValidationFailed(f"Unknown script {name!r} in [scripts]")
            scripts[name] = _script_from_value(name, value, kind, timeout_ms)
        if admin_command is not None:
            scripts["admin"] = ScriptConfig(kind=kind, command=admin_command, timeout_ms=timeout_ms)

        for name, config in scripts.items():
            fields[f"{name}_script"] = config
        return UpgradeOptions(**fields)
    except (ValidationError, ValueError) as exc:
        raise ValidationFailed(f"Invalid configuration: {exc}") from exc


def write_config_template(project_dir: Path | str, force: bool = False) -> Path:
    """Write a starter ``safe-upgrade.toml``.

    Raises:
        FileExistsError: If the file exists and ``force`` is not set.
    """
    path = Path(project_dir) / CONFIG_FILENAME
    if path.exists() and not force:
        raise FileExistsError(path)
    path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    return path
