"""package.json snapshot, edit and rollback.

The ManifestStateManager is the single code path that reads and writes the
dependency manifest during a run. Edits keep the file's own indentation,
newline style and key order so that only the touched value changes, and
every write goes through a temp file plus an atomic rename so the manifest
is never observed half-written.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from .errors import RollbackFailed, StateCaptureFailed, ValidationFailed
from .models import SECTION_ORDER, DependencyState, Section
from .versions import parse_sign

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"


def detect_indent(text: str) -> str:
    """Return the indentation unit used by a JSON document (default 2 spaces)."""
    for line in text.splitlines()[1:]:
        stripped = line.lstrip(" \t")
        if stripped and len(stripped) != len(line):
            return line[: len(line) - len(stripped)]
    return "  "


def dump_manifest(doc: dict[str, Any], reference_text: str = "") -> str:
    """Serialize ``doc`` using the formatting conventions of ``reference_text``.

    Keeps the indentation unit, CRLF line endings and the presence or
    absence of a trailing newline, matching what npm itself writes.
    """
    content = json.dumps(doc, indent=detect_indent(reference_text), ensure_ascii=False)
    if not reference_text or reference_text.endswith("\n"):
        content += "\n"
    if "\r\n" in reference_text:
        content = content.replace("\n", "\r\n")
    return content


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place. A crash mid-write leaves the previous file
    intact.
    """
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        # Clean up the temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class ManifestStateManager:
    """Owns read/write access to one project's package.json for a run."""

    def __init__(self, project_dir: Path | str, filename: str = MANIFEST_NAME) -> None:
        self.project_dir = Path(project_dir)
        self.path = self.project_dir / filename
        self._original_text: str | None = None
        self._original_doc: dict[str, Any] | None = None

    def _read(self) -> tuple[dict[str, Any], str]:
        if not self.path.exists():
            raise StateCaptureFailed(f"package.json not found at {self.path}")
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateCaptureFailed(f"Failed to read {self.path}: {exc}") from exc
        try:
            doc = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateCaptureFailed(f"Invalid JSON in package.json: {exc}") from exc
        if not isinstance(doc, dict):
            raise StateCaptureFailed("package.json must contain a JSON object")
        return doc, text

    def _write(self, doc: dict[str, Any], reference_text: str) -> None:
        atomic_write_text(self.path, dump_manifest(doc, reference_text))
        logger.debug("Wrote %s", self.path)

    def capture_initial_state(self) -> tuple[DependencyState, ...]:
        """Snapshot every dependency entry in fixed section order.

        Sections are read as dependencies, devDependencies, then
        optionalDependencies; entries keep their order within a section.
        The raw file text is remembered so rollback can restore it exactly.

        Raises:
            StateCaptureFailed: If the manifest is missing, unparseable, has
                malformed sections, or declares a package in two sections.
        """
        doc, text = self._read()
        states: list[DependencyState] = []
        seen: dict[str, Section] = {}

        for section in SECTION_ORDER:
            entries = doc.get(section.value, {})
            if not isinstance(entries, dict):
                raise StateCaptureFailed(f"{section.value} must be a JSON object")
            for name, value in entries.items():
                if not isinstance(value, str):
                    raise StateCaptureFailed(
                        f"{section.value}.{name} must be a version string"
                    )
                if name in seen:
                    raise StateCaptureFailed(
                        f"{name} is declared in both {seen[name].value} and {section.value}"
                    )
                seen[name] = section
                sign, version = parse_sign(value)
                states.append(
                    DependencyState(
                        package_name=name, version=version, sign=sign, section=section
                    )
                )

        self._original_text = text
        self._original_doc = doc
        logger.debug("Captured %d dependencies from %s", len(states), self.path)
        return tuple(states)

    def apply_candidate(
        self, package_name: str, section: Section, new_version_string: str
    ) -> None:
        """Rewrite exactly one entry of one section.

        Raises:
            StateCaptureFailed: If the manifest cannot be read.
            ValidationFailed: If the package is not declared in ``section``.
        """
        doc, text = self._read()
        entries = doc.get(section.value)
        if not isinstance(entries, dict) or package_name not in entries:
            raise ValidationFailed(f"{package_name} is not declared in {section.value}")
        entries[package_name] = new_version_string
        self._write(doc, text)

    def restore_entry(self, state: DependencyState) -> None:
        """Put one dependency back to its snapshot value.

        Recreates the entry (and its section) if something removed it.
        """
        doc, text = self._read()
        entries = doc.setdefault(state.section.value, {})
        if entries.get(state.package_name) == state.version_string:
            return
        entries[state.package_name] = state.version_string
        self._write(doc, text)
        logger.debug("Restored %s to %s", state.package_name, state.version_string)

    def rollback_to_state(self, snapshot: tuple[DependencyState, ...] | list[DependencyState]) -> None:
        """Rewrite all three dependency sections to match ``snapshot``.

        Non-dependency keys are left as found. Sections that end up empty
        are removed. If the result equals the document captured by
        ``capture_initial_state``, the original bytes are written back.

        Raises:
            RollbackFailed: If the manifest cannot be read or written.
        """
        details = {"target_state_count": len(snapshot), "file_path": str(self.path)}
        try:
            doc, text = self._read()
        except StateCaptureFailed as exc:
            if self._original_doc is None or self._original_text is None:
                raise RollbackFailed(
                    f"Failed to rollback to target state: {exc}", details=details
                ) from exc
            logger.warning("Manifest unreadable during rollback, rebuilding from snapshot")
            doc, text = json.loads(self._original_text), self._original_text

        for section in SECTION_ORDER:
            entries = {
                state.package_name: state.version_string
                for state in snapshot
                if state.section == section
            }
            if entries:
                doc[section.value] = entries
            else:
                doc.pop(section.value, None)

        try:
            if self._original_doc is not None and doc == self._original_doc:
                atomic_write_text(self.path, self._original_text or "")
            else:
                self._write(doc, text)
        except OSError as exc:
            raise RollbackFailed(
                f"Failed to rollback to target state: {exc}", details=details
            ) from exc
        logger.info("Rolled back %s to %d captured entries", self.path, len(snapshot))
