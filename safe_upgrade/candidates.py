"""Per-dependency decremental upgrade.

For one dependency, walk the newer registry versions from newest to oldest.
Each candidate is written to the manifest, the lockfile is re-synced and
the gate is run. The first candidate that passes is kept; every failure
puts the dependency's own entry back before moving on.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from .errors import (
    ErrorKind,
    InvalidVersion,
    ScriptExecutionFailed,
    StateCaptureFailed,
    ValidationFailed,
)
from .gate import Gate, Runner
from .manifest import ManifestStateManager
from .models import (
    DEFAULT_TIMEOUT_MS,
    SPAWN_FAILURE_EXIT_CODE,
    DependencyState,
    ExecutionResult,
    PackageManagerKind,
    ScriptConfig,
    Section,
    UpgradeAttempt,
    VersionCandidateSet,
)
from .versions import bump_preserving_sign, is_newer, parse_version, sort_descending_stable

logger = logging.getLogger(__name__)

EXHAUSTED_REASON = "all newer versions failed the gate"
PEER_CONFLICT_MARKERS = ("ERESOLVE", "peer dep")
SYNC_STAGE = "sync"
APPLY_STAGE = "apply"


class CandidateState(str, Enum):
    """Where one dependency is in its retry walk."""

    PENDING = "pending"
    TRYING = "trying"
    ACCEPTED = "accepted"
    EXHAUSTED = "exhausted"


class CandidateOutcome(BaseModel):
    package_name: str
    section: Section
    from_version: str
    state: CandidateState = CandidateState.PENDING
    accepted_version: str | None = None
    reason: str | None = None
    attempts: list[UpgradeAttempt] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def collect_candidates(
    state: DependencyState, versions: Iterable[str]
) -> VersionCandidateSet | None:
    """Build the candidate list for one dependency.

    Keeps stable versions newer than the current one, newest first, with
    one entry per precedence level.

    Returns:
        None if nothing is newer, or the manifest value is not a plain
        version (ranges, tags, URLs are never upgraded).
    """
    try:
        parse_version(state.version)
    except InvalidVersion:
        logger.debug("Not upgrading %s: %r is not a plain version", state.package_name, state.version)
        return None

    candidates: list[str] = []
    for version in sort_descending_stable(list(versions)):
        if not is_newer(version, state.version):
            break
        if candidates and not is_newer(candidates[-1], version):
            continue
        candidates.append(version)

    if not candidates:
        return None
    return VersionCandidateSet(
        package_name=state.package_name,
        section=state.section,
        current_version=state.version,
        candidates=candidates,
    )


def has_peer_conflict(result: ExecutionResult) -> bool:
    output = f"{result.stdout}\n{result.stderr}"
    return any(marker in output for marker in PEER_CONFLICT_MARKERS)


def _failure_kind(result: ExecutionResult) -> ErrorKind:
    if result.exit_code == SPAWN_FAILURE_EXIT_CODE:
        return ErrorKind.PACKAGE_MANAGER_ERROR
    return ErrorKind.SCRIPT_EXECUTION_FAILED


class CandidateUpgrader:
    """Try candidates for one dependency at a time against a gate.

    Args:
        manifest: The run's manifest manager; the only writer of package.json.
        gate: Acceptance gate run after each successful lockfile sync.
        runner: Executes the lockfile sync.
        package_manager: Tool used for the sync.
        project_dir: Directory the sync runs in.
        sync_timeout_ms: Timeout for each sync.
    """

    def __init__(
        self,
        manifest: ManifestStateManager,
        gate: Gate,
        runner: Runner,
        package_manager: PackageManagerKind,
        project_dir: Path | str,
        sync_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.manifest = manifest
        self.gate = gate
        self.runner = runner
        self.project_dir = Path(project_dir)
        self.sync_config = ScriptConfig(
            kind=package_manager, command="install", timeout_ms=sync_timeout_ms
        )

    def sync(self) -> ExecutionResult:
        """Re-sync the lockfile with the manifest on disk."""
        return self.runner.run(self.sync_config, self.project_dir)

    def upgrade(
        self, candidates: VersionCandidateSet, backup: DependencyState
    ) -> CandidateOutcome:
        """Walk ``candidates`` newest first and keep the first that passes.

        Args:
            candidates: Newer versions for one dependency.
            backup: The dependency's snapshot entry, restored after every
                failed candidate.

        Returns:
            An ACCEPTED outcome carrying the kept version, or an EXHAUSTED
            one after the entry has been restored.

        Raises:
            StateCaptureFailed: If a restore could not read the manifest.
            OSError: If a restore could not write it.
        """
        outcome = CandidateOutcome(
            package_name=candidates.package_name,
            section=candidates.section,
            from_version=candidates.current_version,
        )

        for version in candidates.candidates:
            outcome.state = CandidateState.TRYING
            attempt = self._try(version, backup)
            outcome.attempts.append(attempt)
            if attempt.accepted:
                outcome.state = CandidateState.ACCEPTED
                outcome.accepted_version = version
                logger.info(
                    "Upgraded %s: %s → %s", backup.package_name, backup.version, version
                )
                return outcome

        outcome.state = CandidateState.EXHAUSTED
        outcome.reason = EXHAUSTED_REASON
        self.manifest.restore_entry(backup)
        logger.warning("%s: %s", backup.package_name, EXHAUSTED_REASON)

        # Leave the lockfile matching the restored entry.
        sync = self.sync()
        if not sync.success:
            outcome.warnings.append(
                f"Lockfile sync after restoring {backup.package_name} failed "
                f"(exit {sync.exit_code})"
            )
        return outcome

    def _try(self, version: str, backup: DependencyState) -> UpgradeAttempt:
        name = backup.package_name
        attempt = UpgradeAttempt(package_name=name, tried_version=version)

        try:
            new_value = bump_preserving_sign(backup.version_string, version)
            logger.info("Trying %s@%s", name, new_value)
            self.manifest.apply_candidate(name, backup.section, new_value)
        except (InvalidVersion, StateCaptureFailed, ValidationFailed, OSError) as exc:
            logger.warning("Could not apply %s@%s: %s", name, version, exc)
            self.manifest.restore_entry(backup)
            attempt.failed_stage = APPLY_STAGE
            attempt.failure_kind = getattr(exc, "kind", ErrorKind.STATE_CAPTURE_FAILED).value
            return attempt

        sync = self.sync()
        if not sync.success:
            logger.warning(
                "Lockfile sync failed for %s@%s (exit %d)", name, version, sync.exit_code
            )
            self.manifest.restore_entry(backup)
            attempt.failed_stage = SYNC_STAGE
            attempt.failure_kind = _failure_kind(sync).value
            attempt.peer_conflict = has_peer_conflict(sync)
            return attempt

        gate_result = self.gate.run(self.project_dir)
        attempt.gate_result = gate_result
        if gate_result.passed:
            attempt.accepted = True
            return attempt

        self.manifest.restore_entry(backup)
        failed = (
            gate_result.results[-1]
            if gate_result.results
            else ExecutionResult(success=False, exit_code=1)
        )
        stage = gate_result.failed_stage.value if gate_result.failed_stage else "gate"
        attempt.failed_stage = stage
        attempt.failure_kind = _failure_kind(failed).value
        attempt.peer_conflict = has_peer_conflict(failed)
        logger.info(
            "Rejected %s@%s: %s%s",
            name,
            version,
            ScriptExecutionFailed.from_result(stage, failed),
            " (peer dependency conflict)" if attempt.peer_conflict else "",
        )
        return attempt
