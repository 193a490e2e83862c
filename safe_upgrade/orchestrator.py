"""Upgrade run: check → (fast path) → fetch → iterate → done | rollback.

This module drives one complete upgrade run:
1. Validate the script pipeline before anything is spawned
2. Snapshot every dependency entry of package.json
3. Optionally try a fast path (an admin gate, or all newest versions at once)
4. Fetch newer versions for each dependency from the registry
5. Upgrade dependencies one at a time, newest candidate first
6. Roll the whole manifest back to the snapshot on a fatal error

Phases are an explicit ``OrchestratorState`` enum. Every move is checked
against ``TRANSITIONS`` and recorded on the result, so callers (and tests)
can observe exactly how a run progressed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .candidates import CandidateState, CandidateUpgrader, collect_candidates
from .errors import RollbackFailed, StateCaptureFailed, UpgradeError, ValidationFailed
from .gate import Gate, Runner, ScriptGate
from .manifest import ManifestStateManager
from .models import (
    DependencyState,
    OrchestratorState,
    PackageManagerKind,
    SkippedDependency,
    StateTransition,
    UpgradedDependency,
    UpgradeOptions,
    UpgradeResult,
    VersionCandidateSet,
)
from .registry import RegistryError, VersionSource, detect_custom_registry
from .shell import ScriptRunner, step
from .versions import bump_preserving_sign

logger = logging.getLogger(__name__)

S = OrchestratorState

TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    S.IDLE: frozenset({S.CHECKING}),
    S.CHECKING: frozenset({S.FAST_PATH, S.FETCHING, S.ROLLING_BACK, S.FAILED}),
    S.FAST_PATH: frozenset({S.DONE, S.FETCHING, S.ITERATING, S.ROLLING_BACK, S.FAILED}),
    S.FETCHING: frozenset({S.FAST_PATH, S.ITERATING, S.DONE, S.ROLLING_BACK, S.FAILED}),
    S.ITERATING: frozenset({S.DONE, S.ROLLING_BACK, S.FAILED}),
    S.ROLLING_BACK: frozenset({S.FAILED}),
    S.DONE: frozenset(),
    S.FAILED: frozenset(),
}

FAST_PATH_ADMIN_SUCCESS = "Fast-path successful: admin gate passed, no iterative upgrades needed"
NO_UPGRADE_ACCEPTED = "All incremental upgrade attempts failed"
REVERTED_REASON = "reverted by project rollback"


class IllegalTransition(RuntimeError):
    """A phase change not allowed by ``TRANSITIONS``."""

    def __init__(self, source: OrchestratorState, target: OrchestratorState) -> None:
        super().__init__(f"Illegal transition {source.value} → {target.value}")
        self.source = source
        self.target = target


class UpgradeOrchestrator:
    """Drives a single upgrade run over one project.

    An orchestrator instance is single-use: ``run`` may be called once.

    Args:
        options: Caller configuration.
        version_source: Where newer versions come from (a RegistryClient
            in production).
        runner: Executes scripts and lockfile syncs. Defaults to a
            ScriptRunner honouring ``options.max_output_bytes``.
        gate: Acceptance gate. Defaults to the configured
            install?/test/build/lint pipeline.
        manifest: Manifest manager. Defaults to one over
            ``options.project_dir``.
        on_transition: Called with every StateTransition as it happens.
    """

    def __init__(
        self,
        options: UpgradeOptions,
        version_source: VersionSource,
        *,
        runner: Runner | None = None,
        gate: Gate | None = None,
        manifest: ManifestStateManager | None = None,
        on_transition: Callable[[StateTransition], None] | None = None,
    ) -> None:
        self.options = options
        self.version_source = version_source
        self.runner = runner or ScriptRunner(options.max_output_bytes)
        self.manifest = manifest or ManifestStateManager(options.project_dir)
        self.on_transition = on_transition
        self.state = OrchestratorState.IDLE
        self._gate = gate
        self._upgrader: CandidateUpgrader | None = None

    def _transition(
        self, result: UpgradeResult, target: OrchestratorState, reason: str = ""
    ) -> None:
        if target not in TRANSITIONS[self.state]:
            raise IllegalTransition(self.state, target)
        record = StateTransition(source=self.state, target=target, reason=reason)
        logger.debug("State %s → %s %s", self.state.value, target.value, reason)
        self.state = target
        result.transitions.append(record)
        if self.on_transition is not None:
            self.on_transition(record)

    def _build_gate(self) -> Gate:
        """Validate the script pipeline and build the gate.

        Raises:
            ValidationFailed: If the package manager cannot sync a lockfile
                or a required script is missing.
        """
        opts = self.options
        if opts.package_manager is PackageManagerKind.SHELL:
            raise ValidationFailed(
                "package manager must be npm, yarn, pnpm or bun to sync the lockfile"
            )

        required = {"test": opts.test_script}
        if opts.require_full_gate:
            required.update(build=opts.build_script, lint=opts.lint_script)
        missing = [name for name, config in required.items() if config is None]
        if missing:
            raise ValidationFailed(
                f"Required scripts missing: {', '.join(missing)}",
                details={"missing": missing},
            )

        if self._gate is not None:
            return self._gate
        assert opts.test_script is not None
        return ScriptGate.from_scripts(
            self.runner,
            install=opts.install_script,
            test=opts.test_script,
            build=opts.build_script,
            lint=opts.lint_script,
        )

    def run(self) -> UpgradeResult:
        """Execute the run and return everything it did.

        Raises:
            ValidationFailed: Before any process is started, if the script
                pipeline is incomplete.
            IllegalTransition: If the orchestrator has already been run.
        """
        if self.state is not OrchestratorState.IDLE:
            raise IllegalTransition(self.state, OrchestratorState.CHECKING)
        gate = self._build_gate()

        result = UpgradeResult()
        self._transition(result, S.CHECKING, "scripts validated")

        registry_warning = detect_custom_registry(
            self.options.project_dir, self.options.registry_url
        )
        if registry_warning:
            result.warnings.append(registry_warning)

        step("Capturing dependency state")
        try:
            snapshot = self.manifest.capture_initial_state()
        except StateCaptureFailed as exc:
            logger.error("%s", exc)
            result.errors.append(str(exc))
            result.rollback_available = False
            if self.options.rollback_on_failure:
                result.warnings.append("Rollback skipped: no initial state was captured")
            self._transition(result, S.FAILED, "snapshot failed")
            return result
        result.initial_state = list(snapshot)

        try:
            self._execute(snapshot, gate, result)
        except (UpgradeError, OSError) as exc:
            logger.error("Upgrade aborted: %s", exc)
            result.errors.append(f"Upgrade aborted: {exc}")
            self._fail(snapshot, result, str(exc))
        except BaseException:
            # Interrupted or crashed: restore before propagating.
            if self.options.rollback_on_failure:
                self._restore_quietly(snapshot)
            raise
        return result

    def _execute(
        self, snapshot: tuple[DependencyState, ...], gate: Gate, result: UpgradeResult
    ) -> None:
        opts = self.options
        upgrader = self._upgrader = CandidateUpgrader(
            self.manifest,
            gate,
            self.runner,
            opts.package_manager,
            opts.project_dir,
            opts.sync_timeout_ms,
        )

        if opts.fast_path and opts.admin_script is not None:
            self._transition(result, S.FAST_PATH, "admin gate configured")
            if self._admin_fast_path(snapshot, result):
                self._transition(result, S.DONE, "fast path passed")
                return
            self._transition(result, S.FETCHING, "fast path failed")
        else:
            self._transition(result, S.FETCHING)

        outdated = self._fetch(snapshot, result)
        if not outdated:
            logger.info("All dependencies are up to date")
            self._transition(result, S.DONE, "nothing to upgrade")
            return

        if opts.fast_path and opts.admin_script is None and self.state is S.FETCHING:
            self._transition(result, S.FAST_PATH, "bulk upgrade")
            if self._bulk_fast_path(snapshot, outdated, upgrader, result):
                self._transition(result, S.DONE, "fast path passed")
                return

        self._transition(result, S.ITERATING)
        self._iterate(snapshot, outdated, upgrader, result)

        if not result.upgraded:
            result.errors.append(NO_UPGRADE_ACCEPTED)
            self._fail(snapshot, result, "no upgrade passed the gate")
            return
        self._transition(result, S.DONE, f"{len(result.upgraded)} upgraded")

    def _fetch(
        self, snapshot: tuple[DependencyState, ...], result: UpgradeResult
    ) -> list[VersionCandidateSet]:
        step("Fetching available versions")
        outdated: list[VersionCandidateSet] = []
        for state in snapshot:
            try:
                versions = self.version_source.fetch_versions(state.package_name)
            except RegistryError as exc:
                logger.warning("%s", exc)
                result.warnings.append(f"Could not fetch versions for {state.package_name}: {exc}")
                result.skipped.append(
                    SkippedDependency(package_name=state.package_name, reason="registry lookup failed")
                )
                continue
            candidate_set = collect_candidates(state, versions)
            if candidate_set is not None:
                logger.info(
                    "%s %s: %d newer version(s)",
                    state.package_name,
                    state.version,
                    len(candidate_set.candidates),
                )
                outdated.append(candidate_set)
        return outdated

    def _admin_fast_path(
        self, snapshot: tuple[DependencyState, ...], result: UpgradeResult
    ) -> bool:
        assert self.options.admin_script is not None
        step("Fast path: running admin gate")
        gate_result = ScriptGate.single(self.options.admin_script, self.runner).run(
            self.options.project_dir
        )
        if gate_result.passed:
            result.fast_path_succeeded = True
            result.warnings.append(FAST_PATH_ADMIN_SUCCESS)
            return True

        self.manifest.rollback_to_state(snapshot)
        result.warnings.append("Fast path failed, falling back to incremental upgrades")
        return False

    def _bulk_fast_path(
        self,
        snapshot: tuple[DependencyState, ...],
        outdated: list[VersionCandidateSet],
        upgrader: CandidateUpgrader,
        result: UpgradeResult,
    ) -> bool:
        step(f"Fast path: upgrading {len(outdated)} dependencies at once")
        by_name = {state.package_name: state for state in snapshot}
        for candidate_set in outdated:
            backup = by_name[candidate_set.package_name]
            self.manifest.apply_candidate(
                backup.package_name,
                backup.section,
                bump_preserving_sign(backup.version_string, candidate_set.candidates[0]),
            )

        sync = upgrader.sync()
        passed = sync.success and upgrader.gate.run(self.options.project_dir).passed
        if passed:
            result.fast_path_succeeded = True
            result.upgraded.extend(
                UpgradedDependency(
                    package_name=c.package_name,
                    from_version=c.current_version,
                    to_version=c.candidates[0],
                )
                for c in outdated
            )
            result.warnings.append(
                f"Fast-path successful: {len(outdated)} dependencies upgraded in a single pass"
            )
            return True

        self.manifest.rollback_to_state(snapshot)
        result.warnings.append("Fast path failed, falling back to incremental upgrades")
        return False

    def _iterate(
        self,
        snapshot: tuple[DependencyState, ...],
        outdated: list[VersionCandidateSet],
        upgrader: CandidateUpgrader,
        result: UpgradeResult,
    ) -> None:
        by_name = {state.package_name: state for state in snapshot}
        for candidate_set in outdated:
            step(f"Upgrading {candidate_set.package_name} ({candidate_set.current_version})")
            outcome = upgrader.upgrade(candidate_set, by_name[candidate_set.package_name])
            result.attempts.extend(outcome.attempts)
            result.warnings.extend(outcome.warnings)
            if outcome.state is CandidateState.ACCEPTED:
                assert outcome.accepted_version is not None
                result.upgraded.append(
                    UpgradedDependency(
                        package_name=outcome.package_name,
                        from_version=outcome.from_version,
                        to_version=outcome.accepted_version,
                    )
                )
            else:
                result.skipped.append(
                    SkippedDependency(
                        package_name=outcome.package_name,
                        reason=outcome.reason or "no candidate accepted",
                    )
                )
                result.remaining_outdated.append(outcome.package_name)

    def _fail(
        self, snapshot: tuple[DependencyState, ...], result: UpgradeResult, reason: str
    ) -> None:
        """Handle a fatal condition, rolling back when the caller asked for it.

        Upgrades accepted earlier in the run are reverted with everything
        else and reported as skipped.
        """
        if not self.options.rollback_on_failure:
            self._transition(result, S.FAILED, reason)
            return

        self._transition(result, S.ROLLING_BACK, reason)
        step("Rolling back to initial state")
        try:
            self.manifest.rollback_to_state(snapshot)
        except RollbackFailed as exc:
            logger.error("%s", exc)
            result.rollback_errors.append(str(exc))
            result.errors.append(str(exc))
            result.rollback_available = False
            self._transition(result, S.FAILED, "rollback failed")
            return

        result.rollback_performed = True
        for upgraded in result.upgraded:
            result.skipped.append(
                SkippedDependency(package_name=upgraded.package_name, reason=REVERTED_REASON)
            )
            result.remaining_outdated.append(upgraded.package_name)
        result.upgraded = []

        if self._upgrader is not None:
            sync = self._upgrader.sync()
            if not sync.success:
                result.warnings.append(
                    f"Lockfile sync after rollback failed (exit {sync.exit_code})"
                )
        self._transition(result, S.FAILED, "rolled back")

    def _restore_quietly(self, snapshot: tuple[DependencyState, ...]) -> None:
        try:
            self.manifest.rollback_to_state(snapshot)
        except RollbackFailed as exc:
            logger.error("Rollback during abort failed: %s", exc)
