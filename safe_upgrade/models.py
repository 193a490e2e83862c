"""Data models for safe-upgrade.

These Pydantic models represent the core data structures passed between
the manifest manager, the script runner, the gate and the orchestrator.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ValidationFailed

DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
TIMEOUT_EXIT_CODE = 124
SPAWN_FAILURE_EXIT_CODE = 127
DEFAULT_REGISTRY = "https://registry.npmjs.org"


class Section(str, Enum):
    """A dependency section of package.json."""

    DEPENDENCIES = "dependencies"
    DEV_DEPENDENCIES = "devDependencies"
    OPTIONAL_DEPENDENCIES = "optionalDependencies"


# Fixed enumeration order for snapshots, reports and upgrade passes.
SECTION_ORDER: tuple[Section, ...] = (
    Section.DEPENDENCIES,
    Section.DEV_DEPENDENCIES,
    Section.OPTIONAL_DEPENDENCIES,
)


class Sign(str, Enum):
    """Range operator prefixing a manifest version string."""

    CARET = "^"
    TILDE = "~"
    EXACT = "exact"

    @property
    def prefix(self) -> str:
        return "" if self is Sign.EXACT else self.value


class PackageManagerKind(str, Enum):
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"
    BUN = "bun"
    SHELL = "shell"


class GateStage(str, Enum):
    """Stages of the acceptance gate, in execution order."""

    INSTALL = "install"
    TEST = "test"
    BUILD = "build"
    LINT = "lint"


class OrchestratorState(str, Enum):
    """Phases of a single orchestrator run."""

    IDLE = "idle"
    CHECKING = "checking"
    FETCHING = "fetching"
    FAST_PATH = "fast_path"
    ITERATING = "iterating"
    ROLLING_BACK = "rolling_back"
    DONE = "done"
    FAILED = "failed"


class DependencyState(BaseModel):
    """One dependency entry as captured in a snapshot.

    Attributes:
        package_name: npm package name, unique within a snapshot.
        version: Bare version (never starts with ``^`` or ``~``). Complex
            ranges such as ``>=1 <2`` are kept verbatim with an exact sign.
        sign: Range operator to re-attach when writing the entry back.
        section: package.json section holding the entry.
    """

    model_config = ConfigDict(frozen=True)

    package_name: str
    version: str
    sign: Sign = Sign.EXACT
    section: Section = Section.DEPENDENCIES

    @property
    def version_string(self) -> str:
        """The manifest value, sign included (e.g. ``^4.17.20``)."""
        return f"{self.sign.prefix}{self.version}"


class VersionCandidateSet(BaseModel):
    """Newer registry versions to try for one dependency, newest first."""

    package_name: str
    section: Section
    current_version: str
    candidates: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_ordering(self) -> VersionCandidateSet:
        from .versions import is_newer, is_stable

        previous: str | None = None
        for candidate in self.candidates:
            if not is_stable(candidate):
                raise ValueError(f"candidate {candidate!r} is not a stable version")
            if not is_newer(candidate, self.current_version):
                raise ValueError(
                    f"candidate {candidate!r} is not newer than {self.current_version!r}"
                )
            if previous is not None and not is_newer(previous, candidate):
                raise ValueError("candidates must be strictly descending")
            previous = candidate
        return self


class ScriptConfig(BaseModel):
    """A single user-supplied script: which tool runs it and for how long.

    An empty command or a non-positive timeout raises ``ValidationFailed``
    rather than a pydantic ``ValidationError``.
    """

    kind: PackageManagerKind = PackageManagerKind.NPM
    command: str
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    @model_validator(mode="after")
    def _check_values(self) -> ScriptConfig:
        if not self.command.strip():
            raise ValidationFailed("script command cannot be empty")
        if self.timeout_ms <= 0:
            raise ValidationFailed(f"script timeout must be positive, got {self.timeout_ms}")
        return self


class ExecutionResult(BaseModel):
    """Outcome of one external command. Never an exception."""

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timed_out: bool = False

    @model_validator(mode="after")
    def _check_success(self) -> ExecutionResult:
        if self.success != (self.exit_code == 0):
            raise ValueError("success must match exit_code == 0")
        return self


class GateResult(BaseModel):
    passed: bool
    failed_stage: GateStage | None = None
    results: list[ExecutionResult] = Field(default_factory=list)


class UpgradeAttempt(BaseModel):
    """Record of one candidate tried for one dependency.

    ``failed_stage`` is ``"sync"`` when the lockfile sync failed, otherwise
    the gate stage that failed (or None on acceptance).
    """

    package_name: str
    tried_version: str
    gate_result: GateResult | None = None
    accepted: bool = False
    failed_stage: str | None = None
    failure_kind: str | None = None
    peer_conflict: bool = False


class UpgradedDependency(BaseModel):
    package_name: str
    from_version: str
    to_version: str


class SkippedDependency(BaseModel):
    package_name: str
    reason: str


class StateTransition(BaseModel):
    """One orchestrator phase change, in the order it happened."""

    source: OrchestratorState
    target: OrchestratorState
    reason: str = ""


class UpgradeResult(BaseModel):
    """Everything a run did, including what it could not do."""

    upgraded: list[UpgradedDependency] = Field(default_factory=list)
    skipped: list[SkippedDependency] = Field(default_factory=list)
    remaining_outdated: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    rollback_performed: bool = False
    rollback_available: bool = True
    initial_state: list[DependencyState] | None = None
    rollback_errors: list[str] = Field(default_factory=list)
    attempts: list[UpgradeAttempt] = Field(default_factory=list)
    transitions: list[StateTransition] = Field(default_factory=list)
    fast_path_succeeded: bool = False


class UpgradeOptions(BaseModel):
    """Caller configuration for one orchestrator run.

    Attributes:
        project_dir: Directory holding package.json; every script runs here.
        package_manager: Tool used for the lockfile sync and bulk installs.
        install_script: Optional first gate stage.
        test_script / build_script / lint_script: Gate stages. All three are
            required when ``require_full_gate`` is set, otherwise only the
            test script is.
        admin_script: Fast-path command; when absent the fast path applies
            every newest candidate at once instead.
        rollback_on_failure: Restore the snapshot on orchestrator-level
            fatal errors.
        fast_path: Try a single bulk pass before iterating.
    """

    project_dir: Path
    package_manager: PackageManagerKind = PackageManagerKind.NPM
    install_script: ScriptConfig | None = None
    test_script: ScriptConfig | None = None
    build_script: ScriptConfig | None = None
    lint_script: ScriptConfig | None = None
    admin_script: ScriptConfig | None = None
    rollback_on_failure: bool = True
    fast_path: bool = False
    require_full_gate: bool = True
    sync_timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    registry_url: str = DEFAULT_REGISTRY
    max_output_bytes: int = Field(default=DEFAULT_MAX_OUTPUT_BYTES, gt=0)
