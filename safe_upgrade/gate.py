"""Acceptance gate: an ordered, short-circuiting script pipeline."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from .models import ExecutionResult, GateResult, GateStage, ScriptConfig

logger = logging.getLogger(__name__)


class Runner(Protocol):
    def run(self, config: ScriptConfig, cwd: Path | str) -> ExecutionResult: ...


class Gate(Protocol):
    """Anything that can decide whether the project in ``cwd`` is healthy."""

    def run(self, cwd: Path | str) -> GateResult: ...


def run_gate(
    stages: Sequence[tuple[GateStage, ScriptConfig]], cwd: Path | str, runner: Runner
) -> GateResult:
    """Run gate stages strictly in order, stopping at the first failure.

    Stages after a failing one are never started.

    Args:
        stages: ``(stage, script)`` pairs, usually install?, test, build, lint.
        cwd: Project directory every script runs in.
        runner: Executes a single script (normally a ScriptRunner).

    Returns:
        GateResult with one ExecutionResult per stage actually run.
    """
    results: list[ExecutionResult] = []
    for stage, config in stages:
        logger.info("Gate stage %s: %s", stage.value, config.command)
        result = runner.run(config, cwd)
        results.append(result)
        if not result.success:
            logger.info(
                "Gate stage %s failed (exit %d, %dms)",
                stage.value,
                result.exit_code,
                result.duration_ms,
            )
            return GateResult(passed=False, failed_stage=stage, results=results)
    return GateResult(passed=True, results=results)


class ScriptGate:
    """A Gate backed by a fixed list of scripts."""

    def __init__(self, stages: Sequence[tuple[GateStage, ScriptConfig]], runner: Runner) -> None:
        if not stages:
            raise ValueError("a gate needs at least one stage")
        self.stages = list(stages)
        self.runner = runner

    @classmethod
    def from_scripts(
        cls,
        runner: Runner,
        *,
        test: ScriptConfig,
        build: ScriptConfig | None = None,
        lint: ScriptConfig | None = None,
        install: ScriptConfig | None = None,
    ) -> ScriptGate:
        """Build the standard install? → test → build? → lint? pipeline."""
        ordered = [
            (GateStage.INSTALL, install),
            (GateStage.TEST, test),
            (GateStage.BUILD, build),
            (GateStage.LINT, lint),
        ]
        return cls([(stage, config) for stage, config in ordered if config is not None], runner)

    @classmethod
    def single(
        cls, config: ScriptConfig, runner: Runner, stage: GateStage = GateStage.TEST
    ) -> ScriptGate:
        """A one-stage gate, used for the fast-path admin command."""
        return cls([(stage, config)], runner)

    def run(self, cwd: Path | str) -> GateResult:
        return run_gate(self.stages, cwd, self.runner)
