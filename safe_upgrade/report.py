"""Human-readable summary of an upgrade run."""

from __future__ import annotations

from .models import UpgradeResult


def _section(lines: list[str], title: str, entries: list[str]) -> None:
    if not entries:
        return
    lines.append("")
    lines.append(f"{title}:")
    lines.extend(f"  {entry}" for entry in entries)


def format_summary(result: UpgradeResult) -> str:
    """Render every outcome of a run, successful or not.

    Empty sections are omitted; the closing ``Summary:`` line is always
    present so partial failure is never silent.
    """
    lines = ["Upgrade Summary Report", "======================"]

    _section(
        lines,
        "Successfully Upgraded",
        [f"{u.package_name}: {u.from_version} → {u.to_version}" for u in result.upgraded],
    )
    _section(lines, "Skipped", [f"{s.package_name}: {s.reason}" for s in result.skipped])
    _section(lines, "Remaining Outdated", result.remaining_outdated)
    _section(lines, "Warnings", result.warnings)
    _section(lines, "Errors", result.errors)

    if result.rollback_performed:
        _section(lines, "Rollback", ["package.json restored to its initial state"])
    elif result.rollback_errors:
        _section(
            lines,
            "Rollback",
            ["FAILED, package.json may be inconsistent", *result.rollback_errors],
        )

    lines.append("")
    lines.append(
        f"Summary: {len(result.upgraded)} upgraded, {len(result.skipped)} skipped, "
        f"{len(result.remaining_outdated)} remaining outdated, "
        f"{len(result.warnings)} warnings"
    )
    return "\n".join(lines)
