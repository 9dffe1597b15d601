"""Command-line front end for the template update engine."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from pydantic import ValidationError

from updater.config import Settings
from updater.models.plan import PlanAction
from updater.models.update import Confirmation, EntryOutcome, ExitCode, Release
from updater.services.update_service import UpdateOrchestrator, auto_approve

if TYPE_CHECKING:
    from collections.abc import Callable

    from updater.models.plan import ChangePlan
    from updater.schemas.report import UpdateReport

logger = logging.getLogger(__name__)

_OUTCOME_MARKERS = {
    EntryOutcome.WRITTEN: "+",
    EntryOutcome.MERGED: "~",
    EntryOutcome.CONFLICT: "!",
    EntryOutcome.REMOVED: "-",
    EntryOutcome.FAILED: "x",
}


def _configure_logging(debug: bool, *, stream: TextIO | None = None) -> None:
    """Configure CLI logging."""
    level = logging.DEBUG if debug else logging.WARNING
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=stream or sys.stdout,
        force=True,
    )


def prompt_confirmer(
    input_fn: Callable[[str], str] | None = None,
) -> Callable[[ChangePlan, bool], Confirmation]:
    """Build an interactive confirmer that shows the plan and asks y/n/f.

    ``input_fn`` defaults to the builtin ``input``, looked up at prompt time.
    """

    def confirm(plan: ChangePlan, force: bool) -> Confirmation:
        print(f"Planned update to {plan.release_version}:")
        for entry in plan.entries:
            if entry.action == PlanAction.SKIP and not entry.flagged:
                continue
            suffix = f" ({entry.reason})" if entry.reason else ""
            print(f"  {entry.action:<18} {entry.path}{suffix}")
        skipped = sum(1 for entry in plan.entries if entry.action == PlanAction.SKIP)
        print(f"  {skipped} path(s) left untouched")

        choices = "[y]es / [n]o" if force else "[y]es / [n]o / [f]orce"
        while True:
            try:
                answer = (input_fn or input)(f"Apply this update? {choices}: ").strip().lower()
            except EOFError:
                return Confirmation.CANCELLED
            if answer in ("y", "yes"):
                return Confirmation.APPROVED
            if answer in ("n", "no", ""):
                return Confirmation.CANCELLED
            if answer in ("f", "force") and not force:
                return Confirmation.APPROVED_WITH_FORCE
            print("Please answer y or n" if force else "Please answer y, n or f")

    return confirm


def print_report(report: UpdateReport) -> None:
    """Human-readable summary of an update report."""
    if report.release_version:
        previous = report.previous_version or "untracked"
        print(f"Template update {previous} -> {report.release_version} ({report.state})")
    else:
        print(f"Recovery finished ({report.state})")

    for entry in report.entries:
        if entry.outcome in (EntryOutcome.SKIPPED, EntryOutcome.NOT_RUN) and not entry.flagged:
            continue
        marker = "!" if entry.flagged else _OUTCOME_MARKERS.get(entry.outcome, " ")
        detail = f" ({entry.detail})" if entry.detail else ""
        print(f"  {marker} {entry.outcome:<12} {entry.path}{detail}")

    conflicts = report.conflicts
    if conflicts:
        print(f"{len(conflicts)} path(s) need manual resolution:")
        for entry in conflicts:
            print(f"    ! {entry.path}")
    for warning in report.warnings:
        print(f"Warning: {warning}")
    if report.error:
        print(f"Error: {report.error}")
    if report.unrestored_paths:
        print("Project may be inconsistent; these paths were not restored:")
        for path in report.unrestored_paths:
            print(f"    x {path}")


def build_parser() -> argparse.ArgumentParser:
    """Argument parser for ``template-update``."""
    parser = argparse.ArgumentParser(
        prog="template-update",
        description="Update template-derived project files to a newer release",
    )
    parser.add_argument(
        "--project", "-p", default=".", help="Project directory (default: current)"
    )
    parser.add_argument("--release", "-r", help="Directory holding the unpacked release")
    parser.add_argument(
        "--release-version", help="Release version (default: read from the release's VERSION)"
    )
    parser.add_argument("--check", action="store_true", help="Plan only; change nothing")
    parser.add_argument(
        "--force", action="store_true", help="Overwrite customized templates with upstream"
    )
    parser.add_argument("--yes", "-y", action="store_true", help="Apply without asking")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument(
        "--recover",
        action="store_true",
        help="Restore the project from a snapshot left by an interrupted update",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Error: invalid configuration: {exc}")
        return int(ExitCode.USAGE)
    debug = args.debug or settings.debug
    _configure_logging(debug, stream=sys.stderr if args.json else sys.stdout)

    project_root = Path(args.project).resolve()
    if args.yes or args.check:
        confirmer = auto_approve
    else:
        confirmer = prompt_confirmer()
    orchestrator = UpdateOrchestrator(settings, confirmer=confirmer)

    release: Release | None = None
    if not args.recover:
        if not args.release:
            parser.error("--release is required unless --recover is given")
        try:
            release = Release.from_directory(Path(args.release).resolve(), args.release_version)
        except ValueError as exc:
            parser.error(str(exc))

    try:
        if release is None:
            report = orchestrator.recover(project_root)
        else:
            logger.debug("Updating %s to %s from %s", project_root, release.version, release.root)
            report = orchestrator.run(
                project_root, release, check_only=args.check, force=args.force
            )
    except Exception:
        logger.exception("Unexpected error during update")
        print("Error: unexpected failure; see the log for details")
        return int(ExitCode.ERROR)

    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        print_report(report)
    return int(report.status)


if __name__ == "__main__":
    sys.exit(main())
