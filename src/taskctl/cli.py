"""taskctl command-line interface.

Every command resolves the plan directory, loads the graph, opens one
status session and saves it at most once. Core errors are converted to
``click.ClickException`` here and nowhere else.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskctl import __version__
from taskctl.config import VALID_BACKENDS, load_config
from taskctl.delegation import assemble
from taskctl.errors import NotDispatchable, PlanNotFound, TaskctlError, UnknownTask
from taskctl.graph import TaskGraph, build_graph_artifact
from taskctl.paths import PLANNING_DIR_NAME, PlanPaths, resolve_dated_plan_paths, resolve_plan_paths
from taskctl.plan import load_plan, load_task_definitions, read_spec_text
from taskctl.status import VALID_RESULTS
from taskctl.status_reference import get_status_reference
from taskctl.store import StatusSession, StatusStore, open_store, write_json_atomic

log = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


class _JsonAwareGroup(click.Group):
    """Group that reports errors as JSON on stdout when ``--json`` is given.

    Without ``--json`` click's usual ``Error: ...`` on stderr is kept.
    Unknown commands get fuzzy-matched suggestions.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        argv = list(args) if args is not None else sys.argv[1:]
        json_mode = "--json" in argv
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            if json_mode:
                click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            else:
                e.show()
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


@dataclass
class CliState:
    cwd: Path
    slug: str | None
    backend: str | None
    json_mode: bool


@contextlib.contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except TaskctlError as exc:
        raise click.ClickException(str(exc)) from None


def _split_values(values: Iterable[str]) -> list[str]:
    """Flatten repeated and comma-separated option values, dropping blanks."""
    items = []
    for value in values:
        items.extend(part.strip() for part in value.split(","))
    return [item for item in items if item]


def _emit_json(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2))


def _format_ids(task_ids: list[str]) -> str:
    return ", ".join(task_ids) or "(none)"


def _open_plan(state: CliState) -> tuple[PlanPaths, TaskGraph, list[str], StatusStore]:
    paths = resolve_plan_paths(state.cwd, state.slug)
    config = load_config(paths.workspace_root, backend=state.backend)
    graph, warnings = load_plan(paths)
    log.debug(
        "Plan %s: %d tasks from %s, backend=%s",
        paths.slug,
        len(graph.tasks),
        graph.source,
        config.backend,
    )
    return paths, graph, warnings, open_store(paths, config)


def _resolve_task(session: StatusSession, task_id: str | None) -> str:
    """Explicit task ID, or the first ready task."""
    if task_id:
        if task_id not in session.graph:
            raise UnknownTask(task_id)
        return task_id
    ready = session.ready()
    if not ready:
        raise NotDispatchable("No ready tasks available")
    return ready[0]


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--slug", default=None, help="Planning slug (default: derived from the git branch).")
@click.option(
    "--backend",
    type=click.Choice(VALID_BACKENDS, case_sensitive=False),
    default=None,
    help="Status store backend (default: TASKCTL_BACKEND, .taskctl.toml, then sqlite).",
)
@click.option("--json", "json_mode", is_flag=True, help="Emit machine-readable JSON.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging on stderr.")
@click.pass_context
def main(ctx: click.Context, slug: str | None, backend: str | None, json_mode: bool, verbose: bool):
    """Track dependency-gated planning tasks and hand ready ones to workers.

    \b
    Typical loop:
      taskctl init                          Resume: reset stale in_progress tasks
      taskctl dispatch --owner worker-1     Start the first ready task, print its prompt
      taskctl complete T1 --result done --summary "..." --files a.py,b.py
      taskctl status                        Summary, ready list and per-task states

    \b
    Plans live in planning/<slug>/ (tasks.yaml, SPEC.md, task.status.json).
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    ctx.obj = CliState(cwd=Path(os.getcwd()), slug=slug, backend=backend, json_mode=json_mode)


# -- lifecycle --


@main.command()
@click.pass_obj
def init(state: CliState):
    """Resume a plan: reset stale in_progress tasks and re-check blocked ones."""
    with _handle_errors():
        paths, graph, plan_warnings, store = _open_plan(state)
        with store.open_session(graph, reset_in_progress=True, reevaluate_blocked=True) as session:
            session.save()

    summary = session.summary
    warnings = plan_warnings + session.warnings
    if state.json_mode:
        _emit_json(
            {
                "slug": paths.slug,
                "plan_source": graph.source,
                **store.describe(),
                "summary": summary,
                "warnings": warnings,
            }
        )
        return
    click.echo(
        f"Resumed: {summary['done']} done, {summary['todo']} todo, {summary['blocked']} blocked"
    )
    for warning in warnings:
        click.echo(f"Warning: {warning}")


@main.command()
@click.pass_obj
def ready(state: CliState):
    """List tasks that can be dispatched now."""
    with _handle_errors():
        paths, graph, plan_warnings, store = _open_plan(state)
        with store.open_session(graph, reevaluate_blocked=True) as session:
            session.save()
            ready_ids = session.ready()

    if state.json_mode:
        _emit_json(
            {
                "slug": paths.slug,
                "summary": session.summary,
                "ready": ready_ids,
                "warnings": plan_warnings + session.warnings,
            }
        )
        return
    click.echo(f"Ready tasks ({len(ready_ids)}): {_format_ids(ready_ids)}")


@main.command()
@click.argument("task_id", required=False)
@click.pass_obj
def prompt(state: CliState, task_id: str | None):
    """Print the delegation prompt for TASK_ID (default: first ready task)."""
    with _handle_errors():
        paths, graph, plan_warnings, store = _open_plan(state)
        with store.open_session(graph, reevaluate_blocked=True) as session:
            session.save()
            resolved = _resolve_task(session, task_id)
            delegation = assemble(graph, session.snapshot, resolved, read_spec_text(paths))

    warnings = plan_warnings + session.warnings + delegation.warnings
    if state.json_mode:
        _emit_json(
            {
                "slug": paths.slug,
                "task_id": resolved,
                "payload": delegation.payload,
                "prompt": delegation.prompt,
                "warnings": warnings,
            }
        )
        return
    click.echo(delegation.prompt)
    for warning in warnings:
        click.echo(f"\nWarning: {warning}")


@main.command()
@click.argument("task_id")
@click.option("--owner", required=True, help="Worker taking the task.")
@click.pass_obj
def start(state: CliState, task_id: str, owner: str):
    """Mark TASK_ID as in_progress and increment its attempts."""
    with _handle_errors():
        if not owner.strip():
            raise click.BadParameter("must not be blank", param_hint="--owner")
        paths, graph, _, store = _open_plan(state)
        with store.open_session(graph, reevaluate_blocked=True) as session:
            record = session.start(task_id.strip(), owner.strip())
            session.save()

    summary = session.summary
    if state.json_mode:
        _emit_json(
            {
                "slug": paths.slug,
                "task_id": task_id.strip(),
                "state": record.state,
                "owner": record.owner,
                "attempts": record.attempts,
                "summary": summary,
            }
        )
        return
    click.echo(
        f"Started {task_id.strip()} (owner={record.owner}, attempts={record.attempts}). "
        f"In-progress: {summary['in_progress']}"
    )


@main.command()
@click.argument("task_id", required=False)
@click.option("--owner", required=True, help="Worker taking the task.")
@click.pass_obj
def dispatch(state: CliState, task_id: str | None, owner: str):
    """Select, build the prompt for and start a task in one transaction."""
    with _handle_errors():
        if not owner.strip():
            raise click.BadParameter("must not be blank", param_hint="--owner")
        paths, graph, plan_warnings, store = _open_plan(state)
        with store.open_session(graph, reevaluate_blocked=True) as session:
            resolved = _resolve_task(session, task_id)
            delegation = assemble(graph, session.snapshot, resolved, read_spec_text(paths))
            record = session.start(resolved, owner.strip())
            session.save()

    summary = session.summary
    warnings = plan_warnings + session.warnings + delegation.warnings
    if state.json_mode:
        _emit_json(
            {
                "slug": paths.slug,
                "task_id": resolved,
                "state": record.state,
                "owner": record.owner,
                "attempts": record.attempts,
                "summary": summary,
                "payload": delegation.payload,
                "prompt": delegation.prompt,
                "warnings": warnings,
            }
        )
        return
    click.echo(
        f"Dispatched {resolved} (owner={record.owner}, attempts={record.attempts}). "
        f"In-progress: {summary['in_progress']}"
    )
    click.echo("")
    click.echo(delegation.prompt)
    for warning in warnings:
        click.echo(f"\nWarning: {warning}")


@main.command()
@click.argument("task_id")
@click.option(
    "--result",
    "result",
    type=click.Choice(VALID_RESULTS, case_sensitive=False),
    required=True,
    help="Outcome reported by the worker.",
)
@click.option("--summary", "summary_text", required=True, help="Task result summary.")
@click.option("--files", multiple=True, help="Changed files (repeatable or comma-separated).")
@click.option("--tests", multiple=True, help="Tests run (repeatable or comma-separated).")
@click.option("--blockers", multiple=True, help="Blockers (repeatable or comma-separated).")
@click.option("--next", "next_ids", multiple=True, help="Task IDs this result unblocks.")
@click.option("--owner", default=None, help="Override the recorded owner.")
@click.pass_obj
def complete(
    state: CliState,
    task_id: str,
    result: str,
    summary_text: str,
    files: tuple[str, ...],
    tests: tuple[str, ...],
    blockers: tuple[str, ...],
    next_ids: tuple[str, ...],
    owner: str | None,
):
    """Record a worker's result for TASK_ID."""
    task_id = task_id.strip()
    with _handle_errors():
        if not summary_text.strip():
            raise click.BadParameter("must not be blank", param_hint="--summary")
        paths, graph, _, store = _open_plan(state)
        with store.open_session(graph, reevaluate_blocked=True) as session:
            record = session.complete(
                task_id,
                result=result.lower(),
                summary=summary_text.strip(),
                files=_split_values(files),
                tests=_split_values(tests),
                blockers=_split_values(blockers),
                next_unblocked=_split_values(next_ids),
                owner=(owner or "").strip() or None,
            )
            session.save()
            ready_ids = session.ready()

    if state.json_mode:
        _emit_json(
            {
                "slug": paths.slug,
                "task_id": task_id,
                "result": result.lower(),
                "state": record.state,
                "summary": session.summary,
                "ready": ready_ids,
            }
        )
        return
    click.echo(
        f"Completed {task_id} as {record.state}. "
        f"Ready tasks ({len(ready_ids)}): {_format_ids(ready_ids)}"
    )


@main.command()
@click.pass_obj
def status(state: CliState):
    """Show the summary, the ready list and every task's state."""
    with _handle_errors():
        paths, graph, plan_warnings, store = _open_plan(state)
        with store.open_session(graph, reevaluate_blocked=True) as session:
            session.save()
            ready_ids = session.ready()

    snapshot = session.snapshot
    summary = session.summary
    if state.json_mode:
        _emit_json(
            {
                "slug": paths.slug,
                "summary": summary,
                "ready": ready_ids,
                "tasks": {task_id: record.to_dict() for task_id, record in snapshot.tasks.items()},
                "warnings": plan_warnings + session.warnings,
            }
        )
        return
    click.echo(
        f"Summary: todo={summary['todo']} in_progress={summary['in_progress']} "
        f"done={summary['done']} blocked={summary['blocked']}"
    )
    click.echo(f"Ready: {_format_ids(ready_ids)}")
    for task_id in graph.task_ids:
        click.echo(f"- {task_id}: {snapshot.tasks[task_id].state}")


# -- plan documents --


@main.command()
@click.option(
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the artifact here instead of planning/<slug>/task.graph.json.",
)
@click.pass_obj
def graph(state: CliState, output_path: Path | None):
    """Validate tasks.yaml and write the task.graph.json artifact."""
    with _handle_errors():
        paths = resolve_dated_plan_paths(state.cwd, state.slug)
        if not paths.tasks_path.exists():
            raise PlanNotFound(
                f"Input file not found: {paths.tasks_path}\n"
                f"Create planning artifacts at {PLANNING_DIR_NAME}/{paths.slug}/tasks.yaml first."
            )
        task_graph = load_task_definitions(paths)
        artifact = build_graph_artifact(task_graph)
        target = output_path if output_path is not None else paths.graph_path
        if not target.is_absolute():
            target = state.cwd / target
        try:
            write_json_atomic(target, artifact)
        except OSError as exc:
            raise click.ClickException(f"Failed to write {target}: {exc}") from None

    if state.json_mode:
        _emit_json(
            {
                "slug": paths.slug,
                "output_path": str(target),
                "nodes": len(artifact["nodes"]),
                "edges": len(artifact["edges"]),
            }
        )
        return
    try:
        shown = target.relative_to(state.cwd)
    except ValueError:
        shown = target
    click.echo(
        f"Generated {shown} for {PLANNING_DIR_NAME}/{paths.slug} "
        f"({len(artifact['nodes'])} nodes, {len(artifact['edges'])} edges)"
    )


@main.command()
@click.pass_obj
def validate(state: CliState):
    """Check tasks.yaml without writing anything."""
    with _handle_errors():
        paths = resolve_plan_paths(state.cwd, state.slug)
        task_graph = load_task_definitions(paths)

    if state.json_mode:
        _emit_json(
            {
                "ok": True,
                "slug": paths.slug,
                "project": task_graph.project,
                "tasks": len(task_graph.tasks),
                "edges": len(task_graph.edges),
            }
        )
        return
    click.echo(
        f"{paths.tasks_path.name} is valid: {len(task_graph.tasks)} tasks, "
        f"{len(task_graph.edges)} edges"
    )


@main.command("help-status")
def help_status():
    """Show the task state lifecycle and how completion results map onto it."""
    click.echo(json.dumps(get_status_reference(), indent=2, sort_keys=False))
