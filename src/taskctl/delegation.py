"""Delegation payloads and prompts for handing a ready task to a worker.

The spec excerpt is chosen deterministically:

* no SPEC.md: no excerpt, warning;
* SPEC.md of at most ``FULL_SPEC_MAX_LINES`` lines: the whole document;
* longer: only the sections whose heading slug matches a ``SPEC.md#anchor``
  reference in the task's context hints.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from taskctl.errors import NotDispatchable, UnknownTask
from taskctl.graph import TaskGraph
from taskctl.readiness import unresolved_dependencies
from taskctl.status import StatusSnapshot

FULL_SPEC_MAX_LINES = 200

RESPONSE_FORMAT = (
    "task_id",
    "result (done|blocked|failed)",
    "result_summary",
    "files_changed (array)",
    "tests_run (array)",
    "blockers (array)",
    "next_unblocked_tasks (array of task IDs)",
)

SPEC_WARNINGS = {
    "missing": "SPEC.md is missing; spec_excerpt omitted.",
    "no_references": (
        "SPEC.md is >200 lines and task context has no SPEC.md# references; "
        "spec_excerpt omitted."
    ),
    "no_matching_sections": "SPEC.md# context references did not match headings; spec_excerpt omitted.",
}

_HEADING_PUNCTUATION_RE = re.compile(r"""[`~!@#$%^&*()+=\[\]{}|\\:;"'<>,.?/]""")
_SPEC_REF_RE = re.compile(r"\bSPEC\.md#([A-Za-z0-9._-]+)", re.IGNORECASE)
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*$")


@dataclass(frozen=True)
class SpecExcerpt:
    excerpt: str
    mode: str  # full | sections | missing | no_references | no_matching_sections


@dataclass
class Delegation:
    payload: dict[str, Any]
    prompt: str
    warnings: list[str] = field(default_factory=list)


def heading_slug(text: str) -> str:
    slug = _HEADING_PUNCTUATION_RE.sub("", text.strip().lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def extract_spec_anchors(context: Iterable[str]) -> set[str]:
    """Normalized anchors from ``SPEC.md#<anchor>`` context references."""
    anchors = set()
    for entry in context:
        match = _SPEC_REF_RE.search(str(entry))
        if not match:
            continue
        anchor = heading_slug(match.group(1).replace("_", "-"))
        if anchor:
            anchors.add(anchor)
    return anchors


def extract_markdown_sections(content: str, anchors: set[str]) -> list[str]:
    """Sections whose heading slug is in *anchors*, in document order.

    A section runs from its heading line to the next heading of equal or
    shallower level, or the end of the document.
    """
    lines = content.splitlines()
    headings = []
    for index, line in enumerate(lines):
        match = _HEADING_RE.match(line)
        if match:
            headings.append((index, len(match.group(1)), heading_slug(match.group(2))))

    sections = []
    used_starts: set[int] = set()
    for position, (start, level, slug) in enumerate(headings):
        if slug not in anchors or start in used_starts:
            continue
        used_starts.add(start)
        end = len(lines)
        for next_start, next_level, _ in headings[position + 1 :]:
            if next_level <= level:
                end = next_start
                break
        section = "\n".join(lines[start:end]).rstrip()
        if section:
            sections.append(section)
    return sections


def resolve_spec_excerpt(spec_text: str | None, context: Sequence[str]) -> SpecExcerpt:
    if spec_text is None:
        return SpecExcerpt("", "missing")
    if len(spec_text.splitlines()) <= FULL_SPEC_MAX_LINES:
        return SpecExcerpt(spec_text.rstrip(), "full")

    anchors = extract_spec_anchors(context)
    if not anchors:
        return SpecExcerpt("", "no_references")
    sections = extract_markdown_sections(spec_text, anchors)
    if not sections:
        return SpecExcerpt("", "no_matching_sections")
    return SpecExcerpt("\n\n".join(sections).rstrip(), "sections")


def build_payload(
    graph: TaskGraph,
    snapshot: StatusSnapshot,
    task_id: str,
    spec_text: str | None,
) -> tuple[dict[str, Any], list[str]]:
    task = graph.get(task_id)
    if task is None:
        raise UnknownTask(task_id)
    state = snapshot.state_of(task_id)
    if state != "todo":
        raise NotDispatchable(f"Task {task_id} is not dispatchable (state={state or 'unknown'})")
    unresolved = unresolved_dependencies(graph, snapshot, task_id)
    if unresolved:
        raise NotDispatchable(
            f"Task {task_id} is blocked by: {', '.join(unresolved)}", unresolved=unresolved
        )

    dependency_results = []
    for dependency in task.blocked_by:
        record = snapshot.tasks.get(dependency)
        dependency_results.append(
            {
                "task_id": dependency,
                "result_summary": record.result_summary if record else "",
                "files_changed": list(record.files_changed) if record else [],
            }
        )

    payload: dict[str, Any] = {
        "task_id": task.id,
        "title": task.title,
        "acceptance": list(task.acceptance),
        "deliverables": list(task.deliverables),
        "context": list(task.context),
        "project": graph.project,
        "dependency_results": dependency_results,
        "response_format": list(RESPONSE_FORMAT),
    }

    warnings = []
    spec = resolve_spec_excerpt(spec_text, task.context)
    if spec.excerpt:
        payload["spec_excerpt"] = spec.excerpt
    elif spec.mode in SPEC_WARNINGS:
        warnings.append(SPEC_WARNINGS[spec.mode])
    return payload, warnings


def _format_dependency_results(results: list[dict[str, Any]]) -> str:
    if not results:
        return "- (none)"
    lines = []
    for item in results:
        files = ", ".join(item["files_changed"]) or "(none)"
        summary = item["result_summary"] or "(no summary)"
        lines.append(f'- {item["task_id"]}: "{summary}" - files: {files}')
    return "\n".join(lines)


def build_prompt(payload: dict[str, Any]) -> str:
    lines = [f"Project: {payload['project']}", ""]
    lines += ["## Task", f"- ID: {payload['task_id']}", f"- Title: {payload['title']}", ""]

    lines.append("## Acceptance criteria")
    lines += [f"- {criterion}" for criterion in payload["acceptance"]]
    lines.append("")

    lines.append("## Deliverables")
    lines += [f"- {deliverable}" for deliverable in payload["deliverables"]]
    lines.append("")

    if payload["context"]:
        lines.append("## Context hints")
        lines += [f"- {hint}" for hint in payload["context"]]
        lines.append("")

    lines.append("## Completed dependencies")
    lines.append(_format_dependency_results(payload["dependency_results"]))
    lines.append("")

    if payload.get("spec_excerpt"):
        lines += ["## Spec excerpt", payload["spec_excerpt"], ""]

    lines.append("## Response format")
    lines.append("Return ALL of these fields:")
    lines += [f"- {item}" for item in payload["response_format"]]
    return "\n".join(lines)


def assemble(
    graph: TaskGraph,
    snapshot: StatusSnapshot,
    task_id: str,
    spec_text: str | None,
) -> Delegation:
    """Build the machine payload and human-readable prompt for a ready task."""
    payload, warnings = build_payload(graph, snapshot, task_id, spec_text)
    return Delegation(payload=payload, prompt=build_prompt(payload), warnings=warnings)
