"""Staging pipeline: turn a set of work items into a staged convoy.

Sequence:
    resolve input kind -> collect items and edges -> build graph ->
    detect errors -> detect warnings -> choose status ->
    (no errors) compute waves -> create or update the staged convoy

A fatal error aborts before anything is written. Re-staging an existing
staged convoy updates it in place and reconciles its ``tracks`` edges.
"""

import json
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .config import (
    CONTAINER_TYPES,
    DEP_TRACKS,
    STATUS_CLOSED,
    STATUS_OPEN,
    STATUS_STAGED_READY,
    STATUS_STAGED_WARNINGS,
    STAGED_STATUSES,
    TYPE_CONVOY,
    get_wave_capacity,
    is_target_paused,
    load_config,
)
from .convoys import (
    get_convoy,
    hq_store,
    list_convoys,
    new_convoy_id,
    tracked_item_ids,
)
from .exceptions import InputError, InvalidTransitionError, MembershipConflictError
from .graph import ConvoyGraph, GraphNode, Wave, build_graph, compute_waves, detect_cycles
from .models import Dependency, WorkItem
from .routing import extract_item_id, target_for_item
from .store import find_item, store_for

logger = logging.getLogger(__name__)

INPUT_CONTAINER = "container"
INPUT_ITEMS = "items"
INPUT_CONVOY = "convoy"

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"


@dataclass
class StageInput:
    """Validated staging input: one container, one convoy, or a list of items."""
    kind: str
    ids: list[str]


@dataclass
class Finding:
    """A staging error or warning."""
    severity: str
    category: str
    item_ids: list[str]
    message: str
    suggested_fix: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = {
            "category": self.category,
            "item_ids": list(self.item_ids),
            "message": self.message,
        }
        if self.suggested_fix:
            data["suggested_fix"] = self.suggested_fix
        return data


@dataclass
class StageResult:
    """Everything the staging pipeline produced."""
    status: str
    stage_input: StageInput
    graph: ConvoyGraph
    errors: list[Finding] = field(default_factory=list)
    warnings: list[Finding] = field(default_factory=list)
    waves: list[Wave] = field(default_factory=list)
    convoy_id: str = ""
    restaged: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "convoy_id": self.convoy_id,
            "restaged": self.restaged,
            "errors": [f.to_dict() for f in self.errors],
            "warnings": [f.to_dict() for f in self.warnings],
            "waves": waves_to_json(self.waves, self.graph),
            "tree": tree_to_json(self.graph, self.stage_input),
        }


# ---------------------------------------------------------------------------
# Input classification
# ---------------------------------------------------------------------------


def validate_stage_args(args: list[str]) -> None:
    """Reject empty or flag-like arguments before any store access."""
    if not args:
        raise InputError("stage requires at least one item id (container, items, or convoy)")
    for arg in args:
        if arg.startswith("-"):
            raise InputError(f"invalid item id {arg!r}: looks like a CLI flag, not an item id")


def _classify(item_type: str) -> str:
    if item_type in CONTAINER_TYPES:
        return INPUT_CONTAINER
    if item_type == TYPE_CONVOY:
        return INPUT_CONVOY
    return INPUT_ITEMS


def resolve_input_kind(item_types: dict[str, str]) -> StageInput:
    """Determine the input kind from the types of the given ids.

    Args:
        item_types: Item id -> item type

    Raises:
        InputError: On mixed kinds, or more than one container/convoy
    """
    if not item_types:
        raise InputError("no items to stage")

    by_kind: dict[str, list[str]] = {}
    for item_id, item_type in item_types.items():
        by_kind.setdefault(_classify(item_type), []).append(item_id)

    if len(by_kind) > 1:
        parts = sorted(f"{kind} ({', '.join(sorted(ids))})" for kind, ids in by_kind.items())
        raise InputError(
            f"mixed input types: {' + '.join(parts)}; use separate invocations for different input types"
        )

    kind, ids = next(iter(by_kind.items()))
    ids = sorted(ids)
    if kind == INPUT_CONTAINER and len(ids) > 1:
        raise InputError(f"only one container id allowed, got {len(ids)}: {', '.join(ids)}")
    if kind == INPUT_CONVOY and len(ids) > 1:
        raise InputError(f"only one convoy id allowed, got {len(ids)}: {', '.join(ids)}")
    return StageInput(kind=kind, ids=ids)


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


def _item_deps(stores: dict[str, Any], item_id: str, config: dict[str, Any]) -> list[Dependency]:
    store = store_for(stores, item_id, config)
    return store.list_dependencies(item_id, direction="down")


def _children(stores: dict[str, Any], parent_id: str) -> list[WorkItem]:
    # Child edges are recorded in the child's own store, which may differ
    # from the parent's
    found: dict[str, WorkItem] = {}
    for store in stores.values():
        for child in store.list_children(parent_id):
            found.setdefault(child.id, child)
    return [found[k] for k in sorted(found)]


def collect_container(
    stores: dict[str, Any],
    root_id: str,
    config: dict[str, Any],
) -> tuple[list[WorkItem], list[Dependency]]:
    """Walk a container breadth-first through parent-child edges."""
    root = find_item(stores, root_id, config)
    if root is None:
        raise InputError(f"container {root_id} not found")

    items: list[WorkItem] = []
    deps: list[Dependency] = []
    visited: set[str] = set()
    queue = deque([root])

    while queue:
        current = queue.popleft()
        if current.id in visited:
            continue
        visited.add(current.id)
        items.append(current)
        deps.extend(_item_deps(stores, current.id, config))
        for child in _children(stores, current.id):
            if child.id not in visited:
                queue.append(child)

    return items, deps


def collect_items(
    stores: dict[str, Any],
    item_ids: list[str],
    config: dict[str, Any],
) -> tuple[list[WorkItem], list[Dependency]]:
    """Fetch exactly the given items and their outgoing edges."""
    items: list[WorkItem] = []
    deps: list[Dependency] = []
    for item_id in item_ids:
        item = find_item(stores, item_id, config)
        if item is None:
            raise InputError(f"item {item_id} not found")
        items.append(item)
        deps.extend(_item_deps(stores, item_id, config))
    return items, deps


def collect_convoy(
    stores: dict[str, Any],
    convoy_id: str,
    config: dict[str, Any],
) -> tuple[list[WorkItem], list[Dependency]]:
    """Re-read the tracked set of an existing convoy."""
    tracked = tracked_item_ids(hq_store(stores), convoy_id)
    if not tracked:
        raise InputError(f"convoy {convoy_id} tracks no items")
    return collect_items(stores, tracked, config)


def collect(
    stores: dict[str, Any],
    stage_input: StageInput,
    config: dict[str, Any],
) -> tuple[list[WorkItem], list[Dependency]]:
    if stage_input.kind == INPUT_CONTAINER:
        return collect_container(stores, stage_input.ids[0], config)
    if stage_input.kind == INPUT_CONVOY:
        return collect_convoy(stores, stage_input.ids[0], config)
    return collect_items(stores, stage_input.ids, config)


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


def _sort_findings(findings: list[Finding]) -> list[Finding]:
    return sorted(findings, key=lambda f: (f.item_ids[0] if f.item_ids else "", f.category))


def detect_errors(graph: ConvoyGraph) -> list[Finding]:
    """Fatal findings: execution-edge cycles and items without a target."""
    findings = []

    for cycle in detect_cycles(graph):
        chain = " → ".join(cycle.path + [cycle.path[0]])
        blocker, blocked = cycle.edge
        findings.append(Finding(
            severity=SEVERITY_ERROR,
            category="cycle",
            item_ids=list(cycle.path),
            message=f"dependency cycle detected: {chain}",
            suggested_fix=f"remove the dependency {blocker} → {blocked} (breaks the cycle)",
        ))

    for node in graph.nodes.values():
        if not node.dispatchable or node.status == STATUS_CLOSED:
            continue
        if not node.target:
            findings.append(Finding(
                severity=SEVERITY_ERROR,
                category="no-target",
                item_ids=[node.id],
                message=f"item {node.id} has no target (prefix not routed, or routes to town level)",
                suggested_fix=f"add a route mapping the prefix of {node.id} to a target",
            ))

    if not any(n.dispatchable and n.status != STATUS_CLOSED for n in graph.nodes.values()):
        findings.append(Finding(
            severity=SEVERITY_ERROR,
            category="no-tasks",
            item_ids=[],
            message="nothing to dispatch: no open task, bug, feature or chore items",
        ))

    return _sort_findings(findings)


def detect_orphans(graph: ConvoyGraph, stage_input: StageInput) -> list[Finding]:
    """Dispatchable items with no execution edges to other dispatchable items.

    Only meaningful for container input; an explicit item list is expected to
    contain unrelated items.
    """
    if stage_input.kind != INPUT_CONTAINER:
        return []

    dispatchable = {n.id for n in graph.nodes.values() if n.dispatchable}
    findings = []
    for node_id in sorted(dispatchable):
        node = graph.nodes[node_id]
        linked = [i for i in node.blocked_by + node.blocks if i in dispatchable]
        if not linked:
            findings.append(Finding(
                severity=SEVERITY_WARNING,
                category="orphan",
                item_ids=[node_id],
                message=f"task {node_id} has no blocking dependencies with other staged tasks (isolated in wave graph)",
                suggested_fix=f"add a blocking dependency for {node_id}, or verify it should be staged independently",
            ))
    return findings


def detect_paused_targets(graph: ConvoyGraph, config: dict[str, Any]) -> list[Finding]:
    """One warning per paused target, listing the items routed to it."""
    paused: dict[str, list[str]] = {}
    for node in graph.nodes.values():
        if not node.dispatchable or not node.target:
            continue
        if is_target_paused(node.target, config):
            paused.setdefault(node.target, []).append(node.id)

    findings = []
    for target in sorted(paused):
        ids = sorted(paused[target])
        findings.append(Finding(
            severity=SEVERITY_WARNING,
            category="paused-target",
            item_ids=ids,
            message=f"{len(ids)} item(s) target paused target {target!r}: {', '.join(ids)}",
            suggested_fix=f"unpause target {target} before launching, or launch with --force",
        ))
    return findings


def detect_cross_target(graph: ConvoyGraph) -> list[Finding]:
    """Dispatchable items routed somewhere other than the batch majority."""
    counts = Counter(n.target for n in graph.nodes.values() if n.dispatchable and n.target)
    if len(counts) <= 1:
        return []

    # Most common target; ties go to the alphabetically first name
    primary = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    findings = []
    for node_id in graph.dispatchable_ids():
        node = graph.nodes[node_id]
        if not node.target or node.target == primary:
            continue
        findings.append(Finding(
            severity=SEVERITY_WARNING,
            category="cross-target",
            item_ids=[node_id],
            message=f"task {node_id} is on target {node.target!r} (primary target is {primary!r})",
            suggested_fix=f"verify cross-target routing for {node_id} or reassign to {primary}",
        ))
    return findings


def estimate_capacity(waves: list[Wave], capacity: int) -> list[Finding]:
    """Warn about waves larger than the configured parallel capacity."""
    findings = []
    for wave in waves:
        if len(wave.items) > capacity:
            findings.append(Finding(
                severity=SEVERITY_WARNING,
                category="capacity",
                item_ids=list(wave.items),
                message=f"wave {wave.number} has {len(wave.items)} tasks (threshold: {capacity}), may exceed parallel capacity",
            ))
    return findings


def detect_missing_branches(graph: ConvoyGraph) -> list[Finding]:
    """Nested containers with children but no integration point."""
    findings = []
    for node_id in graph.sorted_ids():
        node = graph.nodes[node_id]
        if node.type not in CONTAINER_TYPES or not node.parent or not node.children:
            continue
        findings.append(Finding(
            severity=SEVERITY_WARNING,
            category="missing-branch",
            item_ids=[node_id],
            message=f"sub-epic {node_id} has {len(node.children)} children but no integration branch",
            suggested_fix=f"create an integration branch for sub-epic {node_id}",
        ))
    return findings


def detect_warnings(
    graph: ConvoyGraph,
    stage_input: StageInput,
    waves: list[Wave],
    config: dict[str, Any],
) -> list[Finding]:
    findings: list[Finding] = []
    findings.extend(detect_orphans(graph, stage_input))
    findings.extend(detect_paused_targets(graph, config))
    findings.extend(detect_cross_target(graph))
    findings.extend(estimate_capacity(waves, get_wave_capacity(config)))
    findings.extend(detect_missing_branches(graph))
    return _sort_findings(findings)


def choose_status(errors: list[Finding], warnings: list[Finding]) -> str:
    """Pick the staged status, or "" when errors prevent creation."""
    if errors:
        return ""
    if warnings:
        return STATUS_STAGED_WARNINGS
    return STATUS_STAGED_READY


# ---------------------------------------------------------------------------
# Overlapping convoys
# ---------------------------------------------------------------------------


@dataclass
class Overlap:
    convoy_id: str
    status: str
    count: int


def find_overlapping_convoys(hq: Any, item_ids: list[str]) -> list[Overlap]:
    """Find staged or open convoys already tracking any of the given items."""
    wanted = set(item_ids)
    overlaps = []
    for convoy in list_convoys(hq, statuses=STAGED_STATUSES + [STATUS_OPEN]):
        tracked = set(tracked_item_ids(hq, convoy.id))
        count = len(tracked & wanted)
        if count:
            overlaps.append(Overlap(convoy.id, convoy.status, count))
    return overlaps


def handle_overlaps(overlaps: list[Overlap]) -> str | None:
    """Decide what to do about overlapping convoys.

    Returns:
        The id of the single staged convoy to re-stage, or None when there
        is no overlap

    Raises:
        MembershipConflictError: If an open convoy overlaps, or more than one
            staged convoy does
    """
    if not overlaps:
        return None

    open_overlaps = [o for o in overlaps if o.status == STATUS_OPEN]
    if open_overlaps:
        o = open_overlaps[0]
        raise MembershipConflictError(
            f"cannot stage: open convoy {o.convoy_id} already tracks {o.count} of these items; "
            f"close it first or wait for completion (convoy close {o.convoy_id})"
        )

    staged = sorted(o.convoy_id for o in overlaps if o.status in STAGED_STATUSES)
    if len(staged) > 1:
        raise MembershipConflictError(
            f"ambiguous: {len(staged)} staged convoys overlap with these items ({', '.join(staged)}); "
            "stage the convoy id you want to update"
        )
    return staged[0]


# ---------------------------------------------------------------------------
# Persisting the staged convoy
# ---------------------------------------------------------------------------


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def resolve_title(flag_title: str | None, stage_input: StageInput, root: WorkItem | None) -> str:
    """Explicit title > "Convoy: <container title>" > "" (auto-generated later)."""
    if flag_title:
        return flag_title
    if stage_input.kind == INPUT_CONTAINER and root is not None and root.title:
        return f"Convoy: {root.title}"
    return ""


def create_staged_convoy(
    hq: Any,
    graph: ConvoyGraph,
    waves: list[Wave],
    status: str,
    title: str = "",
) -> str:
    """Create a staged convoy tracking every dispatchable item in the graph."""
    item_ids = graph.dispatchable_ids()
    targets = {graph.nodes[i].target for i in item_ids if graph.nodes[i].target}
    if not title:
        title = f"Staged: {len(item_ids)} items across {len(targets)} targets"
    description = f"Staged convoy: {len(item_ids)} tasks, {len(waves)} waves. Staged at {_now()}"

    convoy_id = new_convoy_id()
    hq.create_item(convoy_id, title=title, type=TYPE_CONVOY, status=status, description=description)
    for item_id in item_ids:
        hq.add_dependency(convoy_id, item_id, DEP_TRACKS)

    logger.info("Convoy %s: staged (%s), %d items in %d waves", convoy_id, status, len(item_ids), len(waves))
    return convoy_id


def update_staged_convoy(
    hq: Any,
    convoy_id: str,
    graph: ConvoyGraph,
    waves: list[Wave],
    status: str,
    title: str = "",
) -> None:
    """Re-stage a convoy in place, reconciling its tracked set."""
    desired = graph.dispatchable_ids()
    current = set(tracked_item_ids(hq, convoy_id))

    for item_id in desired:
        if item_id not in current:
            hq.add_dependency(convoy_id, item_id, DEP_TRACKS)
    for item_id in sorted(current - set(desired)):
        hq.remove_dependency(convoy_id, item_id, DEP_TRACKS)

    fields: dict[str, str] = {
        "status": status,
        "description": f"Staged convoy: {len(desired)} tasks, {len(waves)} waves. Re-staged at {_now()}",
    }
    if title:
        fields["title"] = title
    hq.update_item(convoy_id, **fields)

    logger.info("Convoy %s: re-staged (%s), %d items in %d waves", convoy_id, status, len(desired), len(waves))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def stage(
    stores: dict[str, Any],
    ids: list[str],
    config: dict[str, Any] | None = None,
    title: str | None = None,
) -> StageResult:
    """Run the staging pipeline.

    Args:
        stores: Open store map (must include hq)
        ids: A container id, a list of item ids, or a convoy id
        config: Loaded configuration
        title: Optional explicit convoy title

    Returns:
        StageResult. When ``errors`` is non-empty its status is "error" and
        nothing was written.

    Raises:
        InputError: Bad arguments or unknown ids
        InvalidTransitionError: The convoy given is already open or closed
        MembershipConflictError: Items overlap an open convoy, or several
            staged convoys
    """
    config = config or load_config()
    ids = [extract_item_id(i) for i in ids]
    validate_stage_args(ids)
    hq = hq_store(stores)

    roots: dict[str, WorkItem] = {}
    for item_id in ids:
        item = find_item(stores, item_id, config)
        if item is None:
            raise InputError(f"cannot resolve item {item_id}")
        roots[item_id] = item

    stage_input = resolve_input_kind({i: item.type for i, item in roots.items()})

    restage_id = ""
    if stage_input.kind == INPUT_CONVOY:
        convoy = get_convoy(hq, stage_input.ids[0])
        if convoy.status not in STAGED_STATUSES:
            raise InvalidTransitionError(
                convoy.id, convoy.status, STATUS_STAGED_READY,
                f"convoy {convoy.id} is {convoy.status}; only staged convoys can be re-staged",
            )
        restage_id = convoy.id

    items, deps = collect(stores, stage_input, config)
    targets = {item.id: target_for_item(item.id, config) for item in items}
    graph = build_graph(items, deps, targets)

    if not restage_id and stage_input.kind != INPUT_CONVOY:
        restage_id = handle_overlaps(find_overlapping_convoys(hq, graph.dispatchable_ids())) or ""
        if restage_id:
            logger.info("Convoy %s: items already staged here, re-staging in place", restage_id)

    errors = detect_errors(graph)
    has_cycle = any(f.category == "cycle" for f in errors)
    waves = [] if has_cycle else compute_waves(graph)
    warnings = detect_warnings(graph, stage_input, waves, config)
    status = choose_status(errors, warnings)

    result = StageResult(
        status=status or "error",
        stage_input=stage_input,
        graph=graph,
        errors=errors,
        warnings=warnings,
        waves=waves if not errors else [],
    )
    if errors:
        logger.warning("Convoy: staging failed with %d error(s)", len(errors))
        return result

    root = roots.get(stage_input.ids[0])
    convoy_title = resolve_title(title, stage_input, root)
    if restage_id:
        update_staged_convoy(hq, restage_id, graph, waves, status, convoy_title)
        result.convoy_id = restage_id
        result.restaged = True
    else:
        result.convoy_id = create_staged_convoy(hq, graph, waves, status, convoy_title)

    return result


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def format_node_line(node: GraphNode) -> str:
    """``<id> [<type>] <title> (target: <t>) [<status>] ← blocked by: ...``"""
    line = f"{node.id} [{node.type}] {node.title}"
    if node.target:
        line += f" (target: {node.target})"
    line += f" [{node.status}]"
    if node.blocked_by:
        line += " ← blocked by: " + ", ".join(sorted(node.blocked_by))
    return line


def _render_subtree(graph: ConvoyGraph, node_id: str, prefix: str, is_last: bool, lines: list[str]) -> None:
    node = graph.nodes.get(node_id)
    if node is None:
        return
    lines.append(prefix + ("└── " if is_last else "├── ") + format_node_line(node))
    child_prefix = prefix + ("    " if is_last else "│   ")
    children = graph.sorted_children(node_id)
    for i, child_id in enumerate(children):
        _render_subtree(graph, child_id, child_prefix, i == len(children) - 1, lines)


def render_tree(graph: ConvoyGraph, stage_input: StageInput) -> str:
    """ASCII hierarchy for container input, flat sorted list otherwise."""
    lines: list[str] = []
    if stage_input.kind == INPUT_CONTAINER:
        root_id = stage_input.ids[0]
        root = graph.nodes.get(root_id)
        if root is None:
            return ""
        lines.append(format_node_line(root))
        children = graph.sorted_children(root_id)
        for i, child_id in enumerate(children):
            _render_subtree(graph, child_id, "", i == len(children) - 1, lines)
    else:
        for node_id in graph.sorted_ids():
            lines.append("  " + format_node_line(graph.nodes[node_id]))
    return "\n".join(lines) + "\n" if lines else ""


def wave_summary(waves: list[Wave]) -> str:
    """``N tasks across M waves (max parallelism: K in wave W)``"""
    total = sum(len(w.items) for w in waves)
    max_parallel, max_wave = 0, 0
    for wave in waves:
        if len(wave.items) > max_parallel:
            max_parallel, max_wave = len(wave.items), wave.number
    return f"{total} tasks across {len(waves)} waves (max parallelism: {max_parallel} in wave {max_wave})"


def render_wave_table(waves: list[Wave], graph: ConvoyGraph) -> str:
    lines = [
        f"  {'Wave':<6} {'ID':<15} {'Title':<30} {'Target':<12} Blocked By",
        "  " + "─" * 80,
    ]
    for wave in waves:
        for item_id in wave.items:
            node = graph.nodes.get(item_id)
            if node is None:
                continue
            title = node.title if len(node.title) <= 28 else node.title[:26] + ".."
            blockers = ", ".join(sorted(node.blocked_by)) or "-"
            lines.append(f"  {wave.number:<6} {item_id:<15} {title:<30} {node.target or '?':<12} {blockers}")
    lines.append("")
    lines.append("  " + wave_summary(waves))
    return "\n".join(lines) + "\n"


def render_findings(findings: list[Finding], heading: str) -> str:
    """Numbered list with affected ids and suggested fix per finding."""
    if not findings:
        return ""
    lines = [f"{heading}:"]
    for i, finding in enumerate(findings, 1):
        lines.append(f"  {i}. [{finding.category}] {finding.message}")
        if finding.item_ids:
            lines.append(f"     Affected: {', '.join(finding.item_ids)}")
        if finding.suggested_fix:
            lines.append(f"     Fix: {finding.suggested_fix}")
    return "\n".join(lines) + "\n"


def waves_to_json(waves: list[Wave], graph: ConvoyGraph) -> list[dict[str, Any]]:
    out = []
    for wave in waves:
        tasks = []
        for item_id in wave.items:
            node = graph.nodes.get(item_id)
            if node is None:
                continue
            task = {"id": node.id, "title": node.title, "type": node.type, "target": node.target}
            if node.blocked_by:
                task["blocked_by"] = sorted(node.blocked_by)
            tasks.append(task)
        out.append({"number": wave.number, "tasks": tasks})
    return out


def _node_json(graph: ConvoyGraph, node: GraphNode, recurse: bool) -> dict[str, Any]:
    data: dict[str, Any] = {"id": node.id, "title": node.title, "type": node.type, "status": node.status}
    if node.target:
        data["target"] = node.target
    if recurse:
        children = [graph.nodes[c] for c in graph.sorted_children(node.id) if c in graph.nodes]
        if children:
            data["children"] = [_node_json(graph, c, True) for c in children]
    return data


def tree_to_json(graph: ConvoyGraph, stage_input: StageInput) -> list[dict[str, Any]]:
    if stage_input.kind == INPUT_CONTAINER:
        root = graph.nodes.get(stage_input.ids[0])
        return [_node_json(graph, root, True)] if root else []
    return [_node_json(graph, graph.nodes[i], False) for i in graph.sorted_ids()]


def render_result(result: StageResult) -> str:
    """Human-readable staging report (tree, wave plan, warnings)."""
    if result.errors:
        return render_findings(result.errors, "Errors")
    parts = [
        render_tree(result.graph, result.stage_input),
        render_wave_table(result.waves, result.graph),
        render_findings(result.warnings, "Warnings"),
    ]
    verb = "updated" if result.restaged else "created"
    parts.append(f"Convoy {verb}: {result.convoy_id} (status: {result.status})\n")
    return "\n".join(p for p in parts if p)


def render_json(result: StageResult) -> str:
    return json.dumps(result.to_dict(), indent=2) + "\n"
