"""Launch controller: open a staged convoy and dispatch its first wave.

Later waves are never dispatched here; the event feeder and the stranded
scanner pick them up as predecessors close.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .config import (
    STATUS_OPEN,
    STATUS_STAGED_WARNINGS,
    STAGED_STATUSES,
    TYPE_CONVOY,
    is_target_paused,
    load_config,
)
from .convoys import get_convoy, hq_store, set_convoy_status
from .dispatch import Dispatcher
from .exceptions import DispatchError, InvalidTransitionError, StagingError
from .graph import ConvoyGraph, Wave, build_graph, compute_waves
from .models import DispatchResult
from .routing import extract_item_id, target_for_item
from .staging import StageResult, collect_convoy, detect_errors, render_findings, stage, validate_stage_args
from .store import find_item

logger = logging.getLogger(__name__)


@dataclass
class LaunchResult:
    """Outcome of a launch: the plan and one result per wave-1 item."""
    convoy_id: str
    graph: ConvoyGraph
    waves: list[Wave] = field(default_factory=list)
    results: list[DispatchResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stage_result: StageResult | None = None

    @property
    def failed(self) -> list[DispatchResult]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "convoy_id": self.convoy_id,
            "status": STATUS_OPEN,
            "waves": [{"number": w.number, "items": list(w.items)} for w in self.waves],
            "dispatched": [
                {"id": r.item_id, "target": r.target, "success": r.success, "error": r.error}
                for r in sorted(self.results, key=lambda r: r.item_id)
            ],
            "warnings": list(self.warnings),
        }
        if self.stage_result is not None:
            data["stage"] = self.stage_result.to_dict()
        return data


def paused_targets(graph: ConvoyGraph, config: dict[str, Any]) -> dict[str, list[str]]:
    """Map each paused target to the dispatchable items routed to it."""
    paused: dict[str, list[str]] = {}
    for item_id in graph.dispatchable_ids():
        target = graph.nodes[item_id].target
        if target and is_target_paused(target, config):
            paused.setdefault(target, []).append(item_id)
    return paused


def check_paused_targets(
    graph: ConvoyGraph,
    config: dict[str, Any],
    force: bool,
    convoy_id: str = "",
) -> list[str]:
    """Refuse to launch into paused targets unless forced.

    Returns:
        Warning lines when forced (empty if nothing is paused)

    Raises:
        InvalidTransitionError: If a target is paused and force is False
    """
    paused = paused_targets(graph, config)
    if not paused:
        return []

    targets = sorted(paused)
    if force:
        return [
            f"{len(targets)} paused target(s) in convoy: {', '.join(targets)}",
            "proceeding with --force (dispatch to paused targets may fail)",
        ]

    details = "\n".join(f"  {t}: {', '.join(paused[t])}" for t in targets)
    raise InvalidTransitionError(
        convoy_id, "staged", STATUS_OPEN,
        f"cannot launch: {len(targets)} target(s) are paused:\n{details}\n"
        "unpause them, or use --force to proceed anyway",
    )


def dispatch_wave(
    graph: ConvoyGraph,
    wave: Wave,
    dispatcher: Dispatcher,
) -> list[DispatchResult]:
    """Dispatch every item of a wave; one failure never stops the rest."""
    results = []
    for item_id in wave.items:
        node = graph.nodes.get(item_id)
        target = node.target if node else ""
        try:
            dispatcher.dispatch(item_id, target)
        except DispatchError as e:
            logger.warning("Convoy: dispatch of %s to %s failed: %s", item_id, target, e)
            results.append(DispatchResult(item_id, target, False, str(e)))
            continue
        logger.info("Convoy: dispatched %s to %s", item_id, target)
        results.append(DispatchResult(item_id, target, True))
    return results


def launch_convoy(
    stores: dict[str, Any],
    convoy_id: str,
    dispatcher: Dispatcher,
    config: dict[str, Any] | None = None,
    force: bool = False,
) -> LaunchResult:
    """Open a staged convoy and dispatch wave 1.

    The plan is always recomputed from the convoy's current tracked set.

    Raises:
        InvalidTransitionError: The convoy is not staged, has warnings and
            force is False, or targets a paused target and force is False
        StagingError: The tracked set gained a cycle or an unroutable item
            since staging; the convoy stays staged
    """
    config = config or load_config()
    hq = hq_store(stores)
    convoy = get_convoy(hq, convoy_id)

    if convoy.status not in STAGED_STATUSES:
        state = "already launched" if convoy.status == STATUS_OPEN else convoy.status
        raise InvalidTransitionError(convoy_id, convoy.status, STATUS_OPEN, f"convoy {convoy_id} is {state}")
    if convoy.status == STATUS_STAGED_WARNINGS and not force:
        raise InvalidTransitionError(
            convoy_id, convoy.status, STATUS_OPEN,
            f"convoy {convoy_id} has warnings, use --force to launch",
        )

    items, deps = collect_convoy(stores, convoy_id, config)
    graph = build_graph(items, deps, {i.id: target_for_item(i.id, config) for i in items})
    errors = [f for f in detect_errors(graph) if f.category != "no-tasks"]
    if errors:
        raise StagingError(
            f"cannot launch convoy {convoy_id}: {len(errors)} error(s) found",
            findings=errors,
        )
    waves = compute_waves(graph)

    warnings = check_paused_targets(graph, config, force, convoy_id)
    for line in warnings:
        logger.warning("Convoy %s: %s", convoy_id, line)

    set_convoy_status(hq, convoy_id, STATUS_OPEN)

    results: list[DispatchResult] = []
    if waves:
        results = dispatch_wave(graph, waves[0], dispatcher)
    else:
        logger.info("Convoy %s: nothing left to dispatch", convoy_id)

    ok = sum(1 for r in results if r.success)
    logger.info("Convoy %s: launched, wave 1 dispatched %d/%d", convoy_id, ok, len(results))
    return LaunchResult(convoy_id=convoy_id, graph=graph, waves=waves, results=results, warnings=warnings)


def launch(
    stores: dict[str, Any],
    ids: list[str],
    dispatcher: Dispatcher,
    config: dict[str, Any] | None = None,
    force: bool = False,
    title: str | None = None,
) -> LaunchResult:
    """Launch a staged convoy, or stage-and-launch any other input.

    Raises:
        StagingError: If staging the input found fatal errors
    """
    config = config or load_config()
    ids = [extract_item_id(i) for i in ids]
    validate_stage_args(ids)

    if len(ids) == 1:
        item = find_item(stores, ids[0], config)
        if item is not None and item.type == TYPE_CONVOY and item.status in STAGED_STATUSES:
            return launch_convoy(stores, ids[0], dispatcher, config, force)

    staged = stage(stores, ids, config, title=title)
    if staged.errors:
        raise StagingError(
            f"convoy staging failed: {len(staged.errors)} error(s) found",
            findings=staged.errors,
        )

    result = launch_convoy(stores, staged.convoy_id, dispatcher, config, force)
    result.stage_result = staged
    return result


def render_launch(result: LaunchResult) -> str:
    """Console report: convoy id, wave summary, per-item outcome."""
    lines = [f"Convoy launched: {result.convoy_id} (status: open)", ""]
    for warning in result.warnings:
        lines.append(f"Warning: {warning}")
    if result.warnings:
        lines.append("")

    lines.append(f"  Monitor: convoy status {result.convoy_id}")
    lines.append("")

    total = sum(len(w.items) for w in result.waves)
    lines.append("Wave summary:")
    lines.append(f"  {len(result.waves)} waves, {total} tasks total")
    for wave in result.waves:
        state = "dispatched" if wave.number == 1 else "pending"
        lines.append(f"  Wave {wave.number}: {len(wave.items)} tasks ({state})")
    lines.append("")

    lines.append("Dispatched (Wave 1):")
    for r in sorted(result.results, key=lambda r: r.item_id):
        node = result.graph.nodes.get(r.item_id)
        title = node.title if node else ""
        line = f"  {'✓' if r.success else '✗'} {r.item_id}  {title}"
        if r.target:
            line += f"  (target: {r.target})"
        if r.error:
            line += f"    error: {r.error}"
        lines.append(line)
    lines.append("")
    lines.append("Subsequent waves will be dispatched automatically by the daemon as tasks complete.")
    return "\n".join(lines) + "\n"


def render_launch_json(result: LaunchResult) -> str:
    return json.dumps(result.to_dict(), indent=2) + "\n"


def render_staging_failure(error: StagingError) -> str:
    return render_findings(error.findings, "Errors")
