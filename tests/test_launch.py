"""Tests for the launch controller."""

import json

import pytest

from convoy.config import STATUS_OPEN, STATUS_STAGED_READY, STATUS_STAGED_WARNINGS
from convoy.convoys import create_convoy, get_convoy, list_convoys
from convoy.exceptions import InvalidTransitionError, StagingError
from convoy.launch import launch, launch_convoy, render_launch, render_launch_json
from convoy.staging import stage
from fakes import FakeDispatcher


@pytest.fixture
def chain(add_item):
    """gt-a and gt-b independent, gt-c blocked by both."""
    add_item("gt-a")
    add_item("gt-b")
    add_item("gt-c", blocked_by=["gt-a", "gt-b"])
    return ["gt-a", "gt-b", "gt-c"]


class TestLaunchConvoy:
    def test_dispatches_wave_one_only(self, stores, config, chain, dispatcher):
        staged = stage(stores, chain, config)

        result = launch_convoy(stores, staged.convoy_id, dispatcher, config)

        assert dispatcher.dispatched == [("gt-a", "gastown"), ("gt-b", "gastown")]
        assert [w.items for w in result.waves] == [["gt-a", "gt-b"], ["gt-c"]]
        assert get_convoy(stores["hq"], staged.convoy_id).status == STATUS_OPEN
        assert result.failed == []

    def test_failure_does_not_stop_wave(self, stores, config, chain):
        dispatcher = FakeDispatcher(fail_ids={"gt-a"})
        staged = stage(stores, chain, config)

        result = launch_convoy(stores, staged.convoy_id, dispatcher, config)

        assert dispatcher.dispatched_ids == ["gt-a", "gt-b"]
        assert [r.item_id for r in result.failed] == ["gt-a"]
        assert "sling gt-a failed" in result.failed[0].error
        # Launch still opens the convoy
        assert get_convoy(stores["hq"], staged.convoy_id).status == STATUS_OPEN

    def test_warnings_require_force(self, stores, config, add_item, dispatcher):
        add_item("gt-a")
        add_item("bd-b")
        staged = stage(stores, ["gt-a", "bd-b"], config)
        assert staged.status == STATUS_STAGED_WARNINGS

        with pytest.raises(InvalidTransitionError, match="--force"):
            launch_convoy(stores, staged.convoy_id, dispatcher, config)
        assert dispatcher.dispatched == []

        launch_convoy(stores, staged.convoy_id, dispatcher, config, force=True)
        assert sorted(dispatcher.dispatched_ids) == ["bd-b", "gt-a"]

    def test_paused_target_refused_before_opening(self, stores, config, add_item, dispatcher):
        add_item("gt-a")
        staged = stage(stores, ["gt-a"], config)
        assert staged.status == STATUS_STAGED_READY

        config["targets"]["gastown"] = {"paused": True}
        with pytest.raises(InvalidTransitionError, match="paused"):
            launch_convoy(stores, staged.convoy_id, dispatcher, config)

        assert get_convoy(stores["hq"], staged.convoy_id).status == STATUS_STAGED_READY
        assert dispatcher.dispatched == []

    def test_paused_target_forced_adds_warning(self, stores, config, add_item, dispatcher):
        add_item("gt-a")
        staged = stage(stores, ["gt-a"], config)
        config["targets"]["gastown"] = {"paused": True}

        result = launch_convoy(stores, staged.convoy_id, dispatcher, config, force=True)

        assert result.warnings[0] == "1 paused target(s) in convoy: gastown"
        assert dispatcher.dispatched_ids == ["gt-a"]

    def test_open_convoy_cannot_relaunch(self, stores, config, add_item, dispatcher):
        add_item("gt-a")
        convoy = create_convoy(stores, "Running", ["gt-a"], config)

        with pytest.raises(InvalidTransitionError, match="already launched"):
            launch_convoy(stores, convoy.id, dispatcher, config)

    def test_plan_recomputed_from_current_state(self, stores, config, chain, dispatcher):
        staged = stage(stores, chain, config)
        stores["gastown"].close_item("gt-a")
        stores["gastown"].close_item("gt-b")

        result = launch_convoy(stores, staged.convoy_id, dispatcher, config)

        assert dispatcher.dispatched_ids == ["gt-c"]
        assert [w.items for w in result.waves] == [["gt-c"]]

    def test_cycle_added_after_staging_refused(self, stores, config, add_item, dispatcher):
        add_item("gt-a")
        add_item("gt-b", blocked_by=["gt-a"])
        staged = stage(stores, ["gt-a", "gt-b"], config)
        stores["gastown"].add_dependency("gt-a", "gt-b", "blocks")

        with pytest.raises(StagingError) as exc_info:
            launch_convoy(stores, staged.convoy_id, dispatcher, config)

        assert [f.category for f in exc_info.value.findings] == ["cycle"]
        assert get_convoy(stores["hq"], staged.convoy_id).status == STATUS_STAGED_READY
        assert dispatcher.dispatched == []


class TestLaunch:
    def test_stage_and_launch_in_one_step(self, stores, config, chain, dispatcher):
        result = launch(stores, chain, dispatcher, config)

        assert result.stage_result is not None
        assert result.stage_result.convoy_id == result.convoy_id
        assert dispatcher.dispatched_ids == ["gt-a", "gt-b"]
        assert len(list_convoys(stores["hq"])) == 1

    def test_launch_staged_convoy_by_id(self, stores, config, chain, dispatcher):
        staged = stage(stores, chain, config)

        result = launch(stores, [staged.convoy_id], dispatcher, config)

        assert result.convoy_id == staged.convoy_id
        assert result.stage_result is None

    def test_staging_errors_raise(self, stores, config, add_item, dispatcher):
        add_item("gt-a", blocked_by=["gt-b"])
        add_item("gt-b", blocked_by=["gt-a"])

        with pytest.raises(StagingError) as exc_info:
            launch(stores, ["gt-a", "gt-b"], dispatcher, config)

        assert [f.category for f in exc_info.value.findings] == ["cycle"]
        assert list_convoys(stores["hq"]) == []
        assert dispatcher.dispatched == []


class TestRenderLaunch:
    def test_console_report(self, stores, config, chain):
        dispatcher = FakeDispatcher(fail_ids={"gt-b"})
        result = launch(stores, chain, dispatcher, config)

        output = render_launch(result)

        assert output.startswith(f"Convoy launched: {result.convoy_id} (status: open)")
        assert "  2 waves, 3 tasks total" in output
        assert "  Wave 1: 2 tasks (dispatched)" in output
        assert "  Wave 2: 1 tasks (pending)" in output
        assert "  ✓ gt-a  Item gt-a  (target: gastown)" in output
        assert "  ✗ gt-b  Item gt-b  (target: gastown)    error: sling gt-b failed" in output

    def test_json_report(self, stores, config, chain, dispatcher):
        result = launch(stores, chain, dispatcher, config)

        data = json.loads(render_launch_json(result))

        assert data["convoy_id"] == result.convoy_id
        assert data["status"] == "open"
        assert data["waves"] == [{"number": 1, "items": ["gt-a", "gt-b"]}, {"number": 2, "items": ["gt-c"]}]
        assert [d["id"] for d in data["dispatched"]] == ["gt-a", "gt-b"]
        assert data["stage"]["status"] == STATUS_STAGED_READY
