"""Tests for WorkflowEngine: step sequencing, retries, abort and the cleanup phase."""

import threading

import pytest

from demoflow.engine import WorkflowEngine
from demoflow.errors import CommandFailed, CommandTimedOut, PrerequisiteNotMet, UnresolvedPlaceholder
from demoflow.events import (
    CleanupResult,
    CleanupStarted,
    ResourceTracked,
    RunCompleted,
    RunStarted,
    StepCompleted,
    StepStarted,
)
from demoflow.invoker import CommandInvoker, InvokerConfig
from demoflow.model import RunStatus, StepStatus
from demoflow.settings import Settings

from conftest import FakeInvoker, custom_step, fail, make_workflow, ok, timed_out


def _engine(invoker, bus, tracker, resolver, **kw):
    return WorkflowEngine(invoker, tracker=tracker, reporter=bus, resolver=resolver, **kw)


def _commands(invoker):
    return [spec.params.get("command") for spec in invoker.specs]


def _bucket_object_workflow():
    return make_workflow(
        [
            {
                "id": "create-bucket",
                "name": "Create bucket",
                "command": {"type": "bucket", "action": "create", "bucket_name": "demo-{uuid}"},
            },
            {
                "id": "upload",
                "name": "Upload",
                "command": {
                    "type": "object", "action": "upload",
                    "params": {"bucket_name": "{create-bucket.bucketKey}", "file_path": "model.rvt"},
                },
            },
        ],
        cleanup=[
            {"type": "object", "action": "delete", "bucket_name": "{bucket_name}", "object_key": "{object_key}"},
            {"type": "bucket", "action": "delete", "bucket_name": "{bucket_name}", "force": True},
        ],
    )


def test_all_steps_succeed_in_order(bus, tracker, resolver):
    wf = make_workflow([custom_step("a"), custom_step("b"), custom_step("c")])
    invoker = FakeInvoker()

    result = _engine(invoker, bus, tracker, resolver).run(wf)

    assert result.status is RunStatus.COMPLETED
    assert result.cleanup_complete
    assert _commands(invoker) == ["echo a", "echo b", "echo c"]
    assert [type(e) for e in bus.events] == [
        RunStarted,
        StepStarted, StepCompleted,
        StepStarted, StepCompleted,
        StepStarted, StepCompleted,
        CleanupStarted,
        RunCompleted,
    ]
    completed = bus.of_type(StepCompleted)
    assert [e.result.step_id for e in completed] == ["a", "b", "c"]
    assert all(e.result.status is StepStatus.SUCCEEDED for e in completed)
    assert bus.events[-1].status is RunStatus.COMPLETED


def test_failure_stops_forward_execution(bus, tracker, resolver):
    wf = make_workflow(
        [custom_step("a"), custom_step("b"), custom_step("c")],
        cleanup=[{"type": "custom", "command": "echo teardown"}],
    )
    invoker = FakeInvoker({("custom", "run"): lambda spec: fail("nope", 4) if spec.params["command"] == "echo b" else ok()})

    result = _engine(invoker, bus, tracker, resolver).run(wf)

    assert result.status is RunStatus.FAILED
    assert _commands(invoker) == ["echo a", "echo b", "echo teardown"]
    assert [s.step_id for s in result.steps] == ["a", "b"]
    assert isinstance(result.failure, CommandFailed)
    assert result.failure.exit_code == 4
    assert result.failure.step == "b"
    # cleanup still ran and RunCompleted is the last event
    assert len(bus.of_type(CleanupResult)) == 1
    assert isinstance(bus.events[-1], RunCompleted)
    assert bus.events[-1].status is RunStatus.FAILED


def test_retry_reuses_the_resolved_command(bus, tracker, resolver):
    wf = make_workflow(
        [
            {
                "id": "flaky",
                "name": "Flaky",
                "command": {"type": "custom", "command": "echo {uuid}"},
                "retry": {"max_attempts": 3, "backoff_seconds": 0.5},
            }
        ]
    )
    invoker = FakeInvoker({("custom", "run"): [fail(), fail(), ok()]})
    sleeps = []

    result = _engine(invoker, bus, tracker, resolver, sleep=sleeps.append).run(wf)

    assert result.status is RunStatus.COMPLETED
    assert _commands(invoker) == ["echo u1", "echo u1", "echo u1"]
    assert result.steps[0].attempts == 3
    assert sleeps == [0.5, 0.5]


def test_retries_exhausted_reports_attempts(bus, tracker, resolver):
    wf = make_workflow([custom_step("a", retry={"max_attempts": 2})])
    invoker = FakeInvoker({("custom", "run"): [fail("still broken")]})

    result = _engine(invoker, bus, tracker, resolver).run(wf)

    assert result.status is RunStatus.FAILED
    assert len(invoker.calls) == 2
    assert result.failure.attempts == 2


def test_abort_stops_retries_of_the_current_step(bus, tracker, resolver):
    abort = threading.Event()
    wf = make_workflow([custom_step("a", retry={"max_attempts": 3, "backoff_seconds": 1})])

    def interrupted(spec):
        abort.set()
        return fail("aborted", exit_code=-9)

    invoker = FakeInvoker({("custom", "run"): interrupted})
    sleeps = []

    result = _engine(invoker, bus, tracker, resolver, sleep=sleeps.append).run(wf, abort=abort)

    assert result.status is RunStatus.ABORTED
    assert len(invoker.calls) == 1
    assert result.steps[0].attempts == 1
    assert sleeps == []


def test_timeout_uses_step_timeout_and_reports_timed_out(bus, tracker, resolver):
    wf = make_workflow([custom_step("slow", timeout=2.5), custom_step("next")])
    invoker = FakeInvoker({("custom", "run"): [timed_out(2.5)]})

    result = _engine(invoker, bus, tracker, resolver).run(wf)

    assert invoker.calls[0][1] == 2.5
    assert len(invoker.calls) == 1
    assert result.steps[0].status is StepStatus.TIMED_OUT
    assert isinstance(result.failure, CommandTimedOut)
    hints = bus.of_type(StepCompleted)[0].hints
    assert any("timeout" in h for h in hints)


def test_default_timeout_comes_from_settings(bus, tracker, resolver):
    wf = make_workflow([custom_step("a")])
    invoker = FakeInvoker()

    _engine(invoker, bus, tracker, resolver, settings=Settings(step_timeout=42)).run(wf)

    assert invoker.calls[0][1] == 42


def test_failed_upload_deletes_only_the_bucket(bus, tracker, resolver):
    wf = _bucket_object_workflow()
    invoker = FakeInvoker(
        {
            ("bucket", "create"): [ok({"bucketKey": "demo-u1"})],
            ("object", "upload"): [fail("Error: file not found")],
        }
    )

    result = _engine(invoker, bus, tracker, resolver).run(wf)

    assert result.status is RunStatus.FAILED
    assert result.cleanup_complete
    assert invoker.keys() == [("bucket", "create"), ("object", "upload"), ("bucket", "delete")]
    delete = invoker.specs[-1]
    assert delete.params == {"bucket_name": "demo-u1", "force": "true"}
    assert invoker.specs[1].params["bucket_name"] == "demo-u1"
    assert [a.target for a in result.cleanup.attempts] == ["bucket:demo-u1"]
    assert len(tracker) == 0


def test_tracked_resources_are_announced(bus, tracker, resolver):
    wf = _bucket_object_workflow()
    invoker = FakeInvoker({("bucket", "create"): [ok({"bucketKey": "demo-u1"})]})

    result = _engine(invoker, bus, tracker, resolver).run(wf)

    tracked = [e.resource for e in bus.of_type(ResourceTracked)]
    assert [str(r) for r in tracked] == ["bucket:demo-u1", "object:model.rvt"]
    # object goes first: reverse creation order
    assert invoker.keys()[2:] == [("object", "delete"), ("bucket", "delete")]
    assert invoker.specs[2].params == {"bucket_name": "demo-u1", "object_key": "model.rvt"}
    assert result.status is RunStatus.COMPLETED
    assert result.cleanup_complete


def test_abort_during_step_stops_and_cleans_up(bus, tracker, resolver):
    abort = threading.Event()
    wf = make_workflow(
        [
            {"id": "make", "name": "Make", "command": {"type": "bucket", "action": "create", "bucket_name": "b1"}},
            custom_step("long"),
            custom_step("never"),
        ],
        cleanup=[{"type": "bucket", "action": "delete", "bucket_name": "{bucket_name}"}],
    )

    def interrupted(spec):
        abort.set()
        return fail("aborted", exit_code=-9)

    invoker = FakeInvoker({("custom", "run"): interrupted})

    result = _engine(invoker, bus, tracker, resolver).run(wf, abort=abort)

    assert result.status is RunStatus.ABORTED
    assert result.failure is None
    assert invoker.keys() == [("bucket", "create"), ("custom", "run"), ("bucket", "delete")]
    assert result.cleanup_complete
    assert bus.events[-1].status is RunStatus.ABORTED


def test_abort_before_first_step(bus, tracker, resolver):
    abort = threading.Event()
    abort.set()
    wf = make_workflow([custom_step("a")], cleanup=[{"type": "custom", "command": "echo bye"}])
    invoker = FakeInvoker()

    result = _engine(invoker, bus, tracker, resolver).run(wf, abort=abort)

    assert result.status is RunStatus.ABORTED
    assert result.steps == ()
    assert _commands(invoker) == ["echo bye"]


def test_unresolvable_placeholder_fails_before_anything_runs(bus, tracker, resolver):
    wf = make_workflow([custom_step("a", command={"type": "custom", "command": "echo {missing}"})])
    invoker = FakeInvoker()

    with pytest.raises(UnresolvedPlaceholder):
        _engine(invoker, bus, tracker, resolver).run(wf)

    assert invoker.calls == []
    assert bus.events == []


def test_missing_output_fails_the_step_at_runtime(bus, tracker, resolver):
    wf = make_workflow(
        [
            custom_step("a"),
            custom_step("b", command={"type": "custom", "command": "echo {a.id}"}),
        ]
    )
    invoker = FakeInvoker()

    result = _engine(invoker, bus, tracker, resolver).run(wf)

    assert result.status is RunStatus.FAILED
    assert isinstance(result.failure, UnresolvedPlaceholder)
    assert result.steps[-1].attempts == 0
    assert len(invoker.calls) == 1


def test_unmet_workflow_prerequisite_raises(bus, tracker, resolver):
    wf = make_workflow(
        [custom_step("a")],
        prerequisites=[{"type": "authentication", "description": "Valid APS token"}],
    )
    invoker = FakeInvoker()
    engine = _engine(invoker, bus, tracker, resolver, prerequisite_checker=lambda name: False)

    with pytest.raises(PrerequisiteNotMet) as exc:
        engine.run(wf)

    assert "Valid APS token" in str(exc.value)
    assert invoker.calls == []
    assert engine.preflight(wf) == ["prerequisite not met: Valid APS token"]


def test_unmet_step_requirement_skips_step(bus, tracker, resolver):
    wf = make_workflow([custom_step("a", requires=["design-automation"]), custom_step("b")])
    invoker = FakeInvoker()
    engine = _engine(invoker, bus, tracker, resolver, prerequisite_checker=lambda name: name != "design-automation")

    result = engine.run(wf)

    assert result.status is RunStatus.COMPLETED
    assert [s.status for s in result.steps] == [StepStatus.SKIPPED, StepStatus.SUCCEEDED]
    assert _commands(invoker) == ["echo b"]


def test_unmet_step_requirement_fails_when_strict(bus, tracker, resolver):
    wf = make_workflow([custom_step("a", requires=["design-automation"]), custom_step("b")])
    invoker = FakeInvoker()
    engine = _engine(
        invoker, bus, tracker, resolver,
        prerequisite_checker=lambda name: False,
        settings=Settings(strict_prerequisites=True),
    )

    result = engine.run(wf)

    assert result.status is RunStatus.FAILED
    assert isinstance(result.failure, PrerequisiteNotMet)
    assert invoker.calls == []


def test_outputs_flow_into_later_steps(bus, tracker, resolver):
    wf = make_workflow(
        [
            custom_step("a", outputs={"thing": "id"}),
            custom_step("b", command={"type": "custom", "command": "echo {thing} {a.id}"}),
        ]
    )
    invoker = FakeInvoker({("custom", "run"): [ok({"id": "x1"}), ok()]})

    _engine(invoker, bus, tracker, resolver).run(wf)

    assert _commands(invoker) == ["echo a", "echo x1 x1"]


def test_global_cleanup_cannot_use_resource_attributes(bus, tracker, resolver):
    wf = make_workflow(
        [{"id": "make", "name": "Make", "command": {"type": "bucket", "action": "create", "bucket_name": "b1"}}],
        cleanup=[{"type": "custom", "command": "echo {bucket_name}"}],
    )
    invoker = FakeInvoker()
    engine = _engine(invoker, bus, tracker, resolver)

    problems = engine.preflight(wf)

    assert len(problems) == 1
    assert "bucket_name" in problems[0]
    with pytest.raises(UnresolvedPlaceholder) as exc:
        engine.run(wf)
    assert exc.value.token == "bucket_name"
    assert invoker.calls == []


def test_scoped_cleanup_only_sees_fields_of_its_own_kind(bus, tracker, resolver):
    engine = _engine(FakeInvoker(), bus, tracker, resolver)
    assert engine.preflight(_bucket_object_workflow()) == []

    wf = make_workflow(
        [{"id": "make", "name": "Make", "command": {"type": "bucket", "action": "create", "bucket_name": "b1"}}],
        cleanup=[{"type": "bucket", "action": "delete", "bucket_name": "{object_key}"}],
    )
    with pytest.raises(UnresolvedPlaceholder) as exc:
        engine.check_placeholders(wf)
    assert exc.value.token == "object_key"


def test_run_reports_estimated_cost_of_created_resources(bus, tracker, resolver):
    wf = _bucket_object_workflow()
    invoker = FakeInvoker(
        {
            ("bucket", "create"): [ok({"bucketKey": "demo-u1"})],
            ("object", "upload"): [ok({"objectKey": "model.rvt", "size": 2 * 1024 ** 3})],
        }
    )

    result = _engine(invoker, bus, tracker, resolver).run(wf)

    tracked = [e.resource for e in bus.of_type(ResourceTracked)]
    assert tracked[1].identifier == "model.rvt"
    assert tracked[1].attributes["size"] == str(2 * 1024 ** 3)
    assert result.cost.by_kind["bucket"] == pytest.approx(0.01)
    assert result.cost.by_kind["object"] == pytest.approx(0.046)
    assert result.cost.total_usd == pytest.approx(0.056)
    assert result.cost.exceeds(0.05)
    assert not result.cost.exceeds(1.0)


def test_run_without_resources_costs_nothing(bus, tracker, resolver):
    result = _engine(FakeInvoker(), bus, tracker, resolver).run(make_workflow([custom_step("a")]))

    assert result.cost.total_usd == 0.0
    assert result.cost.by_kind == {}


def test_dry_run_lists_commands_without_invoking(bus, tracker, resolver):
    invoker = CommandInvoker(InvokerConfig(cli_path="raps"))
    engine = _engine(invoker, bus, tracker, resolver, prerequisite_checker=lambda name: False)

    planned = engine.dry_run(_bucket_object_workflow())

    tail = ("--non-interactive", "--output", "json")
    assert [p.phase for p in planned] == ["step", "step", "cleanup", "cleanup"]
    assert planned[0].argv == ("raps", "bucket", "create", "--key", "demo-u1", *tail)
    # outputs of earlier steps are not known yet
    assert planned[1].argv == ("raps", "object", "upload", "{create-bucket.bucketKey}", "model.rvt", *tail)
    assert planned[2].argv == ("raps", "object", "delete", "{bucket_name}", "{object_key}", *tail)
    assert planned[2].target == "each tracked object"
    assert planned[3].target == "each tracked bucket"
    assert bus.events == []
    assert len(tracker) == 0


def test_dry_run_still_checks_placeholders(bus, tracker, resolver):
    wf = make_workflow([custom_step("a", command={"type": "custom", "command": "echo {missing}"})])
    engine = _engine(CommandInvoker(InvokerConfig(cli_path="raps")), bus, tracker, resolver)

    with pytest.raises(UnresolvedPlaceholder):
        engine.dry_run(wf)
