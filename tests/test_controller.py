import pytest

from rsc.controller import ServiceController
from rsc.errors import NotFound, RegistrationFailure, ValidationError
from rsc.gateway import InProcessTargetGroup
from rsc.models import EventKind, RollingPolicy

from conftest import converge, make_spec, step


def _kinds(events, service_id):
    return [ev.kind for ev in reversed(events.latest(limit=1000, service_id=service_id))]


def _deployed(store, controller, clock, desired, policy=None, image="registry.local/web:1"):
    v1 = store.register(make_spec(image))
    sid = controller.create_service(v1, desired, rolling_policy=policy, name="web")
    converge(controller, clock, sid)
    return v1, sid


def test_create_service_reaches_desired_healthy_tasks(store, controller, clock, events, binding):
    v1, sid = _deployed(store, controller, clock, 3)

    snap = controller.describe_service(sid)
    assert snap["rollout"]["status"] == "completed"
    assert snap["running_by_version"] == {v1: 3}
    assert snap["healthy_by_version"] == {v1: 3}
    assert snap["receiving_traffic"] == 3
    assert len(binding.targets(sid)) == 3
    kinds = _kinds(events, sid)
    assert kinds[:2] == [EventKind.SERVICE_CREATED, EventKind.ROLLOUT_STARTED]
    assert kinds.count(EventKind.ROLLOUT_COMPLETED) == 1


def test_create_service_validates_inputs(store, controller):
    v1 = store.register(make_spec())
    with pytest.raises(NotFound):
        controller.create_service(99, 1)
    with pytest.raises(ValidationError):
        controller.create_service(v1, -1)
    with pytest.raises(ValidationError):
        controller.create_service(v1, 1, rolling_policy=RollingPolicy(max_percent=50))
    with pytest.raises(ValidationError):
        controller.create_service(v1, 1, rolling_policy=RollingPolicy(100, 100))
    with pytest.raises(ValidationError):
        controller.create_service(v1, 1, name="Bad_Name")

    controller.create_service(v1, 1, name="api")
    with pytest.raises(ValidationError):
        controller.create_service(v1, 1, name="api")


def test_unknown_service_raises_not_found(controller):
    with pytest.raises(NotFound):
        controller.describe_service("svc-missing")
    with pytest.raises(NotFound):
        controller.update_service("svc-missing", desired_count=1)
    with pytest.raises(NotFound):
        controller.tick("svc-missing")


def test_rollout_keeps_all_old_tasks_until_new_ones_are_healthy(store, controller, clock, runtime, calls):
    v1, sid = _deployed(store, controller, clock, 4, RollingPolicy(200, 100))
    v2 = store.register(make_spec("registry.local/web:2"))
    controller.update_service(sid, task_definition=v2)

    snap = step(controller, clock, sid)
    assert snap["running_by_version"] == {v1: 4, v2: 4}
    new_ids = [t["id"] for t in snap["tasks"] if t["version"] == v2]
    old_ids = [t["id"] for t in snap["tasks"] if t["version"] == v1]
    runtime.task_health.update({new_ids[0]: False, new_ids[1]: False})

    for _ in range(3):
        snap = step(controller, clock, sid)
        assert snap["running_by_version"][v1] == 4
        assert snap["healthy_by_version"][v2] == 2
        assert snap["total_tasks"] == 8

    runtime.task_health.clear()
    snaps = converge(controller, clock, sid)
    for snap in snaps:
        assert snap["total_tasks"] <= 8
        if snap["running_by_version"].get(v1, 0) < 4:
            assert snap["healthy_by_version"].get(v2, 0) >= 4

    final = snaps[-1]
    assert final["running_by_version"] == {v2: 4}
    assert final["healthy_by_version"] == {v2: 4}
    assert {t.version for t in controller.binding.targets(sid)} == {v2}
    for task_id in old_ids:
        assert calls.index(("deregister", task_id)) < calls.index(("stop", task_id))


def test_rollout_with_no_surge_replaces_one_task_at_a_time(store, controller, clock):
    v1, sid = _deployed(store, controller, clock, 2, RollingPolicy(100, 50))
    v2 = store.register(make_spec("registry.local/web:2"))
    controller.update_service(sid, task_definition=v2)

    snaps = converge(controller, clock, sid)
    reached_new_healthy = False
    for snap in snaps:
        assert snap["total_tasks"] <= 2
        assert sum(snap["healthy_by_version"].values()) >= 1
        assert snap["running_by_version"].get(v2, 0) <= 2
        if snap["healthy_by_version"].get(v2, 0) >= 1:
            reached_new_healthy = True
        elif reached_new_healthy:
            pytest.fail("healthy new-version tasks dropped below the minimum")

    # one new task was brought up and made healthy before the second old one went away
    assert any(s["running_by_version"] == {v1: 1, v2: 1} for s in snaps)
    assert snaps[-1]["running_by_version"] == {v2: 2}


def test_old_tasks_are_retired_oldest_first(store, controller, clock, calls):
    v1, sid = _deployed(store, controller, clock, 2, RollingPolicy(150, 50))
    launched_v1 = [task_id for op, task_id in calls if op == "launch"]
    v2 = store.register(make_spec("registry.local/web:2"))
    controller.update_service(sid, task_definition=v2)
    converge(controller, clock, sid)

    stopped = [task_id for op, task_id in calls if op == "stop"]
    assert stopped == launched_v1


def test_rollout_completion_is_reported_once(store, controller, clock, events):
    v1, sid = _deployed(store, controller, clock, 2)
    v2 = store.register(make_spec("registry.local/web:2"))
    controller.update_service(sid, task_definition=v2)
    converge(controller, clock, sid)
    for _ in range(3):
        step(controller, clock, sid)

    kinds = _kinds(events, sid)
    assert kinds.count(EventKind.ROLLOUT_STARTED) == 2
    assert kinds.count(EventKind.ROLLOUT_COMPLETED) == 2
    assert kinds[-1] == EventKind.ROLLOUT_COMPLETED


def test_desired_count_change_retargets_rollout_in_flight(store, controller, clock, runtime, events):
    v1, sid = _deployed(store, controller, clock, 4)
    v2 = store.register(make_spec("registry.local/web:2"))
    runtime.version_health[v2] = False
    controller.update_service(sid, task_definition=v2)
    step(controller, clock, sid)

    snap = controller.update_service(sid, desired_count=6)
    assert snap["rollout"]["status"] == "in_progress"
    assert snap["rollout"]["desired_count"] == 6
    assert snap["rollout"]["target_version"] == v2

    snap = step(controller, clock, sid)
    assert snap["running_by_version"] == {v1: 4, v2: 6}
    assert snap["healthy_by_version"] == {v1: 4}

    runtime.version_health.clear()
    final = converge(controller, clock, sid)[-1]
    assert final["running_by_version"] == {v2: 6}
    assert _kinds(events, sid).count(EventKind.ROLLOUT_STARTED) == 2


def test_scale_in_stops_newest_tasks(store, controller, clock, calls):
    v1, sid = _deployed(store, controller, clock, 4)
    launched = [task_id for op, task_id in calls if op == "launch"]

    snap = controller.update_service(sid, desired_count=2)
    assert snap["rollout"]["status"] == "in_progress"
    final = converge(controller, clock, sid)[-1]

    assert sorted(t["id"] for t in final["tasks"]) == sorted(launched[:2])
    assert final["running_by_version"] == {v1: 2}


def test_scale_to_zero(store, controller, clock):
    v1, sid = _deployed(store, controller, clock, 2)
    controller.update_service(sid, desired_count=0)
    final = converge(controller, clock, sid)[-1]
    assert final["total_tasks"] == 0
    assert controller.binding.targets(sid) == []


def test_unhealthy_task_is_replaced(store, controller, clock, runtime, events):
    v1, sid = _deployed(store, controller, clock, 2)
    bad = controller.describe_service(sid)["tasks"][0]["id"]
    runtime.task_health[bad] = False

    for _ in range(60):
        snap = step(controller, clock, sid)
        ids = [t["id"] for t in snap["tasks"]]
        if bad not in ids and snap["healthy_by_version"].get(v1) == 2:
            break
    else:
        pytest.fail("unhealthy task was not replaced")

    assert snap["total_tasks"] == 2
    task_events = [ev.kind for ev in events.latest(limit=1000) if ev.task_id == bad]
    assert EventKind.TASK_UNHEALTHY in task_events
    assert EventKind.TASK_STOPPED in task_events


def test_launch_failures_back_off_then_stall(store, controller, clock, runtime, events):
    v1, sid = _deployed(store, controller, clock, 2)
    v2 = store.register(make_spec("registry.local/web:2"))
    runtime.fail_versions.add(v2)
    controller.update_service(sid, task_definition=v2)

    for _ in range(8):
        snap = step(controller, clock, sid)

    assert snap["rollout"]["status"] == "stalled"
    assert snap["rollout"]["launch_failures"] == 3
    # the old fleet keeps serving while stalled
    assert snap["running_by_version"] == {v1: 2}
    assert snap["receiving_traffic"] == 2

    evs = [ev for ev in events.latest(limit=1000, service_id=sid)]
    assert sum(1 for ev in evs if ev.kind is EventKind.TASK_LAUNCH_FAILED) == 2
    stalled = [ev for ev in evs if ev.kind is EventKind.ROLLOUT_STALLED]
    assert len(stalled) == 1 and stalled[0].level == "ERROR"


def test_resume_clears_stall(store, controller, clock, runtime, events):
    v1, sid = _deployed(store, controller, clock, 2)
    v2 = store.register(make_spec("registry.local/web:2"))
    runtime.fail_versions.add(v2)
    controller.update_service(sid, task_definition=v2)
    for _ in range(8):
        step(controller, clock, sid)

    runtime.fail_versions.clear()
    snap = controller.resume_service(sid)
    assert snap["rollout"]["status"] == "in_progress"
    assert snap["rollout"]["launch_failures"] == 0

    final = converge(controller, clock, sid)[-1]
    assert final["running_by_version"] == {v2: 2}
    assert EventKind.ROLLOUT_RESUMED in _kinds(events, sid)


def test_new_version_supersedes_stalled_rollout(store, controller, clock, runtime):
    v1, sid = _deployed(store, controller, clock, 2)
    v2 = store.register(make_spec("registry.local/web:broken"))
    runtime.fail_versions.add(v2)
    controller.update_service(sid, task_definition=v2)
    for _ in range(8):
        step(controller, clock, sid)

    v3 = store.register(make_spec("registry.local/web:3"))
    snap = controller.update_service(sid, task_definition=v3)
    assert snap["rollout"]["status"] == "in_progress"
    assert snap["rollout"]["target_version"] == v3

    final = converge(controller, clock, sid)[-1]
    assert final["running_by_version"] == {v3: 2}


def test_launch_retry_counter_resets_once_a_task_runs(store, controller, clock, runtime):
    v1 = store.register(make_spec())
    runtime.fail_launches = 2
    sid = controller.create_service(v1, 2)

    final = converge(controller, clock, sid)[-1]
    assert final["rollout"]["launch_failures"] == 0
    assert final["running_by_version"] == {v1: 2}


def test_tasks_exiting_before_running_count_as_launch_failures(store, controller, clock, runtime):
    v1 = store.register(make_spec())
    runtime.start_state = "exited"
    sid = controller.create_service(v1, 1)

    for _ in range(10):
        snap = step(controller, clock, sid)
    assert snap["rollout"]["status"] == "stalled"
    assert snap["total_tasks"] == 0


def test_deregistration_delay_drains_before_stop(store, runtime, events, binding, clock, calls):
    controller = ServiceController(
        store, runtime, events, binding=binding, clock=clock, deregistration_delay_s=5.0
    )
    v1 = store.register(make_spec())
    sid = controller.create_service(v1, 1)
    converge(controller, clock, sid)
    old_id = controller.describe_service(sid)["tasks"][0]["id"]

    v2 = store.register(make_spec("registry.local/web:2"))
    controller.update_service(sid, task_definition=v2)
    step(controller, clock, sid)
    snap = step(controller, clock, sid)

    draining = [t for t in snap["tasks"] if t["id"] == old_id]
    assert draining and draining[0]["stop_requested"]
    assert ("stop", old_id) not in calls
    assert [t.version for t in binding.targets(sid)] == [v2]
    assert snap["rollout"]["status"] == "in_progress"

    final = converge(controller, clock, sid)[-1]
    assert ("stop", old_id) in calls
    assert final["running_by_version"] == {v2: 1}
    controller.health.shutdown()



def test_scale_in_respects_max_total_with_deregistration_delay(store, runtime, events, binding, clock, calls):
    controller = ServiceController(
        store, runtime, events, binding=binding, clock=clock, deregistration_delay_s=30.0
    )
    v1, sid = _deployed(store, controller, clock, 4, policy=RollingPolicy(100, 50))

    controller.update_service(sid, desired_count=2)
    snaps = converge(controller, clock, sid)
    assert all(s["total_tasks"] <= 2 for s in snaps)
    assert snaps[-1]["running_by_version"] == {v1: 2}
    assert len(binding.targets(sid)) == 2
    assert sum(1 for c in calls if c[0] == "stop") == 2
    controller.health.shutdown()


def test_tighter_policy_cuts_drains_short(store, runtime, events, binding, clock, calls):
    controller = ServiceController(
        store, runtime, events, binding=binding, clock=clock, deregistration_delay_s=30.0
    )
    v1, sid = _deployed(store, controller, clock, 4, policy=RollingPolicy(200, 50))

    controller.update_service(sid, desired_count=3)
    snap = step(controller, clock, sid)
    assert snap["total_tasks"] == 4
    assert sum(1 for t in snap["tasks"] if t["stop_requested"]) == 1
    assert not any(c[0] == "stop" for c in calls)

    controller.update_service(sid, rolling_policy=RollingPolicy(100, 50))
    snap = step(controller, clock, sid)
    assert snap["total_tasks"] == 3
    assert sum(1 for c in calls if c[0] == "stop") == 1
    stopped = [ev for ev in events.latest(limit=50, service_id=sid) if ev.kind is EventKind.TASK_STOPPED]
    assert stopped[0].message == "drain cut short: over capacity"
    controller.health.shutdown()

class FlakyBinding(InProcessTargetGroup):
    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    def register(self, target):
        if self.failures > 0:
            self.failures -= 1
            raise RegistrationFailure("proxy unavailable")
        super().register(target)


def test_registration_failure_is_retried_without_blocking(store, runtime, events, clock):
    binding = FlakyBinding(failures=2)
    controller = ServiceController(store, runtime, events, binding=binding, clock=clock)
    v1 = store.register(make_spec())
    sid = controller.create_service(v1, 1)

    snap = converge(controller, clock, sid)[-1]
    assert snap["healthy_by_version"] == {v1: 1}
    assert snap["receiving_traffic"] == 0

    for _ in range(10):
        snap = step(controller, clock, sid)
    assert snap["receiving_traffic"] == 1
    failures = [ev for ev in events.latest(limit=100, service_id=sid) if ev.kind is EventKind.REGISTRATION_FAILED]
    assert len(failures) == 2 and all(ev.level == "WARN" for ev in failures)
    controller.health.shutdown()


def test_policy_change_applies_to_next_tick(store, controller, clock):
    v1, sid = _deployed(store, controller, clock, 4)
    snap = controller.update_service(sid, rolling_policy=RollingPolicy(100, 50))
    assert snap["rolling_policy"] == {"max_percent": 100, "min_healthy_percent": 50}

    v2 = store.register(make_spec("registry.local/web:2"))
    controller.update_service(sid, task_definition=v2)
    for snap in converge(controller, clock, sid):
        assert snap["total_tasks"] <= 4
        assert sum(snap["healthy_by_version"].values()) >= 2


def test_tick_is_skipped_while_another_pass_holds_the_lock(store, controller):
    v1 = store.register(make_spec())
    sid = controller.create_service(v1, 1)
    svc = controller.get_service(sid)
    with svc.lock:
        assert controller.tick(sid) is False
    assert controller.tick(sid) is True
