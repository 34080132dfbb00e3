import time

import pytest

from rsc.controller import ServiceController
from rsc.errors import LaunchFailure
from rsc.events import EventLog
from rsc.gateway import InProcessTargetGroup
from rsc.models import HealthCheckSpec, TaskDefinitionSpec
from rsc.runtime import TaskRuntime
from rsc.task_definitions import TaskDefinitionStore


class ManualClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRuntime(TaskRuntime):
    """In-memory containers. Tasks start immediately and pass probes unless told otherwise."""

    def __init__(self, calls: list | None = None):
        self.containers: dict[str, str] = {}
        self.calls = calls if calls is not None else []
        self.fail_launches = 0
        self.fail_versions: set[int] = set()
        self.version_health: dict[int, bool] = {}
        self.task_health: dict[str, bool] = {}
        self.cpu: dict[str, float] = {}
        self.start_state = "running"
        self.probe_delay = 0.0
        self.probe_count = 0

    def launch(self, task, definition, service_name):
        if self.fail_launches > 0:
            self.fail_launches -= 1
            raise LaunchFailure("no capacity")
        if definition.version in self.fail_versions:
            raise LaunchFailure(f"image pull failed for {definition.image}")
        handle = f"c-{task.id}"
        self.containers[handle] = self.start_state
        self.calls.append(("launch", task.id))
        return handle, f"{service_name}-{task.id}:{definition.port}"

    def status(self, task):
        return self.containers.get(task.handle, "exited")

    def probe(self, task, definition):
        self.probe_count += 1
        if self.probe_delay:
            time.sleep(self.probe_delay)
        if task.id in self.task_health:
            return self.task_health[task.id]
        return self.version_health.get(definition.version, True)

    def stop(self, task):
        self.containers.pop(task.handle, None)
        self.calls.append(("stop", task.id))

    def cpu_utilization(self, task):
        return self.cpu.get(task.id)


class RecordingBinding(InProcessTargetGroup):
    def __init__(self, calls: list):
        super().__init__()
        self.calls = calls

    def register(self, target):
        super().register(target)
        self.calls.append(("register", target.task_id))

    def deregister(self, target):
        super().deregister(target)
        self.calls.append(("deregister", target.task_id))


def make_spec(image="registry.local/web:1", **hc) -> TaskDefinitionSpec:
    health = {"command": ("CMD-SHELL", "curl -f http://localhost:8080/health || exit 1"), "interval": 10.0,
              "timeout": 2.0, "retries": 3, "start_period": 0.0}
    health.update(hc)
    return TaskDefinitionSpec(
        image=image,
        cpu=256,
        memory=512,
        port=8080,
        environment={"APP_ENV": "test"},
        health_check=HealthCheckSpec(**health),
    )


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "rsc-test.db")


@pytest.fixture
def store(db_path):
    return TaskDefinitionStore(db_path)


@pytest.fixture
def events(db_path):
    return EventLog(db_path)


@pytest.fixture
def clock():
    return ManualClock(1000.0)


@pytest.fixture
def calls():
    return []


@pytest.fixture
def runtime(calls):
    return FakeRuntime(calls)


@pytest.fixture
def binding(calls):
    return RecordingBinding(calls)


@pytest.fixture
def controller(store, runtime, events, binding, clock):
    ctl = ServiceController(
        store,
        runtime,
        events,
        binding=binding,
        clock=clock,
        launch_max_attempts=3,
        launch_backoff_base_s=1.0,
        launch_backoff_max_s=10.0,
        deregistration_delay_s=0.0,
    )
    yield ctl
    ctl.health.shutdown()


def step(controller, clock, service_id, seconds=1.0):
    """Tick once, advance the clock, and return the post-tick snapshot."""
    controller.tick(service_id)
    snap = controller.describe_service(service_id)
    clock.advance(seconds)
    return snap


def converge(controller, clock, service_id, max_ticks=50, seconds=1.0):
    snaps = []
    for _ in range(max_ticks):
        snap = step(controller, clock, service_id, seconds)
        snaps.append(snap)
        if snap["rollout"]["status"] == "completed":
            return snaps
    raise AssertionError(f"service did not converge: {snaps[-1]}")
