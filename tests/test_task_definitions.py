from dataclasses import replace

import pytest

from rsc.errors import NotFound, ValidationError
from rsc.models import HealthCheckSpec
from rsc.task_definitions import TaskDefinitionStore

from conftest import make_spec


def test_versions_are_monotonic(store):
    v1 = store.register(make_spec("registry.local/web:1"))
    v2 = store.register(make_spec("registry.local/web:2"))
    v3 = store.register(make_spec("registry.local/web:1"))
    assert v1 < v2 < v3
    assert [td.version for td in store.list()] == [v1, v2, v3]


def test_get_returns_registered_definition(store):
    version = store.register(make_spec("registry.local/web:7"))
    td = store.get(version)
    assert td.image == "registry.local/web:7"
    assert td.port == 8080
    assert dict(td.environment) == {"APP_ENV": "test"}
    assert td.health_check.retries == 3


def test_definitions_survive_a_new_store(store, db_path):
    version = store.register(make_spec("registry.local/web:9"))
    reopened = TaskDefinitionStore(db_path)
    td = reopened.get(version)
    assert td.image == "registry.local/web:9"
    assert td.health_check.command == ("CMD-SHELL", "curl -f http://localhost:8080/health || exit 1")


def test_definitions_are_immutable(store):
    td = store.get(store.register(make_spec()))
    with pytest.raises(TypeError):
        td.environment["APP_ENV"] = "prod"
    with pytest.raises(AttributeError):
        td.image = "other"


def test_unknown_version(store):
    with pytest.raises(NotFound):
        store.get(42)
    assert store.exists(42) is False


def test_submit_flat_arguments(store):
    version = store.submit(
        image="registry.local/api:3",
        cpu=512,
        memory=1024,
        port=9000,
        health_check=["HTTP", "/healthz"],
        environment={"LOG_LEVEL": "debug"},
        interval=15,
        timeout=3,
    )
    td = store.get(version)
    assert td.health_check.kind == "HTTP"
    assert td.health_check.argv == ["/healthz"]
    assert td.health_check.interval == 15


@pytest.mark.parametrize(
    "changes",
    [
        dict(image=""),
        dict(image="web app:1"),
        dict(cpu=0),
        dict(memory=-1),
        dict(port=0),
        dict(port=70000),
        dict(environment={"1BAD": "x"}),
        dict(environment={"GOOD": 1}),
    ],
)
def test_invalid_definition_fields(store, changes):
    with pytest.raises(ValidationError):
        store.register(replace(make_spec(), **changes))
    assert store.list() == []


@pytest.mark.parametrize(
    "health",
    [
        dict(command=()),
        dict(command=("CMD-SHELL",)),
        dict(command=("HTTP", "health")),
        dict(command=("CMD", "")),
        dict(interval=0),
        dict(timeout=0),
        dict(interval=5, timeout=6),
        dict(retries=0),
        dict(retries=1.5),
        dict(start_period=-1),
    ],
)
def test_invalid_health_check(store, health):
    spec = make_spec()
    hc = replace(spec.health_check, **health)
    with pytest.raises(ValidationError):
        store.register(replace(spec, health_check=hc))


def test_bare_command_list_is_exec_form():
    hc = HealthCheckSpec(command=("/bin/check", "--fast"))
    assert hc.kind == "CMD"
    assert hc.argv == ["/bin/check", "--fast"]
