from __future__ import annotations

import logging
import secrets
import time
from threading import Lock

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import LogConfig
from requests.exceptions import RequestException

from .errors import LaunchFailure, ProbeFailure
from .health import check_http
from .models import Task, TaskDefinition
from .runtime import TaskRuntime
from .settings import settings

log = logging.getLogger(__name__)

EXEC_POLL_S = 0.1

_STATUS = {
    "created": "pending",
    "restarting": "pending",
    "running": "running",
    "paused": "running",
}


def container_endpoint(container_name: str, port: int) -> str:
    """host:port reachable from within the same docker network."""
    return f"{container_name}:{int(port)}"


class DockerRuntime(TaskRuntime):
    """Runs tasks as labeled containers on a dedicated bridge network."""

    def __init__(self, network: str | None = None, client: docker.DockerClient | None = None):
        self.network = network or settings.docker_network
        self._client = client
        self._lock = Lock()
        self._network_ready = False

    @property
    def client(self) -> docker.DockerClient:
        with self._lock:
            if self._client is None:
                self._client = docker.from_env()
            return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        if self._network_ready:
            return
        try:
            self.client.networks.get(self.network)
        except NotFound:
            self.client.networks.create(self.network, driver="bridge")
            log.info("Created docker network '%s'", self.network)
        self._network_ready = True

    def launch(self, task: Task, definition: TaskDefinition, service_name: str) -> tuple[str, str]:
        name = f"rsc-{service_name}-v{definition.version}-{secrets.token_hex(3)}"
        labels = {
            "rsc.service": task.service_id,
            "rsc.version": str(definition.version),
            "rsc.task": task.id,
        }
        kwargs = {}
        if definition.log_sink:
            kwargs["log_config"] = LogConfig(type=definition.log_sink)
        try:
            self.ensure_network()
            container = self.client.containers.run(
                definition.image,
                detach=True,
                name=name,
                environment=dict(definition.environment),
                network=self.network,
                labels=labels,
                nano_cpus=int(definition.cpu * 1_000_000_000 / 1024),
                mem_limit=f"{definition.memory}m",
                # Replacement is the recovery mechanism; keep Docker from restarting on its own.
                restart_policy={"Name": "no"},
                **kwargs,
            )
        except ImageNotFound as e:
            raise LaunchFailure(f"image pull failed for {definition.image}: {e}") from e
        except (APIError, DockerException) as e:
            raise LaunchFailure(f"container start failed: {type(e).__name__}: {e}") from e

        log.info("Started container %s from image %s", name, definition.image)
        return container.id, container_endpoint(name, definition.port)

    def status(self, task: Task) -> str:
        if not task.handle:
            return "pending"
        try:
            cont = self.client.containers.get(task.handle)
            cont.reload()
        except NotFound:
            return "exited"
        except (APIError, RequestException) as e:
            log.warning("Status of task %s unavailable: %s", task.id, e)
            return "unknown"
        return _STATUS.get(cont.status, "exited")

    def probe(self, task: Task, definition: TaskDefinition) -> bool:
        hc = definition.health_check
        if hc.kind == "HTTP":
            ok, msg, _latency = check_http(f"http://{task.endpoint}{hc.argv[0]}", timeout_s=hc.timeout)
            if not ok:
                raise ProbeFailure(msg)
            return True
        cmd = ["/bin/sh", "-c", hc.argv[0]] if hc.kind == "CMD-SHELL" else hc.argv
        api = self.client.api
        try:
            exec_id = api.exec_create(task.handle, cmd)["Id"]
            # Detached, then polled: the command cannot hold this thread past the timeout.
            api.exec_start(exec_id, detach=True)
            deadline = time.monotonic() + hc.timeout
            while True:
                info = api.exec_inspect(exec_id)
                if not info.get("Running") and info.get("ExitCode") is not None:
                    break
                if time.monotonic() >= deadline:
                    raise ProbeFailure(f"health command still running after {hc.timeout:g}s")
                time.sleep(EXEC_POLL_S)
        except (APIError, RequestException) as e:
            raise ProbeFailure(f"health command could not run: {e}") from e
        if info["ExitCode"] != 0:
            raise ProbeFailure(f"health command exited with {info['ExitCode']}")
        return True

    def stop(self, task: Task) -> None:
        if not task.handle:
            return
        try:
            cont = self.client.containers.get(task.handle)
            cont.stop(timeout=10)
            cont.remove(force=True)
        except NotFound:
            return

    def cpu_utilization(self, task: Task) -> float | None:
        if not task.handle:
            return None
        try:
            cont = self.client.containers.get(task.handle)
            stats = cont.stats(stream=False)
        except (NotFound, APIError):
            return None
        cpu = stats.get("cpu_stats", {})
        pre = stats.get("precpu_stats", {})
        cpu_delta = cpu.get("cpu_usage", {}).get("total_usage", 0) - pre.get("cpu_usage", {}).get("total_usage", 0)
        system_delta = cpu.get("system_cpu_usage", 0) - pre.get("system_cpu_usage", 0)
        if cpu_delta <= 0 or system_delta <= 0:
            return 0.0
        online = cpu.get("online_cpus") or len(cpu.get("cpu_usage", {}).get("percpu_usage") or [1])
        cores_used = cpu_delta / system_delta * online
        nano_cpus = (cont.attrs.get("HostConfig") or {}).get("NanoCpus") or 0
        reserved = nano_cpus / 1_000_000_000 if nano_cpus else online
        return round(cores_used / reserved * 100.0, 2)
