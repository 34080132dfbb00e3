from __future__ import annotations

from threading import Lock
from typing import Mapping, Sequence

from . import db
from .errors import NotFound
from .models import HealthCheckSpec, TaskDefinition, TaskDefinitionSpec, utc_now


class TaskDefinitionStore:
    """Immutable, versioned task definitions.

    Versions come from the SQLite AUTOINCREMENT key, so they are monotonic and
    never reused. Definitions are never updated; reads are served from a cache
    and are safe from any thread.
    """

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path
        self._lock = Lock()
        self._cache: dict[int, TaskDefinition] = {}
        db.init_db(db_path)

    def register(self, spec: TaskDefinitionSpec) -> int:
        spec.validate()
        created_at = utc_now()
        with self._lock:
            version = db.insert_task_definition(
                self.db_path,
                image=spec.image,
                cpu=int(spec.cpu),
                memory=int(spec.memory),
                port=int(spec.port),
                environment=dict(spec.environment),
                health_check=spec.health_check.to_dict(),
                log_sink=spec.log_sink,
                created_at=created_at,
            )
            self._cache[version] = TaskDefinition.from_spec(version, spec, created_at)
        return version

    def submit(
        self,
        image: str,
        cpu: int,
        memory: int,
        port: int,
        health_check: Sequence[str],
        environment: Mapping[str, str] | None = None,
        interval: float = 30.0,
        timeout: float = 5.0,
        retries: int = 3,
        start_period: float = 0.0,
        log_sink: str | None = None,
    ) -> int:
        """Flat-argument form of register()."""
        spec = TaskDefinitionSpec(
            image=image,
            cpu=cpu,
            memory=memory,
            port=port,
            environment=dict(environment or {}),
            log_sink=log_sink,
            health_check=HealthCheckSpec(
                command=tuple(health_check),
                interval=interval,
                timeout=timeout,
                retries=retries,
                start_period=start_period,
            ),
        )
        return self.register(spec)

    def get(self, version: int) -> TaskDefinition:
        with self._lock:
            td = self._cache.get(version)
        if td is not None:
            return td
        td = db.get_task_definition(self.db_path, version)
        if td is None:
            raise NotFound(f"task definition version {version} does not exist")
        with self._lock:
            self._cache[version] = td
        return td

    def exists(self, version: int) -> bool:
        try:
            self.get(version)
        except NotFound:
            return False
        return True

    def list(self) -> list[TaskDefinition]:
        return db.list_task_definitions(self.db_path)
