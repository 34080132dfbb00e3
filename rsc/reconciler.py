from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from threading import Event, Lock, Thread

from .autoscaler import AutoScaler
from .controller import ServiceController
from .errors import NotFound
from .models import EventKind
from .settings import settings

log = logging.getLogger(__name__)


class Reconciler:
    """Continuously reconciles every service and runs the auto scaler.

    Services are ticked in parallel on a worker pool; a service whose previous
    tick is still running is skipped rather than queued, so a slow or stalled
    service never delays the others.
    """

    def __init__(
        self,
        controller: ServiceController,
        autoscaler: AutoScaler | None = None,
        poll_interval_s: float | None = None,
        scaling_interval_s: float | None = None,
        workers: int | None = None,
    ):
        self.controller = controller
        self.autoscaler = autoscaler
        self.poll_interval_s = poll_interval_s or settings.poll_interval_s
        self.scaling_interval_s = scaling_interval_s or settings.scaling_interval_s
        self._pool = ThreadPoolExecutor(
            max_workers=workers or settings.reconcile_workers, thread_name_prefix="rsc-reconcile"
        )
        self._stop = Event()
        self._inflight: set[str] = set()
        self._inflight_lock = Lock()
        self._threads: list[Thread] = []

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop.clear()
        self._threads = [Thread(target=self._reconcile_loop, name="rsc-reconciler", daemon=True)]
        if self.autoscaler is not None:
            self._threads.append(Thread(target=self._scaling_loop, name="rsc-autoscaler", daemon=True))
        for t in self._threads:
            t.start()

    def stop(self) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=5.0)
        self._pool.shutdown(wait=False)

    def run_once(self) -> None:
        """Submit one tick for every service that is not already being reconciled."""
        for service_id in self.controller.service_ids():
            with self._inflight_lock:
                if service_id in self._inflight:
                    continue
                self._inflight.add(service_id)
            self._pool.submit(self._tick, service_id)

    def _reconcile_loop(self) -> None:
        log.info("Reconciler started (every %gs)", self.poll_interval_s)
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.poll_interval_s)

    def _tick(self, service_id: str) -> None:
        try:
            self.controller.tick(service_id)
        except NotFound:
            return
        except Exception as e:
            log.exception("Reconcile tick for %s failed", service_id)
            self.controller.events.emit(
                EventKind.RECONCILE_ERROR,
                f"tick failed: {type(e).__name__}: {e}",
                level="ERROR",
                service_id=service_id,
            )
        finally:
            with self._inflight_lock:
                self._inflight.discard(service_id)

    def _scaling_loop(self) -> None:
        log.info("Auto scaler started (every %gs)", self.scaling_interval_s)
        while not self._stop.wait(self.scaling_interval_s):
            for service_id in self.controller.service_ids():
                try:
                    self.autoscaler.evaluate(service_id)
                except NotFound:
                    continue
                except Exception:
                    log.exception("Scaling evaluation for %s failed", service_id)
