from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Iterable, List, Optional

from .config import Settings
from .docker import ContainerRegistry, DockerClient, ImageRegistry
from .locks import FileLock, NamedLock
from .log import StepLogger
from .models import BuildConfig, FlushReport, NamespaceResult
from .utils import Shellout

logger = logging.getLogger(__name__)


class FlushState(Enum):
    NOT_STARTED = "not-started"
    LOCK_ACQUIRED = "lock-acquired"
    CONTAINERS_FLUSHED = "containers-flushed"
    IMAGES_REMOVED = "images-removed"
    LOCK_RELEASED = "lock-released"


class FlushError(RuntimeError):
    """Raised after a run in which at least one namespace failed to flush."""

    def __init__(self, report: FlushReport) -> None:
        self.report = report
        lines = [f"Flush failed for namespace(s): {', '.join(report.failed)}"]
        for namespace in report.failed:
            lines.append(f"  {namespace}: {report.get(namespace).error}")
        super().__init__("\n".join(lines))


def lock_name(namespace: str) -> str:
    return f"{namespace}.images"


def unique_basenames(configs: Iterable[BuildConfig]) -> List[str]:
    """Distinct basenames in first-seen order."""

    return list(dict.fromkeys(config.basename for config in configs))


class FlushOrchestrator:
    """Flushes containers, then images, for each namespace under its lock."""

    def __init__(
        self,
        locks: NamedLock,
        containers: ContainerRegistry,
        images: ImageRegistry,
        steps: Optional[StepLogger] = None,
        *,
        fail_fast: bool = False,
    ) -> None:
        self.locks = locks
        self.containers = containers
        self.images = images
        self.steps = steps or StepLogger()
        self.fail_fast = fail_fast

    @classmethod
    def from_settings(cls, settings: Settings, shellout: Optional[Shellout] = None) -> "FlushOrchestrator":
        client = DockerClient(shellout or Shellout(settings), settings)
        return cls(
            FileLock.from_settings(settings),
            ContainerRegistry(client),
            ImageRegistry(client),
            fail_fast=settings.fail_fast,
        )

    def flush_namespace(self, namespace: str) -> NamespaceResult:
        """Flush one namespace; failures propagate after the lock is released."""

        result = NamespaceResult(namespace, "running", {"state": FlushState.NOT_STARTED.value})
        self._flush(result)
        return result

    def _flush(self, result: NamespaceResult) -> None:
        namespace = result.namespace
        started = time.perf_counter()
        with self.locks.acquire(lock_name(namespace)):
            result.details["state"] = FlushState.LOCK_ACQUIRED.value
            with self.steps.step(namespace):
                containers = self.containers.list_containers(namespace)
                self.containers.remove(namespace, containers)
                result.details["containers"] = list(containers)
                result.details["state"] = FlushState.CONTAINERS_FLUSHED.value

                query = self.images.build_query(namespace)
                images = self.images.remove(query)
                result.details["images"] = list(images or [])
                result.details["state"] = FlushState.IMAGES_REMOVED.value
        result.details["state"] = FlushState.LOCK_RELEASED.value
        result.details["duration_s"] = round(time.perf_counter() - started, 3)
        result.status = "completed"

    def run(self, configs: Iterable[BuildConfig]) -> FlushReport:
        """Flush every distinct namespace; raise :class:`FlushError` if any failed."""

        report = FlushReport()
        for namespace in unique_basenames(configs):
            result = NamespaceResult(namespace, "running", {"state": FlushState.NOT_STARTED.value})
            report.results.append(result)
            try:
                self._flush(result)
            except Exception as exc:
                result.status = "failed"
                result.error = exc
                if self.fail_fast:
                    raise
                logger.warning("Flush of %s failed: %s", namespace, exc)
        if report.failed:
            raise FlushError(report)
        return report
