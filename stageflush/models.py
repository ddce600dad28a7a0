from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class BuildConfig:
    """A build configuration as far as flushing is concerned."""

    basename: str
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildConfig":
        return cls(basename=data["basename"], name=data.get("name"))


@dataclass(frozen=True)
class Invocation:
    """One external command, consumed by a single execution."""

    command: Tuple[str, ...]
    env: Optional[Mapping[str, str]] = None
    log_verbose: bool = False
    options: Mapping[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return " ".join(self.command)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of an :class:`Invocation`."""

    invocation: Invocation
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def command(self) -> List[str]:
        return list(self.invocation.command)

    @property
    def failed(self) -> bool:
        return self.returncode != 0


@dataclass(frozen=True)
class ImageQuery:
    """Docker ``--filter`` expressions selecting the images of a namespace."""

    namespace: str
    filters: Tuple[str, ...]

    def __str__(self) -> str:
        return ", ".join(self.filters)


@dataclass
class NamespaceResult:
    """Summary emitted for one flushed namespace."""

    namespace: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "namespace": self.namespace,
            "status": self.status,
            "details": self.details,
        }
        if self.error is not None:
            payload["error"] = str(self.error)
        return payload


@dataclass
class FlushReport:
    results: List[NamespaceResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [result.namespace for result in self.results if result.ok]

    @property
    def failed(self) -> List[str]:
        return [result.namespace for result in self.results if not result.ok]

    def get(self, namespace: str) -> NamespaceResult:
        for result in self.results:
            if result.namespace == namespace:
                return result
        raise KeyError(namespace)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "namespaces": [result.to_dict() for result in self.results],
        }
