"""Container and image registries backed by the ``docker`` CLI."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from .config import Settings
from .models import ImageQuery
from .utils import Shellout, ShelloutError

logger = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """Raised when enumerating or removing docker objects fails."""

    def __init__(self, namespace: str, target: object, cause: BaseException) -> None:
        self.namespace = namespace
        self.target = target
        self.cause = cause
        super().__init__(f"[{namespace}] {target}: {cause}")


def _split_ids(output: str) -> List[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


class DockerClient:
    """Thin wrapper running ``docker`` subcommands through :class:`Shellout`."""

    def __init__(self, shellout: Shellout, settings: Optional[Settings] = None) -> None:
        self.shellout = shellout
        self.settings = settings or shellout.settings

    @property
    def env(self) -> Dict[str, str]:
        if self.settings.docker_config_dir:
            return {"DOCKER_CONFIG": self.settings.docker_config_dir}
        return {}

    def cmd(self, *args: str, log_verbose: bool = False) -> str:
        command = ["docker", *args]
        if self.settings.debug_docker:
            logger.debug("docker: %s", " ".join(command))
        result = self.shellout.shellout_checked(command, env=self.env, log_verbose=log_verbose)
        return result.stdout


class ContainerRegistry:
    """Containers labelled with a namespace."""

    def __init__(self, client: DockerClient) -> None:
        self.client = client

    def label_filter(self, namespace: str) -> str:
        return f"label={self.client.settings.container_label}={namespace}"

    def list_containers(self, namespace: str) -> List[str]:
        label = self.label_filter(namespace)
        try:
            output = self.client.cmd("ps", "-a", "-q", "--no-trunc", "--filter", label)
        except ShelloutError as exc:
            raise RegistryError(namespace, label, exc) from exc
        return list(dict.fromkeys(_split_ids(output)))

    def remove(self, namespace: str, containers: Sequence[str]) -> None:
        if not containers:
            logger.debug("No containers to remove for %s", namespace)
            return
        try:
            self.client.cmd("rm", "-f", *containers, log_verbose=True)
        except ShelloutError as exc:
            raise RegistryError(namespace, list(containers), exc) from exc
        logger.info("Removed %d container(s) for %s", len(containers), namespace)

    def flush(self, namespace: str) -> List[str]:
        containers = self.list_containers(namespace)
        self.remove(namespace, containers)
        return containers


class ImageRegistry:
    """Stage images named ``<prefix>-<namespace>[:tag]``."""

    def __init__(self, client: DockerClient) -> None:
        self.client = client

    def build_query(self, namespace: str) -> ImageQuery:
        repository = f"{self.client.settings.stage_image_prefix}-{namespace}"
        return ImageQuery(namespace=namespace, filters=(f"reference={repository}", f"reference={repository}:*"))

    def list_images(self, query: ImageQuery) -> List[str]:
        images: List[str] = []
        for expression in query.filters:
            try:
                output = self.client.cmd("images", "-q", "--no-trunc", "--filter", expression)
            except ShelloutError as exc:
                raise RegistryError(query.namespace, query, exc) from exc
            images.extend(_split_ids(output))
        return list(dict.fromkeys(images))

    def remove(self, query: ImageQuery) -> List[str]:
        images = self.list_images(query)
        if not images:
            logger.debug("No images match %s", query)
            return images
        try:
            self.client.cmd("rmi", "-f", *images, log_verbose=True)
        except ShelloutError as exc:
            raise RegistryError(query.namespace, query, exc) from exc
        logger.info("Removed %d image(s) for %s", len(images), query.namespace)
        return images
