"""
Resource Reaper
===============
Removes every container and image a containerized run created.

Containers go first: an image cannot be removed while a container still
references it. Images are then removed newest-first so child layers go
before their parents. Image removal errors are expected (deleting a
container can already have taken an image with it) and are ignored;
container removal errors propagate to the caller once every container
and image has been attempted.
"""
import logging
from contextlib import contextmanager
from typing import Iterator

from docker.errors import DockerException
from requests.exceptions import RequestException

from ci_runner.executor.container_runner import ContainerChain

logger = logging.getLogger(__name__)


class ResourceReaper:

    def __init__(self, client) -> None:
        self.client = client

    def cleanup(self, chain: ContainerChain) -> None:
        """Remove everything in ``chain``, re-raising the first container error at the end."""
        first_error = None
        for container in chain.containers:
            try:
                container.remove(force=True)
                logger.info("Container %s removed", container.short_id)
            except Exception as e:
                logger.error("Container %s not removed | error=%s", container.short_id, e)
                if first_error is None:
                    first_error = e

        for image in reversed(chain.images):
            try:
                self.client.images.remove(image.id)
                logger.info("Image %s removed", image.short_id)
            except (DockerException, RequestException) as e:
                logger.debug("Image %s not removed: %s", image.short_id, e)

        if first_error is not None:
            raise first_error

    @contextmanager
    def reaping(self, chain: ContainerChain) -> Iterator[ContainerChain]:
        """Yield ``chain`` and clean it up on every exit path."""
        try:
            yield chain
        finally:
            logger.info(
                "Cleaning up chain | containers=%d | images=%d",
                len(chain.containers), len(chain.images),
            )
            self.cleanup(chain)
