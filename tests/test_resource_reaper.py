import pytest
from unittest.mock import MagicMock, call
from docker.errors import APIError, ImageNotFound
from requests.exceptions import ConnectionError as RequestsConnectionError

from ci_runner.executor.container_runner import ContainerChain
from ci_runner.executor.resource_reaper import ResourceReaper


def _named(kind, n):
    obj = MagicMock()
    obj.id = f"{kind}-{n}"
    obj.short_id = obj.id
    return obj


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def chain():
    return ContainerChain(
        images=[_named("image", i) for i in range(3)],
        containers=[_named("container", i) for i in range(4)],
    )


def test_all_containers_removed(client, chain):
    ResourceReaper(client).cleanup(chain)
    for container in chain.containers:
        container.remove.assert_called_once_with(force=True)


def test_images_removed_newest_first(client, chain):
    ResourceReaper(client).cleanup(chain)
    assert client.images.remove.call_args_list == [
        call("image-2"), call("image-1"), call("image-0"),
    ]


def test_image_errors_are_ignored(client, chain):
    client.images.remove.side_effect = [ImageNotFound("gone"), APIError("conflict"), None]
    ResourceReaper(client).cleanup(chain)
    assert client.images.remove.call_count == 3


def test_container_errors_propagate(client, chain):
    chain.containers[1].remove.side_effect = APIError("cannot remove")
    with pytest.raises(APIError):
        ResourceReaper(client).cleanup(chain)


def test_container_error_does_not_stop_cleanup(client, chain):
    chain.containers[0].remove.side_effect = APIError("first")
    chain.containers[2].remove.side_effect = RequestsConnectionError("second")
    with pytest.raises(APIError, match="first"):
        ResourceReaper(client).cleanup(chain)
    for container in chain.containers:
        container.remove.assert_called_once_with(force=True)
    assert client.images.remove.call_count == 3


def test_image_transport_errors_are_ignored(client, chain):
    client.images.remove.side_effect = [RequestsConnectionError("reset"), None, None]
    ResourceReaper(client).cleanup(chain)
    assert client.images.remove.call_count == 3


def test_empty_chain_is_a_no_op(client):
    ResourceReaper(client).cleanup(ContainerChain())
    client.images.remove.assert_not_called()


def test_reaping_cleans_up_after_error(client, chain):
    reaper = ResourceReaper(client)
    with pytest.raises(RuntimeError):
        with reaper.reaping(chain):
            raise RuntimeError("chain blew up")
    for container in chain.containers:
        container.remove.assert_called_once_with(force=True)
    assert client.images.remove.call_count == 3


def test_reaping_sees_resources_added_inside(client):
    chain = ContainerChain()
    with ResourceReaper(client).reaping(chain) as tracked:
        tracked.images.append(_named("image", 9))
        tracked.containers.append(_named("container", 9))
    chain.containers[0].remove.assert_called_once_with(force=True)
    client.images.remove.assert_called_once_with("image-9")
