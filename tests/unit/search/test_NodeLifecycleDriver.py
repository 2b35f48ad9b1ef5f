from typing import Any, Dict, List, Optional
from unittest import mock

import pytest
from elasticsearch import TransportError
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ConnectTimeout, HTTPError
from spicerack.remote import RemoteExecutionError

from cookbooks.search.libs.common import WaitTimeout
from cookbooks.search.libs.elasticsearch import (
    ALLOCATION_SETTING,
    AllocationError,
    ElasticsearchClusterController,
    ElasticsearchTestUtils,
)
from cookbooks.search.libs.node import (
    ELASTICSEARCH_TAGLINE,
    NodeLifecycleDriver,
    NodeRestarter,
    NodeRestartError,
    RemoteNodeRestarter,
)

READY_ROOT = {"name": "es-data-01", "cluster_name": "production", "tagline": ELASTICSEARCH_TAGLINE}


def parametrize(params: Dict[str, Any]):
    def decorator(decorated):
        return pytest.mark.parametrize(**ElasticsearchTestUtils.to_parametrize(params))(decorated)

    return decorator


def get_fake_http_session(responses: List[Any]) -> mock.MagicMock:
    """Each response is either the JSON root document or an exception risen by the request."""
    side_effect = []
    for response in responses:
        if isinstance(response, Exception):
            side_effect.append(response)
        else:
            fake_response = mock.MagicMock()
            fake_response.json.return_value = response
            side_effect.append(fake_response)

    fake_http_session = mock.MagicMock()
    fake_http_session.get.side_effect = side_effect
    return fake_http_session


def get_driver(
    http_session: mock.MagicMock,
    restarter: Optional[mock.MagicMock] = None,
    controller: Optional[ElasticsearchClusterController] = None,
    sleep: Optional[mock.MagicMock] = None,
    **kwargs,
) -> NodeLifecycleDriver:
    return NodeLifecycleDriver(
        restarter=restarter or mock.create_autospec(spec=NodeRestarter, instance=True),
        controller_factory=lambda host: controller,
        http_session=http_session,
        sleep=sleep or mock.MagicMock(),
        clock=ElasticsearchTestUtils.get_fake_clock(),
        **kwargs,
    )


@parametrize(
    {
        "When the node answers with the tagline, it's ready.": {"response": READY_ROOT, "expected_ready": True},
        "When the node answers with another tagline, it's not ready.": {
            "response": {"tagline": "You Know, for Nothing"},
            "expected_ready": False,
        },
        "When the node answers with something that is not an object, it's not ready.": {
            "response": ["unexpected"],
            "expected_ready": False,
        },
        "When the connection is refused, it's not ready.": {
            "response": RequestsConnectionError("Connection refused"),
            "expected_ready": False,
        },
        "When the connection times out, it's not ready.": {
            "response": ConnectTimeout("timed out"),
            "expected_ready": False,
        },
        "When the request fails otherwise, it's not ready.": {
            "response": HTTPError("503 Service Unavailable"),
            "expected_ready": False,
        },
        "When the body is not JSON, it's not ready.": {
            "response": ValueError("Expecting value: line 1 column 1 (char 0)"),
            "expected_ready": False,
        },
    }
)
def test_is_node_ready(response: Any, expected_ready: bool):
    fake_http_session = get_fake_http_session([response])
    if isinstance(response, ValueError):
        fake_http_session.get.side_effect = None
        fake_http_session.get.return_value.json.side_effect = response

    my_driver = get_driver(http_session=fake_http_session)

    assert my_driver.is_node_ready("es-data-01.example.org") is expected_ready
    fake_http_session.get.assert_called_once_with("http://es-data-01.example.org:9200/", timeout=1)


def test_remote_node_restarter_happy_path():
    fake_remote = ElasticsearchTestUtils.get_fake_remote()
    my_restarter = RemoteNodeRestarter(remote=fake_remote, service="elasticsearch_7@production")

    my_restarter.restart("es-data-01.example.org")

    fake_remote.query.assert_called_once_with("D{es-data-01.example.org}", use_sudo=True)
    fake_remote.query.return_value.run_sync.assert_called_once_with(
        "systemctl restart elasticsearch_7@production", print_progress_bars=False
    )


def test_remote_node_restarter_raises_when_the_command_fails():
    fake_remote = ElasticsearchTestUtils.get_fake_remote(
        side_effect=RemoteExecutionError(255, "ssh failed", results=iter([]))
    )
    my_restarter = RemoteNodeRestarter(remote=fake_remote)

    with pytest.raises(NodeRestartError):
        my_restarter.restart("es-data-01.example.org")


def test_restart_and_wait_non_data_node_does_not_touch_allocation():
    fake_http_session = get_fake_http_session([RequestsConnectionError("Connection refused"), READY_ROOT])
    fake_restarter = mock.create_autospec(spec=NodeRestarter, instance=True)
    fake_controller = mock.create_autospec(spec=ElasticsearchClusterController, instance=True)
    fake_sleep = mock.MagicMock()
    my_driver = get_driver(
        http_session=fake_http_session, restarter=fake_restarter, controller=fake_controller, sleep=fake_sleep
    )

    my_driver.restart_and_wait("es-master-01.example.org", is_data_node=False)

    fake_restarter.restart.assert_called_once_with("es-master-01.example.org")
    assert fake_sleep.call_args_list == [mock.call(15), mock.call(1)]
    assert fake_http_session.get.call_count == 2
    assert fake_controller.mock_calls == []


def record_step(steps: List[str], step: str, result: Any = None):
    def _side_effect(*_args, **_kwargs):
        steps.append(step)
        return result

    return _side_effect


def test_restart_and_wait_data_node_steps_are_in_order():
    steps: List[str] = []
    fake_elasticsearch = ElasticsearchTestUtils.get_fake_elasticsearch()
    fake_elasticsearch.cluster.put_settings.side_effect = lambda body: steps.append(
        f"allocation {body['transient'][ALLOCATION_SETTING]}"
    )
    fake_elasticsearch.cluster.health.side_effect = record_step(
        steps, "health", ElasticsearchTestUtils.get_health_dict()
    )
    fake_restarter = mock.create_autospec(spec=NodeRestarter, instance=True)
    fake_restarter.restart.side_effect = lambda host: steps.append(f"restart {host}")
    fake_response = mock.MagicMock()
    fake_response.json.return_value = READY_ROOT
    fake_http_session = mock.MagicMock()
    fake_http_session.get.side_effect = record_step(steps, "ready", fake_response)
    my_driver = get_driver(
        http_session=fake_http_session,
        restarter=fake_restarter,
        controller=ElasticsearchClusterController(elasticsearch=fake_elasticsearch, dry_run=False),
    )

    my_driver.restart_and_wait("es-data-01.example.org", is_data_node=True)

    assert steps == [
        "allocation none",
        "restart es-data-01.example.org",
        "ready",
        "allocation all",
        "health",
    ]
    fake_elasticsearch.close.assert_called_once_with()


def test_restart_and_wait_data_node_enables_allocation_when_the_restart_fails():
    fake_elasticsearch = ElasticsearchTestUtils.get_fake_elasticsearch()
    fake_restarter = mock.create_autospec(spec=NodeRestarter, instance=True)
    fake_restarter.restart.side_effect = NodeRestartError("ssh failed")
    my_driver = get_driver(
        http_session=get_fake_http_session([]),
        restarter=fake_restarter,
        controller=ElasticsearchClusterController(elasticsearch=fake_elasticsearch, dry_run=False),
    )

    with pytest.raises(NodeRestartError):
        my_driver.restart_and_wait("es-data-01.example.org", is_data_node=True)

    assert fake_elasticsearch.cluster.put_settings.call_args_list == [
        mock.call(body={"transient": {ALLOCATION_SETTING: "none"}}),
        mock.call(body={"transient": {ALLOCATION_SETTING: "all"}}),
    ]
    fake_elasticsearch.cluster.health.assert_not_called()
    fake_elasticsearch.close.assert_called_once_with()


def test_restart_and_wait_data_node_raises_when_enable_fails():
    fake_elasticsearch = ElasticsearchTestUtils.get_fake_elasticsearch()
    fake_elasticsearch.cluster.put_settings.side_effect = [None, TransportError(500, "master not discovered")]
    my_driver = get_driver(
        http_session=get_fake_http_session([READY_ROOT]),
        controller=ElasticsearchClusterController(elasticsearch=fake_elasticsearch, dry_run=False),
    )

    with pytest.raises(AllocationError):
        my_driver.restart_and_wait("es-data-01.example.org", is_data_node=True)

    fake_elasticsearch.cluster.health.assert_not_called()
    fake_elasticsearch.close.assert_called_once_with()


def test_wait_for_node_ready_raises_after_the_timeout():
    fake_http_session = mock.MagicMock()
    fake_http_session.get.side_effect = RequestsConnectionError("Connection refused")
    my_driver = get_driver(http_session=fake_http_session, ready_timeout_seconds=10)

    with pytest.raises(WaitTimeout):
        my_driver.wait_for_node_ready("es-data-01.example.org")
