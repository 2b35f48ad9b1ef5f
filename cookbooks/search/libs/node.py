"""Elasticsearch node lifecycle: restart a node and wait for it to be back in the cluster."""
import logging
import time
from abc import ABCMeta, abstractmethod
from typing import Callable, Optional

from requests import Session
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ConnectTimeout, RequestException
from spicerack.remote import Remote, RemoteExecutionError

from cookbooks.search.libs.common import RollingRestartError, wait_until
from cookbooks.search.libs.elasticsearch import ELASTICSEARCH_PORT, ElasticsearchClusterController

LOGGER = logging.getLogger(__name__)
# Expected value of the `tagline` field of the JSON returned by a healthy node on `GET /`
ELASTICSEARCH_TAGLINE = "You Know, for Search"


class NodeRestartError(RollingRestartError):
    """Risen when the restart command could not be delivered to a node."""


class NodeRestarter(metaclass=ABCMeta):
    """Capability to restart the Elasticsearch service on a host."""

    @abstractmethod
    def restart(self, host: str) -> None:
        """Restart the Elasticsearch service on the given host.

        Raises:
            NodeRestartError: if the restart could not be performed.

        """


class RemoteNodeRestarter(NodeRestarter):
    """Restart the Elasticsearch service through Spicerack remote execution."""

    def __init__(self, remote: Remote, service: str = "elasticsearch"):
        """Init."""
        self._remote = remote
        self.service = service

    def restart(self, host: str) -> None:
        """Restart the service with systemctl, as root."""
        LOGGER.info("Sending restart request to %s...", host)
        node = self._remote.query(f"D{{{host}}}", use_sudo=True)
        try:
            node.run_sync(f"systemctl restart {self.service}", print_progress_bars=False)
        except RemoteExecutionError as error:
            raise NodeRestartError(f"Unable to restart {self.service} on {host}: {error}") from error

        LOGGER.info("Restart request sent to %s", host)


class NodeLifecycleDriver:
    """Restart a single node and block until it is back and, for data nodes, the cluster has settled."""

    # pylint: disable=too-many-arguments,too-many-instance-attributes
    def __init__(
        self,
        restarter: NodeRestarter,
        controller_factory: Callable[[str], ElasticsearchClusterController],
        http_session: Session,
        port: int = ELASTICSEARCH_PORT,
        grace_period_seconds: float = 15,
        ready_check_interval_seconds: float = 1,
        settle_check_interval_seconds: float = 2,
        ready_timeout_seconds: Optional[float] = None,
        settle_timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Init.

        The `controller_factory` gets a controller talking to the cluster through the given host, it is used for
        the data nodes to toggle shard allocation and follow the recovery through the node being restarted.
        Timeouts are disabled by default, in that case the waits go on until the condition is met.
        """
        self._restarter = restarter
        self._controller_factory = controller_factory
        self._http_session = http_session
        self.port = port
        self.grace_period_seconds = grace_period_seconds
        self.ready_check_interval_seconds = ready_check_interval_seconds
        self.settle_check_interval_seconds = settle_check_interval_seconds
        self.ready_timeout_seconds = ready_timeout_seconds
        self.settle_timeout_seconds = settle_timeout_seconds
        self._sleep = sleep
        self._clock = clock

    def is_node_ready(self, host: str) -> bool:
        """Check if the node answers on its HTTP port with the expected root document."""
        try:
            response = self._http_session.get(f"http://{host}:{self.port}/", timeout=1)
            root = response.json()
        except (RequestsConnectionError, ConnectTimeout) as error:
            LOGGER.debug("%s not accepting connections yet: %s", host, error)
            return False
        except (RequestException, ValueError) as error:
            LOGGER.debug("%s not ready yet: %s", host, error)
            return False

        return isinstance(root, dict) and root.get("tagline") == ELASTICSEARCH_TAGLINE

    def wait_for_node_ready(self, host: str) -> None:
        """Poll the node until it answers again."""
        LOGGER.info("Waiting for elasticsearch to accept connections on %s:%d", host, self.port)
        failed_checks = wait_until(
            check=lambda: self.is_node_ready(host),
            description=f"{host}:{self.port} to accept connections",
            check_interval_seconds=self.ready_check_interval_seconds,
            timeout_seconds=self.ready_timeout_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )
        LOGGER.info("%s is accepting connections (after %d failed checks)", host, failed_checks)

    def _restart_and_wait_for_node(self, host: str) -> None:
        self._restarter.restart(host)
        LOGGER.info("Waiting %ss for %s to initiate shutdown...", self.grace_period_seconds, host)
        self._sleep(self.grace_period_seconds)
        self.wait_for_node_ready(host)

    def restart_and_wait(self, host: str, is_data_node: bool) -> None:
        """Restart the node and wait for it to be back.

        For data nodes the shard allocation is disabled before the restart and enabled again once the node is
        back, even if a step in between failed, then it waits for the cluster to settle.
        """
        if not is_data_node:
            self._restart_and_wait_for_node(host)
            return

        controller = self._controller_factory(host)
        try:
            with controller.allocation_disabled():
                self._restart_and_wait_for_node(host)

            controller.wait_for_settled(
                check_interval_seconds=self.settle_check_interval_seconds,
                timeout_seconds=self.settle_timeout_seconds,
                sleep=self._sleep,
                clock=self._clock,
            )
        finally:
            controller.close()
