"""Rolling restart state machine: checks, sync repair and node groups restart in order."""
import logging
import time
from enum import Enum
from typing import Callable, Set, Tuple

from cookbooks.search.libs.common import RollingRestartError, ask_yesno
from cookbooks.search.libs.elasticsearch import ElasticsearchClusterController, FlushResult
from cookbooks.search.libs.node import NodeLifecycleDriver
from cookbooks.search.libs.progress import ProgressLedger
from cookbooks.search.libs.topology import Cluster, NodeRole

LOGGER = logging.getLogger(__name__)


class SyncCheckAborted(RollingRestartError):
    """Risen when the operator chose not to go on with indices still out of sync."""


class RestartState(Enum):
    """States of a rolling restart run."""

    PREFLIGHT_CHECK = "preflight check"
    SYNC_AUDIT = "sync audit"
    RESTART_MASTERS = "restart masters"
    RESTART_CLIENTS = "restart clients"
    RESTART_DATA = "restart data"
    DONE = "done"
    ABORTED = "aborted"


GROUP_STATES = {
    NodeRole.MASTER: RestartState.RESTART_MASTERS,
    NodeRole.CLIENT: RestartState.RESTART_CLIENTS,
    NodeRole.DATA: RestartState.RESTART_DATA,
}


class RestartSequencer:
    """Drive a whole rolling restart of a cluster, one node at a time."""

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        cluster: Cluster,
        controller_factory: Callable[[str], ElasticsearchClusterController],
        driver: NodeLifecycleDriver,
        ledger: ProgressLedger,
        confirm: Callable[[str], bool] = ask_yesno,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Init."""
        self.cluster = cluster
        self._controller_factory = controller_factory
        self._driver = driver
        self._ledger = ledger
        self._confirm = confirm
        self._clock = clock
        self.state = RestartState.PREFLIGHT_CHECK

    def _transition(self, state: RestartState) -> None:
        LOGGER.debug("Rolling restart of %s: %s -> %s", self.cluster.name, self.state.value, state.value)
        self.state = state

    def run(self) -> float:
        """Run the whole rolling restart, returns the elapsed seconds.

        Raises:
            RollingRestartError: on any failure that stopped the run, the state is then ABORTED.

        """
        start_time = self._clock()
        try:
            completed_hosts = self._ledger.load()
            self._ledger.check_writable()
            controller = self._controller_factory(self.cluster.representative)
            try:
                self._preflight_check(controller)
                self._sync_audit(controller)
            finally:
                controller.close()

            for role, hosts in self.cluster.groups():
                self._transition(GROUP_STATES[role])
                self._restart_group(role, hosts, completed_hosts)

            self._ledger.clear()
        except RollingRestartError:
            self._transition(RestartState.ABORTED)
            raise

        self._transition(RestartState.DONE)
        elapsed = self._clock() - start_time
        LOGGER.info("Total restart time of %s: %ds", self.cluster.name, elapsed)
        return elapsed

    def _preflight_check(self, controller: ElasticsearchClusterController) -> None:
        self._transition(RestartState.PREFLIGHT_CHECK)
        controller.check_preflight()

    def _sync_audit(self, controller: ElasticsearchClusterController) -> None:
        """Flush the out of sync indices, escalating to the operator if some are still out of sync after that."""
        self._transition(RestartState.SYNC_AUDIT)
        audit = controller.audit_sync_markers()
        if not audit.flagged:
            LOGGER.info("No indices need syncing.")
            return

        flush_results = controller.flush_synced(sorted(audit.flagged))
        failed = sorted(index for index, result in flush_results.items() if result is FlushResult.FAILED)
        if failed:
            LOGGER.warning("Synced flush failed for %d indices: %s", len(failed), ", ".join(failed))

        audit = controller.audit_sync_markers()
        if not audit.flagged:
            LOGGER.info("All indices are in sync after the synced flush.")
            return

        if not self._confirm("There are still indices that aren't synced, would you like to continue?"):
            raise SyncCheckAborted(f"Aborted with {len(audit.flagged)} indices out of sync: {sorted(audit.flagged)}")

        LOGGER.warning(
            "Continuing the rolling restart with %d indices out of sync: %s",
            len(audit.flagged),
            ", ".join(sorted(audit.flagged)),
        )

    def _restart_group(self, role: NodeRole, hosts: Tuple[str, ...], completed_hosts: Set[str]) -> None:
        if not hosts:
            LOGGER.info("No %s nodes in %s, skipping", role, self.cluster.name)
            return

        for index, host in enumerate(hosts):
            if host in completed_hosts:
                LOGGER.info("%s is already finished, skipping...", host)
                continue

            LOGGER.info("Processing %s node %s, %d done, %d to go", role, host, index, len(hosts) - index)
            self._driver.restart_and_wait(host, is_data_node=role is NodeRole.DATA)
            self._ledger.append(host)
            LOGGER.info("Restart of %s complete, logged completion.", host)
