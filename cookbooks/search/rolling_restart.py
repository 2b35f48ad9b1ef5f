"""Rolling restart of an Elasticsearch cluster, one node at a time.

Usage example:
    cookbook search.rolling_restart --cluster "Production Cluster"

    (Resume an interrupted run with explicit deadlines on the waits)
    cookbook search.rolling_restart --cluster "Production Cluster" --ready-timeout 900 --settle-timeout 7200
"""
import argparse
import logging
from pathlib import Path

from prettytable import PrettyTable
from spicerack.cookbook import CookbookBase, CookbookRunnerBase, LockArgs
from wmflib.interactive import ask_input, ensure_shell_is_durable
from wmflib.requests import http_session

from cookbooks import ArgparseFormatter
from cookbooks.search.libs.common import RollingRestartError, ask_yesno
from cookbooks.search.libs.elasticsearch import ElasticsearchClusterController
from cookbooks.search.libs.node import NodeLifecycleDriver, RemoteNodeRestarter
from cookbooks.search.libs.progress import DEFAULT_PROGRESS_FILE, ProgressLedger
from cookbooks.search.libs.sequencer import RestartSequencer
from cookbooks.search.libs.topology import TOPOLOGY_CONFIG_FILE, get_cluster, load_clusters

LOGGER = logging.getLogger(__name__)


class RollingRestart(CookbookBase):
    """Restart all the nodes of an Elasticsearch cluster, masters first, then clients and data nodes last.

    Before touching any node the cluster must be green with no relocating nor unassigned shards, and the
    indices with shard copies out of sync get a synced flush. Shard allocation is disabled around each data
    node restart. Completed hosts are recorded in a progress file so an interrupted run can be resumed.
    """

    def argument_parser(self):
        """Parse the command line arguments."""
        parser = argparse.ArgumentParser(description=self.__doc__, formatter_class=ArgparseFormatter)
        parser.add_argument("--cluster", help="Name of the cluster to restart, asked interactively if missing.")
        parser.add_argument(
            "--topology-file",
            type=Path,
            help=f"YAML file describing the clusters, defaults to {TOPOLOGY_CONFIG_FILE} in the spicerack config dir.",
        )
        parser.add_argument(
            "--progress-file",
            type=Path,
            default=DEFAULT_PROGRESS_FILE,
            help="File where the restarted hosts are recorded, to resume an interrupted run.",
        )
        parser.add_argument("--service", default="elasticsearch", help="Name of the systemd unit to restart.")
        parser.add_argument(
            "--ready-timeout",
            type=float,
            help="Seconds to wait for a restarted node to answer again, wait forever if not set.",
        )
        parser.add_argument(
            "--settle-timeout",
            type=float,
            help="Seconds to wait for the shards to settle after a data node restart, wait forever if not set.",
        )

        return parser

    def get_runner(self, args):
        """As specified by Spicerack API."""
        config_file = args.topology_file or Path(self.spicerack.config_dir) / TOPOLOGY_CONFIG_FILE
        clusters = load_clusters(config_file)
        if args.cluster:
            cluster = get_cluster(clusters, args.cluster)
        else:
            for number, known_cluster in enumerate(clusters, start=1):
                print(f"{number}) {known_cluster.name}")

            choice = ask_input("Select cluster number", [str(number) for number in range(1, len(clusters) + 1)])
            cluster = clusters[int(choice) - 1]

        return RollingRestartRunner(args, cluster, self.spicerack)


class RollingRestartRunner(CookbookRunnerBase):
    """Runner for the rolling restart of a single cluster."""

    def __init__(self, args, cluster, spicerack):
        """Init."""
        ensure_shell_is_durable()
        self.cluster = cluster
        self.dry_run = spicerack.dry_run
        self.ledger = ProgressLedger(args.progress_file, dry_run=self.dry_run)
        self.driver = NodeLifecycleDriver(
            restarter=RemoteNodeRestarter(spicerack.remote(), service=args.service),
            controller_factory=self._get_controller,
            http_session=http_session("ElasticsearchRollingRestart", timeout=1, tries=1),
            ready_timeout_seconds=args.ready_timeout,
            settle_timeout_seconds=args.settle_timeout,
        )
        self.sequencer = RestartSequencer(
            cluster=cluster,
            controller_factory=self._get_controller,
            driver=self.driver,
            ledger=self.ledger,
            confirm=ask_yesno,
        )

    def _get_controller(self, host: str) -> ElasticsearchClusterController:
        return ElasticsearchClusterController.from_host(host, dry_run=self.dry_run)

    @property
    def runtime_description(self) -> str:
        """Return a nicely formatted string that represents the cookbook action."""
        return f"rolling restart of elasticsearch cluster {self.cluster.name}"

    @property
    def lock_args(self) -> LockArgs:
        """Only one rolling restart at a time for each cluster, a run can take many hours."""
        return LockArgs(suffix=self.cluster.name, concurrency=1, ttl=24 * 3600)

    def _get_plan_table(self) -> PrettyTable:
        completed_hosts = self.ledger.load()
        table = PrettyTable()
        table.field_names = ["Role", "Host", "Status"]
        for role, hosts in self.cluster.groups():
            for host in hosts:
                table.add_row([str(role), host, "done" if host in completed_hosts else "pending"])

        return table

    def run(self):
        """Main entry point."""
        try:
            print(f"Restart plan for {self.cluster.name}:")
            print(self._get_plan_table().get_string())
            if not ask_yesno("Is this okay?"):
                LOGGER.info("Exiting.")
                return 0

            self.sequencer.run()
        except RollingRestartError as error:
            LOGGER.error("Rolling restart of %s aborted: %s", self.cluster.name, error)
            return 1

        return 0
