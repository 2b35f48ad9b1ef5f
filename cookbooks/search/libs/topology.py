"""Elasticsearch clusters topology: which hosts make up a cluster and in which role."""
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

from wmflib.config import load_yaml_config
from wmflib.exceptions import WmflibError

from cookbooks.search.libs.common import RollingRestartError

LOGGER = logging.getLogger(__name__)
TOPOLOGY_CONFIG_FILE = Path("elasticsearch") / "rolling_restart.yaml"  # relative to spicerack.config_dir


class InvalidTopology(RollingRestartError):
    """Risen when the topology data does not describe a valid cluster."""


class NodeRole(Enum):
    """Roles of the nodes, in the order they get restarted."""

    MASTER = "master"
    CLIENT = "client"
    DATA = "data"

    def __str__(self):
        """Show the plain role name in logs and tables."""
        return self.value


def _get_hosts(cluster_data: Dict[str, Any], cluster_name: str, role: NodeRole) -> Tuple[str, ...]:
    """Get the hosts of a role from a topology entry, a missing or empty role has no hosts."""
    hosts = cluster_data.get(role.value)
    if hosts is None:
        return ()

    if not isinstance(hosts, list) or not all(isinstance(host, str) and host for host in hosts):
        raise InvalidTopology(f"The {role} hosts of cluster {cluster_name} must be a list of host names, got: {hosts}")

    return tuple(hosts)


@dataclass(frozen=True)
class Cluster:
    """Immutable description of an Elasticsearch cluster.

    A host can only have one role, a node that is both master and data eligible (all-in-one) is listed as data.
    """

    name: str
    masters: Tuple[str, ...] = ()
    clients: Tuple[str, ...] = ()
    data: Tuple[str, ...] = ()

    def __post_init__(self):
        """Validate the topology."""
        if not self.data:
            raise InvalidTopology(f"Cluster {self.name} has no data nodes, at least one is required")

        seen: Dict[str, NodeRole] = {}
        for role, hosts in self.groups():
            for host in hosts:
                if host in seen:
                    raise InvalidTopology(
                        f"Host {host} of cluster {self.name} is listed both as {seen[host]} and {role} node"
                    )
                seen[host] = role

    @classmethod
    def from_dict(cls, cluster_data: Dict[str, Any]) -> "Cluster":
        """Get a cluster from its topology entry.

        Example of entry:
        ```
        name: Production Cluster
        master: [es-master-01.example.org, es-master-02.example.org, es-master-03.example.org]
        client: [es-client-01.example.org]
        data: [es-data-01.example.org, es-data-02.example.org]
        ```
        """
        try:
            name = cluster_data["name"]
        except (KeyError, TypeError) as error:
            raise InvalidTopology(f"Cluster entry without a name: {cluster_data}") from error

        return cls(
            name=name,
            masters=_get_hosts(cluster_data, name, NodeRole.MASTER),
            clients=_get_hosts(cluster_data, name, NodeRole.CLIENT),
            data=_get_hosts(cluster_data, name, NodeRole.DATA),
        )

    @property
    def representative(self) -> str:
        """Host used to talk to the cluster as a whole."""
        return self.data[0]

    def groups(self) -> List[Tuple[NodeRole, Tuple[str, ...]]]:
        """The restart plan: masters first, then clients and data nodes last."""
        return [(NodeRole.MASTER, self.masters), (NodeRole.CLIENT, self.clients), (NodeRole.DATA, self.data)]

    def all_hosts(self) -> List[str]:
        """All the hosts of the cluster, in restart order."""
        return [host for _, hosts in self.groups() for host in hosts]


def load_clusters(config_file: Path) -> List[Cluster]:
    """Load the clusters from the topology YAML file."""
    LOGGER.info("Loading elasticsearch clusters topology from %s", config_file)
    try:
        config = load_yaml_config(config_file)
    except WmflibError as error:
        raise InvalidTopology(f"Unable to load the clusters topology from {config_file}") from error

    clusters_data = config.get("clusters") if isinstance(config, dict) else None
    if not clusters_data:
        raise InvalidTopology(f"No clusters defined in {config_file}")

    return [Cluster.from_dict(cluster_data) for cluster_data in clusters_data]


def get_cluster(clusters: Sequence[Cluster], name: str) -> Cluster:
    """Get a cluster by name."""
    try:
        return next(cluster for cluster in clusters if cluster.name == name)
    except StopIteration as error:
        known = ", ".join(cluster.name for cluster in clusters)
        raise InvalidTopology(f"Unknown cluster {name}, known clusters: {known}") from error
