"""Elasticsearch related library functions and classes."""
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set
from unittest import mock

from elasticsearch import Elasticsearch, TransportError
from urllib3.exceptions import HTTPError

from cookbooks.search.libs.common import RollingRestartError, TestUtils, wait_until

LOGGER = logging.getLogger(__name__)
ELASTICSEARCH_PORT = 9200
ALLOCATION_SETTING = "cluster.routing.allocation.enable"


class ClusterUnreachable(RollingRestartError):
    """Risen when the cluster API does not answer."""


class ClusterUnhealthy(RollingRestartError):
    """Risen when trying to act on an unhealthy cluster."""


class AllocationError(RollingRestartError):
    """Risen when the shard allocation setting could not be changed."""


class HealthStatus(Enum):
    """Elasticsearch cluster health colors."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @classmethod
    def from_str(cls, status_str: str) -> "HealthStatus":
        """Get the status from the `status` field of the health API, anything unknown is red."""
        try:
            return cls(status_str)
        except ValueError:
            return cls.RED


class AllocationMode(Enum):
    """Values of the cluster wide shard allocation setting used while restarting."""

    ALL = "all"
    NONE = "none"


class FlushResult(Enum):
    """Outcome of a synced flush on an index."""

    SYNCED = "synced"
    FAILED = "failed"


@dataclass(frozen=True)
class ClusterHealth:
    """Snapshot of the cluster health."""

    status: HealthStatus
    relocating_shards: int
    unassigned_shards: int

    @classmethod
    def from_json_data(cls, json_data: Dict[str, Any]) -> "ClusterHealth":
        """Get the health from the output of `GET _cluster/health`."""
        return cls(
            status=HealthStatus.from_str(json_data["status"]),
            relocating_shards=int(json_data["relocating_shards"]),
            unassigned_shards=int(json_data["unassigned_shards"]),
        )

    def is_settled(self) -> bool:
        """Whether the cluster is green and no shard is moving or waiting to be assigned."""
        return self.status is HealthStatus.GREEN and self.relocating_shards == 0 and self.unassigned_shards == 0

    def check_preflight(self) -> None:
        """Check that it is safe to start restarting nodes."""
        if self.relocating_shards > 0:
            raise ClusterUnhealthy(
                f"Cluster is rebalancing, there are currently {self.relocating_shards} shards relocating"
            )

        if self.status is not HealthStatus.GREEN:
            raise ClusterUnhealthy(f"Cluster health is {self.status.value}, not green")

        if self.unassigned_shards > 0:
            raise ClusterUnhealthy(
                f"There are {self.unassigned_shards} unassigned shards, please handle that before a rolling restart"
            )


@dataclass(frozen=True)
class ShardCopy:
    """One copy (primary or replica) of a shard, as reported by the shard level index stats."""

    primary: bool
    sync_id: Optional[str]

    @classmethod
    def from_json_data(cls, json_data: Dict[str, Any]) -> "ShardCopy":
        """Get a shard copy from one of the entries of `indices.<index>.shards.<shard>` in the stats."""
        user_data = (json_data.get("commit") or {}).get("user_data") or {}
        return cls(primary=bool(json_data["routing"]["primary"]), sync_id=user_data.get("sync_id"))


@dataclass(frozen=True)
class SyncMismatch:
    """A replica whose sync marker differs from the one of its primary."""

    index: str
    shard: str
    primary: Optional[str]
    replica: Optional[str]


@dataclass
class ShardMarkers:
    """Sync markers of all the copies of a shard."""

    primary: Optional[str] = None
    replicas: List[Optional[str]] = field(default_factory=list)
    missing_marker: bool = False

    def add_copy(self, shard_copy: ShardCopy) -> None:
        """Record the marker of one more copy of the shard."""
        if shard_copy.sync_id is None:
            self.missing_marker = True

        if shard_copy.primary:
            self.primary = shard_copy.sync_id
        else:
            self.replicas.append(shard_copy.sync_id)

    def mismatched_replicas(self) -> List[Optional[str]]:
        """Replica markers that are not the same as the primary one."""
        return [replica for replica in self.replicas if replica != self.primary]

    def needs_sync(self) -> bool:
        """Whether the shard needs a synced flush before restarting nodes."""
        return self.missing_marker or bool(self.mismatched_replicas())


class ShardSyncState:
    """Sync markers of every shard of every index, taken from a single stats snapshot."""

    def __init__(self):
        """Init."""
        self.indices: Dict[str, Dict[str, ShardMarkers]] = {}

    def add_index_stats(self, index: str, stats: Dict[str, Any]) -> None:
        """Add the markers from the output of `GET <index>/_stats?level=shards`."""
        shards = self.indices.setdefault(index, {})
        index_shards = stats.get("indices", {}).get(index, {}).get("shards", {})
        for shard_id, shard_copies in index_shards.items():
            markers = shards.setdefault(shard_id, ShardMarkers())
            for shard_copy in shard_copies:
                markers.add_copy(ShardCopy.from_json_data(shard_copy))

    def flagged_indices(self) -> Set[str]:
        """Indices with at least one shard missing a marker or with replicas out of sync."""
        return {
            index
            for index, shards in self.indices.items()
            if any(markers.needs_sync() for markers in shards.values())
        }

    def mismatches(self) -> List[SyncMismatch]:
        """All the replicas out of sync with their primary."""
        return [
            SyncMismatch(index=index, shard=shard_id, primary=markers.primary, replica=replica)
            for index, shards in self.indices.items()
            for shard_id, markers in shards.items()
            for replica in markers.mismatched_replicas()
        ]


@dataclass(frozen=True)
class SyncAuditResult:
    """Outcome of a sync markers audit."""

    flagged: Set[str]
    mismatches: List[SyncMismatch]


class ElasticsearchClusterController:
    """Controller for an Elasticsearch cluster, talking to it through one of its nodes."""

    def __init__(self, elasticsearch: Elasticsearch, dry_run: bool = True):
        """Init."""
        self._elasticsearch = elasticsearch
        self._dry_run = dry_run

    @classmethod
    def from_host(
        cls, host: str, port: int = ELASTICSEARCH_PORT, dry_run: bool = True, timeout: int = 30
    ) -> "ElasticsearchClusterController":
        """Get a controller talking to the cluster through the given host."""
        return cls(Elasticsearch([f"http://{host}:{port}"], timeout=timeout), dry_run=dry_run)

    def __str__(self) -> str:
        """Class string method."""
        return str(self._elasticsearch)

    def close(self) -> None:
        """Close the connections to the cluster."""
        self._elasticsearch.close()

    def get_cluster_health(self) -> ClusterHealth:
        """Get the current cluster health."""
        try:
            return ClusterHealth.from_json_data(self._elasticsearch.cluster.health())
        except (TransportError, HTTPError) as error:
            raise ClusterUnreachable(f"Unable to get the cluster health from {self}") from error

    def check_preflight(self) -> ClusterHealth:
        """Check that the cluster is healthy enough to start a rolling restart."""
        health = self.get_cluster_health()
        LOGGER.info(
            "Cluster health is %s, %d relocating shards, %d unassigned shards",
            health.status.value,
            health.relocating_shards,
            health.unassigned_shards,
        )
        health.check_preflight()
        return health

    def get_indices(self) -> List[str]:
        """Get the names of all the indices in the cluster."""
        try:
            raw_indices = self._elasticsearch.cat.indices(h="i")
        except (TransportError, HTTPError) as error:
            raise ClusterUnreachable(f"Unable to list the indices from {self}") from error

        return [line.strip() for line in raw_indices.splitlines() if line.strip()]

    def get_shard_sync_state(self) -> ShardSyncState:
        """Collect the sync markers of all the shard copies of all the indices."""
        sync_state = ShardSyncState()
        for index in self.get_indices():
            try:
                stats = self._elasticsearch.indices.stats(index=index, level="shards")
            except (TransportError, HTTPError) as error:
                raise ClusterUnreachable(f"Unable to get the shard stats of index {index} from {self}") from error

            sync_state.add_index_stats(index, stats)

        return sync_state

    def audit_sync_markers(self) -> SyncAuditResult:
        """Find the indices that need a synced flush before nodes can be restarted safely."""
        LOGGER.info("Checking sync ids")
        sync_state = self.get_shard_sync_state()
        result = SyncAuditResult(flagged=sync_state.flagged_indices(), mismatches=sync_state.mismatches())
        for mismatch in result.mismatches:
            LOGGER.warning(
                "Mismatch on index %s shard %s - primary: %s replica: %s",
                mismatch.index,
                mismatch.shard,
                mismatch.primary,
                mismatch.replica,
            )

        if result.flagged:
            LOGGER.warning("Indices that need syncing: %s", ", ".join(sorted(result.flagged)))

        return result

    def flush_synced(self, indices: Iterable[str]) -> Dict[str, FlushResult]:
        """Run a synced flush on each index, a failure on one index does not stop the others."""
        results: Dict[str, FlushResult] = {}
        for index in indices:
            LOGGER.info("Executing a synced flush on %s", index)
            if self._dry_run:
                LOGGER.info("[DRY-RUN] Skipping synced flush of %s", index)
                results[index] = FlushResult.SYNCED
                continue

            try:
                self._elasticsearch.indices.flush_synced(index=index)
            except (TransportError, HTTPError) as error:
                LOGGER.error("Synced flush failed for %s (there are probably active writes): %s", index, error)
                results[index] = FlushResult.FAILED
            else:
                LOGGER.info("Synced %s", index)
                results[index] = FlushResult.SYNCED

        return results

    def _set_allocation(self, mode: AllocationMode) -> None:
        if self._dry_run:
            LOGGER.info("[DRY-RUN] Skipping setting %s=%s", ALLOCATION_SETTING, mode.value)
            return

        try:
            self._elasticsearch.cluster.put_settings(body={"transient": {ALLOCATION_SETTING: mode.value}})
        except (TransportError, HTTPError) as error:
            raise AllocationError(f"Unable to set {ALLOCATION_SETTING}={mode.value} through {self}") from error

    def disable_allocation(self) -> None:
        """Stop the cluster from allocating shards."""
        LOGGER.info("Disabling shard allocation on the cluster")
        self._set_allocation(AllocationMode.NONE)

    def enable_allocation(self) -> None:
        """Let the cluster allocate shards again."""
        LOGGER.info("Enabling shard allocation on the cluster")
        self._set_allocation(AllocationMode.ALL)

    @contextmanager
    def allocation_disabled(self) -> Iterator[None]:
        """Context manager to perform actions while shard allocation is disabled.

        Allocation is enabled again on every exit path. If that fails while another error is already propagating,
        the failure is logged and the original error is the one raised.
        """
        self.disable_allocation()
        try:
            yield
        except BaseException:
            try:
                self.enable_allocation()
            except AllocationError as error:
                LOGGER.error("Unable to enable shard allocation back, it must be enabled manually: %s", error)
            raise

        self.enable_allocation()

    def wait_for_settled(
        self,
        check_interval_seconds: float = 2,
        timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Wait until the cluster is green with no relocating nor unassigned shards.

        Unreachable cluster errors are considered transient and retried.
        """

        def _is_settled() -> bool:
            try:
                health = self.get_cluster_health()
            except ClusterUnreachable as error:
                LOGGER.debug("Cluster not reachable yet, retrying: %s", error)
                return False

            return health.is_settled()

        LOGGER.info("Waiting for shards to settle")
        wait_until(
            check=_is_settled,
            description="shards to settle",
            check_interval_seconds=check_interval_seconds,
            timeout_seconds=timeout_seconds,
            sleep=sleep,
            clock=clock,
        )
        LOGGER.info("Cluster is green with no relocating nor unassigned shards")


# Poor man's namespace to compensate for the restriction to not create modules
@dataclass(frozen=True)
class ElasticsearchTestUtils(TestUtils):
    """Utils to test elasticsearch related code."""

    @staticmethod
    def get_health_dict(status: str = "green", relocating_shards: int = 0, unassigned_shards: int = 0) -> Dict[str, Any]:
        """Generate a stub of the `_cluster/health` output."""
        return {
            "cluster_name": "testcluster",
            "status": status,
            "timed_out": False,
            "number_of_nodes": 3,
            "number_of_data_nodes": 3,
            "active_primary_shards": 5,
            "active_shards": 10,
            "relocating_shards": relocating_shards,
            "initializing_shards": 0,
            "unassigned_shards": unassigned_shards,
        }

    @staticmethod
    def get_shard_copy(primary: bool, sync_id: Optional[str]) -> Dict[str, Any]:
        """Generate a stub of one shard copy entry of the shard level stats."""
        user_data: Dict[str, Any] = {"translog_uuid": "NkCTHgXnRRq8Ib-9e8hpOA", "history_uuid": "Ay1Lq7m_T5uUO0qx-0DVBw"}
        if sync_id is not None:
            user_data["sync_id"] = sync_id

        return {
            "routing": {"state": "STARTED", "primary": primary, "node": "pPUJeMlmQGa_ptoCkjQpaA"},
            "commit": {"id": "wDlC9ls/KIxSXsAN/0Q2ww==", "generation": 4, "user_data": user_data, "num_docs": 12},
        }

    @classmethod
    def get_index_stats(cls, index: str, shards: Dict[str, List[Dict[str, Any]]]) -> Dict[str, Any]:
        """Generate a stub of the `<index>/_stats?level=shards` output.

        `shards` maps each shard id to its copies, see get_shard_copy.
        """
        return {
            "_shards": {"total": sum(len(copies) for copies in shards.values()), "failed": 0},
            "indices": {index: {"uuid": "Iz2G3F3ZQ0mAbVbp6ZA5Tg", "shards": shards}},
        }

    @staticmethod
    def get_fake_elasticsearch(
        health: Optional[Dict[str, Any]] = None, index_stats: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> mock.MagicMock:
        """Create a fake elasticsearch client.

        `index_stats` maps each index name to its stats, as returned by get_index_stats.
        """
        index_stats = index_stats if index_stats is not None else {}
        fake_elasticsearch = mock.MagicMock()
        fake_elasticsearch.cluster.health.return_value = (
            health if health is not None else ElasticsearchTestUtils.get_health_dict()
        )
        fake_elasticsearch.cat.indices.return_value = "".join(f"{index}\n" for index in index_stats)
        fake_elasticsearch.indices.stats.side_effect = lambda index, level: index_stats[index]
        return fake_elasticsearch
