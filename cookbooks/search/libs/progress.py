"""Persisted progress of a rolling restart, to resume an interrupted run."""
import logging
import os
from pathlib import Path
from typing import Set

from cookbooks.search.libs.common import RollingRestartError

LOGGER = logging.getLogger(__name__)
DEFAULT_PROGRESS_FILE = Path("/tmp/es_rolling_restart_progress")


class ProgressLedgerError(RollingRestartError):
    """Risen when the progress file can't be read or written."""


class ProgressLedger:
    """Plain text file with one completed host per line.

    A missing file means that nothing was done yet. Only one process is expected to write to it.
    """

    def __init__(self, path: Path = DEFAULT_PROGRESS_FILE, dry_run: bool = True):
        """Init."""
        self.path = path
        self._dry_run = dry_run

    def load(self) -> Set[str]:
        """Get the hosts already restarted by a previous run."""
        if not self.path.exists():
            return set()

        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as error:
            raise ProgressLedgerError(f"Unable to read the progress file {self.path}: {error}") from error

        hosts = {line.strip() for line in content.splitlines() if line.strip()}
        if hosts:
            LOGGER.info("Resuming from %s, %d hosts already restarted: %s", self.path, len(hosts), sorted(hosts))

        return hosts

    def check_writable(self) -> None:
        """Make sure that completed hosts can be recorded, before anything gets restarted.

        In dry-run mode nothing is ever written, only the parent directory is checked.
        """
        if self._dry_run:
            if not self.path.parent.is_dir():
                LOGGER.warning("[DRY-RUN] The directory of the progress file %s does not exist", self.path)
            return

        try:
            with self.path.open("a", encoding="utf-8"):
                pass
        except OSError as error:
            raise ProgressLedgerError(f"The progress file {self.path} is not writable: {error}") from error

    def append(self, host: str) -> None:
        """Record the host as restarted, the record is on disk when this returns."""
        if self._dry_run:
            LOGGER.info("[DRY-RUN] Skipping recording %s as restarted in %s", host, self.path)
            return

        try:
            with self.path.open("a", encoding="utf-8") as progress_file:
                progress_file.write(f"{host}\n")
                progress_file.flush()
                os.fsync(progress_file.fileno())
        except OSError as error:
            raise ProgressLedgerError(f"Unable to record {host} in the progress file {self.path}: {error}") from error

    def clear(self) -> None:
        """Forget all the progress."""
        if self._dry_run:
            LOGGER.info("[DRY-RUN] Skipping removal of %s", self.path)
            return

        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as error:
            raise ProgressLedgerError(f"Unable to remove the progress file {self.path}: {error}") from error

        LOGGER.info("Removed progress file %s", self.path)
