"""Search cookbooks common helpers."""
import logging
import sys
import time
from dataclasses import dataclass
from itertools import chain, count
from typing import Any, Callable, Dict, List, Optional, Union
from unittest import mock

from spicerack import Spicerack
from spicerack.remote import Remote, RemoteHosts

LOGGER = logging.getLogger(__name__)


class RollingRestartError(Exception):
    """Parent exception for all the rolling restart related issues."""


class WaitTimeout(RollingRestartError):
    """Risen when a condition was not met before the given deadline."""


class NotInteractive(RollingRestartError):
    """Risen when the operator needs to be asked something but there's no TTY."""


def wait_until(
    check: Callable[[], bool],
    description: str,
    check_interval_seconds: float,
    timeout_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Block until `check` returns True, calling it every `check_interval_seconds`.

    Without a timeout it keeps trying forever, otherwise it raises WaitTimeout once the timeout is reached.
    Returns the number of failed checks before the condition was met.
    """
    start_time = clock()
    failed_checks = 0
    while not check():
        failed_checks += 1
        elapsed = clock() - start_time
        if timeout_seconds is not None and elapsed >= timeout_seconds:
            raise WaitTimeout(f"Waited {timeout_seconds}s for {description}, but it never happened")

        LOGGER.debug(
            "Still waiting for %s (%d checks, %.1fs elapsed), checking again in %ss...",
            description,
            failed_checks,
            elapsed,
            check_interval_seconds,
        )
        sleep(check_interval_seconds)

    return failed_checks


def ask_yesno(message: str) -> bool:
    """Ask the operator a free-text yes/no question.

    Only answers starting with `y` or `Y` are affirmative, anything else (end of input included) counts as a no.

    Raises:
        NotInteractive: if there is no TTY to ask the question to.

    """
    if not sys.stdin.isatty():
        raise NotInteractive(f"Unable to ask for confirmation, not in a TTY: {message}")

    try:
        response = input(f"==> {message} (y/N): ")
    except EOFError:
        return False

    return response.startswith(("y", "Y"))


# Poor man's namespace to compensate for the restriction to not create modules
@dataclass(frozen=True)
class TestUtils:
    """Generic testing utilities."""

    @staticmethod
    def to_parametrize(test_cases: Dict[str, Dict[str, Any]]) -> Dict[str, Union[str, List[Any]]]:
        """Helper for parametrized tests.

        Use like:
        @pytest.mark.parametrize(**TestUtils.to_parametrize(
            {
                "Test case 1": {"param1": "value1", "param2": "value2"},
                # will set the value of the missing params as `None`
                "Test case 2": {"param1": "value1"},
                ...
            }
        ))
        """
        param_names = sorted(set(chain(*[list(params.keys()) for params in test_cases.values()])))

        def _fill_up_params(test_case_params):
            return [test_case_params.get(param_name, None) for param_name in param_names]

        if len(param_names) == 1:
            argvalues = [_fill_up_params(test_case_params)[0] for test_case_params in test_cases.values()]
        else:
            argvalues = [_fill_up_params(test_case_params) for test_case_params in test_cases.values()]

        return {"argnames": ",".join(param_names), "argvalues": argvalues, "ids": list(test_cases.keys())}

    @staticmethod
    def get_fake_remote(side_effect: Optional[List[Any]] = None) -> mock.MagicMock:
        """Create a fake remote whose queries return a fake RemoteHosts.

        If side_effect is passed, it will be set as the side_effect of run_sync on the fake hosts.
        """
        fake_hosts = mock.create_autospec(spec=RemoteHosts, spec_set=True, instance=True)
        fake_remote = mock.create_autospec(spec=Remote, spec_set=True, instance=True)
        fake_remote.query.return_value = fake_hosts
        if side_effect is not None:
            fake_hosts.run_sync.side_effect = side_effect
        else:
            fake_hosts.run_sync.return_value = iter([])

        return fake_remote

    @staticmethod
    def get_fake_spicerack(fake_remote: mock.MagicMock, dry_run: bool = False) -> mock.MagicMock:
        """Create a fake spicerack."""
        fake_spicerack = mock.create_autospec(spec=Spicerack, spec_set=True, instance=True)
        fake_spicerack.remote.return_value = fake_remote
        fake_spicerack.dry_run = dry_run
        return fake_spicerack

    @staticmethod
    def get_fake_clock(step: float = 1.0) -> Callable[[], float]:
        """Get a clock that moves forward `step` seconds every time it's read."""
        ticks = count(start=0, step=step)
        return lambda: next(ticks)
