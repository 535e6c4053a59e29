"""pytest fixtures for running probes against a real driver.

Registered through the ``pytest11`` entry point, so installing the package
makes these fixtures available::

    def test_volume(probe_context):
        probes.volume_information(probe_context)

The shared mount is mapped once per session and unmapped at session end;
mounts opened through ``probe_context`` or ``mount_factory`` are released
when the test finishes, pass or fail.
"""

import collections.abc
import pathlib
import shlex
import shutil

import pytest

from mountprobe.config import HarnessConfig
from mountprobe.mountspec import MountSpec
from mountprobe.probes import ProbeContext
from mountprobe.session import Driver, MountSession, driver_from_config


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("mountprobe")
    group.addoption(
        "--mountprobe-config",
        action="store",
        default=None,
        type=pathlib.Path,
        help="YAML harness config (default: per-user mountprobe.yaml).",
    )
    group.addoption(
        "--mountprobe-driver",
        action="store",
        default=None,
        help="Driver command line, e.g. 'ceph-dokan' or 'python fake_driver.py'.",
    )


@pytest.fixture(scope="session")
def harness_config(request: pytest.FixtureRequest) -> HarnessConfig:
    config = HarnessConfig.load(request.config.getoption("--mountprobe-config"))
    command = request.config.getoption("--mountprobe-driver")
    if command:
        config = config.model_copy(update={"driver_command": shlex.split(command)})
    return config


@pytest.fixture(scope="session")
def driver(harness_config: HarnessConfig) -> Driver:
    executable = harness_config.driver_command[0]
    if shutil.which(executable) is None and not pathlib.Path(executable).is_file():
        pytest.skip(f"driver not found: {executable} (set --mountprobe-driver)")
    return driver_from_config(harness_config)


@pytest.fixture(scope="session")
def shared_mount(
    harness_config: HarnessConfig, driver: Driver
) -> collections.abc.Iterator[MountSession]:
    """The suite-wide mount."""
    with driver.mounted(harness_config.shared_spec()) as session:
        yield session


@pytest.fixture
def probe_context(
    harness_config: HarnessConfig, driver: Driver, shared_mount: MountSession
) -> collections.abc.Iterator[ProbeContext]:
    ctx = ProbeContext(harness_config, driver, shared_mount)
    yield ctx
    ctx.close()


@pytest.fixture
def mount_factory(
    probe_context: ProbeContext,
) -> collections.abc.Callable[[MountSpec], MountSession]:
    """Map extra drives for one test; they are unmapped at teardown."""
    return probe_context.map
