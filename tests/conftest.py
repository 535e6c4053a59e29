import collections.abc
import pathlib
import sys

import pytest
import structlog

from mountprobe.config import HarnessConfig
from mountprobe.session import Driver, SessionState, driver_from_config

FAKE_DRIVER = pathlib.Path(__file__).parent / "fake_driver.py"


@pytest.fixture(autouse=True)
def _reset_logging() -> collections.abc.Iterator[None]:
    # cli.main binds structlog to the captured stderr of the running test
    yield
    structlog.reset_defaults()


@pytest.fixture
def store(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch) -> pathlib.Path:
    """Backing directory every fake mount points at."""
    path = tmp_path / "store"
    path.mkdir()
    monkeypatch.setenv("FAKE_DRIVER_STORE", str(path))
    monkeypatch.setenv("FAKE_DRIVER_DELAY", "0.05")
    for name in ("FAKE_DRIVER_NEVER_READY", "FAKE_DRIVER_EXIT", "FAKE_DRIVER_UNMAP_OUTPUT"):
        monkeypatch.delenv(name, raising=False)
    return path


@pytest.fixture
def fake_config(tmp_path: pathlib.Path, store: pathlib.Path) -> HarnessConfig:
    return HarnessConfig(
        driver_command=[sys.executable, str(FAKE_DRIVER)],
        mountpoint=str(tmp_path / "X"),
        spare_mountpoints=[str(tmp_path / "Y"), str(tmp_path / "Z")],
        poll_attempts=200,
        poll_interval=0.05,
        unmap_timeout=30.0,
        process_grace=2.0,
    )


@pytest.fixture
def fake_driver(fake_config: HarnessConfig) -> collections.abc.Iterator[Driver]:
    driver = driver_from_config(fake_config)
    yield driver
    for session in driver.active:
        if session.state is not SessionState.UNMAPPED:
            driver.abort(session)
