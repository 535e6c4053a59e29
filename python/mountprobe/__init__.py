"""mountprobe - conformance harness for mountable filesystem drivers."""

import collections.abc
import pathlib

from mountprobe.config import HarnessConfig
from mountprobe.errors import (
    FilesystemError,
    HarnessError,
    JoinError,
    MountBusyError,
    MountTimeoutError,
    SpawnError,
    UnmapError,
)
from mountprobe.mountspec import MountSpec
from mountprobe.orchestrator import Orchestrator, ProbeOutcome, Report
from mountprobe.probes import ProbeContext, probe
from mountprobe.readiness import wait_until_ready
from mountprobe.session import Driver, MountSession, SessionState


def run(
    config_path: pathlib.Path | None = None,
    names: collections.abc.Iterable[str] | None = None,
) -> Report:
    """Load the config, run the selected probes and return their report."""
    config = HarnessConfig.load(config_path)
    return Orchestrator(config).run(names)


__all__ = [
    "Driver",
    "FilesystemError",
    "HarnessConfig",
    "HarnessError",
    "JoinError",
    "MountBusyError",
    "MountSession",
    "MountSpec",
    "MountTimeoutError",
    "Orchestrator",
    "ProbeContext",
    "ProbeOutcome",
    "Report",
    "SessionState",
    "SpawnError",
    "UnmapError",
    "probe",
    "run",
    "wait_until_ready",
]
