"""Run every registered probe against the configured driver.

Skipped unless the driver executable is installed or passed with
``--mountprobe-driver``::

    pytest tests/conformance --mountprobe-config mountprobe.yaml
"""

import pytest

from mountprobe import probes
from mountprobe.config import HarnessConfig
from mountprobe.probes import ProbeContext


@pytest.mark.parametrize("name", list(probes.REGISTRY))
def test_probe(name: str, harness_config: HarnessConfig, probe_context: ProbeContext) -> None:
    probe = probes.REGISTRY[name]
    if probe.spares > len(harness_config.spare_mountpoints):
        pytest.skip(f"{name} needs {probe.spares} spare mountpoint(s)")
    probe(probe_context)
