"""Sequence probes around one shared mount and their own per-case mounts."""

import collections.abc
import dataclasses
import time
import traceback

import structlog

from mountprobe import probes
from mountprobe.config import HarnessConfig
from mountprobe.errors import HarnessError
from mountprobe.session import Driver, MountSession, SessionState, driver_from_config

logger = structlog.get_logger()


@dataclasses.dataclass(frozen=True)
class ProbeOutcome:
    """Result of a single probe invocation."""

    name: str
    passed: bool
    detail: str | None = None
    infrastructure: bool = False
    duration: float = 0.0


@dataclasses.dataclass
class Report:
    outcomes: list[ProbeOutcome] = dataclasses.field(default_factory=list)

    @property
    def passed(self) -> list[ProbeOutcome]:
        return [o for o in self.outcomes if o.passed]

    @property
    def failed(self) -> list[ProbeOutcome]:
        return [o for o in self.outcomes if not o.passed]

    @property
    def ok(self) -> bool:
        return not self.failed

    def __getitem__(self, name: str) -> ProbeOutcome:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        raise KeyError(name)


class Orchestrator:
    """Runs probes against one suite-wide mount.

    The shared session lives only inside ``run``: it is mapped once before
    the first probe and unmapped after the last, whatever the probes do.
    """

    def __init__(self, config: HarnessConfig, driver: Driver | None = None) -> None:
        self.config = config
        self.driver = driver if driver is not None else driver_from_config(config)
        self._log = logger.bind(component="orchestrator")

    def run(self, names: collections.abc.Iterable[str] | None = None) -> Report:
        selected = probes.select(names)
        self._check_spares(selected)

        report = Report()
        shared = self.setup()
        try:
            for probe in selected:
                report.outcomes.append(self.run_probe(probe, shared))
        finally:
            self.teardown(shared)
        self._log.info(
            "suite.done", passed=len(report.passed), failed=len(report.failed)
        )
        return report

    def setup(self) -> MountSession:
        spec = self.config.shared_spec()
        self._log.info("suite.setup", mountpoint=spec.mountpoint)
        try:
            return self.driver.map(spec)
        except HarnessError as e:
            stuck = getattr(e, "session", None)
            if stuck is not None:
                self.driver.abort(stuck)
            raise

    def teardown(self, shared: MountSession) -> None:
        self._log.info("suite.teardown", mountpoint=shared.spec.mountpoint)
        try:
            self.driver.unmap(shared)
        except HarnessError:
            if shared.state is not SessionState.UNMAPPED:
                self.driver.abort(shared)
            raise

    def run_probe(self, probe: probes.Probe, shared: MountSession) -> ProbeOutcome:
        """Run one probe and release its mounts before reporting it."""
        log = self._log.bind(probe=probe.name)
        ctx = probes.ProbeContext(self.config, self.driver, shared)
        started = time.monotonic()
        failed = True
        try:
            probe(ctx)
            failed = False
        except HarnessError as e:
            outcome = ProbeOutcome(probe.name, False, _describe(e), infrastructure=True)
        except (AssertionError, OSError) as e:
            outcome = ProbeOutcome(probe.name, False, _describe(e))
        except Exception as e:
            outcome = ProbeOutcome(
                probe.name, False, f"{type(e).__name__}: {_describe(e)}", infrastructure=True
            )
        else:
            outcome = ProbeOutcome(probe.name, True)
        finally:
            try:
                ctx.close(failed=failed)
            except HarnessError as e:
                outcome = ProbeOutcome(probe.name, False, _describe(e), infrastructure=True)

        outcome = dataclasses.replace(outcome, duration=time.monotonic() - started)
        if outcome.passed:
            log.info("probe.passed", duration=round(outcome.duration, 3))
        else:
            log.error("probe.failed", detail=outcome.detail, infrastructure=outcome.infrastructure)
        return outcome

    def _check_spares(self, selected: list[probes.Probe]) -> None:
        needed = max((p.spares for p in selected), default=0)
        if needed > len(self.config.spare_mountpoints):
            raise ValueError(
                f"selected probes need {needed} spare mountpoints, "
                f"only {len(self.config.spare_mountpoints)} configured"
            )


def _describe(e: BaseException) -> str:
    message = str(e) or type(e).__name__
    if isinstance(e, AssertionError):
        frame = traceback.extract_tb(e.__traceback__)[-1:]
        if frame and not str(e):
            message = f"assert failed: {frame[0].line}"
    return message
