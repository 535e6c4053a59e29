import argparse
import functools
import pathlib
import sys
import time

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from mountprobe import log, probes, readiness
from mountprobe.config import ConfigNotFoundError, HarnessConfig
from mountprobe.errors import HarnessError
from mountprobe.mountspec import MountSpec
from mountprobe.orchestrator import Orchestrator, Report
from mountprobe.process import run_to_completion
from mountprobe.session import Driver, driver_from_config

console = Console()
err_console = Console(stderr=True)


class Command:
    """Base for subcommands; ``args`` is the parsed namespace."""

    name: str = ""
    help: str = ""

    def __init__(self, args: argparse.Namespace) -> None:
        self.args = args

    @classmethod
    def configure(cls, parser: argparse.ArgumentParser) -> None:
        pass

    @functools.cached_property
    def config(self) -> HarnessConfig:
        return HarnessConfig.load(self.args.config)

    @functools.cached_property
    def driver(self) -> Driver:
        return driver_from_config(self.config)

    def run(self) -> int:
        raise NotImplementedError


def _add_mountpoint(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-l", "--mountpoint", default=None, help="Mountpoint (default: configured shared mountpoint)"
    )


class Map(Command):
    name = "map"
    help = "Map a drive and keep it mapped until interrupted"

    @classmethod
    def configure(cls, parser: argparse.ArgumentParser) -> None:
        _add_mountpoint(parser)
        parser.add_argument("--win-vol-name", dest="volume_name", default=None)
        parser.add_argument("--win-vol-serial", dest="volume_serial", type=int, default=None)
        parser.add_argument("--read-only", action="store_true")

    def run(self) -> int:
        spec = MountSpec(
            mountpoint=self.args.mountpoint or self.config.mountpoint,
            read_only=self.args.read_only,
            volume_name=self.args.volume_name,
            volume_serial=self.args.volume_serial,
        )
        with self.driver.mounted(spec) as session:
            console.print(f"Mapped [bold]{escape(session.spec.mountpoint)}[/], press Ctrl-C to unmap")
            try:
                while session.process.poll() is None:
                    time.sleep(1)
            except KeyboardInterrupt:
                pass
        console.print(f"Unmapped {spec.mountpoint}")
        return 0


class Unmap(Command):
    name = "unmap"
    help = "Unmap a drive mapped by another process"

    @classmethod
    def configure(cls, parser: argparse.ArgumentParser) -> None:
        _add_mountpoint(parser)

    def run(self) -> int:
        spec = MountSpec(mountpoint=self.args.mountpoint or self.config.mountpoint)
        result = run_to_completion(self.driver.command, spec.unmap_args())
        if result.stdout:
            err_console.print(f"[red]unmap printed output:[/] {escape(result.stdout.strip())}")
            return 1
        return result.returncode


class Wait(Command):
    name = "wait"
    help = "Wait until a mountpoint becomes ready"

    @classmethod
    def configure(cls, parser: argparse.ArgumentParser) -> None:
        _add_mountpoint(parser)
        parser.add_argument("--probe", choices=sorted(readiness.PROBES), default=None)

    def run(self) -> int:
        path = pathlib.Path(self.args.mountpoint or self.config.mountpoint)
        probe = readiness.get_probe(self.args.probe or self.config.readiness_probe)
        attempts = readiness.wait_until_ready(
            path, probe, self.config.poll_attempts, self.config.poll_interval
        )
        console.print(f"{path} ready after {attempts} attempt(s)")
        return 0


class List(Command):
    name = "list"
    help = "List registered probes"

    def run(self) -> int:
        table = Table("probe", "spares", "description")
        for p in probes.select():
            table.add_row(p.name, str(p.spares), p.description)
        console.print(table)
        return 0


class Run(Command):
    name = "run"
    help = "Run the probe suite against the driver"

    @classmethod
    def configure(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "-k", "--probe", dest="probes", action="append", default=None,
            help="Run only this probe (repeatable)",
        )

    def run(self) -> int:
        report = Orchestrator(self.config, self.driver).run(self.args.probes)
        print_report(report)
        return 0 if report.ok else 1


def print_report(report: Report) -> None:
    table = Table("probe", "result", "time", "detail")
    for outcome in report.outcomes:
        if outcome.passed:
            result = "[green]passed[/]"
        elif outcome.infrastructure:
            result = "[yellow]error[/]"
        else:
            result = "[red]failed[/]"
        table.add_row(outcome.name, result, f"{outcome.duration:.2f}s", escape(outcome.detail or ""))
    console.print(table)
    console.print(f"{len(report.passed)} passed, {len(report.failed)} failed")


COMMANDS: list[type[Command]] = [Map, Unmap, Wait, List, Run]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mountprobe", description="Conformance harness for mountable filesystem drivers"
    )
    parser.add_argument("--config", type=pathlib.Path, default=None, help="YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)
    for command in COMMANDS:
        p = sub.add_parser(command.name, help=command.help)
        command.configure(p)
        p.set_defaults(command_class=command)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    log.configure(args.verbose)
    try:
        return args.command_class(args).run()
    except KeyError as e:
        # unknown probe names from -k
        err_console.print(f"[red]error:[/] {escape(str(e.args[0]) if e.args else str(e))}")
        return 2
    except (HarnessError, ConfigNotFoundError, ValueError) as e:
        # ValueError also covers pydantic validation of the config and map options
        err_console.print(f"[red]error:[/] {escape(str(e))}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
