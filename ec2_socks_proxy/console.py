"""Terminal output: the shared rich console, logging setup and progress reporters."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .errors import ProxyError, TeardownError

console = Console(highlight=False)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, markup=False)],
    )
    # basicConfig is a no-op on later calls; the package logger level still follows `verbose`
    logging.getLogger("ec2_socks_proxy").setLevel(level)
    # botocore is chatty at DEBUG and would drown the request echo
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def settings_table(rows) -> Table:
    tbl = Table(title="Resolved configuration")
    tbl.add_column("Setting", no_wrap=True)
    tbl.add_column("Value")
    for key, value in rows:
        tbl.add_row(key, "" if value is None else str(value))
    return tbl


# ---------------- progress reporters ----------------
class NullReporter:
    """Reporter that discards everything; the lifecycle default."""

    def begin(self, message: str) -> None:
        pass

    def tick(self, indicator: str) -> None:
        pass

    def end(self, message: str) -> None:
        pass

    def note(self, message: str) -> None:
        pass

    def fail(self, error: ProxyError) -> None:
        pass


class ConsoleReporter(NullReporter):
    """Renders lifecycle progress the way the shell tool did: heading, dots, result."""

    def __init__(self, out: Console = console):
        self.out = out
        self._open = False

    def begin(self, message: str) -> None:
        self._close_line()
        self.out.print(f"{message}:  ", end="")
        self._open = True

    def tick(self, indicator: str) -> None:
        self.out.print(indicator, end="", markup=False)
        self._open = True

    def end(self, message: str) -> None:
        self.out.print(f"[green]{message}[/green]")
        self._open = False

    def note(self, message: str) -> None:
        self._close_line()
        self.out.print(message)

    def fail(self, error: ProxyError) -> None:
        self._close_line()
        if isinstance(error, TeardownError):
            self.out.print(Panel(
                f"[bold red]Instance {error.instance_id} may still be running and billing.[/bold red]\n"
                "Log into the AWS console and clean up EC2 instances, or run:\n\n"
                f"  {escape(error.remediation)}",
                title="Teardown failed",
            ))
            return
        self.out.print(f"[red]{escape(error.message)}[/red]")

    def _close_line(self) -> None:
        if self._open:
            self.out.print()
            self._open = False
