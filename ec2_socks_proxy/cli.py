#!/usr/bin/env python3
"""ec2-socks-proxy

Launch a throwaway EC2 instance, open an ssh SOCKS5 proxy through it on a
local port, and terminate the instance when you type ``exit`` (or the process
receives HUP, INT, QUIT or TERM).

Prereqs:
  - AWS credentials (default resolution or a named profile)
  - an EC2 key pair whose private key is available locally
  - OpenSSH client, and the control directory (default ~/.ssh/control) with perms 0700

Exit status:
  0 success / help / config check      5 timeout waiting for running state
  2 bad command line                   6 failed to get instance state
  3 configuration error                7 no public ip address
  4 launch error                       8 ssh connection never came up
  128 terminate failed (clean up by hand!)   255 aborted by signal
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence

from . import __version__
from .compute import Ec2ComputeClient
from .config import (CONTROL_DIR, LOCAL_PROXY_PORT, POLL_WAIT_SECONDS, TRUTHY, Settings,
                     conf_files_for, resolve_settings)
from .console import ConsoleReporter, console, settings_table, setup_logging
from .errors import ConfigurationError
from .lifecycle import Cancellation, ProvisioningLifecycle
from .tunnel import SshTunnelProcess

PROG = "ec2-socks-proxy"
SIGNALS = ("SIGHUP", "SIGINT", "SIGQUIT", "SIGTERM")

EPILOG = """\
All arguments can be set via environment variables named as shown in the
option metavars. Variables defined in the environment are overridden by the
global config file (<program path>.conf), which in turn is overridden by the
local config file (./<program name>.conf), which in turn is overridden by the
option arguments. Config files hold shell-style KEY=value lines.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Provision an EC2 instance and run an ssh SOCKS5 proxy through it until you type exit.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", dest="verbose", action="store_true", help="verbose output")
    parser.add_argument("-c", dest="check", action="store_true", help="check config and quit")
    parser.add_argument("-a", dest="ami_id", metavar="AWS_EC2_AMI_ID", help="aws ami id")
    parser.add_argument("-d", dest="control_dir", metavar="AWS_EC2_SSH_CONTROL_DIR",
                        help=f"ssh control socket directory ({CONTROL_DIR})")
    parser.add_argument("-f", dest="key_file", metavar="AWS_EC2_SSH_KEY_FILE_NAME",
                        help="ssh private key file (relative names are looked up in ~/.ssh)")
    parser.add_argument("-k", dest="key_name", metavar="AWS_EC2_SSH_KEY_NAME", help="aws ec2 ssh key name")
    parser.add_argument("-l", dest="local_port", metavar="LOCAL_PROXY_PORT", type=int,
                        help=f"local socks5 listen port ({LOCAL_PROXY_PORT})")
    parser.add_argument("-p", dest="profile", metavar="AWS_PROFILE", help="aws profile name")
    parser.add_argument("-s", dest="security_group", metavar="AWS_EC2_SECURITY_GROUP",
                        help="aws ec2 security group id")
    parser.add_argument("-t", dest="instance_type", metavar="AWS_EC2_INSTANCE_TYPE", help="aws ec2 instance type")
    parser.add_argument("-w", dest="poll_wait", metavar="POLL_WAIT_SECONDS", type=int,
                        help=f"seconds to wait between state checks and ssh attempts ({POLL_WAIT_SECONDS})")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def install_signal_handlers(cancellation: Cancellation) -> None:
    """Route hangup, interrupt, quit and terminate to the cancellation token."""
    for name in SIGNALS:
        signum = getattr(signal, name, None)
        if signum is not None:
            signal.signal(signum, cancellation.handle_signal)


def default_conf_files(argv0: str, cwd: Optional[Path] = None):
    """Config files for this invocation; ``python -m`` runs use the command name for them."""
    name = PROG if Path(argv0).name == "__main__.py" else None
    return conf_files_for(argv0, cwd=cwd, name=name)


def announce_defaults(settings: Settings) -> None:
    if not settings.profile:
        console.print("AWS_PROFILE not set - default profile will be used.")
    if not settings.security_group:
        console.print("AWS_EC2_SECURITY_GROUP not set - default group will be used by AWS EC2.")


def run(argv: Optional[Sequence[str]] = None, *,
        environ: Optional[Mapping[str, str]] = None,
        conf_files: Optional[List] = None,
        compute=None, tunnel_process=None,
        read_line: Optional[Callable[[str], str]] = None,
        cancellation: Optional[Cancellation] = None) -> int:
    """Parse arguments, resolve settings and run one lifecycle. Returns the exit status."""
    args = build_parser().parse_args(argv)
    flags = {name: getattr(args, name) for name in (
        "verbose", "ami_id", "control_dir", "key_file", "key_name", "local_port",
        "profile", "security_group", "instance_type", "poll_wait")}
    if args.check:
        flags["verbose"] = True
    environ = os.environ if environ is None else environ
    # config files are echoed while loading, so honour an environment VERBOSE already
    setup_logging(bool(flags["verbose"]) or environ.get("VERBOSE", "").lower() in TRUTHY)

    if conf_files is None:
        conf_files = list(default_conf_files(sys.argv[0] or PROG))
    try:
        settings = resolve_settings(environ, conf_files, flags)
    except ConfigurationError as exc:
        for problem in exc.problems:
            console.print(f"[red]{problem}[/red]")
        return exc.exit_code

    setup_logging(settings.verbose)
    announce_defaults(settings)
    if settings.verbose:
        console.print(settings_table(settings.rows()))

    problems = settings.problems()
    if problems:
        for problem in problems:
            console.print(f"[red]{problem}[/red]")
        console.print("[red]Configuration error -- exiting.[/red]")
        return ConfigurationError.exit_code
    if args.check:
        console.print("[green]Configuration OK.[/green]")
        return 0

    cancellation = cancellation or Cancellation()
    install_signal_handlers(cancellation)
    lifecycle = ProvisioningLifecycle(
        settings,
        compute or Ec2ComputeClient(profile=settings.profile, region=settings.region),
        tunnel_process or SshTunnelProcess(user=settings.ssh_user),
        cancellation=cancellation,
        reporter=ConsoleReporter(),
        read_line=read_line or console.input,
    )
    return lifecycle.run()


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
