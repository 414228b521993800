"""SSH side of the lifecycle: a backgrounded, multiplexed ssh that serves SOCKS5."""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .errors import TunnelError

log = logging.getLogger(__name__)

# ssh expands these tokens to host, port and remote user
CONTROL_NAME = "%h_%p_%r"


def control_path(control_dir: Path) -> Path:
    return control_dir / CONTROL_NAME


@dataclass
class Tunnel:
    local_port: int
    target_address: str
    control_path: Path
    running: bool = False


class SshTunnelProcess:
    """Runs the OpenSSH client. ``start`` returns once ssh has forked into the background."""

    def __init__(self, user: str = "ec2-user", ssh: str = "ssh"):
        self.user = user
        self.ssh = ssh

    def start_command(self, target: str, local_port: int, key_file: Path, control: Path) -> List[str]:
        return [
            self.ssh,
            "-i", str(key_file),
            "-f", "-n", "-N", "-M",
            "-S", str(control),
            "-D", str(local_port),
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "ExitOnForwardFailure=yes",
            "-o", "ConnectTimeout=10",
            f"{self.user}@{target}",
        ]

    def stop_command(self, target: str, control: Path) -> List[str]:
        return [self.ssh, "-S", str(control), "-O", "exit", f"{self.user}@{target}"]

    def start(self, target: str, local_port: int, key_file: Path, control: Path) -> None:
        self._run(self.start_command(target, local_port, key_file, control))

    def stop(self, target: str, control: Path) -> None:
        self._run(self.stop_command(target, control))

    def _run(self, cmd: List[str]) -> None:
        log.debug("%s", " ".join(shlex.quote(part) for part in cmd))
        try:
            res = subprocess.run(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                                 stderr=subprocess.DEVNULL)
        except OSError as e:
            raise TunnelError(f"could not run {cmd[0]}: {e}") from e
        if res.returncode != 0:
            raise TunnelError(f"{cmd[0]} exited with status {res.returncode}")
