"""Shared fixtures: fake collaborators, a recording reporter and valid on-disk prerequisites."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

import paramiko
import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ec2_socks_proxy.compute import InstanceStatus
from ec2_socks_proxy.config import Settings
from ec2_socks_proxy.errors import ComputeError, TunnelError


class FakeCompute:
    """Scripted ComputeClient. ``states`` are returned in order, the last one repeating."""

    def __init__(self, instance_id: Optional[str] = "id-123", states=None,
                 launch_error: bool = False, poll_error_on: Optional[int] = None,
                 terminate_error: bool = False, on_launch=None, on_terminate=None):
        self.instance_id = instance_id
        self.states = list(states or [InstanceStatus("running", "203.0.113.5")])
        self.launch_error = launch_error
        self.poll_error_on = poll_error_on
        self.terminate_error = terminate_error
        self.on_launch = on_launch
        self.on_terminate = on_terminate
        self.calls: List[tuple] = []

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def launch(self, image_id, instance_type, key_name, security_group=None):
        self.calls.append(("launch", image_id, instance_type, key_name, security_group))
        if self.on_launch:
            self.on_launch()
        if self.launch_error:
            raise ComputeError("InvalidAMIID.Malformed")
        return self.instance_id

    def describe_state(self, instance_id):
        self.calls.append(("describe_state", instance_id))
        attempt = self.count("describe_state")
        if self.poll_error_on == attempt:
            raise ComputeError("EndpointConnectionError")
        return self.states[min(attempt, len(self.states)) - 1]

    def terminate(self, instance_id):
        self.calls.append(("terminate", instance_id))
        if self.on_terminate:
            self.on_terminate()
        if self.terminate_error:
            raise ComputeError("UnauthorizedOperation")


class FakeTunnel:
    """Scripted TunnelProcess; ``start`` fails ``failures`` times before succeeding."""

    def __init__(self, failures: int = 0, stop_error: bool = False):
        self.failures = failures
        self.stop_error = stop_error
        self.calls: List[tuple] = []

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def start(self, target, local_port, key_file, control):
        self.calls.append(("start", target, local_port, key_file, control))
        if self.count("start") <= self.failures:
            raise TunnelError("ssh exited with status 255")

    def stop(self, target, control):
        self.calls.append(("stop", target, control))
        if self.stop_error:
            raise TunnelError("ssh exited with status 255")


class RecordingReporter:
    def __init__(self):
        self.events: List[tuple] = []

    def begin(self, message):
        self.events.append(("begin", message))

    def tick(self, indicator):
        self.events.append(("tick", indicator))

    def end(self, message):
        self.events.append(("end", message))

    def note(self, message):
        self.events.append(("note", message))

    def fail(self, error):
        self.events.append(("fail", error))

    @property
    def ticks(self) -> str:
        return "".join(e[1] for e in self.events if e[0] == "tick")

    @property
    def failures(self):
        return [e[1] for e in self.events if e[0] == "fail"]


def lines(*answers):
    """read_line stand-in that replays ``answers`` then signals end of input."""
    remaining = list(answers)
    prompts = []

    def read_line(prompt: str) -> str:
        prompts.append(prompt)
        if not remaining:
            raise EOFError
        return remaining.pop(0)

    read_line.prompts = prompts
    return read_line


@pytest.fixture(scope="session")
def key_file(tmp_path_factory) -> Path:
    path = tmp_path_factory.mktemp("keys") / "proxy-key.pem"
    paramiko.RSAKey.generate(2048).write_private_key_file(str(path))
    return path


@pytest.fixture
def control_dir(tmp_path) -> Path:
    path = tmp_path / "control"
    path.mkdir()
    path.chmod(0o700)
    return path


@pytest.fixture
def settings(key_file, control_dir) -> Settings:
    return Settings(
        local_port=9443,
        ami_id="ami-0abcdef1234567890",
        instance_type="t3.nano",
        key_name="proxy-key",
        key_file=key_file,
        control_dir=control_dir,
        poll_wait=0,
    )


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()
