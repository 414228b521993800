"""Provisioning lifecycle.

Launch one instance, wait for it to run, connect the SOCKS5 tunnel, wait for
the operator to type ``exit``, then tear everything down. Teardown runs on
every path out of ``run`` once an instance id has been captured, and issues
at most one terminate request per run.

    Idle -> Launching -> WaitingForRunning -> WaitingForTunnel -> Active
         -> Terminating -> Done
"""

from __future__ import annotations

import contextlib
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .compute import terminate_command
from .config import Settings
from .console import NullReporter
from .errors import (AddressError, ComputeError, ConnectError, Interrupted, PollError,
                     PollTimeoutError, ProvisionError, ProxyError, TeardownError, TunnelError)
from .tunnel import Tunnel, control_path

log = logging.getLogger(__name__)

MAX_POLL_ATTEMPTS = 10
MAX_CONNECT_RETRIES = 10
RUNNING = "running"
EXIT_COMMAND = "exit"
PROMPT = "Type exit <enter> to quit >  "


class Stage(enum.Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    WAITING_FOR_RUNNING = "waiting-for-running"
    WAITING_FOR_TUNNEL = "waiting-for-tunnel"
    ACTIVE = "active"
    TERMINATING = "terminating"
    DONE = "done"


@dataclass
class Instance:
    instance_id: Optional[str] = None
    state: str = "launching"
    public_address: Optional[str] = None


class Cancellation:
    """Cancellation token fed by signal handlers.

    ``handle_signal`` only records the request, except inside an
    ``interruptible()`` block, where it raises Interrupted to break out of a
    blocking read. After ``shield()`` it never raises.
    """

    def __init__(self):
        self._event = threading.Event()
        self._interruptible = False
        self.shielded = False
        self.signum: Optional[int] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def handle_signal(self, signum: int, frame=None) -> None:
        if self.signum is None:
            self.signum = signum
        self._event.set()
        if self._interruptible and not self.shielded:
            self._interruptible = False
            raise Interrupted(signum)

    def check(self) -> None:
        if self.cancelled and not self.shielded:
            raise Interrupted(self.signum)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if cancelled meanwhile."""
        return self._event.wait(seconds)

    def shield(self) -> None:
        self.shielded = True

    @contextlib.contextmanager
    def interruptible(self):
        self.check()
        self._interruptible = True
        try:
            yield
        finally:
            self._interruptible = False


class ProvisioningLifecycle:
    def __init__(self, settings: Settings, compute, tunnel_process, *,
                 cancellation: Optional[Cancellation] = None, reporter=None,
                 read_line: Optional[Callable[[str], str]] = None):
        self.settings = settings
        self.compute = compute
        self.tunnel_process = tunnel_process
        self.cancellation = cancellation or Cancellation()
        self.reporter = reporter or NullReporter()
        self.read_line = read_line or input
        self.stage = Stage.IDLE
        self.instance = Instance()
        self.tunnel: Optional[Tunnel] = None
        self._teardown_started = False

    def run(self) -> int:
        """Drive one full lifecycle and return the process exit status."""
        status = 0
        try:
            try:
                self.provision()
                self.supervise()
            except ProxyError as exc:
                self.reporter.fail(exc)
                status = exc.exit_code
            finally:
                self.teardown()
        except TeardownError as exc:
            self.reporter.fail(exc)
            status = exc.exit_code
        self.stage = Stage.DONE
        return status

    # ---------------- provisioning ----------------
    def provision(self) -> None:
        self.cancellation.check()
        self.settings.require()
        self._launch()
        self._wait_for_running()
        self._connect()

    def _launch(self) -> None:
        s = self.settings
        self.stage = Stage.LAUNCHING
        self.reporter.begin("Launching instance")
        try:
            instance_id = self.compute.launch(s.ami_id, s.instance_type, s.key_name, s.security_group)
        except ComputeError as e:
            raise ProvisionError(f"Error launching instance: {e}") from e
        if not instance_id:
            raise ProvisionError("Error launching instance: no instance id in the response.")
        self.instance.instance_id = instance_id
        self.reporter.end(f"success - {instance_id}")
        self.cancellation.check()

    def _wait_for_running(self) -> None:
        self.stage = Stage.WAITING_FOR_RUNNING
        self.reporter.begin("Waiting for instance to enter running state")
        for attempt in range(1, MAX_POLL_ATTEMPTS + 1):
            try:
                status = self.compute.describe_state(self.instance.instance_id)
            except ComputeError as e:
                raise PollError(f"Failed to get state: {e}") from e
            self.cancellation.check()
            self.instance.state = status.state
            self.instance.public_address = status.public_address
            log.debug("attempt %d: %s", attempt, status.state)
            # the pause after the call also gives sshd some time to start
            self._pause(status.state[:1])
            if status.state == RUNNING:
                self.reporter.end("")
                return
        raise PollTimeoutError(
            f"Timeout: instance {self.instance.instance_id} not running after {MAX_POLL_ATTEMPTS} attempts.")

    def _connect(self) -> None:
        s = self.settings
        self.stage = Stage.WAITING_FOR_TUNNEL
        address = self.instance.public_address
        if not address:
            raise AddressError(f"Error getting public ip of instance {self.instance.instance_id}.")
        self.reporter.note(f"Public IP address:  {address}")
        self.tunnel = Tunnel(s.local_port, address, control_path(s.control_dir))
        self.reporter.begin(f"Making ssh socks5 connection to {address}")
        for attempt in range(MAX_CONNECT_RETRIES + 1):
            if attempt:
                self._pause(".")
            try:
                self.tunnel_process.start(address, s.local_port, s.key_file, self.tunnel.control_path)
            except TunnelError as e:
                log.debug("tunnel start attempt %d failed: %s", attempt + 1, e)
                self.cancellation.check()
                continue
            self.tunnel.running = True
            self.stage = Stage.ACTIVE
            self.reporter.end(f"success - port {s.local_port}")
            return
        raise ConnectError(f"Giving up on ssh connection to {address} after {MAX_CONNECT_RETRIES + 1} attempts.")

    def _pause(self, indicator: str) -> None:
        for _ in range(self.settings.poll_wait):
            if self.cancellation.wait(1.0):
                raise Interrupted(self.cancellation.signum)
            self.reporter.tick(indicator)

    # ---------------- supervision ----------------
    def supervise(self) -> None:
        """Block until the operator types exit, stdin closes or a signal arrives."""
        self.stage = Stage.ACTIVE
        while True:
            try:
                with self.cancellation.interruptible():
                    line = self.read_line(PROMPT)
            except EOFError:
                self.reporter.note("")
                return
            if line.strip() == EXIT_COMMAND:
                return

    # ---------------- teardown ----------------
    def teardown(self) -> None:
        """Close the tunnel (best effort) then terminate the instance. Safe to call twice."""
        self.cancellation.shield()
        if self._teardown_started:
            log.info("Teardown already started, ignoring")
            return
        self._teardown_started = True
        self.stage = Stage.TERMINATING

        if self.tunnel is not None:
            self.reporter.note("Shutting down SSH proxy.")
            try:
                self.tunnel_process.stop(self.tunnel.target_address, self.tunnel.control_path)
                self.tunnel.running = False
            except TunnelError as e:
                log.warning("Could not close ssh control channel to %s: %s", self.tunnel.target_address, e)

        instance_id = self.instance.instance_id
        if not instance_id:
            return
        self.reporter.note(f"Terminating instance {instance_id}.")
        try:
            self.compute.terminate(instance_id)
        except ComputeError as e:
            log.error("terminate %s failed: %s", instance_id, e)
            raise TeardownError(instance_id, terminate_command(
                instance_id, self.settings.profile, self.settings.region)) from e
        self.instance.state = "terminated"
