"""Exception types and the exit status each fatal path maps to."""

from __future__ import annotations

from typing import List, Optional


class ProxyError(Exception):
    """A fatal lifecycle failure. ``exit_code`` is the process exit status."""

    exit_code = 1

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(ProxyError):
    exit_code = 3

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Configuration error -- " + "; ".join(self.problems))


class ProvisionError(ProxyError):
    exit_code = 4


class AddressError(ProvisionError):
    exit_code = 7


class PollTimeoutError(ProxyError):
    exit_code = 5


class PollError(ProxyError):
    exit_code = 6


class ConnectError(ProxyError):
    exit_code = 8


class TeardownError(ProxyError):
    """The terminate request failed; the instance may still be billing."""

    exit_code = 128

    def __init__(self, instance_id: str, remediation: str):
        self.instance_id = instance_id
        self.remediation = remediation
        super().__init__(
            f"Error terminating instance {instance_id} - log into the AWS console "
            f"and clean up EC2 instances, or run: {remediation}"
        )


class Interrupted(ProxyError):
    exit_code = 255

    def __init__(self, signum: Optional[int] = None):
        self.signum = signum
        super().__init__(f"Interrupted by signal {signum}" if signum else "Interrupted")


# ---------------- collaborator failures ----------------
class CollaboratorError(Exception):
    """Raised by ComputeClient / TunnelProcess implementations."""


class ComputeError(CollaboratorError):
    pass


class TunnelError(CollaboratorError):
    pass
