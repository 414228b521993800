"""Settings resolution.

Values are merged from four layers, later layers winning:

  1. the process environment
  2. the global config file, ``<resolved program path>.conf``
  3. the local config file, ``./<program name>.conf``
  4. command-line flags

Config files use the shell ``KEY=value`` syntax of the original tool and are
read with configparser under a synthetic section header.
"""

from __future__ import annotations

import configparser
import logging
import stat
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import paramiko
from paramiko.pkey import UnknownKeyType

from .errors import ConfigurationError

log = logging.getLogger(__name__)

HOME = Path.home()
KEY_DIR = HOME / ".ssh"

# Defaults
LOCAL_PROXY_PORT = 9443
CONTROL_DIR = KEY_DIR / "control"
POLL_WAIT_SECONDS = 5
SSH_USER = "ec2-user"

TRUTHY = {"1", "yes", "true", "on"}

# Settings field -> environment / config-file key
KEYS: Dict[str, str] = {
    "local_port": "LOCAL_PROXY_PORT",
    "profile": "AWS_PROFILE",
    "key_name": "AWS_EC2_SSH_KEY_NAME",
    "key_file": "AWS_EC2_SSH_KEY_FILE_NAME",
    "security_group": "AWS_EC2_SECURITY_GROUP",
    "instance_type": "AWS_EC2_INSTANCE_TYPE",
    "ami_id": "AWS_EC2_AMI_ID",
    "control_dir": "AWS_EC2_SSH_CONTROL_DIR",
    "poll_wait": "POLL_WAIT_SECONDS",
    "verbose": "VERBOSE",
    "region": "AWS_REGION",
    "ssh_user": "AWS_EC2_SSH_USER",
}

REQUIRED = ("local_port", "key_name", "key_file", "instance_type", "ami_id", "control_dir")


@dataclass(frozen=True)
class Settings:
    local_port: Optional[int] = LOCAL_PROXY_PORT
    ami_id: Optional[str] = None
    instance_type: Optional[str] = None
    key_name: Optional[str] = None
    key_file: Optional[Path] = None
    control_dir: Optional[Path] = CONTROL_DIR
    poll_wait: int = POLL_WAIT_SECONDS
    security_group: Optional[str] = None
    profile: Optional[str] = None
    region: Optional[str] = None
    ssh_user: str = SSH_USER
    verbose: bool = False

    def rows(self) -> List[Tuple[str, object]]:
        """(KEY, value) pairs in display order, for the verbose config dump."""
        return [(KEYS[f.name], getattr(self, f.name)) for f in fields(self)]

    def problems(self) -> List[str]:
        found = []
        for name in REQUIRED:
            value = getattr(self, name)
            if value is None or value == "":
                found.append(f"{KEYS[name]} not set")
        if self.local_port is not None and not 0 < self.local_port < 65536:
            found.append(f"LOCAL_PROXY_PORT {self.local_port} is not a valid port")
        if self.poll_wait < 0:
            found.append("POLL_WAIT_SECONDS must not be negative")
        if self.control_dir:
            found.extend(control_dir_problems(self.control_dir))
        if self.key_file:
            found.extend(key_file_problems(self.key_file))
        return found

    def require(self) -> None:
        found = self.problems()
        if found:
            raise ConfigurationError(found)


# ---------------- precondition checks ----------------
def control_dir_problems(path: Path) -> List[str]:
    if not path.is_dir():
        return [
            f"This tool requires {path} to exist with perms set to 0700:  "
            f"mkdir -p {path} && chmod 0700 {path}"
        ]
    mode = stat.S_IMODE(path.stat().st_mode)
    if mode != 0o700:
        return [f"Permissions on {path} are {mode:04o}, must be 0700:  chmod 0700 {path}"]
    return []


def key_file_problems(path: Path) -> List[str]:
    if not path.is_file():
        return [f"SSH key file {path} does not exist"]
    try:
        paramiko.PKey.from_path(path)
    except TypeError:
        # cryptography raises TypeError for an encrypted key loaded without a passphrase
        log.warning("SSH key file %s is encrypted; ssh will ask for the passphrase or use the agent", path)
    except (paramiko.SSHException, UnknownKeyType, ValueError) as exc:
        return [f"SSH key file {path} is not a usable private key ({exc})"]
    except OSError as exc:
        return [f"SSH key file {path} cannot be read ({exc.strerror})"]
    return []


# ---------------- layered loading ----------------
def read_conf_file(path: Path) -> Dict[str, str]:
    """Parse a shell-style ``KEY=value`` file. Unknown keys are kept and ignored later."""
    lines = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        lines.append(line)
    parser = configparser.ConfigParser(interpolation=None, delimiters=("=",), strict=False,
                                       comment_prefixes=("#",), inline_comment_prefixes=("#",))
    parser.optionxform = str
    try:
        parser.read_string("[conf]\n" + "\n".join(lines), source=str(path))
    except configparser.Error as exc:
        raise ConfigurationError([f"Cannot parse config file {path}: {exc}"]) from exc
    return {key: _unquote(value) for key, value in parser.items("conf")}


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        return value[1:-1]
    return value


def conf_files_for(program: str, cwd: Optional[Path] = None,
                   name: Optional[str] = None) -> Tuple[Path, Path]:
    """Global and local config file locations for the running program.

    ``name`` overrides the file stem, for when ``program`` is a ``__main__.py``.
    """
    prog = Path(program).resolve()
    name = name or prog.name
    global_file = prog.with_name(name + ".conf")
    local_file = (cwd or Path.cwd()) / f"{name}.conf"
    return global_file, local_file


def merge_layers(environ: Mapping[str, str], conf_files: Iterable[Path],
                 flags: Mapping[str, object]) -> Dict[str, str]:
    wanted = set(KEYS.values())
    merged = {key: environ[key] for key in wanted if environ.get(key)}
    for path in conf_files:
        if path.is_file():
            log.debug("loading %s", path)
            merged.update({k: v for k, v in read_conf_file(path).items() if k in wanted and v != ""})
    for name, value in flags.items():
        if value is None or value is False:
            continue
        merged[KEYS[name]] = "yes" if value is True else str(value)
    return merged


def resolve_settings(environ: Mapping[str, str], conf_files: Iterable[Path] = (),
                     flags: Optional[Mapping[str, object]] = None) -> Settings:
    """Build the immutable Settings for one run. Raises ConfigurationError on unparseable values."""
    values = merge_layers(environ, conf_files, flags or {})
    problems: List[str] = []

    def text(name: str) -> Optional[str]:
        return values.get(KEYS[name]) or None

    def number(name: str, default: int) -> Optional[int]:
        raw = text(name)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            problems.append(f"{KEYS[name]} must be an integer, got {raw!r}")
            return None

    local_port = number("local_port", LOCAL_PROXY_PORT)
    poll_wait = number("poll_wait", POLL_WAIT_SECONDS)
    if problems:
        raise ConfigurationError(problems)

    key_file = text("key_file")
    control_dir = text("control_dir")
    return Settings(
        local_port=local_port,
        ami_id=text("ami_id"),
        instance_type=text("instance_type"),
        key_name=text("key_name"),
        key_file=resolve_key_file(key_file) if key_file else None,
        control_dir=Path(control_dir).expanduser() if control_dir else CONTROL_DIR,
        poll_wait=poll_wait,
        security_group=text("security_group"),
        profile=text("profile"),
        region=text("region"),
        ssh_user=text("ssh_user") or SSH_USER,
        verbose=(text("verbose") or "").lower() in TRUTHY,
    )


def resolve_key_file(name: str) -> Path:
    path = Path(name).expanduser()
    if not path.is_absolute():
        path = KEY_DIR / path
    return path
