"""Layered settings resolution and precondition checks."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import paramiko
import pytest
from paramiko.pkey import UnknownKeyType

from ec2_socks_proxy import config
from ec2_socks_proxy.config import Settings, read_conf_file, resolve_settings
from ec2_socks_proxy.errors import ConfigurationError


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults():
    s = resolve_settings({})
    assert s.local_port == 9443
    assert s.poll_wait == 5
    assert s.control_dir == config.CONTROL_DIR
    assert s.ssh_user == "ec2-user"
    assert s.profile is None and s.security_group is None
    assert s.verbose is False


def test_precedence_env_global_local_flags(tmp_path):
    env = {"AWS_EC2_INSTANCE_TYPE": "env-type", "AWS_EC2_AMI_ID": "env-ami",
           "AWS_EC2_SSH_KEY_NAME": "env-key", "AWS_PROFILE": "env-profile"}
    global_conf = write(tmp_path / "global.conf", "AWS_EC2_AMI_ID=global-ami\nAWS_EC2_SSH_KEY_NAME=global-key\n"
                                                   "AWS_PROFILE=global-profile\n")
    local_conf = write(tmp_path / "local.conf", "AWS_EC2_SSH_KEY_NAME=local-key\nAWS_PROFILE=local-profile\n")

    s = resolve_settings(env, [global_conf, local_conf], {"profile": "flag-profile", "ami_id": None})

    assert s.instance_type == "env-type"
    assert s.ami_id == "global-ami"
    assert s.key_name == "local-key"
    assert s.profile == "flag-profile"


def test_missing_conf_files_are_skipped(tmp_path):
    s = resolve_settings({"AWS_EC2_AMI_ID": "ami-1"}, [tmp_path / "nope.conf"])
    assert s.ami_id == "ami-1"


def test_shell_style_conf_file(tmp_path):
    path = write(tmp_path / "proxy.conf", """\
# sourced by the old shell script too
export AWS_PROFILE="work"
AWS_EC2_INSTANCE_TYPE='t3.nano'
LOCAL_PROXY_PORT=1080   # inline comment
UNRELATED=1
""")
    values = read_conf_file(path)
    assert values["AWS_PROFILE"] == "work"
    assert values["AWS_EC2_INSTANCE_TYPE"] == "t3.nano"
    assert values["LOCAL_PROXY_PORT"] == "1080"

    s = resolve_settings({}, [path])
    assert s.local_port == 1080
    assert s.profile == "work"


def test_unparseable_conf_file(tmp_path):
    path = write(tmp_path / "bad.conf", "this is not a setting\n")
    with pytest.raises(ConfigurationError):
        read_conf_file(path)


def test_non_integer_values_are_reported_together():
    with pytest.raises(ConfigurationError) as info:
        resolve_settings({"LOCAL_PROXY_PORT": "socks", "POLL_WAIT_SECONDS": "soon"})
    assert len(info.value.problems) == 2
    assert info.value.exit_code == 3


def test_verbose_truthy_strings():
    assert resolve_settings({"VERBOSE": "yes"}).verbose
    assert resolve_settings({"VERBOSE": "TRUE"}).verbose
    assert not resolve_settings({"VERBOSE": "no"}).verbose
    assert resolve_settings({}, flags={"verbose": True}).verbose


def test_relative_key_file_is_under_ssh_dir():
    s = resolve_settings({"AWS_EC2_SSH_KEY_FILE_NAME": "proxy.pem"})
    assert s.key_file == config.KEY_DIR / "proxy.pem"
    s = resolve_settings({"AWS_EC2_SSH_KEY_FILE_NAME": "/keys/proxy.pem"})
    assert s.key_file == Path("/keys/proxy.pem")


def test_all_missing_required_settings_are_listed(control_dir):
    problems = Settings(control_dir=control_dir).problems()
    assert problems == [
        "AWS_EC2_SSH_KEY_NAME not set",
        "AWS_EC2_SSH_KEY_FILE_NAME not set",
        "AWS_EC2_INSTANCE_TYPE not set",
        "AWS_EC2_AMI_ID not set",
    ]


def test_valid_settings_have_no_problems(settings):
    assert settings.problems() == []
    settings.require()


def test_invalid_port_and_wait(settings):
    s = dataclasses.replace(settings, local_port=70000, poll_wait=-1)
    assert len(s.problems()) == 2


def test_control_dir_missing(settings, tmp_path):
    s = dataclasses.replace(settings, control_dir=tmp_path / "absent")
    [problem] = s.problems()
    assert "mkdir -p" in problem and "chmod 0700" in problem


def test_control_dir_permissions(settings):
    settings.control_dir.chmod(0o750)
    [problem] = settings.problems()
    assert "0750" in problem
    with pytest.raises(ConfigurationError):
        settings.require()


def test_key_file_missing(settings, tmp_path):
    s = dataclasses.replace(settings, key_file=tmp_path / "gone.pem")
    assert s.problems() == [f"SSH key file {tmp_path / 'gone.pem'} does not exist"]


def test_key_file_not_a_key(settings, tmp_path):
    bogus = write(tmp_path / "bogus.pem", "not a private key\n")
    [problem] = dataclasses.replace(settings, key_file=bogus).problems()
    assert "not a usable private key" in problem


def test_rows_use_config_keys(settings):
    keys = [key for key, _ in settings.rows()]
    assert keys[:3] == ["LOCAL_PROXY_PORT", "AWS_EC2_AMI_ID", "AWS_EC2_INSTANCE_TYPE"]
    assert "AWS_PROFILE" in keys


def test_conf_file_locations(tmp_path):
    global_file, local_file = config.conf_files_for(str(tmp_path / "bin" / "ec2-socks-proxy"), cwd=tmp_path)
    assert global_file.name == "ec2-socks-proxy.conf"
    assert local_file == tmp_path / "ec2-socks-proxy.conf"


def test_unsupported_key_type_is_reported(settings, monkeypatch):
    def unsupported(path, passphrase=None):
        raise UnknownKeyType(key_type="SecurityKeyPrivateKey", key_bytes=b"")

    monkeypatch.setattr(paramiko.PKey, "from_path", staticmethod(unsupported))
    [problem] = settings.problems()
    assert "not a usable private key" in problem


def test_conf_file_locations_with_explicit_name(tmp_path):
    main_py = tmp_path / "ec2_socks_proxy" / "__main__.py"
    global_file, local_file = config.conf_files_for(str(main_py), cwd=tmp_path, name="ec2-socks-proxy")
    assert global_file == main_py.resolve().with_name("ec2-socks-proxy.conf")
    assert local_file == tmp_path / "ec2-socks-proxy.conf"
