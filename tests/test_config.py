from pathlib import Path

import pytest

from vpnsync.config import load_settings, resolve_config_path


def _write_config(tmp_path: Path, body: str) -> Path:
    config_path = tmp_path / "vpnsync.yaml"
    config_path.write_text(body, encoding="utf-8")
    return config_path


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(tmp_path / "missing.yaml", environ={})

    assert settings.container_name == "openvpn-as"
    assert settings.sacli_path == "sacli"
    assert settings.interval_minutes == 15
    assert settings.command_timeout == 30.0
    assert settings.run_on_startup is False
    assert settings.scheduler_enabled is True
    assert settings.history_size == 10
    assert settings.ssh is None
    assert settings.api_tokens == ()


def test_yaml_values_and_relative_paths(tmp_path):
    config_path = _write_config(
        tmp_path,
        """
database_path: data/users.sqlite3
container_name: vpn
sacli_path: /usr/local/openvpn_as/scripts/sacli
command_timeout: 12
interval_minutes: 5
run_on_startup: true
history_size: 25
api_tokens: [alpha, beta]
ssh:
  hostname: docker.internal
  username: deploy
  private_key_path: keys/id_ed25519
  port: 2222
  allow_unknown_hosts: true
""",
    )

    settings = load_settings(config_path, environ={})

    assert settings.database_path == (tmp_path / "data" / "users.sqlite3").resolve()
    assert settings.container_name == "vpn"
    assert settings.sacli_path == "/usr/local/openvpn_as/scripts/sacli"
    assert settings.command_timeout == 12.0
    assert settings.interval_minutes == 5
    assert settings.run_on_startup is True
    assert settings.history_size == 25
    assert settings.api_tokens == ("alpha", "beta")
    assert settings.ssh.hostname == "docker.internal"
    assert settings.ssh.port == 2222
    assert settings.ssh.allow_unknown_hosts is True
    assert settings.ssh.private_key_path == (tmp_path / "keys" / "id_ed25519").resolve()


def test_environment_overrides_yaml(tmp_path):
    config_path = _write_config(tmp_path, "container_name: vpn\ninterval_minutes: 5\n")

    settings = load_settings(
        config_path,
        environ={
            "VPNSYNC_CONTAINER": "openvpn-prod",
            "VPNSYNC_INTERVAL_MINUTES": "30",
            "VPNSYNC_SCHEDULER_ENABLED": "false",
            "VPNSYNC_API_TOKENS": "one, two ,",
            "VPNSYNC_DB_PATH": str(tmp_path / "env.sqlite3"),
        },
    )

    assert settings.container_name == "openvpn-prod"
    assert settings.interval_minutes == 30
    assert settings.scheduler_enabled is False
    assert settings.api_tokens == ("one", "two")
    assert settings.database_path == (tmp_path / "env.sqlite3").resolve()


@pytest.mark.parametrize("value", ["0", "61", "often"])
def test_invalid_interval_falls_back_to_default(tmp_path, value, caplog):
    settings = load_settings(tmp_path / "missing.yaml", environ={"VPNSYNC_INTERVAL_MINUTES": value})

    assert settings.interval_minutes == 15
    assert "Invalid sync interval" in caplog.text


def test_invalid_values_raise(tmp_path):
    with pytest.raises(ValueError):
        load_settings(tmp_path / "missing.yaml", environ={"VPNSYNC_COMMAND_TIMEOUT": "-1"})
    with pytest.raises(ValueError):
        load_settings(_write_config(tmp_path, "- just\n- a list\n"), environ={})
    with pytest.raises(ValueError):
        load_settings(_write_config(tmp_path, "ssh:\n  hostname: only-host\n"), environ={})


def test_config_path_comes_from_environment(tmp_path):
    config_path = _write_config(tmp_path, "container_name: from-env-file\n")

    settings = load_settings(environ={"VPNSYNC_CONFIG": str(config_path)})

    assert settings.container_name == "from-env-file"
    assert resolve_config_path(None).name == "vpnsync.yaml"
