import pytest
import yaml

import main as entrypoint


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(entrypoint, "configure_logging", lambda *args: None)


def test_malformed_yaml_config_exits_with_config_error(tmp_path):
    config_file = tmp_path / "proxy.yaml"
    config_file.write_text("proxy: [unclosed\n")

    assert entrypoint.main(["--config", str(config_file), "--list-sessions"]) == 2


def test_invalid_config_value_exits_with_config_error(tmp_path):
    config_file = tmp_path / "proxy.yaml"
    config_file.write_text("certificate:\n  valid_days: 0\n")

    assert entrypoint.main(["--config", str(config_file), "--list-sessions"]) == 2


def test_list_sessions_command(tmp_path):
    config_file = tmp_path / "proxy.yaml"
    config_file.write_text(yaml.safe_dump({"logging": {"session_dir": str(tmp_path / "sessions")}}))

    assert entrypoint.main(["--config", str(config_file), "--list-sessions"]) == 0
