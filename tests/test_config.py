from __future__ import annotations

from pathlib import Path

import pytest

from btbridge.core.config import BridgeConfig, default_config_path, load_config
from btbridge.core.errors import ConfigLoadError, ConfigValidationError


def _write_config(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_missing_default_config_uses_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))

    config = load_config()
    assert config == BridgeConfig()
    assert config.gateway.port == 42123
    assert config.ble.health_max_failures == 2
    assert config.classic.health_interval_s == 5.0


def test_default_path_follows_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    assert default_config_path() == tmp_path / "cfg" / "btbridge" / "config.yaml"


def test_user_config_overrides_sections(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    _write_config(
        tmp_path / "cfg" / "btbridge" / "config.yaml",
        """
gateway:
  port: 50000
  bind_retries: 3
ble:
  health_interval_s: 1.5
send:
  max_total_delay_ms: 1000
logging:
  level: DEBUG
""",
    )

    config = load_config()
    assert config.gateway.port == 50000
    assert config.gateway.bind_retries == 3
    assert config.gateway.host == "127.0.0.1"
    assert config.ble.health_interval_s == 1.5
    assert config.ble.health_max_failures == 2
    assert config.send.max_total_delay_ms == 1000
    assert config.log_level == "DEBUG"


def test_empty_config_file_is_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    _write_config(path, "")
    assert load_config(path) == BridgeConfig()


def test_explicit_missing_path_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError):
        load_config(tmp_path / "nope.yaml")


def test_unknown_key_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    _write_config(
        path,
        """
gateway:
  prot: 42123
""",
    )

    with pytest.raises(ConfigValidationError) as exc:
        load_config(path)
    assert "gateway" in str(exc.value)


def test_out_of_range_port_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    _write_config(
        path,
        """
gateway:
  port: 70000
""",
    )

    with pytest.raises(ConfigValidationError):
        load_config(path)


def test_duplicate_yaml_keys_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    _write_config(
        path,
        """
gateway:
  port: 1000
  port: 2000
""",
    )

    with pytest.raises(ConfigValidationError):
        load_config(path)


def test_non_mapping_root_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    _write_config(path, "- just\n- a list\n")

    with pytest.raises(ConfigValidationError):
        load_config(path)
