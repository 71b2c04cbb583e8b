"""Tests for settings loading."""

from __future__ import annotations

from pathlib import Path

import yaml

from workboard.config import load_settings
from workboard.services.email import NullEmailTransport, SmtpEmailTransport, build_email_transport


def _write_config(tmp_path: Path, data: dict) -> None:
    root = tmp_path / ".workboard"
    root.mkdir(parents=True, exist_ok=True)
    (root / "config.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")


def test_defaults_without_config(tmp_path: Path) -> None:
    settings = load_settings(tmp_path, env={})
    assert settings.auth_enabled is False
    assert settings.policy == "allow_all"
    assert settings.notification_ttl_days == 90
    assert settings.smtp.configured is False


def test_config_file_values(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        {
            "auth": {"enabled": True, "policy": "role_hierarchy"},
            "smtp": {"host": "mail.example.com", "port": 2525, "tls": False},
            "notifications": {"timezone": "Europe/Berlin"},
            "frontend_url": "https://board.example.com/",
        },
    )
    settings = load_settings(tmp_path, env={})
    assert settings.auth_enabled is True
    assert settings.policy == "role_hierarchy"
    assert settings.smtp.host == "mail.example.com"
    assert settings.smtp.port == 2525
    assert settings.smtp.use_tls is False
    assert settings.timezone == "Europe/Berlin"
    assert settings.frontend_url == "https://board.example.com"


def test_environment_overrides_file(tmp_path: Path) -> None:
    _write_config(tmp_path, {"auth": {"enabled": True}, "log_level": "debug"})
    settings = load_settings(
        tmp_path,
        env={"WORKBOARD_AUTH_ENABLED": "false", "WORKBOARD_SMTP_PORT": "465", "WORKBOARD_LOG_LEVEL": "warning"},
    )
    assert settings.auth_enabled is False
    assert settings.smtp.port == 465
    assert settings.log_level == "WARNING"


def test_email_transport_selection(tmp_path: Path) -> None:
    assert isinstance(build_email_transport(load_settings(tmp_path, env={}).smtp), NullEmailTransport)
    configured = load_settings(tmp_path, env={"WORKBOARD_SMTP_HOST": "localhost"})
    assert isinstance(build_email_transport(configured.smtp), SmtpEmailTransport)
