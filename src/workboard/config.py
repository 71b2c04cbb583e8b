"""Load workboard settings from `.workboard/config.yaml` and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .constants import NOTIFICATION_TTL_DAYS, STATE_DIR_NAME
from .io_utils import read_yaml

CONFIG_FILE = "config.yaml"
ENV_PREFIX = "WORKBOARD_"


@dataclass
class SmtpSettings:
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    from_address: str = "noreply@workboard.local"
    use_tls: bool = True
    timeout: float = 15.0

    @property
    def configured(self) -> bool:
        return bool(self.host)


@dataclass
class Settings:
    auth_enabled: bool = False
    secret_key: str = "dev-secret-change-in-production"
    algorithm: str = "HS256"
    token_expire_minutes: int = 1440
    default_user_id: str = "local-user"
    policy: str = "allow_all"
    timezone: Optional[str] = None
    frontend_url: str = "http://localhost:3000"
    notification_ttl_days: int = NOTIFICATION_TTL_DAYS
    log_level: str = "INFO"
    smtp: SmtpSettings = field(default_factory=SmtpSettings)


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _pick(env: Mapping[str, str], env_key: str, config: dict[str, Any], *keys: str) -> Any:
    raw = env.get(ENV_PREFIX + env_key)
    if raw is not None and raw != "":
        return raw
    return _get_nested(config, *keys)


def load_config_file(data_dir: Path) -> dict[str, Any]:
    path = data_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    return read_yaml(path)


def load_settings(data_dir: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from defaults, the config file and env vars.

    Args:
        data_dir: Directory holding ``.workboard/``. Skipped when ``None``.
        env: Environment mapping. Defaults to ``os.environ``.

    Returns:
        The merged settings. Environment variables (``WORKBOARD_*``) win
        over the config file, which wins over the defaults.
    """
    env = os.environ if env is None else env
    config = load_config_file(data_dir) if data_dir is not None else {}
    defaults = Settings()
    smtp_defaults = defaults.smtp

    def pick(env_key: str, *keys: str, default: Any) -> Any:
        value = _pick(env, env_key, config, *keys)
        return default if value is None else value

    smtp = SmtpSettings(
        host=pick("SMTP_HOST", "smtp", "host", default=smtp_defaults.host),
        port=int(pick("SMTP_PORT", "smtp", "port", default=smtp_defaults.port)),
        username=pick("SMTP_USER", "smtp", "username", default=smtp_defaults.username),
        password=pick("SMTP_PASSWORD", "smtp", "password", default=smtp_defaults.password),
        from_address=str(pick("SMTP_FROM", "smtp", "from", default=smtp_defaults.from_address)),
        use_tls=_as_bool(_pick(env, "SMTP_TLS", config, "smtp", "tls"), smtp_defaults.use_tls),
        timeout=float(pick("SMTP_TIMEOUT", "smtp", "timeout", default=smtp_defaults.timeout)),
    )
    return Settings(
        auth_enabled=_as_bool(_pick(env, "AUTH_ENABLED", config, "auth", "enabled"), defaults.auth_enabled),
        secret_key=str(pick("SECRET_KEY", "auth", "secret_key", default=defaults.secret_key)),
        algorithm=str(pick("JWT_ALGORITHM", "auth", "algorithm", default=defaults.algorithm)),
        token_expire_minutes=int(pick("TOKEN_EXPIRE_MINUTES", "auth", "token_expire_minutes", default=defaults.token_expire_minutes)),
        default_user_id=str(pick("DEFAULT_USER", "auth", "default_user_id", default=defaults.default_user_id)),
        policy=str(pick("POLICY", "auth", "policy", default=defaults.policy)),
        timezone=pick("TIMEZONE", "notifications", "timezone", default=defaults.timezone),
        frontend_url=str(pick("FRONTEND_URL", "frontend_url", default=defaults.frontend_url)).rstrip("/"),
        notification_ttl_days=int(pick("NOTIFICATION_TTL_DAYS", "notifications", "ttl_days", default=defaults.notification_ttl_days)),
        log_level=str(pick("LOG_LEVEL", "log_level", default=defaults.log_level)).upper(),
        smtp=smtp,
    )
