"""
Configuration

Settings come from environment variables and are then overridden by an
optional JSON file (``WEB_SSH_CONFIG``).
"""

import json
import logging
import os
import secrets
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from typing import Any, Dict, List, Optional

from .security import AuthConfig
from .utils import MIB

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"


@dataclass
class SSHSettings:
    connect_timeout: float = 10
    idle_timeout: float = 15 * 60
    reap_interval: float = 5 * 60
    terminal_type: str = "xterm-256color"


@dataclass
class FileSettings:
    workspace_root: str = field(default_factory=os.getcwd)
    preview_limit: int = MIB
    upload_limit: int = 100 * MIB
    key_upload_limit: int = 32 * 1024


@dataclass
class TerminalSettings:
    local_shell: List[str] = field(default_factory=lambda: ["/bin/bash", "-l", "-i"])
    default_session: str = "default"


@dataclass
class AppConfig:
    """Application configuration"""

    server: ServerConfig = field(default_factory=ServerConfig)
    ssh: SSHSettings = field(default_factory=SSHSettings)
    files: FileSettings = field(default_factory=FileSettings)
    terminal: TerminalSettings = field(default_factory=TerminalSettings)
    security: AuthConfig = field(default_factory=AuthConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build configuration from environment variables"""
        config = cls()
        config.server.host = os.getenv("WEB_SSH_HOST", config.server.host)
        config.server.port = int(os.getenv("WEB_SSH_PORT", config.server.port))
        config.server.log_level = os.getenv("WEB_SSH_LOG_LEVEL", config.server.log_level)
        config.files.workspace_root = os.getenv("WEB_SSH_WORKSPACE", config.files.workspace_root)
        config.ssh.idle_timeout = float(os.getenv("WEB_SSH_IDLE_TIMEOUT", config.ssh.idle_timeout))

        shell = os.getenv("WEB_SSH_SHELL")
        if shell:
            config.terminal.local_shell = shell.split()

        security = config.security
        security.enable_auth = os.getenv("WEB_SSH_ENABLE_AUTH", "false").lower() in ("true", "1", "yes")
        security.jwt_secret = os.getenv("WEB_SSH_JWT_SECRET", security.jwt_secret)
        api_keys = os.getenv("WEB_SSH_API_KEYS", "")
        if api_keys:
            security.api_keys = _parse_api_keys(api_keys)
        allowed_ips = os.getenv("WEB_SSH_ALLOWED_IPS", "")
        if allowed_ips:
            security.allowed_ips = [ip.strip() for ip in allowed_ips.split(",") if ip.strip()]
        return config

    @classmethod
    def from_file(cls, config_path: str, base: Optional["AppConfig"] = None) -> "AppConfig":
        """Overlay a JSON config file on ``base`` (environment defaults if omitted)"""
        config = base or cls.from_env()
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read config file {config_path}: {e}")
            return config

        if not isinstance(data, dict):
            logger.error(f"Config file {config_path} must contain a JSON object")
            return config
        _deep_update(config, data)
        logger.info(f"Loaded config file: {config_path}")
        return config

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["security"]["jwt_secret"] = "***" if self.security.jwt_secret else ""
        data["security"]["api_keys"] = sorted(self.security.api_keys)
        return data


def _parse_api_keys(raw: str) -> Dict[str, str]:
    """``client1:key1,client2:key2`` -> dict"""
    api_keys = {}
    for pair in raw.split(","):
        client_id, sep, key = pair.partition(":")
        if not sep:
            logger.error("Invalid API key format, expected client1:key1,client2:key2")
            continue
        api_keys[client_id.strip()] = key.strip()
    return api_keys


def _deep_update(target: Any, update: Dict[str, Any]):
    known = {f.name for f in fields(target)}
    for key, value in update.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue
        current = getattr(target, key)
        if is_dataclass(current) and isinstance(value, dict):
            _deep_update(current, value)
        else:
            setattr(target, key, value)


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Environment first, then the JSON file if one exists"""
    config = AppConfig.from_env()
    config_path = config_path or os.getenv("WEB_SSH_CONFIG")
    if config_path and os.path.exists(config_path):
        config = AppConfig.from_file(config_path, base=config)

    if config.security.enable_auth and not config.security.jwt_secret:
        config.security.jwt_secret = secrets.token_urlsafe(32)
        logger.warning("Using a random JWT secret; set WEB_SSH_JWT_SECRET to keep tokens across restarts")

    logger.info(f"Configuration loaded, workspace root: {config.files.workspace_root}")
    return config
