"""Configuration loading utilities for Lab Provisioner."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from .paths import DEFAULT_CONFIG_PATH, DEFAULT_PLAN_FILE, LOGS_DIR

# Load .env file if it exists
load_dotenv()

ENV_PREFIX = "LAB_PROVISIONER_"


@dataclass
class OrchestratorConfig:
    """Settings for the orchestration driver and status reporter."""

    concurrency: int = 4                  # 同时运行的 host lane 上限
    log_dir: str = str(LOGS_DIR)
    console_format: str = "text"          # "text" | "json"
    action_timeout: float = 1800.0        # 单个 action 默认超时（秒）
    probe_timeout: float = 120.0          # 单个 probe 默认超时（秒）


@dataclass
class RetryConfig:
    """Default retry policy for stages that do not declare their own."""

    max_attempts: int = 5
    initial_delay: float = 10.0
    multiplier: float = 2.0
    max_delay: float = 120.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "multiplier": self.multiplier,
            "max_delay": self.max_delay,
        }


@dataclass
class TransportConfig:
    """Defaults used when a host entry leaves connection details out."""

    plan_file: str = str(DEFAULT_PLAN_FILE)
    default_transport: str = "ssh"        # "ssh" | "local" | "vagrant"
    default_port: int = 22
    default_username: Optional[str] = None
    default_auth_method: Optional[str] = None
    default_password: Optional[str] = None
    default_key_path: Optional[str] = None
    connect_timeout: int = 20
    vagrant_dir: Optional[str] = None


@dataclass
class AppConfig:
    """Top-level configuration."""

    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AppConfig":
        orchestrator_payload = _strip_comments(payload.get("orchestrator", {}) or {})
        retry_payload = _strip_comments(payload.get("retry", {}) or {})
        transport_payload = _strip_comments(payload.get("transport", {}) or {})

        return cls(
            orchestrator=OrchestratorConfig(
                **{**OrchestratorConfig().__dict__, **orchestrator_payload}
            ),
            retry=RetryConfig(**{**RetryConfig().__dict__, **retry_payload}),
            transport=TransportConfig(
                **{**TransportConfig().__dict__, **transport_payload}
            ),
        )


@dataclass
class ResolvedCredentials:
    """Connection credentials after env/config resolution."""

    username: Optional[str]
    auth_method: Optional[str]
    password: Optional[str] = None
    key_path: Optional[str] = None


def _strip_comments(section: Dict[str, Any]) -> Dict[str, Any]:
    # 过滤掉以下划线开头的注释字段
    return {k: v for k, v in section.items() if not k.startswith("_")}


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load configuration from `path` or the default location.

    Falls back to built-in defaults when neither file exists. An explicit
    `path` that does not exist is an error.

    Environment variables (higher priority than config file):
    - LAB_PROVISIONER_CONCURRENCY: Maximum number of concurrent host lanes
    - LAB_PROVISIONER_LOG_DIR: Directory for run logs
    - LAB_PROVISIONER_PLAN_FILE: Plan file path
    - LAB_PROVISIONER_SSH_USERNAME / _SSH_PASSWORD / _SSH_KEY_PATH: SSH defaults
    - LAB_PROVISIONER_VAGRANT_DIR: Directory holding the Vagrantfile
    """
    env = os.environ if environ is None else environ

    if path and not Path(path).is_file():
        raise FileNotFoundError(f"Could not find configuration file: {path}")

    candidate = Path(path) if path else DEFAULT_CONFIG_PATH
    if candidate.is_file():
        with candidate.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSON in configuration file {candidate}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {candidate} must contain a JSON object")
        try:
            config = AppConfig.from_dict(data)
        except TypeError as exc:
            # 未知字段
            raise ValueError(f"Invalid configuration file {candidate}: {exc}") from exc
    else:
        config = AppConfig()

    _apply_env_overrides(config, env)
    return config


def _apply_env_overrides(config: AppConfig, env: Mapping[str, str]) -> None:
    env_concurrency = env.get(f"{ENV_PREFIX}CONCURRENCY")
    if env_concurrency:
        config.orchestrator.concurrency = int(env_concurrency)

    env_log_dir = env.get(f"{ENV_PREFIX}LOG_DIR")
    if env_log_dir:
        config.orchestrator.log_dir = env_log_dir

    env_plan_file = env.get(f"{ENV_PREFIX}PLAN_FILE")
    if env_plan_file:
        config.transport.plan_file = env_plan_file

    env_username = env.get(f"{ENV_PREFIX}SSH_USERNAME")
    if env_username:
        config.transport.default_username = env_username

    env_password = env.get(f"{ENV_PREFIX}SSH_PASSWORD")
    if env_password:
        config.transport.default_password = env_password
        config.transport.default_auth_method = "password"

    env_key_path = env.get(f"{ENV_PREFIX}SSH_KEY_PATH")
    if env_key_path:
        config.transport.default_key_path = env_key_path
        config.transport.default_auth_method = "key"

    env_vagrant_dir = env.get(f"{ENV_PREFIX}VAGRANT_DIR")
    if env_vagrant_dir:
        config.transport.vagrant_dir = env_vagrant_dir


def resolve_credentials(
    credential_ref: Optional[str],
    transport: TransportConfig,
    *,
    username: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ResolvedCredentials:
    """Resolve a host's credential reference into concrete secrets.

    `LAB_PROVISIONER_CRED_<REF>_USERNAME`, `..._PASSWORD` and `..._KEY_PATH`
    take precedence; anything missing falls back to the transport defaults.
    Secrets never live in the plan file itself.
    """
    env = os.environ if environ is None else environ
    resolved = ResolvedCredentials(
        username=username or transport.default_username,
        auth_method=transport.default_auth_method,
        password=transport.default_password,
        key_path=transport.default_key_path,
    )
    if not credential_ref:
        return resolved

    key = credential_ref.upper().replace("-", "_").replace(".", "_")
    prefix = f"{ENV_PREFIX}CRED_{key}_"

    env_username = env.get(prefix + "USERNAME")
    if env_username:
        resolved.username = env_username

    env_password = env.get(prefix + "PASSWORD")
    env_key_path = env.get(prefix + "KEY_PATH")
    if env_key_path:
        resolved.key_path = env_key_path
        resolved.auth_method = "key"
    if env_password:
        resolved.password = env_password
        resolved.auth_method = "password"
    return resolved
