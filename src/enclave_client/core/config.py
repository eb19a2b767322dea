"""
Enclave 客户端配置管理

支持 YAML 配置文件和环境变量覆盖。
"""

import logging
import os
from dataclasses import dataclass, fields as dataclass_fields
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import yaml

from .exceptions import ValidationError


class Environment(Enum):
    """部署环境"""
    PROD = "PROD"
    PROD_PERMISSIONLESS = "PROD_PERMISSIONLESS"
    SANDBOX = "SANDBOX"
    SANDBOX_PERMISSIONLESS = "SANDBOX_PERMISSIONLESS"


API_URLS: Dict[Environment, str] = {
    Environment.PROD: "https://api.enclave.market",
    Environment.PROD_PERMISSIONLESS: "https://api.enclave.trade",
    Environment.SANDBOX: "https://api-sandbox.enclave.market",
    Environment.SANDBOX_PERMISSIONLESS: "https://api-sandbox.enclave.trade",
}

WS_URLS: Dict[Environment, str] = {
    Environment.PROD: "wss://api.enclave.market/ws",
    Environment.PROD_PERMISSIONLESS: "wss://api.enclave.trade/ws",
    Environment.SANDBOX: "wss://api-sandbox.enclave.market/ws",
    Environment.SANDBOX_PERMISSIONLESS: "wss://api-sandbox.enclave.trade/ws",
}


def parse_environment(value: str) -> Environment:
    """解析环境名 (不区分大小写)"""
    try:
        return Environment(str(value).upper())
    except ValueError:
        allowed = ", ".join(e.value for e in Environment)
        raise ValidationError(
            f"Unknown environment {value!r}, expected one of: {allowed}", field="environment"
        ) from None


@dataclass
class ClientConfig:
    """客户端连接配置 (时间单位: 秒)"""
    environment: Environment = Environment.PROD_PERMISSIONLESS
    api_key: str = ""
    api_secret: str = ""

    # 端点 (为空时根据 environment 推导)
    base_url: str = ""
    ws_url: str = ""

    # 请求重试
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0

    # 推送重连
    reconnect: bool = True
    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 10
    reconnect_cap_exponent: int = 5

    # 心跳
    heartbeat_interval: float = 30.0

    # 日志配置
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __post_init__(self):
        """根据环境设置默认 URL"""
        if isinstance(self.environment, str):
            self.environment = parse_environment(self.environment)
        if not self.base_url:
            self.base_url = API_URLS[self.environment]
        if not self.ws_url:
            self.ws_url = WS_URLS[self.environment]

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def validate(self) -> "ClientConfig":
        """校验数值范围"""
        if self.timeout <= 0:
            raise ValidationError("timeout must be positive", field="timeout")
        if self.max_retries < 0:
            raise ValidationError("max_retries must be >= 0", field="max_retries")
        if self.retry_delay < 0:
            raise ValidationError("retry_delay must be >= 0", field="retry_delay")
        if self.reconnect_delay < 0:
            raise ValidationError("reconnect_delay must be >= 0", field="reconnect_delay")
        if self.max_reconnect_attempts < 0:
            raise ValidationError(
                "max_reconnect_attempts must be >= 0", field="max_reconnect_attempts"
            )
        if self.heartbeat_interval <= 0:
            raise ValidationError("heartbeat_interval must be positive", field="heartbeat_interval")
        return self

    def configure_logging(self) -> None:
        """按配置初始化根日志"""
        logging.basicConfig(
            level=getattr(logging, self.log_level.upper(), logging.INFO),
            format=self.log_format,
        )

    @classmethod
    def from_yaml(cls, path: str) -> "ClientConfig":
        """从 YAML 文件加载配置"""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """从环境变量加载配置"""
        return _apply_env_overrides(cls())

    @classmethod
    def _from_dict(cls, data: Dict) -> "ClientConfig":
        """从字典创建配置 (忽略未知字段)"""
        allowed = {f.name for f in dataclass_fields(cls) if f.init}
        kwargs = {k: v for k, v in data.items() if k in allowed}
        return cls(**kwargs)


def load_config(config_path: Optional[str] = None) -> ClientConfig:
    """
    加载配置

    优先级: 环境变量 > 配置文件 > 默认值
    """
    config = ClientConfig()
    resolved_path = resolve_config_path(config_path)
    if resolved_path is not None:
        config = ClientConfig.from_yaml(str(resolved_path))

    return _apply_env_overrides(config).validate()


def _env_value(name: str, field: str, cast):
    """读取并转换环境变量, 格式错误时抛出 ValidationError"""
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return cast(raw)
    except ValueError:
        raise ValidationError(f"Invalid value for {name}: {raw!r}", field=field) from None


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


# 环境变量 -> (字段, 转换函数)
ENV_OVERRIDES = (
    ("ENCLAVE_TIMEOUT", "timeout", float),
    ("ENCLAVE_MAX_RETRIES", "max_retries", int),
    ("ENCLAVE_RETRY_DELAY", "retry_delay", float),
    ("ENCLAVE_RECONNECT", "reconnect", _parse_bool),
    ("ENCLAVE_RECONNECT_DELAY", "reconnect_delay", float),
    ("ENCLAVE_MAX_RECONNECT_ATTEMPTS", "max_reconnect_attempts", int),
    ("ENCLAVE_HEARTBEAT_INTERVAL", "heartbeat_interval", float),
)


def _apply_env_overrides(config: ClientConfig) -> ClientConfig:
    """环境变量覆盖"""
    if env_name := os.getenv("ENCLAVE_ENVIRONMENT"):
        config.environment = parse_environment(env_name)
        config.base_url = API_URLS[config.environment]
        config.ws_url = WS_URLS[config.environment]
    if api_key := os.getenv("ENCLAVE_API_KEY"):
        config.api_key = api_key
        config.api_secret = os.getenv("ENCLAVE_API_SECRET", "")
    for name, field, cast in ENV_OVERRIDES:
        value = _env_value(name, field, cast)
        if value is not None:
            setattr(config, field, value)
    if log_level := os.getenv("LOG_LEVEL"):
        config.log_level = log_level

    return config


def resolve_config_path(config_path: Optional[str] = None) -> Optional[Path]:
    """
    Resolve config file path.

    Priority:
      1) env ENCLAVE_CONFIG
      2) given config_path
      3) cwd config/enclave.yaml
    """
    candidates: list[Path] = []

    env_path = os.getenv("ENCLAVE_CONFIG")
    if env_path:
        candidates.append(Path(env_path))

    if config_path:
        candidates.append(Path(config_path))

    candidates.append(Path("config/enclave.yaml"))

    for p in candidates:
        if p.exists():
            return p

    return None
