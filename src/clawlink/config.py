"""
clawlink.config
网关连接配置：主机、端口、令牌、角色、作用域与三类超时。
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from .errors import AuthError
from .transport import gateway_url

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 18789
DEFAULT_CONFIG_PATH = Path.home() / ".openclaw" / "openclaw.json"

CONNECT_TIMEOUT = 5.0
CALL_TIMEOUT = 10.0
SEND_TIMEOUT = 120.0


@dataclass
class GatewayConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    token: Optional[str] = None
    role: str = "operator"
    scopes: List[str] = field(default_factory=lambda: ["operator.admin"])
    connect_timeout: float = CONNECT_TIMEOUT
    call_timeout: float = CALL_TIMEOUT
    send_timeout: float = SEND_TIMEOUT
    use_device_identity: bool = True
    identity_path: Optional[Path] = None
    tokens_path: Optional[Path] = None

    @property
    def url(self) -> str:
        return gateway_url(self.host, self.port)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "GatewayConfig":
        env = os.environ if environ is None else environ
        cfg = cls(
            host=env.get("OPENCLAW_HOST") or DEFAULT_HOST,
            port=_int_env(env, "OPENCLAW_PORT", DEFAULT_PORT),
            send_timeout=_int_env(env, "OPENCLAW_SEND_TIMEOUT", int(SEND_TIMEOUT * 1000)) / 1000.0,
        )
        for name, value in overrides.items():
            setattr(cfg, name, value)
        return cfg


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = int(raw, 10)
    except ValueError:
        return default
    return value if value > 0 else default


def read_gateway_token(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> str:
    """OPENCLAW_GATEWAY_TOKEN 优先；否则读取配置文件中的 gateway.auth.token。"""
    env = os.environ if environ is None else environ
    token = env.get("OPENCLAW_GATEWAY_TOKEN")
    if token:
        return token

    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        raise AuthError(f"Cannot read config at {config_path}: {e}") from e

    gateway = config.get("gateway") if isinstance(config, dict) else None
    auth = gateway.get("auth") if isinstance(gateway, dict) else None
    token = auth.get("token") if isinstance(auth, dict) else None
    if not isinstance(token, str) or not token:
        raise AuthError(f"No gateway.auth.token found in {config_path}")
    return token
