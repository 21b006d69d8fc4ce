"""
clawlink.tokens
设备 token 缓存：按 (设备标识, 角色) 保存网关签发的 token，与密钥对分开存放。
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence

from .storage import read_json, write_json_private

logger = logging.getLogger(__name__)

TOKENS_VERSION = 1
DEFAULT_TOKENS_PATH = Path.home() / ".openclaw" / "identity" / "device-auth.json"


@dataclass
class CachedToken:
    device_id: str
    role: str
    token: str
    scopes: List[str] = field(default_factory=list)
    updated_at_ms: int = 0


class TokenCache:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else DEFAULT_TOKENS_PATH

    def _read(self, device_id: str) -> Optional[dict]:
        """返回属于 device_id 的 tokens 映射；其他情况视为未命中。"""
        record = read_json(self.path)
        if not isinstance(record, dict) or record.get("version") != TOKENS_VERSION:
            return None
        if record.get("deviceId") != device_id:
            return None
        tokens = record.get("tokens")
        if not isinstance(tokens, dict):
            return None
        return tokens

    def _write(self, device_id: str, tokens: dict) -> None:
        write_json_private(self.path, {
            "version": TOKENS_VERSION,
            "deviceId": device_id,
            "tokens": tokens,
        })

    def load(self, device_id: str, role: str) -> Optional[CachedToken]:
        tokens = self._read(device_id)
        if tokens is None:
            return None
        entry: Any = tokens.get(role)
        if not isinstance(entry, dict):
            return None
        token = entry.get("token")
        if not isinstance(token, str) or not token:
            return None
        scopes = entry.get("scopes")
        updated = entry.get("updatedAtMs")
        return CachedToken(
            device_id=device_id,
            role=role,
            token=token,
            scopes=[s for s in scopes if isinstance(s, str)] if isinstance(scopes, list) else [],
            updated_at_ms=updated if isinstance(updated, int) else 0,
        )

    def store(self, device_id: str, role: str, token: str, scopes: Sequence[str] = ()) -> CachedToken:
        entry = CachedToken(
            device_id=device_id,
            role=role,
            token=token,
            scopes=list(scopes),
            updated_at_ms=int(time.time() * 1000),
        )
        tokens = self._read(device_id) or {}
        tokens[role] = {
            "token": entry.token,
            "role": role,
            "scopes": entry.scopes,
            "updatedAtMs": entry.updated_at_ms,
        }
        self._write(device_id, tokens)
        return entry

    def clear(self, device_id: str, role: str) -> None:
        tokens = self._read(device_id)
        if tokens is None or role not in tokens:
            return
        del tokens[role]
        self._write(device_id, tokens)
        logger.info("cleared cached device token for role %s", role)
