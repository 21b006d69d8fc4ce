"""
clawlink.identity
设备身份：首次使用时生成 Ed25519 密钥对并持久化，之后读取。

记录损坏、字段缺失或版本未知时视为不存在并重新生成（不报错）；
网关侧绑定旧身份的 token 随之失效。
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ed25519

from .crypto import (
    base64url_encode,
    fingerprint,
    generate_keypair,
    load_private_key_pem,
    load_public_key_pem,
    private_key_to_pem,
    public_key_raw,
    public_key_to_pem,
)
from .storage import read_json, write_json_private

logger = logging.getLogger(__name__)

IDENTITY_VERSION = 1
DEFAULT_IDENTITY_PATH = Path.home() / ".openclaw" / "identity" / "device.json"


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    public_key: ed25519.Ed25519PublicKey
    private_key: ed25519.Ed25519PrivateKey
    created_at_ms: int

    @property
    def public_key_b64url(self) -> str:
        return base64url_encode(public_key_raw(self.public_key))


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_identity() -> DeviceIdentity:
    priv, pub = generate_keypair()
    return DeviceIdentity(
        device_id=fingerprint(pub),
        public_key=pub,
        private_key=priv,
        created_at_ms=_now_ms(),
    )


def identity_to_record(identity: DeviceIdentity) -> dict:
    return {
        "version": IDENTITY_VERSION,
        "deviceId": identity.device_id,
        "publicKeyPem": public_key_to_pem(identity.public_key),
        "privateKeyPem": private_key_to_pem(identity.private_key),
        "createdAtMs": identity.created_at_ms,
    }


def identity_from_record(record: Any) -> Optional[DeviceIdentity]:
    if not isinstance(record, dict) or record.get("version") != IDENTITY_VERSION:
        return None
    device_id = record.get("deviceId")
    pub_pem = record.get("publicKeyPem")
    priv_pem = record.get("privateKeyPem")
    if not all(isinstance(v, str) and v for v in (device_id, pub_pem, priv_pem)):
        return None
    try:
        pub = load_public_key_pem(pub_pem)
        priv = load_private_key_pem(priv_pem)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        # 加密私钥 / 未知算法同样视为损坏
        return None
    # 标识与公钥不一致、或私钥不对应该公钥时均视为损坏
    if fingerprint(pub) != device_id or fingerprint(priv.public_key()) != device_id:
        return None
    created = record.get("createdAtMs")
    return DeviceIdentity(
        device_id=device_id,
        public_key=pub,
        private_key=priv,
        created_at_ms=created if isinstance(created, int) else _now_ms(),
    )


class IdentityStore:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else DEFAULT_IDENTITY_PATH
        self._identity: Optional[DeviceIdentity] = None

    def get_identity(self) -> DeviceIdentity:
        if self._identity is not None:
            return self._identity

        record = read_json(self.path)
        identity = identity_from_record(record)
        if identity is None:
            if record is not None or self.path.exists():
                logger.warning("device identity at %s is unusable, regenerating", self.path)
            identity = generate_identity()
            write_json_private(self.path, identity_to_record(identity))
            logger.info("created device identity %s", identity.device_id)

        self._identity = identity
        return identity
