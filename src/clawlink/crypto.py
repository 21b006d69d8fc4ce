"""
clawlink.crypto
签名构件：Ed25519 密钥生成、PEM 读写、原始公钥导出、base64url 分离签名。

签名为纯函数：给定私钥与载荷，输出确定。
"""
from __future__ import annotations

import base64
import hashlib
from typing import Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

# DER SubjectPublicKeyInfo 前缀（OID 1.3.101.112），其后紧跟 32 字节原始公钥
ED25519_SPKI_PREFIX = bytes.fromhex("302a300506032b6570032100")
ED25519_RAW_LEN = 32


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def generate_keypair() -> Tuple[ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey]:
    priv = ed25519.Ed25519PrivateKey.generate()
    return priv, priv.public_key()


def private_key_to_pem(key: ed25519.Ed25519PrivateKey) -> str:
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return pem.decode("ascii")


def public_key_to_pem(key: ed25519.Ed25519PublicKey) -> str:
    pem = key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return pem.decode("ascii")


def load_private_key_pem(pem: str) -> ed25519.Ed25519PrivateKey:
    key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    if not isinstance(key, ed25519.Ed25519PrivateKey):
        raise ValueError("private key is not Ed25519")
    return key


def load_public_key_pem(pem: str) -> ed25519.Ed25519PublicKey:
    key = serialization.load_pem_public_key(pem.encode("ascii"))
    if not isinstance(key, ed25519.Ed25519PublicKey):
        raise ValueError("public key is not Ed25519")
    return key


def public_key_raw(key: Union[ed25519.Ed25519PublicKey, bytes]) -> bytes:
    """
    导出线上格式所需的 32 字节原始公钥。
    也接受 SPKI DER 字节：去掉固定长度的算法标识前缀。
    """
    if isinstance(key, ed25519.Ed25519PublicKey):
        return key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
    der = bytes(key)
    if len(der) == len(ED25519_SPKI_PREFIX) + ED25519_RAW_LEN and der.startswith(ED25519_SPKI_PREFIX):
        return der[len(ED25519_SPKI_PREFIX):]
    if len(der) == ED25519_RAW_LEN:
        return der
    raise ValueError("not an Ed25519 public key encoding")


def fingerprint(key: ed25519.Ed25519PublicKey) -> str:
    """设备标识：原始公钥字节的 SHA-256（十六进制）。"""
    return sha256_hex(public_key_raw(key))


def sign(key: ed25519.Ed25519PrivateKey, payload: str) -> str:
    return base64url_encode(key.sign(payload.encode("utf-8")))


def verify(key: ed25519.Ed25519PublicKey, payload: str, signature: str) -> bool:
    try:
        key.verify(base64url_decode(signature), payload.encode("utf-8"))
    except (InvalidSignature, ValueError):
        return False
    return True
