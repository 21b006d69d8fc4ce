"""
clawlink.protocol
网关线上帧（JSON，按 type 字段区分）与 connect 参数构造。

入站帧解码为带标签的联合类型：ChallengeEvent / ResponseFrame / LifecycleEvent / OtherEvent，
每种变体只路由到一个处理者。
"""
from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Union

from .errors import MalformedFrame

PROTOCOL_VERSION = 3

FT_REQ = "req"
FT_RES = "res"
FT_EVENT = "event"

EV_CONNECT_CHALLENGE = "connect.challenge"
EV_AGENT = "agent"
STREAM_LIFECYCLE = "lifecycle"

METHOD_CONNECT = "connect"
METHOD_CHAT_SEND = "chat.send"

# 签名载荷版本标签
DEVICE_AUTH_VERSION = "v1"

TERMINAL_PHASES = frozenset({"end"})

STALE_TOKEN_CODES = frozenset({"DEVICE_TOKEN_MISMATCH", "DEVICE_TOKEN_STALE"})
STALE_TOKEN_MESSAGES = (
    "device token mismatch",
    "stale device token",
    "device token invalid",
    "device token expired",
)


@dataclass(frozen=True)
class ChallengeEvent:
    nonce: Optional[str]


@dataclass(frozen=True)
class ResponseFrame:
    id: str
    ok: bool
    payload: Any = None
    error: Any = None


@dataclass(frozen=True)
class LifecycleEvent:
    run_id: Optional[str]
    phase: Optional[str]
    stream: str = STREAM_LIFECYCLE

    @property
    def is_terminal(self) -> bool:
        return is_terminal_phase(self.phase)


@dataclass(frozen=True)
class OtherEvent:
    event: str
    payload: Any = None


Frame = Union[ChallengeEvent, ResponseFrame, LifecycleEvent, OtherEvent]


@dataclass(frozen=True)
class RequestFrame:
    id: str
    method: str
    params: Any = None

    def to_dict(self) -> dict:
        return {"type": FT_REQ, "id": self.id, "method": self.method, "params": self.params}

    def encode(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


def _event_data(msg: dict) -> Any:
    # 网关事件载荷字段为 payload；兼容 data
    return msg["data"] if "data" in msg else msg.get("payload")


def decode_frame(raw: Union[str, bytes]) -> Frame:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrame("frame is not valid UTF-8") from e
    try:
        msg = json.loads(raw)
    except ValueError as e:
        raise MalformedFrame(f"frame is not JSON: {e}") from e
    if not isinstance(msg, dict):
        raise MalformedFrame("frame is not a JSON object")

    ftype = msg.get("type")
    if ftype == FT_RES:
        fid = msg.get("id")
        if not isinstance(fid, str):
            raise MalformedFrame("response frame without string id")
        return ResponseFrame(
            id=fid,
            ok=msg.get("ok") is True,
            payload=msg.get("payload"),
            error=msg.get("error"),
        )

    if ftype == FT_EVENT:
        event = msg.get("event")
        if not isinstance(event, str):
            raise MalformedFrame("event frame without event name")
        data = _event_data(msg)
        if event == EV_CONNECT_CHALLENGE:
            nonce = data.get("nonce") if isinstance(data, dict) else None
            return ChallengeEvent(nonce=nonce if isinstance(nonce, str) else None)
        if event == EV_AGENT and isinstance(data, dict) and data.get("stream") == STREAM_LIFECYCLE:
            run_id = data.get("runId")
            phase = data.get("phase")
            return LifecycleEvent(
                run_id=run_id if isinstance(run_id, str) else None,
                phase=phase if isinstance(phase, str) else None,
            )
        return OtherEvent(event=event, payload=data)

    if isinstance(ftype, str) and ftype:
        # 未知但结构完整的帧类型不属于畸形帧
        return OtherEvent(event=ftype, payload=msg)
    raise MalformedFrame(f"frame without type: {ftype!r}")


def is_terminal_phase(phase: Optional[str]) -> bool:
    return phase in TERMINAL_PHASES


def is_stale_device_token(error: Any) -> bool:
    if isinstance(error, dict):
        code = error.get("code")
        if isinstance(code, str) and code.upper() in STALE_TOKEN_CODES:
            return True
        text = error.get("message")
    else:
        text = error
    if not isinstance(text, str):
        return False
    text = text.lower()
    return any(m in text for m in STALE_TOKEN_MESSAGES)


@dataclass(frozen=True)
class ClientInfo:
    id: str = "gateway-client"
    mode: str = "backend"
    version: str = "1.0.0"
    platform: str = sys.platform

    def to_dict(self) -> dict:
        return {"id": self.id, "mode": self.mode, "version": self.version, "platform": self.platform}


@dataclass(frozen=True)
class DeviceAuth:
    id: str
    public_key: str
    signature: str
    signed_at: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "publicKey": self.public_key,
            "signature": self.signature,
            "signedAt": self.signed_at,
        }


def build_device_auth_payload(
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: Sequence[str],
    signed_at_ms: int,
    token: Optional[str],
) -> str:
    """签名载荷：字段顺序与分隔符是与网关的约定，不可调整。"""
    return "|".join([
        DEVICE_AUTH_VERSION,
        device_id,
        client_id,
        client_mode,
        role,
        ",".join(scopes),
        str(signed_at_ms),
        token or "",
    ])


@dataclass(frozen=True)
class ConnectParams:
    client: ClientInfo
    role: str
    scopes: Sequence[str]
    token: Optional[str]
    device: Optional[DeviceAuth] = None
    min_protocol: int = PROTOCOL_VERSION
    max_protocol: int = PROTOCOL_VERSION
    caps: Sequence[str] = field(default_factory=tuple)
    commands: Sequence[str] = field(default_factory=tuple)

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "minProtocol": self.min_protocol,
            "maxProtocol": self.max_protocol,
            "client": self.client.to_dict(),
            "caps": list(self.caps),
            "commands": list(self.commands),
            "role": self.role,
            "scopes": list(self.scopes),
        }
        if self.device is not None:
            params["device"] = self.device.to_dict()
        if self.token:
            params["auth"] = {"token": self.token}
        return params
