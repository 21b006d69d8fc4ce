"""
clawlink.handshake
握手：等待 connect.challenge → 签名 connect 请求 → 缓存网关签发的设备 token。

缓存 token 被判定过期时删除缓存并改用外部网关 token 重试一次，仅当首次尝试确实使用了缓存 token。
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Any, Optional

from .channel import CallTable
from .config import GatewayConfig
from .crypto import sign
from .errors import (
    AuthError,
    CallTimeout,
    ConnectionClosed,
    ConnectionFailed,
    RemoteError,
    StaleDeviceToken,
    describe_error,
)
from .identity import DeviceIdentity, IdentityStore
from .protocol import (
    METHOD_CONNECT,
    ChallengeEvent,
    ClientInfo,
    ConnectParams,
    DeviceAuth,
    build_device_auth_payload,
    is_stale_device_token,
)
from .tokens import TokenCache

logger = logging.getLogger(__name__)


class HandshakeState(enum.Enum):
    CONNECTING = "connecting"
    CHALLENGE_RECEIVED = "challenge_received"
    ATTEMPTING_AUTH = "attempting_auth"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class HandshakeController:
    def __init__(
        self,
        config: GatewayConfig,
        identity_store: Optional[IdentityStore] = None,
        token_cache: Optional[TokenCache] = None,
        client: Optional[ClientInfo] = None,
    ):
        self.config = config
        self.client = client or ClientInfo()
        self.identity_store: Optional[IdentityStore] = None
        self.token_cache: Optional[TokenCache] = None
        if config.use_device_identity:
            self.identity_store = identity_store or IdentityStore(config.identity_path)
            self.token_cache = token_cache or TokenCache(config.tokens_path)
        self.state = HandshakeState.CONNECTING
        self.nonce: Optional[str] = None
        self.hello: Any = None
        self.attempts = 0
        self._challenge: Optional[asyncio.Future] = None

    @property
    def authenticated(self) -> bool:
        return self.state is HandshakeState.AUTHENTICATED

    def _challenge_future(self) -> asyncio.Future:
        if self._challenge is None:
            self._challenge = asyncio.get_running_loop().create_future()
        return self._challenge

    def on_challenge(self, event: ChallengeEvent) -> None:
        fut = self._challenge_future()
        if self.state is not HandshakeState.CONNECTING or fut.done():
            logger.debug("ignoring repeated connect.challenge")
            return
        self.nonce = event.nonce
        self.state = HandshakeState.CHALLENGE_RECEIVED
        fut.set_result(event)

    def on_closed(self) -> None:
        if self.state is not HandshakeState.CONNECTING:
            return
        self.state = HandshakeState.FAILED
        fut = self._challenge_future()
        if not fut.done():
            fut.set_exception(ConnectionFailed("Connection closed before authentication"))

    async def wait_for_challenge(self, timeout: float) -> ChallengeEvent:
        try:
            return await asyncio.wait_for(self._challenge_future(), timeout)
        except asyncio.TimeoutError:
            self.state = HandshakeState.FAILED
            raise ConnectionFailed(f"Connection to {self.config.url} timed out") from None

    def build_connect_params(self, identity: Optional[DeviceIdentity], token: Optional[str]) -> ConnectParams:
        scopes = list(self.config.scopes)
        device = None
        if identity is not None:
            signed_at = int(time.time() * 1000)
            payload = build_device_auth_payload(
                device_id=identity.device_id,
                client_id=self.client.id,
                client_mode=self.client.mode,
                role=self.config.role,
                scopes=scopes,
                signed_at_ms=signed_at,
                token=token,
            )
            device = DeviceAuth(
                id=identity.device_id,
                public_key=identity.public_key_b64url,
                signature=sign(identity.private_key, payload),
                signed_at=signed_at,
            )
        return ConnectParams(
            client=self.client,
            role=self.config.role,
            scopes=tuple(scopes),
            token=token,
            device=device,
        )

    async def _attempt(self, calls: CallTable, identity: Optional[DeviceIdentity], token: Optional[str]) -> Any:
        self.attempts += 1
        params = self.build_connect_params(identity, token)
        try:
            return await calls.call(
                METHOD_CONNECT, params.to_params(), request_id=f"connect-{self.attempts}"
            )
        except ConnectionClosed as e:
            self.state = HandshakeState.FAILED
            raise ConnectionFailed("Connection closed before authentication") from e
        except CallTimeout as e:
            self.state = HandshakeState.FAILED
            raise AuthError(f"Authentication failed: {e}") from e

    def _fail(self, detail: Any, stale: bool = False) -> AuthError:
        self.state = HandshakeState.FAILED
        cls = StaleDeviceToken if stale else AuthError
        return cls(f"Authentication failed: {describe_error(detail)}")

    async def authenticate(self, calls: CallTable) -> Any:
        if self.state is not HandshakeState.CHALLENGE_RECEIVED:
            raise AuthError(f"cannot authenticate in state {self.state.value}")
        self.state = HandshakeState.ATTEMPTING_AUTH

        try:
            identity = self.identity_store.get_identity() if self.identity_store is not None else None
        except OSError as e:
            self.state = HandshakeState.FAILED
            raise AuthError(f"Cannot access device identity: {e}") from e
        cached = None
        if identity is not None and self.token_cache is not None:
            cached = self.token_cache.load(identity.device_id, self.config.role)
        token = cached.token if cached is not None else self.config.token

        try:
            hello = await self._attempt(calls, identity, token)
        except RemoteError as e:
            if cached is None or not is_stale_device_token(e.detail):
                raise self._fail(e.detail) from e
            logger.warning("cached device token was rejected, retrying with gateway token")
            try:
                self.token_cache.clear(identity.device_id, self.config.role)
            except OSError as clear_err:
                self.state = HandshakeState.FAILED
                raise AuthError(f"Cannot clear device token: {clear_err}") from clear_err
            try:
                hello = await self._attempt(calls, identity, self.config.token)
            except RemoteError as retry_err:
                raise self._fail(
                    retry_err.detail, stale=is_stale_device_token(retry_err.detail)
                ) from retry_err

        if hello is not None and not isinstance(hello, dict):
            self.state = HandshakeState.FAILED
            raise AuthError("Authentication failed: malformed connect response")
        self._remember_token(identity, hello or {})
        self.hello = hello
        self.state = HandshakeState.AUTHENTICATED
        logger.debug("authenticated as %s", self.config.role)
        return hello

    def _remember_token(self, identity: Optional[DeviceIdentity], hello: dict) -> None:
        auth = hello.get("auth")
        if identity is None or self.token_cache is None or not isinstance(auth, dict):
            return
        token = auth.get("deviceToken")
        if not isinstance(token, str) or not token:
            return
        scopes = auth.get("scopes")
        if not isinstance(scopes, list):
            scopes = list(self.config.scopes)
        try:
            self.token_cache.store(identity.device_id, self.config.role, token, scopes)
        except OSError as e:
            self.state = HandshakeState.FAILED
            raise AuthError(f"Cannot store device token: {e}") from e
