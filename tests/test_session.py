import asyncio

import pytest

from fakes import FakeGateway, FakeWebSocket, lifecycle

from clawlink.config import GatewayConfig
from clawlink.crypto import base64url_decode, verify
from clawlink.errors import AuthError, ConnectionClosed, ConnectionFailed, StaleDeviceToken
from clawlink.handshake import HandshakeState
from clawlink.identity import IdentityStore
from clawlink.protocol import build_device_auth_payload
from clawlink.session import connect_and_authenticate
from clawlink.tokens import TokenCache
from clawlink.transport import Connection

from cryptography.hazmat.primitives.asymmetric import ed25519


def _config(tmp_path, **overrides):
    cfg = GatewayConfig(
        token="gw-token",
        scopes=["operator.read"],
        identity_path=tmp_path / "identity" / "device.json",
        tokens_path=tmp_path / "identity" / "device-auth.json",
        connect_timeout=1.0,
        call_timeout=1.0,
        send_timeout=1.0,
    )
    for name, value in overrides.items():
        setattr(cfg, name, value)
    return cfg


def _stale(params):
    return False, {"code": "DEVICE_TOKEN_MISMATCH", "message": "device token mismatch"}


def test_connect_caches_token_and_calls_status(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway(nonce="abc")
    gw.on("connect", lambda params: (True, {"type": "hello-ok", "auth": {"deviceToken": "tok1", "role": "operator"}}))
    gw.on("status", lambda params: (True, {"ok": True, "uptime": 5}))

    async def scenario():
        session = await connect_and_authenticate(config, opener=gw.open)
        async with session:
            assert session.authenticated
            assert session.handshake.nonce == "abc"
            assert await session.call("status", {}) == {"ok": True, "uptime": 5}
        assert gw.ws.closed

    asyncio.run(scenario())

    connect = gw.requests_for("connect")[0]
    params = connect["params"]
    assert params["role"] == "operator"
    assert params["scopes"] == ["operator.read"]
    assert params["auth"] == {"token": "gw-token"}
    assert gw.requests_for("status")[0]["id"] == "1"

    identity = IdentityStore(config.identity_path).get_identity()
    device = params["device"]
    assert device["id"] == identity.device_id
    public_key = ed25519.Ed25519PublicKey.from_public_bytes(base64url_decode(device["publicKey"]))
    payload = build_device_auth_payload(
        identity.device_id, "gateway-client", "backend", "operator", ["operator.read"], device["signedAt"], "gw-token"
    )
    assert verify(public_key, payload, device["signature"])

    cached = TokenCache(config.tokens_path).load(identity.device_id, "operator")
    assert cached.token == "tok1"


def test_cached_token_is_preferred(tmp_path):
    config = _config(tmp_path)
    identity = IdentityStore(config.identity_path).get_identity()
    TokenCache(config.tokens_path).store(identity.device_id, "operator", "cached-tok", ["operator.read"])
    gw = FakeGateway()

    async def scenario():
        async with await connect_and_authenticate(config, opener=gw.open):
            pass

    asyncio.run(scenario())
    assert gw.requests_for("connect")[0]["params"]["auth"] == {"token": "cached-tok"}


def test_stale_cached_token_retries_once_with_gateway_token(tmp_path):
    config = _config(tmp_path)
    identity = IdentityStore(config.identity_path).get_identity()
    cache = TokenCache(config.tokens_path)
    cache.store(identity.device_id, "operator", "old-tok", ["operator.read"])
    seen_cache = []

    def connect(params):
        if params["auth"]["token"] == "old-tok":
            return _stale(params)
        seen_cache.append(cache.load(identity.device_id, "operator"))
        return True, {"auth": {"deviceToken": "new-tok"}}

    gw = FakeGateway()
    gw.on("connect", connect)

    async def scenario():
        session = await connect_and_authenticate(config, opener=gw.open)
        async with session:
            assert session.handshake.attempts == 2

    asyncio.run(scenario())

    tokens = [r["params"]["auth"]["token"] for r in gw.requests_for("connect")]
    assert tokens == ["old-tok", "gw-token"]
    assert [r["id"] for r in gw.requests_for("connect")] == ["connect-1", "connect-2"]
    assert seen_cache == [None]
    assert cache.load(identity.device_id, "operator").token == "new-tok"


def test_second_stale_rejection_is_terminal(tmp_path):
    config = _config(tmp_path)
    identity = IdentityStore(config.identity_path).get_identity()
    TokenCache(config.tokens_path).store(identity.device_id, "operator", "old-tok")
    gw = FakeGateway()
    gw.on("connect", _stale)

    async def scenario():
        with pytest.raises(StaleDeviceToken):
            await connect_and_authenticate(config, opener=gw.open)

    asyncio.run(scenario())
    assert len(gw.requests_for("connect")) == 2
    assert gw.ws.closed


def test_no_retry_without_cached_token(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway()
    gw.on("connect", _stale)

    async def scenario():
        with pytest.raises(AuthError) as excinfo:
            await connect_and_authenticate(config, opener=gw.open)
        assert not isinstance(excinfo.value, ConnectionFailed)

    asyncio.run(scenario())
    assert len(gw.requests_for("connect")) == 1


def test_rejected_token_is_auth_error(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway()
    gw.on("connect", lambda params: (False, {"code": "UNAUTHORIZED", "message": "gateway token mismatch"}))

    async def scenario():
        with pytest.raises(AuthError) as excinfo:
            await connect_and_authenticate(config, opener=gw.open)
        assert "gateway token mismatch" in str(excinfo.value)
        assert excinfo.value.exit_code == 2

    asyncio.run(scenario())


def test_missing_challenge_is_connection_failure(tmp_path):
    config = _config(tmp_path, connect_timeout=0.1)
    gw = FakeGateway(send_challenge=False)

    async def scenario():
        with pytest.raises(ConnectionFailed) as excinfo:
            await connect_and_authenticate(config, opener=gw.open)
        assert "timed out" in str(excinfo.value)
        assert excinfo.value.exit_code == 1

    asyncio.run(scenario())
    assert gw.requests == []


def test_close_before_challenge_is_connection_failure(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway(send_challenge=False)

    async def opener(url):
        conn = await gw.open(url)
        gw.ws.drop()
        return conn

    async def scenario():
        with pytest.raises(ConnectionFailed):
            await connect_and_authenticate(config, opener=opener)

    asyncio.run(scenario())


def test_close_while_authenticating_is_connection_failure(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway()

    def connect(params):
        gw.ws.drop()
        return None

    gw.on("connect", connect)

    async def scenario():
        with pytest.raises(ConnectionFailed) as excinfo:
            await connect_and_authenticate(config, opener=gw.open)
        assert "before authentication" in str(excinfo.value)

    asyncio.run(scenario())


def test_token_only_mode_sends_no_device(tmp_path):
    config = _config(tmp_path, use_device_identity=False)
    gw = FakeGateway()
    gw.on("connect", lambda params: (True, {"auth": {"deviceToken": "ignored"}}))

    async def scenario():
        session = await connect_and_authenticate(config, opener=gw.open)
        async with session:
            assert session.handshake.state is HandshakeState.AUTHENTICATED

    asyncio.run(scenario())
    params = gw.requests_for("connect")[0]["params"]
    assert "device" not in params
    assert params["auth"] == {"token": "gw-token"}
    assert not config.tokens_path.exists()
    assert not config.identity_path.exists()


def test_malformed_frames_are_dropped(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway()

    def status(params):
        gw.ws.push("this is not json")
        gw.ws.push('{"type": "res"}')
        return True, {"fine": True}

    gw.on("status", status)

    async def scenario():
        async with await connect_and_authenticate(config, opener=gw.open) as session:
            assert await session.call("status") == {"fine": True}

    asyncio.run(scenario())


def test_send_waits_for_matching_lifecycle_end(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway()

    def chat_send(params):
        gw.ws.push({"type": "res", "id": gw.requests[-1]["id"], "ok": True, "payload": {"runId": "r1"}})
        gw.ws.push(lifecycle("r0", "end"))
        gw.ws.push(lifecycle("r1", "start"))
        gw.ws.push(lifecycle("r1", "end"))
        return None

    gw.on("chat.send", chat_send)

    async def scenario():
        async with await connect_and_authenticate(config, opener=gw.open) as session:
            result = await session.send_and_wait({"sessionKey": "agent:main:main", "message": "hi"})
        assert result == {"runId": "r1", "status": "completed"}

    asyncio.run(scenario())
    params = gw.requests_for("chat.send")[0]["params"]
    assert params["idempotencyKey"]


def test_send_times_out_softly(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway()
    gw.on("chat.send", lambda params: (True, {"runId": "r1"}))

    async def scenario():
        async with await connect_and_authenticate(config, opener=gw.open) as session:
            result = await session.call("chat.send", {"sessionKey": "agent:main:main", "message": "hi"})
            assert result == {"runId": "r1"}
            return await session.await_completion("r1", 0.5)

    assert asyncio.run(scenario()) == {"runId": "r1", "status": "timeout"}


def test_connection_loss_rejects_pending_work(tmp_path):
    config = _config(tmp_path, call_timeout=5.0)
    gw = FakeGateway()

    async def scenario():
        session = await connect_and_authenticate(config, opener=gw.open)
        call = asyncio.ensure_future(session.call("status"))
        wait = asyncio.ensure_future(session.await_completion("r1", 5.0))
        await asyncio.sleep(0.01)

        gw.ws.drop()
        with pytest.raises(ConnectionClosed):
            await call
        with pytest.raises(ConnectionClosed):
            await wait
        await session.close()

    asyncio.run(scenario())


def test_close_rejects_pending_calls(tmp_path):
    config = _config(tmp_path, call_timeout=5.0)
    gw = FakeGateway()

    async def scenario():
        session = await connect_and_authenticate(config, opener=gw.open)
        call = asyncio.ensure_future(session.call("status"))
        await asyncio.sleep(0.01)
        await session.close("Interrupted")
        with pytest.raises(ConnectionClosed):
            await call
        with pytest.raises(ConnectionClosed):
            await session.call("status")

    asyncio.run(scenario())


class ReadOnlyTokenCache(TokenCache):
    def store(self, device_id, role, token, scopes=()):
        raise PermissionError(13, "Permission denied", str(self.path))


class UnreadableIdentityStore(IdentityStore):
    def get_identity(self):
        raise PermissionError(13, "Permission denied", str(self.path))


def _other_tasks():
    return [t for t in asyncio.all_tasks() if t is not asyncio.current_task() and not t.done()]


def test_unwritable_token_cache_fails_auth_and_closes(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway()
    gw.on("connect", lambda params: (True, {"auth": {"deviceToken": "tok1"}}))

    async def scenario():
        with pytest.raises(AuthError) as excinfo:
            await connect_and_authenticate(
                config, token_cache=ReadOnlyTokenCache(config.tokens_path), opener=gw.open
            )
        assert "Permission denied" in str(excinfo.value)
        assert _other_tasks() == []

    asyncio.run(scenario())
    assert gw.ws.closed


def test_unreadable_identity_fails_auth_and_closes(tmp_path):
    config = _config(tmp_path)
    gw = FakeGateway()

    async def scenario():
        with pytest.raises(AuthError):
            await connect_and_authenticate(
                config, identity_store=UnreadableIdentityStore(config.identity_path), opener=gw.open
            )
        assert _other_tasks() == []

    asyncio.run(scenario())
    assert gw.ws.closed
    assert gw.requests == []


class ExplodingSocket(FakeWebSocket):
    async def _frames(self):
        raise RuntimeError("reader exploded")
        yield


def test_reader_failure_is_reported_on_close(tmp_path, caplog):
    config = _config(tmp_path)
    gw = FakeGateway()

    async def opener(url):
        gw.ws = ExplodingSocket(gw)
        return Connection(gw.ws, url)

    async def scenario():
        with pytest.raises(ConnectionFailed):
            await connect_and_authenticate(config, opener=opener)

    with caplog.at_level("WARNING", logger="clawlink.session"):
        asyncio.run(scenario())
    assert "reader exploded" in caplog.text
    assert gw.ws.closed
