"""
clawlink.client
命令行客户端：连接网关、完成认证、执行一条命令并以 JSON 打印结果。

每次进程调用只执行一条命令；send 会等待对应 run 的生命周期结束事件。
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

from .config import GatewayConfig, read_gateway_token
from .errors import EXIT_OK, EXIT_OP, EXIT_USAGE, GatewayError
from .session import GatewaySession, Opener, connect_and_authenticate

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20

# 命令 -> 网关方法；send 单独处理
METHODS = {
    "status": "status",
    "sessions": "sessions.list",
    "inject": "chat.inject",
    "history": "chat.history",
    "abort": "chat.abort",
    "cron-list": "cron.list",
    "cron-run": "cron.run",
}


class UsageParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def session_key(value: str) -> str:
    if not value.startswith("agent:") or len(value.split(":")) < 3:
        raise argparse.ArgumentTypeError(
            f"Invalid session key format. Expected agent:{{id}}:{{session}}, got: {value}"
        )
    return value


def positive_int(value: str) -> int:
    try:
        n = int(value, 10)
    except ValueError:
        n = 0
    if n < 1:
        raise argparse.ArgumentTypeError("limit must be a positive integer")
    return n


def build_parser() -> argparse.ArgumentParser:
    ap = UsageParser(prog="clawlink", description="Call an OpenClaw gateway from the command line.")
    ap.add_argument("--host", default=None, help="gateway host (env OPENCLAW_HOST, default 127.0.0.1)")
    ap.add_argument("--port", type=int, default=None, help="gateway port (env OPENCLAW_PORT, default 18789)")
    ap.add_argument("--config", default=None, help="path to openclaw.json holding gateway.auth.token")
    ap.add_argument("--no-device", action="store_true", help="authenticate with the gateway token only")
    ap.add_argument("-v", "--verbose", action="store_true")

    sub = ap.add_subparsers(dest="command", required=True, metavar="command")
    sub.add_parser("status")
    sub.add_parser("sessions")

    p = sub.add_parser("send", help='send <sessionKey> "message"')
    p.add_argument("session_key", type=session_key)
    p.add_argument("message")

    p = sub.add_parser("inject", help='inject <sessionKey> "text" ["Label"]')
    p.add_argument("session_key", type=session_key)
    p.add_argument("message")
    p.add_argument("label", nargs="?")

    p = sub.add_parser("history", help="history <sessionKey> [limit]")
    p.add_argument("session_key", type=session_key)
    p.add_argument("limit", nargs="?", type=positive_int, default=HISTORY_LIMIT)

    p = sub.add_parser("abort", help="abort <sessionKey>")
    p.add_argument("session_key", type=session_key)

    sub.add_parser("cron-list")
    p = sub.add_parser("cron-run", help="cron-run <jobId>")
    p.add_argument("job_id")
    return ap


def build_request(args: argparse.Namespace) -> Tuple[str, Dict[str, Any]]:
    command = args.command
    if command == "inject":
        params = {"sessionKey": args.session_key, "message": args.message}
        if args.label is not None:
            params["label"] = args.label
    elif command == "history":
        params = {"sessionKey": args.session_key, "limit": args.limit}
    elif command == "abort":
        params = {"sessionKey": args.session_key}
    elif command == "cron-run":
        params = {"jobId": args.job_id}
    else:
        params = {}
    return METHODS[command], params


async def run_command(session: GatewaySession, args: argparse.Namespace) -> Any:
    if args.command == "send":
        return await session.send_and_wait({"sessionKey": args.session_key, "message": args.message})
    method, params = build_request(args)
    return await session.call(method, params)


async def _run(config: GatewayConfig, args: argparse.Namespace, opener: Optional[Opener] = None) -> Any:
    async with await connect_and_authenticate(config, opener=opener) as session:
        return await run_command(session, args)


async def _main(config: GatewayConfig, args: argparse.Namespace, opener: Optional[Opener] = None) -> int:
    loop = asyncio.get_running_loop()
    task = loop.create_task(_run(config, args, opener))
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except (NotImplementedError, RuntimeError):
            # Windows 事件循环不支持信号处理器
            logger.debug("signal handler for %s unavailable", sig)

    try:
        result = await task
    except asyncio.CancelledError:
        print("Error: Interrupted", file=sys.stderr)
        return EXIT_OP
    except GatewayError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[clawlink] %(levelname)s %(name)s: %(message)s",
    )

    overrides: Dict[str, Any] = {"use_device_identity": not args.no_device}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    config = GatewayConfig.from_env(**overrides)

    try:
        config.token = read_gateway_token(args.config)
    except GatewayError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    return asyncio.run(_main(config, args))


if __name__ == "__main__":
    sys.exit(main())
