"""Command line front-end for tailing channels and uploading files."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TextIO

import aiohttp

from .api_client import ApiError, ChatApi
from .auth import CredentialError, EnvTokenSource
from .config import ClientConfig, load_client_config_from_env
from .models import Message
from .profile import ProfileDraft
from .session import ChannelSession
from .uploads import UploadFailed, UploadSaga, UploadSource, send_attachment

logger = logging.getLogger(__name__)

_EXPECTED_ERRORS = (ApiError, CredentialError, UploadFailed, aiohttp.ClientError, OSError, ValueError)


def format_message(message: Message) -> str:
    return f"[{message.created_at}] {message.display_name}: {message.text}"


def _write(output: TextIO, line: str) -> None:
    output.write(line + "\n")
    output.flush()


async def _run_tail(config: ClientConfig, args: argparse.Namespace, output: TextIO) -> int:
    token_source = EnvTokenSource(args.token_env)
    done = asyncio.Event()
    printed = 0
    snapshot_printed = False

    def emit(message: Message) -> None:
        nonlocal printed
        _write(output, format_message(message))
        printed += 1
        if args.max_messages is not None and printed >= args.max_messages:
            done.set()

    def on_live(message: Message) -> None:
        if snapshot_printed and not done.is_set():
            emit(message)

    def on_state(state: str) -> None:
        logger.info("connection state: %s", state)

    async with ChatApi(config.api_base, token_source, timeout_s=config.request_timeout_s) as api:
        async with ChannelSession(
            api,
            config.ws_base,
            token_source,
            policy=config.backoff,
            on_message=on_live,
            on_state_change=on_state,
        ) as session:
            await session.select(args.channel)
            await session.wait_loaded()
            for message in session.messages[-args.history :] if args.history else ():
                if done.is_set():
                    break
                emit(message)
            snapshot_printed = True
            try:
                await asyncio.wait_for(done.wait(), timeout=args.duration)
            except asyncio.TimeoutError:
                pass
    return 0


async def _run_send(config: ClientConfig, args: argparse.Namespace, output: TextIO) -> int:
    async with ChatApi(config.api_base, EnvTokenSource(args.token_env), timeout_s=config.request_timeout_s) as api:
        message = await api.post_message(args.channel, args.text, args.parent)
    _write(output, message.id)
    return 0


async def _run_attach(config: ClientConfig, args: argparse.Namespace, output: TextIO) -> int:
    source = await asyncio.to_thread(UploadSource.from_path, args.path, args.content_type)
    async with ChatApi(config.api_base, EnvTokenSource(args.token_env), timeout_s=config.request_timeout_s) as api:
        result, message = await send_attachment(UploadSaga(api), api, source, args.workspace, args.channel)
    _write(output, f"{result.record.id} {message.id}")
    return 0


async def _run_avatar(config: ClientConfig, args: argparse.Namespace, output: TextIO) -> int:
    source = await asyncio.to_thread(UploadSource.from_path, args.path, args.content_type)
    async with ChatApi(config.api_base, EnvTokenSource(args.token_env), timeout_s=config.request_timeout_s) as api:
        draft = ProfileDraft(api)
        await draft.load()
        if args.display_name is not None:
            draft.display_name = args.display_name
        result = await draft.upload_avatar(source)
        await draft.save()
    _write(output, result.record.id)
    return 0


_COMMANDS = {
    "tail": _run_tail,
    "send": _run_send,
    "attach": _run_attach,
    "avatar": _run_avatar,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatsync", description="Chat channel client")
    parser.add_argument("--api-base", default=None, help="REST base URL (default: $CHATSYNC_API_BASE)")
    parser.add_argument("--ws-base", default=None, help="Event stream base URL (default: derived from API base)")
    parser.add_argument(
        "--token-env",
        default="CHATSYNC_TOKEN",
        help="Environment variable holding the bearer token; re-read for every request",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level for diagnostics on stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    tail_parser = subparsers.add_parser("tail", help="Print a channel's history and follow new messages")
    tail_parser.add_argument("channel", help="Channel id")
    tail_parser.add_argument("--history", type=int, default=20, help="How many snapshot messages to print")
    tail_parser.add_argument("--max-messages", type=int, default=None, help="Stop after printing this many")
    tail_parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")

    send_parser = subparsers.add_parser("send", help="Post a message")
    send_parser.add_argument("channel", help="Channel id")
    send_parser.add_argument("text", help="Message body")
    send_parser.add_argument("--parent", default=None, help="Reply to this message id")

    attach_parser = subparsers.add_parser("attach", help="Upload a file and post a link to it")
    attach_parser.add_argument("workspace", help="Workspace id")
    attach_parser.add_argument("channel", help="Channel id")
    attach_parser.add_argument("path", help="File to upload")
    attach_parser.add_argument("--content-type", default=None, help="Override the guessed content type")

    avatar_parser = subparsers.add_parser("avatar", help="Upload and save a new profile avatar")
    avatar_parser.add_argument("path", help="Image to upload")
    avatar_parser.add_argument("--content-type", default=None, help="Override the guessed content type")
    avatar_parser.add_argument("--display-name", default=None, help="Also change the display name")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = load_client_config_from_env(api_base=args.api_base, ws_base=args.ws_base)
        return asyncio.run(_COMMANDS[args.command](config, args, output or sys.stdout))
    except KeyboardInterrupt:
        return 130
    except _EXPECTED_ERRORS as exc:
        print(f"chatsync: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
