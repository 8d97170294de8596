"""
Command-line interface for flowsync.

Usage:
    flowsync serve --port 3000 --batch-size 10 --batch-window-ms 100
    flowsync watch ws://localhost:3000/ws --workflow workflow.json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from flowsync.client.session import TransportSession
from flowsync.config import BatcherConfig, ServerConfig, SessionConfig
from flowsync.observability import configure_logging
from flowsync.protocol.codec import ProtocolError
from flowsync.protocol.schemas import MessageType
from flowsync.runtime.server import WorkflowServer


def _given(**options):
    """Drop options left unset on the command line so config-file defaults apply."""
    return {k: v for k, v in options.items() if v is not None}


async def _serve(args: argparse.Namespace) -> None:
    server = WorkflowServer(
        ServerConfig(host=args.host, port=args.port, path=args.path),
        BatcherConfig(
            **_given(batch_size=args.batch_size, batch_window_ms=args.batch_window_ms)
        ),
    )
    await server.start()
    try:
        await asyncio.Future()  # run forever
    finally:
        await server.stop()


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        asyncio.run(_serve(args))
    except KeyboardInterrupt:
        pass
    return 0


async def _watch(args: argparse.Namespace) -> int:
    session = TransportSession(
        SessionConfig(
            url=args.url,
            **_given(
                reconnect_delay_ms=args.reconnect_delay_ms,
                max_reconnect_attempts=args.max_reconnect_attempts,
            ),
        )
    )

    def print_changes(changed, snapshot):
        for entity_id in sorted(changed):
            state = snapshot.get(entity_id)
            if state is not None:
                print(f"{entity_id}: {state.status}")

    session.store.subscribe(print_changes)

    done = asyncio.Event()
    for event in (MessageType.COMPLETE, MessageType.ERROR, MessageType.CANCELLED):
        session.on(event, lambda message: done.set())

    await session.connect()
    try:
        if args.workflow:
            definition = json.loads(Path(args.workflow).read_text(encoding="utf-8"))
            await session.execute_workflow(definition["nodes"], definition.get("edges", []))
            await done.wait()
            print(json.dumps(session.store.get_stats(), indent=2))
        else:
            await asyncio.Future()
    finally:
        await session.disconnect()
    return 0


def cmd_watch(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_watch(args))
    except ConnectionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (ProtocolError, KeyError, json.JSONDecodeError) as e:
        print(f"Invalid workflow definition: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0


def main():
    parser = argparse.ArgumentParser(
        prog="flowsync",
        description="flowsync - real-time workflow execution event streaming",
    )
    parser.add_argument("--log-level", default="INFO", help="Log level")
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the workflow WebSocket server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=3000)
    serve.add_argument("--path", default="/ws")
    serve.add_argument("--batch-size", type=int, default=None)
    serve.add_argument("--batch-window-ms", type=int, default=None)
    serve.set_defaults(func=cmd_serve)

    watch = subparsers.add_parser("watch", help="Connect and print node state changes")
    watch.add_argument("url", help="Server WebSocket URL, e.g. ws://localhost:3000/ws")
    watch.add_argument("--workflow", help="JSON file with nodes/edges to execute")
    watch.add_argument("--reconnect-delay-ms", type=int, default=None)
    watch.add_argument("--max-reconnect-attempts", type=int, default=None)
    watch.set_defaults(func=cmd_watch)

    args = parser.parse_args()
    configure_logging(level=args.log_level, format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
