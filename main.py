"""circlelog: emit, search, read back and serve community-app logs."""

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser

from src.codecs import encode_structured
from src.config import load_config
from src.facade import build_facade
from src.models import Category
from src.read_api import render_entries


def build_parser() -> ArgumentParser:
    """Build the CLI argument parser."""
    parser = ArgumentParser(
        prog="circlelog",
        description="Emit, search and read back application log entries.",
    )
    parser.add_argument(
        "--output",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Serve the read endpoints over HTTP")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=5000)

    search = sub.add_parser("search", help="Relevance search in one category")
    search.add_argument("category", help="Category, e.g. ERROR")
    search.add_argument("term", help="Search term")
    search.add_argument("--start", type=int, help="Window start (epoch ms)")
    search.add_argument("--end", type=int, help="Window end (epoch ms)")
    search.add_argument("--limit", type=int, help="Max results")
    search.add_argument("--merge", action="store_true", help="Merge duplicate entries")

    read = sub.add_parser("read", help="Read back the local buffer of a category")
    read.add_argument("category")
    read.add_argument("--limit", type=int, help="Max entries (most recent)")

    reset = sub.add_parser("reset", help="Truncate a local buffer to its newest entries")
    reset.add_argument("category")
    reset.add_argument("--retain", type=int, default=0)

    emit = sub.add_parser("emit", help="Log one entry through the facade")
    emit.add_argument("category")
    emit.add_argument("messages", nargs="+")
    return parser


def _print_entries(entries, output: str) -> None:
    if output == "json":
        print(json.dumps([encode_structured(e, include_duplicates=True) for e in entries], indent=2))
    else:
        text = render_entries(entries)
        if text:
            print(text, end="")
    print(f"\n--- {len(entries)} entr{'y' if len(entries) == 1 else 'ies'} ---", file=sys.stderr)


async def run_command(args, facade) -> int:
    if args.command == "search":
        entries = await facade.search(args.category, args.term, args.start, args.end,
                                      args.limit, args.merge)
        _print_entries(entries, args.output)
    elif args.command == "read":
        entries = await facade.read_local(args.category, args.limit)
        _print_entries(entries, args.output)
    elif args.command == "reset":
        kept = await facade.reset_local(args.category, args.retain)
        print(f"Kept {len(kept)} entries in {Category.parse(args.category).value}")
    elif args.command == "emit":
        ok = await facade.log(args.category, *args.messages)
        if not ok:
            print("Error: entry was not accepted by every sink", file=sys.stderr)
            return 1
    return 0


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [circlelog] %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    args = build_parser().parse_args(argv)

    try:
        Category.parse(getattr(args, "category", "ERROR"))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        facade = build_facade(load_config())
        if args.command == "serve":
            from src.web import create_app

            create_app(facade).run(host=args.host, port=args.port)
            return 0
        return asyncio.run(run_command(args, facade))
    except Exception as exc:
        logging.getLogger("circlelog").exception("Command %s failed", args.command)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
