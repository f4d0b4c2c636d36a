from __future__ import annotations

import argparse
import asyncio
import json
import sys

from mailshield.services.queue.work_queue import WorkQueue, get_redis_pool


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect or replay dead-lettered work items")
    parser.add_argument("item_ids", nargs="*", help="Work item ids to move back to the main queue")
    parser.add_argument("--list", action="store_true", help="Print dead letters instead of replaying")
    parser.add_argument("--limit", type=int, default=50, help="Dead letters to print with --list")
    return parser


async def _run(args: argparse.Namespace) -> int:
    queue = WorkQueue(await get_redis_pool())
    if args.list or not args.item_ids:
        for envelope in await queue.dead_letters(args.limit):
            print(json.dumps(envelope, sort_keys=True))
        return 0
    missing = 0
    for item_id in args.item_ids:
        item = await queue.replay_dead_letter(item_id)
        if item is None:
            print(f"not_found item_id={item_id}", file=sys.stderr)
            missing += 1
        else:
            print(f"replayed item_id={item.id} tenant_id={item.tenant_id}")
    return 1 if missing else 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(_run(_build_parser().parse_args())))
