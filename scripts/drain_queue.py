from __future__ import annotations

import argparse
import asyncio
import json

from mailshield.core.logging import configure_logging
from mailshield.persistence.db import SessionLocal
from mailshield.services.queue.work_queue import get_redis_pool
from mailshield.services.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one budgeted drain of the work queue")
    parser.add_argument("--limit", type=int, default=None, help="Batch size (capped at the admin maximum)")
    return parser


async def drain(args: argparse.Namespace) -> None:
    configure_logging()
    runtime = build_runtime(redis=await get_redis_pool(), session_factory=SessionLocal)
    try:
        summary = await runtime.worker.run(limit=args.limit)
    finally:
        await runtime.aclose()
    print(json.dumps(summary.to_payload(), sort_keys=True))


if __name__ == "__main__":
    asyncio.run(drain(_build_parser().parse_args()))
