#!/usr/bin/env python3
"""
Разовый прогон очереди событий вне планировщика (cron, отладка).
"""
import asyncio
import json
import sys

from ga4_relay.api.deps import build_processor, get_event_store
from ga4_relay.core.config import get_relay_config
from ga4_relay.core.logging import configure_logging, set_run_id


async def main() -> int:
    configure_logging()
    set_run_id()
    result = await build_processor(get_event_store(), get_relay_config()).run(trigger="cli")
    print(json.dumps(result.as_dict(), indent=2))
    return 0 if result.status in ("completed", "empty", "skipped") else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
