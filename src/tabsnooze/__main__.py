"""Entry point: python -m tabsnooze <command>

- serve:             Daemon mode (periodic restoration)
- list:              Show snoozed items, soonest first
- export [FILE]:     Write the store as JSON (stdout by default)
- import FILE:       Merge a v1 or v2 JSON payload into the store
- recover:           Rebuild the store from the best backup
- check:             Run one restoration pass now
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from tabsnooze.config import SnoozeConfig, load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _usage() -> None:
    print("Usage: python -m tabsnooze [serve|list|export|import|recover|check]")
    print("  serve           Daemon mode with periodic restoration")
    print("  list            Show snoozed items")
    print("  export [FILE]   Export the store as JSON")
    print("  import FILE     Import a JSON payload")
    print("  recover         Restore the store from backup")
    print("  check           Run one restoration pass")


async def _list(config: SnoozeConfig) -> None:
    from tabsnooze.daemon import build_gateway

    gateway = build_gateway(config)
    try:
        for item in await gateway.list_items():
            when = datetime.fromtimestamp(item["popTime"] / 1000).strftime("%Y-%m-%d %H:%M")
            group = f" [{item['groupId']}]" if item.get("groupId") else ""
            print(f"{when}{group}  {item.get('title') or item['url']}")
    finally:
        await gateway.close()


async def _export(config: SnoozeConfig, target: str | None) -> None:
    from tabsnooze.daemon import build_gateway

    gateway = build_gateway(config)
    try:
        text = json.dumps(await gateway.export(), indent=2, ensure_ascii=False)
    finally:
        await gateway.close()
    if target:
        Path(target).write_text(text + "\n", encoding="utf-8")
    else:
        print(text)


async def _import(config: SnoozeConfig, source: str) -> int:
    from tabsnooze.daemon import build_gateway

    try:
        raw = json.loads(Path(source).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Cannot read {source}: {e}", file=sys.stderr)
        return 1

    gateway = build_gateway(config)
    try:
        result = await gateway.import_items(raw)
    finally:
        await gateway.close()
    if not result.success:
        print(f"Import failed: {result.error}", file=sys.stderr)
        return 1
    print(f"Imported {result.added_count} items")
    return 0


async def _recover(config: SnoozeConfig) -> int:
    from tabsnooze.daemon import build_gateway

    gateway = build_gateway(config)
    try:
        result = await gateway.recover()
    finally:
        await gateway.close()
    if not result.recovered:
        print("No usable backup; store reset to empty", file=sys.stderr)
        return 1
    suffix = " (sanitized)" if result.sanitized else ""
    print(f"Recovered {result.item_count} items from {result.source_key}{suffix}")
    return 0


async def _check(config: SnoozeConfig) -> None:
    from tabsnooze.daemon import build_gateway, build_restorer

    gateway = build_gateway(config)
    try:
        await gateway.init_storage()
        result = await build_restorer(config, gateway).pop_check()
    finally:
        await gateway.close()
    print(f"{result.count} due, {len(result.restored)} restored, {len(result.failed)} rescheduled")


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "serve"
    args = sys.argv[2:]

    config = load_config()
    _setup_logging(config.log_level)

    if cmd == "serve":
        from tabsnooze.daemon import SnoozeDaemon

        asyncio.run(SnoozeDaemon(config).run())
    elif cmd == "list":
        asyncio.run(_list(config))
    elif cmd == "export":
        asyncio.run(_export(config, args[0] if args else None))
    elif cmd == "import" and args:
        sys.exit(asyncio.run(_import(config, args[0])))
    elif cmd == "recover":
        sys.exit(asyncio.run(_recover(config)))
    elif cmd == "check":
        asyncio.run(_check(config))
    else:
        _usage()
        sys.exit(1)


if __name__ == "__main__":
    main()
