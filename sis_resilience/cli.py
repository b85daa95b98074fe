"""CLI entry point for SIS Resilience."""

import argparse
import asyncio
import json
from typing import List, Optional

from .config.settings import ResilienceSettings
from .reliability.dead_letter_queue import DeadLetterQueue
from .reliability.storage import JsonFileStorage


def _open_queue(path: Optional[str]) -> DeadLetterQueue:
    config = ResilienceSettings.from_env().dead_letter_queue_config()
    if path:
        config.persistence_path = path
    return DeadLetterQueue(config, storage=JsonFileStorage(config.persistence_path))


async def show_stats(path: Optional[str], as_json: bool = False):
    """Print statistics for a persisted dead-letter queue."""
    queue = _open_queue(path)
    await queue.restore()
    stats = queue.get_stats()

    if as_json:
        print(json.dumps({
            "total_items": stats.total_items,
            "pending_items": stats.pending_items,
            "processed_items": stats.processed_items,
            "permanently_failed_items": stats.permanently_failed_items,
            "average_retry_count": stats.average_retry_count,
            "oldest_item": stats.oldest_item.isoformat() if stats.oldest_item else None,
            "queue_utilization": stats.queue_utilization,
        }, indent=2))
        return

    print(f"Dead-letter queue: {queue.config.persistence_path}")
    print("-" * 50)
    print(f"Total items:        {stats.total_items}")
    print(f"Pending:            {stats.pending_items}")
    print(f"Processed:          {stats.processed_items}")
    print(f"Permanently failed: {stats.permanently_failed_items}")
    print(f"Avg retry count:    {stats.average_retry_count}")
    print(f"Oldest item:        {stats.oldest_item.isoformat() if stats.oldest_item else '-'}")
    print(f"Utilization:        {stats.queue_utilization}%")


async def list_items(path: Optional[str], operation_type: Optional[str] = None):
    """List items in a persisted dead-letter queue."""
    queue = _open_queue(path)
    await queue.restore()

    if operation_type:
        items = queue.get_operations_by_type(operation_type)
    else:
        items = queue.get_all_operations()

    if not items:
        print("No dead-letter items.")
        return

    for item in sorted(items, key=lambda op: op.timestamp):
        if item.processed_at:
            status = "processed"
        elif queue.is_permanently_failed(item):
            status = "failed"
        else:
            status = "pending"
        print(f"{item.operation_id}  {item.type}  retries={item.retry_count}  {status}")
        print(f"   {item.error.name}: {item.error.message}")
        if item.next_retry_at and status == "pending":
            print(f"   next retry at {item.next_retry_at.isoformat()}")


async def cleanup_items(path: Optional[str], max_age_hours: float):
    """Purge old processed and permanently failed items, then persist."""
    queue = _open_queue(path)
    await queue.restore()
    removed = await queue.cleanup(max_age_hours * 3600 * 1000)
    await queue.persist()
    print(f"Removed {removed} item(s).")


def main(argv: Optional[List[str]] = None):
    """Main CLI function."""
    parser = argparse.ArgumentParser(description="SIS Resilience CLI")
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    stats_parser = subparsers.add_parser('dlq-stats', help='Show dead-letter queue statistics')
    stats_parser.add_argument('--path', help='Persisted queue file (default from settings)')
    stats_parser.add_argument('--json', action='store_true', help='Print JSON')

    list_parser = subparsers.add_parser('dlq-list', help='List dead-letter items')
    list_parser.add_argument('--path', help='Persisted queue file (default from settings)')
    list_parser.add_argument('--type', dest='operation_type', help='Only items of this type')

    cleanup_parser = subparsers.add_parser('dlq-cleanup', help='Purge old finished items')
    cleanup_parser.add_argument('--path', help='Persisted queue file (default from settings)')
    cleanup_parser.add_argument('--max-age-hours', type=float, default=24.0,
                                help='Age threshold in hours (default 24)')

    args = parser.parse_args(argv)

    if args.command == 'dlq-stats':
        asyncio.run(show_stats(args.path, args.json))
    elif args.command == 'dlq-list':
        asyncio.run(list_items(args.path, args.operation_type))
    elif args.command == 'dlq-cleanup':
        asyncio.run(cleanup_items(args.path, args.max_age_hours))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
