#!/usr/bin/env python3
"""Operator CLI for the payment and mint queues"""

import argparse
import asyncio
import json
import signal
import sys

from tokenmint.config import settings
from tokenmint.core.orchestrator import MintingService, build_service
from tokenmint.core.queue import mint_processor, payment_processor
from tokenmint.db.repositories import SettingsRepository
from tokenmint.logging_config import setup_logging

RETUNABLE_KEYS = (
    payment_processor.BATCH_INTERVAL_KEY,
    payment_processor.BATCH_SIZE_KEY,
    payment_processor.CONFIRM_INTERVAL_KEY,
    mint_processor.BATCH_INTERVAL_KEY,
    mint_processor.MAX_BATCH_SIZE_KEY,
)


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cli_run(service: MintingService) -> None:
    """Run both queues until SIGINT/SIGTERM"""
    await service.start()
    print(f"🚀 Queues running (payment wallet {service.payment_queue.wallet.address}, "
          f"mint wallet {service.mint_queue.wallet.address})")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await stop_event.wait()
    print("🛑 Stopping queues...")
    await service.stop()


async def cli_stats(service: MintingService) -> None:
    print("💳 Payment queue")
    print_json(await service.get_payment_stats())
    print("\n🪙 Mint queue")
    print_json(await service.get_mint_stats())
    batches = await service.get_recent_batches(5)
    if batches:
        print("\nRecent batches:")
        for batch in batches:
            print(f" - {batch.batch_tx_hash} {batch.status.value:<9} {batch.mint_count:>3} mints "
                  f"(block {batch.block_number})")


async def cli_payment_status(service: MintingService, payment_id: str) -> None:
    item = await service.get_payment_status(payment_id)
    if item is None:
        print(f"❌ Payment {payment_id} not found")
        return
    print_json(item.to_dict())


async def cli_mint_status(service: MintingService, mint_id: str) -> None:
    status = await service.get_mint_status(mint_id)
    if status is None:
        print(f"❌ Queue item {mint_id} not found")
        return
    print_json(status.to_dict())


async def cli_set(service: MintingService, key: str, value: str) -> None:
    if key not in RETUNABLE_KEYS:
        print(f"❌ Unknown setting {key}; choose from {', '.join(RETUNABLE_KEYS)}")
        return
    if not value.isdigit() or int(value) <= 0:
        print(f"❌ {key} must be a positive integer")
        return
    async with service.session_factory() as session:
        async with session.begin():
            await SettingsRepository(session).set(key, value)
    print(f"✅ {key} = {value} (picked up on the next cycle)")


async def cli_reset_stuck(service: MintingService) -> None:
    payments = await service.payment_queue.recover_stuck()
    print(f"✅ Payments: {payments} re-queued")

    await service.mint_queue.allocator.initialize()
    summary = await service.mint_queue.recover_stuck()
    print(f"✅ Mints: {summary['completed']} completed, {summary['requeued']} re-queued, "
          f"{summary['skipped']} skipped")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tokenmint queue CLI")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the payment and mint queues")
    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("stats", help="Show queue statistics")

    payment_parser = subparsers.add_parser("payment-status", help="Show a payment")
    payment_parser.add_argument("id", help="Payment id")

    mint_parser = subparsers.add_parser("mint-status", help="Show a mint queue item")
    mint_parser.add_argument("id", help="Queue item id")

    set_parser = subparsers.add_parser("set", help="Change a live queue setting")
    set_parser.add_argument("key", help=f"One of: {', '.join(RETUNABLE_KEYS)}")
    set_parser.add_argument("value", help="Positive integer")

    subparsers.add_parser("reset-stuck", help="Reconcile payments and mints left in processing")

    return parser


async def cli_main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging()
    try:
        service = build_service(settings)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    try:
        await service.init_db()
        if args.command == "run":
            await cli_run(service)
        elif args.command == "init-db":
            print(f"✅ Tables ready at {settings.database_url}")
        elif args.command == "stats":
            await cli_stats(service)
        elif args.command == "payment-status":
            await cli_payment_status(service, args.id)
        elif args.command == "mint-status":
            await cli_mint_status(service, args.id)
        elif args.command == "set":
            await cli_set(service, args.key, args.value)
        elif args.command == "reset-stuck":
            await cli_reset_stuck(service)
    finally:
        await service.close()
    return 0


def main() -> None:
    sys.exit(asyncio.run(cli_main()))


if __name__ == "__main__":
    main()
