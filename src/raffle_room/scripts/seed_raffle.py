"""Create the raffle table and make sure the single raffle record exists."""
from __future__ import annotations

import argparse
import asyncio
import sys

from raffle_room.core.errors import RaffleError
from raffle_room.core.logging import configure_logging
from raffle_room.core.settings import settings
from raffle_room.services.record_store import SqlRecordStore
from raffle_room.services.runtime import build_bus
from raffle_room.services.state_machine import Command, RaffleState, plan_transition


async def seed(record_id: int, reset: bool) -> None:
    store = SqlRecordStore()
    bus = None
    if settings.realtime_backend.lower() == "redis":
        # Live spectators on other processes hear about the reset.
        bus = build_bus("redis")
        store.add_listener(bus.publish_change)
    try:
        await store.create_schema()
        record = await store.ensure_record(record_id)
        print(f"[seed_raffle] raffle {record_id} is {record.state.value}")
        if reset and (record.state is not RaffleState.WAITING or record.winner is not None):
            record = await store.update_where(
                record_id, plan_transition(Command.RESET, record.state)
            )
            print(f"[seed_raffle] raffle {record_id} reset to {record.state.value}")
    finally:
        if bus is not None:
            await bus.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Ensure the raffle record exists")
    parser.add_argument(
        "--raffle-id",
        type=int,
        default=settings.raffle_id,
        help="Raffle record id (defaults to RAFFLE_ID)",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Put the raffle back into WAITING with no winner.",
    )
    args = parser.parse_args()

    configure_logging()
    try:
        asyncio.run(seed(args.raffle_id, args.reset))
    except RaffleError as exc:
        print(f"[seed_raffle] ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
