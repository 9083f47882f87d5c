#!/usr/bin/env python3
"""
Pair a device to a user account from the command line.

Usage:
    python3 scripts/pair_device.py <deviceId> <userEmail> [--name NAME]

Uses the same pairing rules as the API: a device owned by another
account is refused, re-pairing as the owner reactivates it.
"""

import argparse
import asyncio
import sys

from sqlalchemy import func, select

from apn_telemetry.database import close_database, get_db_session
from apn_telemetry.models import User
from apn_telemetry.services.device_service import DevicePairingError, pair_device


async def run(device_id: str, email: str, name: str | None) -> int:
    try:
        async with get_db_session() as db:
            result = await db.execute(
                select(User).where(func.lower(User.email) == email.lower())
            )
            user = result.scalar_one_or_none()
            if user is None:
                print(f"No user found with email {email}", file=sys.stderr)
                return 1

            try:
                device, created = await pair_device(db, user.id, device_id, name)
            except DevicePairingError as e:
                print(f"Cannot pair {device_id}: {e}", file=sys.stderr)
                return 2
            await db.commit()
    finally:
        await close_database()

    action = "Paired" if created else "Already paired"
    print(f"{action}: {device.device_id} ({device.name}) -> {user.email}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Pair a device to a user")
    parser.add_argument("device_id", help="Hardware device id, e.g. APN-00A1")
    parser.add_argument("email", help="Email of the account to pair with")
    parser.add_argument("--name", default=None, help="Display name for the device")
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args.device_id, args.email, args.name)))


if __name__ == "__main__":
    main()
