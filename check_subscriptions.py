#!/usr/bin/env python3
"""Check entitlement drift for all users, optionally repairing it."""

import argparse
import asyncio

from tigube_api.db.database import async_session_maker
from tigube_api.services.entitlement_store import EntitlementStore
from tigube_api.services.sync_engine import SyncEngine


async def check_subscriptions(repair: bool = False) -> int:
    """Print each user's effective tier and drift. Returns the drift count."""
    async with async_session_maker() as session:
        store = EntitlementStore(session)
        engine = SyncEngine(store)

        users = await store.list_users_with_active_plan()
        drift = {entry.user_id: entry for entry in await engine.drift_report()}

        print("=" * 80)
        print("User Entitlement Status")
        print("=" * 80)
        print(f"{'Email':<40} {'Active plan':<14} {'Cached tier':<14} {'Drift':<8}")
        print("-" * 80)

        for user, active_plan in users:
            entry = drift.get(str(user.id))
            print(
                f"{user.email:<40} {active_plan or 'basic':<14} "
                f"{user.plan_tier or 'unsynced':<14} {'yes' if entry else 'no':<8}"
            )
            if entry:
                print(f"    mismatched: {', '.join(entry.mismatched_fields)}")

        print("=" * 80)
        print(f"\nTotal users: {len(users)}")
        print(f"Users with drift: {len(drift)}")

        if repair and drift:
            result = await engine.sync_all_users()
            print(f"\nRepaired: {result.synced_successfully}/{result.total_users} synced, {result.failed_syncs} failed")
            for error in result.errors:
                print(f"  {error.user_id}: {error.error}")

        return len(drift)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--repair",
        action="store_true",
        help="Run a bulk sync when drift is found",
    )
    args = parser.parse_args()
    asyncio.run(check_subscriptions(repair=args.repair))


if __name__ == "__main__":
    main()
