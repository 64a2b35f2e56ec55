from __future__ import annotations

import argparse
import asyncio
import sys

from imagevault.core.logging import configure_logging
from imagevault.persistence.db import SessionLocal
from imagevault.services.storage_accounts import sync_account_usage, sync_all_accounts_usage


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pull usage from storage providers into the local mirror")
    parser.add_argument("--account-id", default=None, help="Sync a single account instead of the pool")
    return parser


async def _sync(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        if args.account_id:
            account = await sync_account_usage(session, args.account_id)
            print(f"synced={account.id} storage_used={account.storage_used} status={account.status}")
            return 0
        outcomes = await sync_all_accounts_usage(session)
    failures = 0
    for outcome in outcomes:
        if outcome.ok:
            print(f"synced={outcome.account_identifier}")
        else:
            failures += 1
            print(f"failed={outcome.account_identifier} error={outcome.error}")
    print(f"accounts_synced={len(outcomes) - failures} accounts_failed={failures}")
    return 1 if failures else 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    return asyncio.run(_sync(args))


if __name__ == "__main__":
    sys.exit(main())
