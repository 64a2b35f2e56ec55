from __future__ import annotations

import asyncio

from imagevault.core.logging import configure_logging
from imagevault.persistence.db import SessionLocal
from imagevault.services.ledger import SqlUsageLedger


async def reset() -> None:
    # Run from cron on the first day of each month; re-runs are no-ops.
    async with SessionLocal() as session:
        summary = await SqlUsageLedger().reset_monthly_usage(session)
        await session.commit()
        print(
            f"accounts_reset={summary.accounts_reset} "
            f"organizations_reset={summary.organizations_reset}"
        )


if __name__ == "__main__":
    configure_logging()
    asyncio.run(reset())
