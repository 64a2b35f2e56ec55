from __future__ import annotations

import argparse
import asyncio
import sys

from imagevault.core.logging import configure_logging
from imagevault.persistence.db import SessionLocal
from imagevault.services.billing import PLAN_LIMITS, change_plan, get_or_create_billing


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or update an organization's billing record")
    parser.add_argument("--org", required=True, help="Organization identifier")
    parser.add_argument("--plan", default=None, choices=sorted(PLAN_LIMITS), help="Plan to approve")
    parser.add_argument("--approved-by", default=None, help="Operator approving the plan")
    parser.add_argument("--cycle", default=None, choices=["monthly", "annual"], help="Billing cycle")
    parser.add_argument("--notes", default=None, help="Free-form approval notes")
    return parser


async def _init(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        if args.plan:
            billing = await change_plan(
                session,
                args.org,
                args.plan,
                approved_by=args.approved_by,
                notes=args.notes,
                billing_cycle=args.cycle,
            )
        else:
            billing = await get_or_create_billing(session, args.org)
        print(
            f"org_id={billing.org_id} plan={billing.plan} status={billing.status} "
            f"storage_limit={billing.storage_limit} uploads_limit={billing.uploads_per_month_limit}"
        )
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    return asyncio.run(_init(args))


if __name__ == "__main__":
    sys.exit(main())
