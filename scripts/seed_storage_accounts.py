from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import select

from imagevault.core.config import GB, MB
from imagevault.core.logging import configure_logging
from imagevault.domain.models import StorageAccount
from imagevault.persistence.db import SessionLocal
from imagevault.services.storage_accounts import create_account


logger = logging.getLogger(__name__)

# Placeholder values copied from the sample .env are skipped.
_PLACEHOLDERS = {"your_cloud_name", "your_public_key", "your_client_id"}


@dataclass(frozen=True)
class SeedAccount:
    provider: str
    account_identifier: str
    credentials: dict[str, Any]
    storage_limit: int | None
    bandwidth_limit: int | None
    transformations_limit: int | None
    priority: int
    uploads_limit: int | None = None


def _indexed(env: Mapping[str, str], prefix: str, key: str):
    # Yield 1-based indexes while <PREFIX>_<n>_<KEY> is set.
    index = 1
    while env.get(f"{prefix}_{index}_{key}"):
        yield index
        index += 1


def build_seed_accounts(env: Mapping[str, str]) -> list[SeedAccount]:
    accounts: list[SeedAccount] = []
    for index in _indexed(env, "CLOUDINARY", "CLOUD_NAME"):
        cloud_name = env[f"CLOUDINARY_{index}_CLOUD_NAME"]
        if cloud_name in _PLACEHOLDERS:
            continue
        accounts.append(
            SeedAccount(
                provider="cloudinary",
                account_identifier=f"Cloudinary Account {index}",
                credentials={
                    "cloud_name": cloud_name,
                    "api_key": env.get(f"CLOUDINARY_{index}_API_KEY", ""),
                    "api_secret": env.get(f"CLOUDINARY_{index}_API_SECRET", ""),
                },
                storage_limit=25 * GB,
                bandwidth_limit=25 * GB,
                transformations_limit=25000,
                priority=10 - index,
            )
        )
    for index in _indexed(env, "IMAGEKIT", "PUBLIC_KEY"):
        public_key = env[f"IMAGEKIT_{index}_PUBLIC_KEY"]
        if public_key in _PLACEHOLDERS:
            continue
        accounts.append(
            SeedAccount(
                provider="imagekit",
                account_identifier=f"ImageKit Account {index}",
                credentials={
                    "public_key": public_key,
                    "private_key": env.get(f"IMAGEKIT_{index}_PRIVATE_KEY", ""),
                    "url_endpoint": env.get(f"IMAGEKIT_{index}_URL_ENDPOINT", ""),
                },
                storage_limit=20 * GB,
                bandwidth_limit=20 * GB,
                transformations_limit=20000,
                priority=10 - index,
            )
        )
    for index in _indexed(env, "SIRV", "CLIENT_ID"):
        client_id = env[f"SIRV_{index}_CLIENT_ID"]
        if client_id in _PLACEHOLDERS:
            continue
        accounts.append(
            SeedAccount(
                provider="sirv",
                account_identifier=f"Sirv Account {index}",
                credentials={
                    "client_id": client_id,
                    "client_secret": env.get(f"SIRV_{index}_CLIENT_SECRET", ""),
                    "cdn_domain": env.get(f"SIRV_{index}_CDN_DOMAIN", ""),
                },
                storage_limit=500 * MB,
                bandwidth_limit=2 * GB,
                transformations_limit=None,
                # Smaller free tier; prefer the larger backends.
                priority=5 - index,
            )
        )
    return accounts


async def seed(env: Mapping[str, str]) -> int:
    accounts = build_seed_accounts(env)
    if not accounts:
        print("No storage accounts to account. Add provider credentials to the environment.")
        return 0
    created = 0
    async with SessionLocal() as session:
        for account in accounts:
            existing = await session.execute(
                select(StorageAccount.id).where(
                    StorageAccount.provider == account.provider,
                    StorageAccount.account_identifier == account.account_identifier,
                )
            )
            if existing.scalar_one_or_none() is not None:
                print(f"skipped={account.account_identifier} reason=exists")
                continue
            await create_account(
                session,
                provider=account.provider,
                account_identifier=account.account_identifier,
                credentials=account.credentials,
                storage_limit=account.storage_limit,
                bandwidth_limit=account.bandwidth_limit,
                uploads_limit=account.uploads_limit,
                transformations_limit=account.transformations_limit,
                priority=account.priority,
            )
            created += 1
            print(f"created={account.account_identifier} provider={account.provider}")
    print(f"seeded_storage_accounts={created}")
    return 0


if __name__ == "__main__":
    configure_logging()
    sys.exit(asyncio.run(seed(os.environ)))
