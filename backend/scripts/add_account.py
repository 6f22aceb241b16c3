#!/usr/bin/env python3
"""
Register an advertiser profile for report sync.

Credentials come from the environment (AMAZON_ADS_CLIENT_ID,
AMAZON_ADS_CLIENT_SECRET, AMAZON_ADS_REFRESH_TOKEN); secrets are stored
encrypted with ENCRYPTION_KEY. The first sync pass after this starts the
account's backfill.

Run from backend/: python -m scripts.add_account <profile_id> [name] [marketplace] [region]
"""
import asyncio
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


async def main():
    from report_sync.crypto import encrypt_value
    from report_sync.database import async_session, init_db
    from report_sync.models import Account, Credential
    from sqlalchemy import select

    if len(sys.argv) < 2:
        print("Usage: python -m scripts.add_account <profile_id> [name] [marketplace] [region]")
        sys.exit(1)
    profile_id = sys.argv[1]
    name = sys.argv[2] if len(sys.argv) > 2 else f"Profile {profile_id}"
    marketplace = sys.argv[3] if len(sys.argv) > 3 else None
    region = sys.argv[4] if len(sys.argv) > 4 else "na"

    client_id = os.environ.get("AMAZON_ADS_CLIENT_ID")
    client_secret = os.environ.get("AMAZON_ADS_CLIENT_SECRET")
    refresh_token = os.environ.get("AMAZON_ADS_REFRESH_TOKEN")
    if not client_id or not client_secret or not refresh_token:
        print("Error: Set AMAZON_ADS_CLIENT_ID, AMAZON_ADS_CLIENT_SECRET and AMAZON_ADS_REFRESH_TOKEN")
        sys.exit(1)

    await init_db()
    async with async_session() as db:
        r = await db.execute(select(Credential).where(Credential.client_id == client_id, Credential.region == region))
        cred = r.scalars().first()
        if cred is None:
            cred = Credential(
                name=f"{client_id[-8:]} ({region})",
                client_id=client_id,
                client_secret=encrypt_value(client_secret),
                refresh_token=encrypt_value(refresh_token),
                # Placeholder until the first refresh; no expiry forces it
                access_token=encrypt_value(""),
                region=region,
            )
            db.add(cred)
            await db.flush()

        r = await db.execute(select(Account).where(Account.credential_id == cred.id, Account.profile_id == profile_id))
        if r.scalar_one_or_none():
            print(f"Profile {profile_id} is already registered.")
            sys.exit(0)

        account = Account(credential_id=cred.id, profile_id=profile_id, account_name=name, marketplace=marketplace)
        db.add(account)
        await db.commit()
        print(f"Registered account {account.id} for profile {profile_id}")


if __name__ == "__main__":
    asyncio.run(main())
