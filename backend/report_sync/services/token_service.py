"""
Token Service: Login-with-Amazon access token refresh.
Every Reporting API client is built from a credential whose token is
refreshed first when it is about to expire (or when a 401 forced it).
"""

import logging
from datetime import datetime, timedelta, timezone
import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from report_sync.ads_api import AmazonAdsReportingClient
from report_sync.config import get_settings
from report_sync.crypto import decrypt_value, encrypt_value
from report_sync.models import Account, Credential, CredentialStatus
from report_sync.utils import utcnow

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)


async def refresh_access_token(
    client_id: str,
    client_secret: str,
    refresh_token: str,
) -> dict:
    """
    Exchange a refresh token for a new access token via Amazon LwA.
    Returns dict with access_token, expires_in, token_type.
    """
    async with httpx.AsyncClient() as client:
        response = await client.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=30,
        )
        response.raise_for_status()
        return response.json()


def _token_is_expired(cred: Credential) -> bool:
    if not cred.token_expires_at:
        return cred.client_secret is not None and cred.refresh_token is not None
    expires_at = cred.token_expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) >= (expires_at - REFRESH_BUFFER)


async def ensure_fresh_token(cred: Credential, db: AsyncSession, force: bool = False) -> Credential:
    """
    Refresh the access token when expired (or when force=True after a 401).
    The refreshed token is written back encrypted. A failed refresh is logged
    and marks the credential expired; the stale token is still returned so the
    API call surfaces the real error.
    """
    if not cred.client_secret or not cred.refresh_token:
        return cred
    if not force and not _token_is_expired(cred):
        return cred

    logger.info(f"Refreshing access token for credential '{cred.name}'")
    try:
        token_data = await refresh_access_token(
            client_id=cred.client_id,
            client_secret=decrypt_value(cred.client_secret),
            refresh_token=decrypt_value(cred.refresh_token),
        )
        cred.access_token = encrypt_value(token_data["access_token"])
        expires_in = token_data.get("expires_in", 3600)
        cred.token_expires_at = utcnow() + timedelta(seconds=expires_in)
        cred.status = CredentialStatus.ACTIVE.value
        if "refresh_token" in token_data:
            cred.refresh_token = encrypt_value(token_data["refresh_token"])
        await db.flush()
        logger.info(f"Token refreshed for '{cred.name}', expires in {expires_in}s")
    except httpx.HTTPStatusError as e:
        logger.error(f"Token refresh failed for '{cred.name}': {e.response.status_code} {e.response.text}")
        cred.status = CredentialStatus.EXPIRED.value
        await db.flush()
    except (httpx.HTTPError, KeyError) as e:
        logger.error(f"Token refresh failed for '{cred.name}': {e}")

    return cred


async def get_reporting_client(
    account: Account,
    db: AsyncSession,
    force_refresh: bool = False,
) -> AmazonAdsReportingClient:
    """Build a Reporting API client for the account with a fresh access token."""
    result = await db.execute(select(Credential).where(Credential.id == account.credential_id))
    cred = result.scalar_one()
    cred = await ensure_fresh_token(cred, db, force=force_refresh)
    return AmazonAdsReportingClient(
        client_id=cred.client_id,
        access_token=decrypt_value(cred.access_token),
        profile_id=account.profile_id,
        region=cred.region or "na",
        timeout=get_settings().ads_api_timeout_seconds,
    )
