#!/usr/bin/env python3
"""
Diagnostic script to inspect report jobs, sync state and ingested rows.
Helps debug accounts whose reports stop arriving.

Run from backend directory:
  python scripts/check_report_jobs.py
"""

import asyncio
import sys
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from sqlalchemy import text
from report_sync.database import engine


async def main():
    async with engine.begin() as conn:
        acct_result = await conn.execute(text("""
            SELECT a.id, a.account_name, a.profile_id, s.mode, s.backfill_anchor_date, s.last_pass_at
            FROM accounts a LEFT JOIN sync_states s ON s.account_id = a.id
            WHERE a.is_active
            LIMIT 10
        """))
        accounts = acct_result.fetchall()
        print("=== ACCOUNTS ===")
        for a in accounts:
            print(f"  id={a[0]}, name={a[1]}, profile_id={a[2]}, mode={a[3]}, anchor={a[4]}, last_pass={a[5]}")
        if not accounts:
            print("  (no active accounts)")
            return

        for a in accounts:
            account_id = str(a[0])
            print(f"\n=== REPORT JOBS for {a[1] or account_id} (by tier/status) ===")
            rows = (await conn.execute(text("""
                SELECT tier, status, COUNT(*), SUM(CASE WHEN processed_at IS NULL THEN 0 ELSE 1 END)
                FROM report_jobs
                WHERE account_id = :aid
                GROUP BY tier, status
                ORDER BY tier, status
            """), {"aid": account_id})).fetchall()
            for r in rows:
                print(f"  tier={r[0]}, status={r[1]}, jobs={r[2]}, ingested={r[3]}")
            if not rows:
                print("  (no jobs)")

            errors = (await conn.execute(text("""
                SELECT ad_product, report_kind, start_date, end_date, status, retry_count, error_message
                FROM report_jobs
                WHERE account_id = :aid AND error_message IS NOT NULL
                ORDER BY updated_at DESC
                LIMIT 10
            """), {"aid": account_id})).fetchall()
            print("\n  Recent errors:")
            for e in errors:
                print(f"    {e[0]}/{e[1]} {e[2]}..{e[3]} status={e[4]} retries={e[5]}: {e[6]}")
            if not errors:
                print("    (none)")

            daily = (await conn.execute(text("""
                SELECT report_date, COUNT(*), SUM(spend)::numeric(12,2), SUM(sales)::numeric(12,2)
                FROM campaign_performance_daily
                WHERE account_id = :aid
                GROUP BY report_date
                ORDER BY report_date DESC
                LIMIT 14
            """), {"aid": account_id})).fetchall()
            print("\n  Campaign performance (last 14 dates):")
            for d in daily:
                print(f"    date={d[0]}, rows={d[1]}, spend={d[2]}, sales={d[3]}")
            if not daily:
                print("    (no rows)")

    print("\nDone.")


if __name__ == "__main__":
    asyncio.run(main())
