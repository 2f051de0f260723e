#!/usr/bin/env python

import os
import sys
import asyncio
import httpx

# Base URL of the running FastAPI app
API_BASE_URL = os.environ.get("FIELDSYNC_API_URL", "http://localhost:8000")

# Shared secret checked by /cron/ndvi
CRON_SECRET = os.environ.get("CRON_SECRET", "")


async def run_ndvi_sync(days: int = None) -> dict:
    """
    Call the /cron/ndvi endpoint, which refreshes every field.
    """
    url = f"{API_BASE_URL}/cron/ndvi"
    params = {"days": days} if days else {}
    headers = {"Authorization": f"Bearer {CRON_SECRET}"} if CRON_SECRET else {}

    # Pacing between fields makes a full batch slow
    async with httpx.AsyncClient(timeout=600.0) as client:
        print(f"[SYNC] Calling {url}")
        resp = await client.post(url, params=params, headers=headers)
        resp.raise_for_status()
        return resp.json()


async def main():
    days = int(sys.argv[1]) if len(sys.argv) > 1 else None
    result = await run_ndvi_sync(days)

    print(
        f"[SYNC] DONE processed={result.get('processed')} failed={result.get('failed')} "
        f"skipped={result.get('skipped')} alerts_created={result.get('alerts_created')}"
    )
    for detail in result.get("details", []):
        if detail.get("error"):
            print(f"[SYNC] field {detail['field_id']}: {detail['error']}")

    if result.get("failed"):
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
