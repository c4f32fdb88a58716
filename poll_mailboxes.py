"""Run one email poll cycle for every active mailbox.

Meant to be invoked by cron or a systemd timer. Tenants are polled
concurrently; the exit status is non-zero when any tenant's cycle failed so
that the scheduler can alert.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid

from dotenv import load_dotenv

from gateway.channels.email import PollResult
from gateway.services import GatewayServices, build_services

log = logging.getLogger("poll_mailboxes")


async def run(services: GatewayServices, tenant_ids: list[uuid.UUID] | None) -> list[PollResult]:
    return await services.email.poll_all(tenant_ids)


def main(argv: list[str] | None = None, services: GatewayServices | None = None) -> int:
    """Parse CLI arguments, poll, print one JSON line per tenant and return the exit code."""

    parser = argparse.ArgumentParser(description="Poll tenant mailboxes once")
    parser.add_argument(
        "--tenant-id",
        dest="tenant_ids",
        action="append",
        default=[],
        help="Only poll this tenant (may be specified multiple times)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level for this run",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    tenant_ids: list[uuid.UUID] | None = None
    if args.tenant_ids:
        try:
            tenant_ids = [uuid.UUID(value) for value in args.tenant_ids]
        except ValueError:
            parser.error("--tenant-id requires a valid UUID")

    load_dotenv()
    services = services or build_services()
    results = asyncio.run(run(services, tenant_ids))
    failed = 0
    for result in results:
        print(json.dumps(result.as_dict(), default=str))
        if result.error:
            failed += 1
    log.info("polled %d tenant(s), %d failed", len(results), failed)
    return 1 if failed else 0


if __name__ == "__main__":  # pragma: no cover - CLI execution
    sys.exit(main())
