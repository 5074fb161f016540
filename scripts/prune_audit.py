from __future__ import annotations

import argparse
import asyncio
from datetime import datetime

from fabricsec.core.logging import configure_logging, correlation_scope
from fabricsec.persistence.db import SessionLocal
from fabricsec.services.maintenance import (
    PRUNE_BATCH_SIZE,
    count_expired_compliance_records,
    prune_audit_records,
    retention_cutoff,
)


async def prune(cutoff: datetime | None, batch_size: int, requested_by: str) -> None:
    # Non-compliance records only; expired compliance records are reported, not deleted.
    with correlation_scope():
        async with SessionLocal() as session:
            result = await prune_audit_records(
                session,
                cutoff=cutoff,
                batch_size=batch_size,
                requested_by=requested_by,
            )
            expired = await count_expired_compliance_records(session)
        print(f"pruned_audit_records={result.deleted}")
        print(f"batches={result.batches}")
        print(f"cutoff={result.cutoff.isoformat()}")
        print(f"expired_compliance_records={expired}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune audit records beyond the retention window")
    parser.add_argument("--retention-days", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=PRUNE_BATCH_SIZE)
    parser.add_argument("--requested-by", default="SYSTEM")
    args = parser.parse_args()

    configure_logging()
    cutoff = retention_cutoff(days=args.retention_days) if args.retention_days is not None else None
    asyncio.run(prune(cutoff, max(1, args.batch_size), args.requested_by))


if __name__ == "__main__":
    main()
