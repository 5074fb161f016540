from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import sys

from fabricsec.core.logging import configure_logging, correlation_scope
from fabricsec.persistence.db import SessionLocal
from fabricsec.services.audit import get_audit_chain


async def verify(since: datetime | None) -> bool:
    with correlation_scope():
        async with SessionLocal() as session:
            result = await get_audit_chain().verify_chain(session, since=since)
    print(f"valid={str(result.valid).lower()}")
    print(f"checked={result.checked}")
    if result.broken_at:
        print("broken_at=" + ",".join(str(record_id) for record_id in result.broken_at))
    return result.valid


def main() -> None:
    # Exit non-zero on a broken chain so schedulers raise an alert.
    parser = argparse.ArgumentParser(description="Verify the audit hash chain")
    parser.add_argument("--since", type=datetime.fromisoformat, default=None)
    args = parser.parse_args()

    configure_logging()
    valid = asyncio.run(verify(args.since))
    sys.exit(0 if valid else 1)


if __name__ == "__main__":
    main()
