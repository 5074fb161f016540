from __future__ import annotations

import argparse
import asyncio

from fabricsec.core.logging import configure_logging, correlation_scope
from fabricsec.core.errors import ConflictError
from fabricsec.domain.types import UserStatus
from fabricsec.persistence.db import SessionLocal
from fabricsec.services.authz.catalog import seed_default_roles
from fabricsec.services.authz.resolver import assign_role
from fabricsec.services.users import provision_user


async def seed(admin_user_id: str | None, granted_by: str) -> None:
    with correlation_scope():
        async with SessionLocal() as session:
            summary = await seed_default_roles(session, granted_by=granted_by)
        print(f"roles_created={summary.roles_created}")
        print(f"permissions_created={summary.permissions_created}")
        print(f"grants_created={summary.grants_created}")
        if not admin_user_id:
            return
        # Bootstrap the first administrator; reruns leave an existing admin untouched.
        async with SessionLocal() as session:
            try:
                await provision_user(
                    session,
                    user_id=admin_user_id,
                    username=admin_user_id,
                    status=UserStatus.ACTIVE.value,
                    created_by=granted_by,
                )
            except ConflictError:
                print(f"admin_user_exists={admin_user_id}")
        async with SessionLocal() as session:
            try:
                result = await assign_role(
                    session,
                    user_id=admin_user_id,
                    role_id="ADMIN",
                    assigned_by=granted_by,
                    reason="bootstrap",
                )
            except ConflictError:
                print("admin_role_exists=true")
            else:
                print(f"admin_assignment_id={result.assignment_id}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed system roles and the permission catalogue")
    parser.add_argument("--admin-user-id", default=None)
    parser.add_argument("--granted-by", default="SYSTEM")
    args = parser.parse_args()

    configure_logging()
    asyncio.run(seed(args.admin_user_id, args.granted_by))


if __name__ == "__main__":
    main()
