from __future__ import annotations

import argparse
import asyncio
import sys

from tenantplane.core.config import get_settings
from tenantplane.core.logging import configure_logging
from tenantplane.services.plane import TenantPlane


async def _run_deprovision(target: int | str, actor: str) -> bool:
    # Delete the tenant's instance and drop its routing state.
    plane = TenantPlane(get_settings())
    try:
        result = await plane.deprovisioner.deprovision(target, actor=actor)
    finally:
        await plane.close()
    print(f"ok={str(result.ok).lower()}")
    if result.name:
        print(f"name={result.name}")
    print(f"mapping_removed={str(result.mapping_removed).lower()}")
    if result.error:
        print(f"error={result.error}")
    if result.status_code is not None:
        print(f"status_code={result.status_code}")
    return result.ok


def main() -> None:
    parser = argparse.ArgumentParser(description="Deprovision a tenant's isolated database")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--tenant-id", type=int)
    target.add_argument("--url")
    parser.add_argument("--actor", default="cli")
    args = parser.parse_args()

    configure_logging()
    selected: int | str = args.tenant_id if args.tenant_id is not None else args.url
    ok = asyncio.run(_run_deprovision(selected, args.actor))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
