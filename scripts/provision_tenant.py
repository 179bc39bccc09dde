from __future__ import annotations

import argparse
import asyncio
import sys

from tenantplane.core.config import get_settings
from tenantplane.core.logging import configure_logging
from tenantplane.services.plane import TenantPlane


async def _run_provision(tenant_id: int, actor: str) -> bool:
    # Provision one tenant instance end to end and print the outcome.
    plane = TenantPlane(get_settings())
    try:
        await plane.init_control_tables()
        result = await plane.provisioner.provision(tenant_id, actor=actor)
    finally:
        await plane.close()
    print(f"ok={str(result.ok).lower()}")
    print(f"tenant_id={result.tenant_id}")
    print(f"step={result.step}")
    if result.branch_url:
        print(f"branch_url={result.branch_url}")
    if result.error:
        print(f"error={result.error}")
    if result.status_code is not None:
        print(f"status_code={result.status_code}")
    return result.ok


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision an isolated database for a tenant")
    parser.add_argument("--tenant-id", type=int, required=True)
    parser.add_argument("--actor", default="cli")
    args = parser.parse_args()

    configure_logging()
    ok = asyncio.run(_run_provision(args.tenant_id, args.actor))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
