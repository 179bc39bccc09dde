from __future__ import annotations

import argparse
import asyncio

from tenantplane.core.config import get_settings
from tenantplane.core.logging import configure_logging
from tenantplane.services.plane import TenantPlane


async def _run_seed(show: bool) -> None:
    # Create control tables if needed and backfill the default settings catalog.
    plane = TenantPlane(get_settings())
    try:
        await plane.init_control_tables()
        touched = await plane.settings_cascade.ensure_default_settings()
        print(f"settings_touched={touched}")
        if show:
            for key, value in sorted((await plane.settings_cascade.refresh()).items()):
                print(f"{key}={value}")
    finally:
        await plane.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed default global settings")
    parser.add_argument("--show", action="store_true", help="print the resulting global settings")
    args = parser.parse_args()

    configure_logging()
    asyncio.run(_run_seed(args.show))


if __name__ == "__main__":
    main()
