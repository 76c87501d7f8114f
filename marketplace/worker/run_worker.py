"""Run the expiry sweeper on its own. Usage: python -m marketplace.worker.run_worker"""

import asyncio

from marketplace.core.config import get_settings
from marketplace.core.logging import configure_logging
from marketplace.services.container import build_services
from marketplace.worker.sweeper import ExpirySweeper


async def main():
    configure_logging(debug=get_settings().debug, component="sweeper")
    services = build_services()
    await services.store.init()
    try:
        await ExpirySweeper(services).run_forever()
    finally:
        await services.close()


if __name__ == "__main__":
    asyncio.run(main())
