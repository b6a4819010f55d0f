import asyncio
import sys

from .config import Settings
from .server import StorefrontServer
from .utils.logger import logger


async def main() -> None:
    settings = Settings.from_env()
    server = StorefrontServer(settings)
    try:
        await server.start()
    except Exception as e:
        logger.critical(f"Storefront API failed to start: {e}")
        await server.stop()
        sys.exit(1)

    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down.")


if __name__ == "__main__":
    run()
