#!/usr/bin/env python3
"""Two nodes on a local Redis: one offers services, the other talks to it."""

import asyncio

from loguru import logger

from clouds import CloudsServer, CloudsSettings
from clouds.core.logging import configure_logging
from clouds.server import default_services


async def main() -> None:
    settings = CloudsSettings(prefix="demo", heartbeat=1.0)
    configure_logging(settings)

    worker = CloudsServer(settings)
    worker.register_module(default_services())
    worker.register("add", lambda a, b: a + b)
    worker.on_message(lambda sender, args: logger.info("Got {} from {}", args, sender))

    peer = CloudsServer(settings)

    await worker.start()
    await peer.start()
    try:
        await peer.send(worker.id, {"hello": "world"})
        # heartbeat keys are visible to anyone choosing a node for a call
        await asyncio.sleep(2.5)
        keys = await peer.connections.commands.keys(f"demo:S:*:{worker.id}")
        logger.info("Advertised services: {}", sorted(keys))
    finally:
        await peer.exit()
        await worker.exit()


if __name__ == "__main__":
    asyncio.run(main())
