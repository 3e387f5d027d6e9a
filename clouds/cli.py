import asyncio
import json
from dataclasses import dataclass

from jsonargparse import CLI
from loguru import logger

from clouds.core.config import CloudsSettings
from clouds.core.logging import configure_logging
from clouds.server import CloudsServer, default_services


@dataclass(slots=True)
class CloudsCLI:
    """Clouds command line interface for running nodes and sending messages."""

    redis_url: str | None = None
    prefix: str | None = None
    heartbeat: float | None = None
    log_level: str = "INFO"

    def _settings(self) -> CloudsSettings:
        overrides = {
            "redis_url": self.redis_url,
            "prefix": self.prefix,
            "heartbeat": self.heartbeat,
            "log_level": self.log_level,
        }
        settings = CloudsSettings(
            **{key: value for key, value in overrides.items() if value is not None}
        )
        configure_logging(settings)
        return settings

    def serve(self) -> None:
        """Starts a node offering the built-in echo services until interrupted."""
        server = CloudsServer(settings=self._settings())
        server.register_module(default_services())
        server.on_listening(
            lambda channel: logger.info("Node {} listening on {}", server.id, channel)
        )
        server.on_message(
            lambda sender, args: logger.info("Message from {}: {}", sender, args)
        )
        server.run()

    def send(self, receiver: str, payload: str) -> None:
        """Sends a one-way message to another node.

        Args:
            receiver: Node id of the receiving node.
            payload: JSON document to send; sent as a plain string if it is not JSON.
        """
        try:
            message = json.loads(payload)
        except ValueError:
            message = payload

        async def _send() -> None:
            server = CloudsServer(settings=self._settings())
            await server.start()
            try:
                await server.send(receiver, message)
                logger.info("Sent {!r} to {}", message, receiver)
            finally:
                await server.exit()

        asyncio.run(_send())


def main() -> None:
    CLI(CloudsCLI, as_dict=False)  # type: ignore[no-untyped-call]


if __name__ == "__main__":
    main()
