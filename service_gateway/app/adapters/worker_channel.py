"""
Page-to-worker control channel.
"""

import httpx

from shared.logging import get_logger

CONTROL_COMMANDS = ("skipWaiting", "clearCache", "logout")


class WorkerChannel:
    """Posts control commands to the edge cache worker host."""

    def __init__(self, client: httpx.AsyncClient, message_path: str = "/__sw__/message"):
        self.client = client
        self.message_path = message_path
        self.logger = get_logger("gateway.worker_channel")

    async def post_message(self, command: str) -> bool:
        """Deliver ``command``; returns whether the worker accepted it."""
        if command not in CONTROL_COMMANDS:
            raise ValueError(f"Unsupported worker command: {command}")

        try:
            response = await self.client.post(self.message_path, json={"command": command})
        except httpx.HTTPError as e:
            self.logger.warning("Worker control message not delivered", command=command, error=str(e))
            return False

        if not response.is_success:
            self.logger.warning(
                "Worker rejected control message",
                command=command,
                status_code=response.status_code,
            )
            return False

        self.logger.info("Worker control message delivered", command=command)
        return True
