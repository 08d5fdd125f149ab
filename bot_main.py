"""Main entry point for the chat polling client.

This module loads the configuration, joins the configured rooms and polls
them, logging every new and edited message until interrupted.
"""
import logging
import os

import trio

from config import ChatSettings, ConfigManager
from core.client import ChatClient
from core.dispatcher import MessageHandler
from core.errors import FetchFailedError, RoomNotFoundError, RoomPermissionError
from core.models import ChatMessage


logger = logging.getLogger(__name__)


class LoggingHandler(MessageHandler):
    """Handler that writes every chat event to the log."""

    async def on_message(self, message: ChatMessage) -> None:
        logger.info(
            "[room %s] #%s %s: %s",
            message.room_id, message.message_id, message.username, message.content,
        )

    async def on_message_edited(self, message: ChatMessage) -> None:
        logger.info(
            "[room %s] #%s edited by %s: %s",
            message.room_id, message.message_id, message.username, message.content,
        )

    async def on_error(self, room_id: int, error: Exception) -> None:
        logger.warning("[room %s] polling error: %s", room_id, error)


async def join_rooms(client: ChatClient, rooms: list) -> None:
    """Join every configured room, skipping the ones that cannot be joined."""
    for room_id in rooms:
        try:
            await client.join_room(room_id)
        except (RoomNotFoundError, RoomPermissionError, FetchFailedError) as e:
            logger.warning("Skipping room %s: %s", room_id, e)


async def main() -> None:
    """Load settings, join rooms and listen until interrupted."""
    config_path = os.environ.get("CHATSYNC_CONFIG", "config.yaml")
    config_mgr = ConfigManager(config_path)
    settings = ChatSettings.from_config(config_mgr.load())

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting chatsync-vc for chat.%s", settings.site)

    client = ChatClient.from_settings(settings)
    try:
        await join_rooms(client, settings.rooms)
        if not await client.rooms():
            logger.error("No rooms could be joined, exiting")
            return
        await client.listen(LoggingHandler())
    finally:
        with trio.CancelScope(shield=True):
            await client.close()


if __name__ == "__main__":
    try:
        trio.run(main)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
