"""Built-in plugin that logs message activity seen by the supervisor."""

from __future__ import annotations

from kordlink.logger import logger
from kordlink.plugin import hookimpl
from kordlink.store import MessageStore
from kordlink.types import MessageUpdate, WAMessage


class ActivityLogPlugin:
    @hookimpl
    def kordlink_message(self, message: WAMessage) -> None:
        logger.info(
            "New message received",
            chat=message.key.remote_jid,
            sender=message.push_name or message.key.participant,
            from_me=message.key.from_me,
        )

    @hookimpl
    def kordlink_message_deleted(self, update: MessageUpdate, store: MessageStore) -> None:
        original = store.load_message(update.key.remote_jid, update.key.id)
        logger.info(
            "Message deleted",
            chat=update.key.remote_jid,
            message_id=update.key.id,
            recovered=original is not None and bool(original.text),
        )
