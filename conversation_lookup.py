#!/usr/bin/env python3
"""
Conversation Lookup

Finds the most recent conversation with a contact across all of their
addresses, using the conversation index kept in the database.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from contact_store import DatabaseManager
from reminder_engine import format_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Conversation:
    """Reference to an indexed conversation"""
    conversation_id: str
    subject: str
    last_message_at: int


class ConversationLookup:
    """Queries the conversation index for the latest conversation with a contact"""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def search(self, address: str) -> Optional[Conversation]:
        """Most recent conversation sent from or to a single address"""
        logger.debug(f"Searching for last contact with {address}")
        row = self.db_manager.find_latest_conversation(address)
        if row is None:
            return None
        return Conversation(
            conversation_id=row['id'],
            subject=row['subject'] or '',
            last_message_at=row['last_message_at'],
        )

    def last_conversation(self, addresses: Iterable[str]) -> Optional[Conversation]:
        """Latest conversation across all of a contact's addresses, or None"""
        latest: Optional[Conversation] = None

        for address in addresses:
            if not address or not address.strip():
                logger.debug("No address. No point in searching.")
                continue

            conversation = self.search(address)
            if conversation is None:
                continue

            logger.debug(f"Last contact with {address} was on {format_ms(conversation.last_message_at)}")
            if latest is None or conversation.last_message_at > latest.last_message_at:
                latest = conversation

        return latest

    def last_contact_time(self, addresses: Iterable[str]) -> Optional[int]:
        conversation = self.last_conversation(addresses)
        return conversation.last_message_at if conversation else None
