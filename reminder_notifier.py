#!/usr/bin/env python3
"""
Reminder Notifier

Renders the reminder message for a contact and hands it to the outbox, from
which a mail transport picks it up.
"""

import html
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from contact_store import Contact, DatabaseManager
from conversation_lookup import Conversation
from reminder_engine import MS_PER_DAY, ReminderConfig

logger = logging.getLogger(__name__)


@dataclass
class ReminderMessage:
    """A rendered reminder, in plain and HTML form"""
    subject: str
    plain: str
    html: str


def days_ago(timestamp: int, now: int) -> int:
    """Whole days between ``timestamp`` and ``now``"""
    return int((now - timestamp) / MS_PER_DAY)


PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")


def fill_template(template: str, params: Dict[str, str]) -> str:
    """Replace each ``{key}`` in the template with its value, in a single pass.

    Substituted values are never scanned again, and unknown placeholders are
    left as they are.
    """
    return PLACEHOLDER_PATTERN.sub(lambda m: params.get(m.group(1), m.group(0)), template)


def render_reminder(config: ReminderConfig, contact: Contact,
                    conversation: Optional[Conversation], now: int) -> ReminderMessage:
    """Render the reminder about a contact, linking the last conversation when known"""
    params = {
        'name': contact.full_name,
        'left': '',
        'a_begin': '',
        'last_contact': '',
        'a_end': '',
        'right': '',
    }

    if conversation:
        params['left'] = f" ({days_ago(conversation.last_message_at, now)} days: "
        params['last_contact'] = conversation.subject
        params['right'] = ")"

    plain = fill_template(config.message_template, params)

    html_params = {key: html.escape(value) for key, value in params.items()}
    if conversation:
        url = fill_template(config.conversation_url_template,
                            {'conversation_id': conversation.conversation_id})
        html_params['a_begin'] = f'<a href="{html.escape(url, quote=True)}">'
        html_params['a_end'] = "</a>"
    html_body = fill_template(config.message_template, html_params)

    return ReminderMessage(subject=contact.full_name, plain=plain, html=html_body)


class OutboxNotifier:
    """Delivers reminders by queueing them in the reminder outbox"""

    def __init__(self, db_manager: DatabaseManager, config: ReminderConfig):
        self.db_manager = db_manager
        self.config = config

    def deliver(self, contact: Contact, conversation: Optional[Conversation], now: int) -> int:
        message = render_reminder(self.config, contact, conversation, now)
        logger.debug(f"Plain message: {message.plain}")
        logger.debug(f"HTML message: {message.html}")

        message_id = self.db_manager.insert_outbox_message(
            contact_id=contact.id,
            recipient=self.config.recipient,
            subject=message.subject,
            plain_body=message.plain,
            html_body=message.html,
            conversation_id=conversation.conversation_id if conversation else None,
            created_at=now,
        )
        logger.info(f"Queued reminder about {contact.full_name} for {self.config.recipient or 'default recipient'}")
        return message_id
