#!/usr/bin/env python3
"""
Keep In Touch - Reminder Engine

This module implements the per-contact reminder logic: when the next reminder
for a contact becomes due, how the very first reminder is chosen for a contact
that has never been scheduled, and how the persisted state blob is parsed and
defaulted.

All timestamps are epoch milliseconds.
"""

import json
import logging
import random
import time
from datetime import datetime, timezone, tzinfo
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple
from pathlib import Path
from zoneinfo import ZoneInfo

import yaml

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000

DEFAULT_MESSAGE_TEMPLATE = (
    "You haven't talked to {name} in a while{left}{a_begin}{last_contact}{a_end}{right}."
)
DEFAULT_CONVERSATION_URL = "https://mail.google.com/mail/u/0/?tab=om#inbox/{conversation_id}"

# Keys of the persisted state blob
LAST_CONTACT_KEY = "lastContact"
TIMES_REMINDED_KEY = "timesReminded"
NEXT_REMINDER_KEY = "nextReminder"


def current_time_ms() -> int:
    """Wall clock in epoch milliseconds"""
    return int(time.time() * 1000)


def format_ms(timestamp: Optional[int], tz: Optional[tzinfo] = None) -> str:
    """Human readable rendering of an epoch milliseconds timestamp for logs"""
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp / 1000, tz).isoformat(sep=' ', timespec='seconds')

# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class ReminderConfig:
    """Configuration for reminder scheduling and delivery"""
    reminder_interval_days: float = 90
    reminder_backoff: float = 1.3
    group: str = "Keep in touch"
    reset_reminders_on_contact: bool = False  # keep counting reminders across contact episodes
    message_template: str = DEFAULT_MESSAGE_TEMPLATE
    conversation_url_template: str = DEFAULT_CONVERSATION_URL
    recipient: str = ""
    timezone: Optional[str] = None  # None = local time of the host
    show_progress: bool = True

    def __post_init__(self):
        if self.reminder_interval_days <= 0:
            raise ValueError(f"reminder_interval_days must be positive, got {self.reminder_interval_days}")
        if self.reminder_backoff <= 0:
            raise ValueError(f"reminder_backoff must be positive, got {self.reminder_backoff}")
        if not self.group:
            raise ValueError("A tracked group name is required")

    @property
    def interval_ms(self) -> float:
        return self.reminder_interval_days * MS_PER_DAY

    def get_tzinfo(self) -> Optional[tzinfo]:
        if not self.timezone:
            return None
        if self.timezone.upper() == "UTC":
            return timezone.utc
        return ZoneInfo(self.timezone)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'ReminderConfig':
        """Load configuration from YAML file"""
        if not Path(yaml_path).exists():
            logger.warning(f"Config file {yaml_path} not found, using defaults")
            return cls()

        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        kwargs: Dict[str, Any] = {}

        if 'reminders' in data:
            reminders = data['reminders'] or {}
            kwargs['reminder_interval_days'] = reminders.get('interval_days', cls.reminder_interval_days)
            kwargs['reminder_backoff'] = reminders.get('backoff', cls.reminder_backoff)
            kwargs['reset_reminders_on_contact'] = bool(
                reminders.get('reset_on_contact', cls.reset_reminders_on_contact)
            )

        if 'tracking' in data:
            tracking = data['tracking'] or {}
            kwargs['group'] = tracking.get('group', cls.group)

        if 'notification' in data:
            notification = data['notification'] or {}
            kwargs['recipient'] = notification.get('recipient', cls.recipient)
            kwargs['message_template'] = notification.get('template', cls.message_template)
            kwargs['conversation_url_template'] = notification.get(
                'conversation_url', cls.conversation_url_template
            )

        if data.get('timezone'):
            kwargs['timezone'] = data['timezone']

        if 'processing' in data:
            processing = data['processing'] or {}
            kwargs['show_progress'] = bool(processing.get('show_progress', cls.show_progress))

        return cls(**kwargs)

# ============================================================================
# CONTACT STATE MODEL
# ============================================================================

@dataclass(frozen=True)
class StateParseResult:
    """Outcome of parsing a stored state blob.

    ``fields`` holds only the values that were present and valid. A failed
    parse carries the reason in ``error`` and no fields.
    """
    fields: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, reason: str) -> 'StateParseResult':
        return cls(fields={}, error=reason)


def _coerce_timestamp(value: Any) -> Optional[int]:
    # bool is an int subclass but never a valid timestamp
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value < 0:  # NaN or negative
        return None
    return int(value)


def parse_state_blob(raw: Optional[str]) -> StateParseResult:
    """Parse the raw text of a contact's state field"""
    if raw is None or not raw.strip():
        return StateParseResult.failure("missing")

    try:
        data = json.loads(raw)
    except ValueError as e:
        return StateParseResult.failure(f"invalid JSON: {e}")

    if not isinstance(data, dict):
        return StateParseResult.failure(f"expected an object, got {type(data).__name__}")

    fields = {}
    for key in (LAST_CONTACT_KEY, TIMES_REMINDED_KEY, NEXT_REMINDER_KEY):
        value = _coerce_timestamp(data.get(key))
        if value is not None:
            fields[key] = value

    return StateParseResult(fields=fields)


@dataclass
class ContactState:
    """Reminder state of one tracked contact"""
    last_contact_at: int = 0
    reminders_sent: int = 0
    next_reminder_at: int = 0
    dirty: bool = False

    def to_blob(self) -> Dict[str, int]:
        """Persisted representation, without the dirty flag"""
        return {
            LAST_CONTACT_KEY: self.last_contact_at,
            TIMES_REMINDED_KEY: self.reminders_sent,
            NEXT_REMINDER_KEY: self.next_reminder_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_blob(), sort_keys=True)

    @classmethod
    def from_parse_result(cls, result: StateParseResult, scheduler: 'ReminderScheduler',
                          now: int, observed_last_contact: Optional[int] = None) -> 'ContactState':
        """Build a state from a parse result, defaulting every missing field.

        A failed parse maps to a fully defaulted state. Every defaulted field
        marks the state dirty so it gets written on the next save.
        """
        if not result.ok:
            logger.debug(f"Unusable stored state ({result.error}), using defaults")

        fields = result.fields
        state = cls()

        if LAST_CONTACT_KEY in fields:
            state.last_contact_at = fields[LAST_CONTACT_KEY]
        else:
            state.last_contact_at = observed_last_contact or 0
            state.dirty = True

        if TIMES_REMINDED_KEY in fields:
            state.reminders_sent = fields[TIMES_REMINDED_KEY]
        else:
            state.reminders_sent = 0
            state.dirty = True

        if NEXT_REMINDER_KEY in fields:
            state.next_reminder_at = fields[NEXT_REMINDER_KEY]
        else:
            state.next_reminder_at = scheduler.compute_first_reminder_time(
                now, state.last_contact_at or None
            )
            state.dirty = True

        return state

# ============================================================================
# REMINDER SCHEDULER - TIME COMPUTATIONS
# ============================================================================

def align_to_hour_of_day(candidate: int, reference: int, tz: Optional[tzinfo] = None) -> int:
    """Return ``candidate`` moved to the time of day of ``reference``.

    The calendar day of ``candidate`` is kept; hour, minute, second and the
    sub-second part all come from ``reference``. Without ``tz`` both
    timestamps are interpreted in the local time of the host.
    """
    candidate_dt = datetime.fromtimestamp(candidate // 1000, tz)
    reference_dt = datetime.fromtimestamp(reference // 1000, tz)
    aligned = candidate_dt.replace(
        hour=reference_dt.hour,
        minute=reference_dt.minute,
        second=reference_dt.second,
    )
    return int(aligned.timestamp()) * 1000 + reference % 1000


class ReminderScheduler:
    """Computes reminder due times with exponential backoff and jitter"""

    def __init__(self, config: ReminderConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng or random.Random()
        self.tz = config.get_tzinfo()

    def reminder_offset(self, reminders_sent: int) -> float:
        """Deterministic delay before the next reminder, growing per reminder sent"""
        return self.config.interval_ms * self.config.reminder_backoff ** reminders_sent

    def align_to_hour_of_day(self, candidate: int, reference: int) -> int:
        return align_to_hour_of_day(candidate, reference, self.tz)

    def align_no_earlier_than(self, candidate: int, reference: int, earliest: int) -> int:
        """Align ``candidate`` to ``reference``, moving whole days forward until it reaches ``earliest``.

        Alignment can land before the candidate, by up to a day, or by an
        extra hour when a daylight saving change lies in between.
        """
        aligned = self.align_to_hour_of_day(candidate, reference)
        while aligned < earliest:
            candidate += MS_PER_DAY
            aligned = self.align_to_hour_of_day(candidate, reference)
        return aligned

    def format(self, timestamp: Optional[int]) -> str:
        return format_ms(timestamp, self.tz)

    def compute_next_reminder_time(self, now: int, last_contact_at: int, reminders_sent: int) -> int:
        """Compute the next reminder time from the last contact and the reminder count.

        The result is always after ``now``, so a reminder never comes due
        again in the pass that just sent it, whatever the backoff.
        """
        offset = self.reminder_offset(reminders_sent)
        jitter = offset / 10 * self.rng.random()
        candidate = int(now + offset - jitter)
        next_time = self.align_no_earlier_than(candidate, last_contact_at, now + 1)

        logger.debug(
            f"Next reminder from last contact {self.format(last_contact_at)} after "
            f"{reminders_sent} reminders: offset={offset:.0f}ms jitter={jitter:.0f}ms "
            f"=> {self.format(next_time)}"
        )
        return next_time

    def compute_first_reminder_time(self, now: int, last_contact_at: Optional[int] = None) -> int:
        """Pick a first reminder time for a contact that has never been scheduled.

        The time is random within the next interval so newly tracked contacts
        do not all come due at once. When the last contact is recent, the
        reminder waits at least as long as has already elapsed and never
        fires before a full interval has passed since that contact.
        """
        interval = self.config.interval_ms

        delay = 0
        earliest = now
        if last_contact_at and now - last_contact_at < interval:
            elapsed = max(now - last_contact_at, 0)
            delay = max(elapsed, interval - elapsed)
            earliest = int(last_contact_at + interval)

        offset = (interval - delay) * self.rng.random()
        first_time = int(now + delay + offset)

        if last_contact_at:
            first_time = self.align_no_earlier_than(first_time, last_contact_at, earliest)

        logger.debug(f"Randomly chose first reminder time {self.format(first_time)}")
        return first_time

# ============================================================================
# REMINDER STATE MACHINE
# ============================================================================

class ReminderStateMachine:
    """The two per-contact transitions: absorb a newer contact, and fire a due reminder"""

    def __init__(self, scheduler: ReminderScheduler,
                 clock: Callable[[], int] = current_time_ms):
        self.scheduler = scheduler
        self.clock = clock
        self.reset_on_contact = scheduler.config.reset_reminders_on_contact

    def refresh(self, state: ContactState, observed: Optional[int],
                now: Optional[int] = None) -> ContactState:
        """Absorb the timestamp of the most recent observed conversation"""
        if observed is None or observed <= state.last_contact_at:
            return state

        now = self.clock() if now is None else now
        logger.info(f"More recent conversation found: {self.scheduler.format(observed)}")

        state.last_contact_at = observed
        if self.reset_on_contact:
            state.reminders_sent = 0
        state.next_reminder_at = self.scheduler.compute_next_reminder_time(
            now, observed, state.reminders_sent
        )
        state.dirty = True
        return state

    def evaluate(self, state: ContactState, now: Optional[int] = None) -> Tuple[ContactState, bool]:
        """Decide whether a reminder is due and advance the schedule if it is.

        The state is advanced before the caller learns the reminder is due, so
        a failed delivery skips a reminder rather than repeating it.
        """
        now = self.clock() if now is None else now
        if now <= state.next_reminder_at:
            return state, False

        state.reminders_sent += 1
        state.next_reminder_at = self.scheduler.compute_next_reminder_time(
            now, state.last_contact_at, state.reminders_sent
        )
        state.dirty = True
        logger.info(f"Reminder due, next reminder time: {self.scheduler.format(state.next_reminder_at)}")
        return state, True
