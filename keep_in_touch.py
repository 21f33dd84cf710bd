#!/usr/bin/env python3
"""
Keep In Touch - Cycle Drivers

Two passes over the tracked contact group, meant to be run on independent
cadences by cron or any other periodic trigger:

- refresh (daily): look up the latest conversation with every contact and
  push the next reminder out when a newer one is found. Conversation lookups
  are comparatively slow, so this should not run more than once a day.
- remind (hourly): send a reminder for every contact whose reminder is due.
  Hourly runs keep reminders within the same hour of day as the last contact.

Each contact is processed in isolation: a failure is logged and counted, and
the pass moves on to the next contact.
"""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from tqdm import tqdm

from contact_store import Contact, ContactStateStore, DatabaseManager
from conversation_lookup import ConversationLookup
from reminder_engine import (
    ReminderConfig, ReminderScheduler, ReminderStateMachine, current_time_ms
)
from reminder_notifier import OutboxNotifier

logger = logging.getLogger(__name__)

REFRESH_PASS = "refresh"
REMIND_PASS = "remind"


class KeepInTouch:
    """Wires the reminder engine to storage, conversation lookup and delivery"""

    def __init__(self, db_path: str, config_path: Optional[str] = None,
                 config: Optional[ReminderConfig] = None,
                 clock: Callable[[], int] = current_time_ms,
                 scheduler: Optional[ReminderScheduler] = None,
                 lookup: Optional[ConversationLookup] = None,
                 notifier: Optional[OutboxNotifier] = None):
        if config is not None:
            self.config = config
        elif config_path:
            self.config = ReminderConfig.from_yaml(config_path)
        else:
            self.config = ReminderConfig()

        self.clock = clock
        self.db_manager = DatabaseManager(db_path)
        self.scheduler = scheduler or ReminderScheduler(self.config)
        self.state_machine = ReminderStateMachine(self.scheduler, clock=clock)
        self.store = ContactStateStore(self.db_manager, self.scheduler, clock=clock)
        self.lookup = lookup or ConversationLookup(self.db_manager)
        self.notifier = notifier or OutboxNotifier(self.db_manager, self.config)

        logger.debug(f"Tracking group '{self.config.group}' every "
                     f"{self.config.reminder_interval_days} days (backoff {self.config.reminder_backoff})")

    def tracked_contacts(self) -> List[Contact]:
        return self.db_manager.get_tracked_contacts(self.config.group)

    def _run_pass(self, pass_name: str, process: Callable[[Contact, Dict[str, int]], None],
                  progress: bool = False) -> Dict[str, Any]:
        """Run ``process`` over every tracked contact with a per-contact error boundary"""
        run_id = str(uuid.uuid4())
        run_pk = self.db_manager.create_run(run_id, pass_name)
        stats = {
            'run_id': run_id,
            'contacts_processed': 0,
            'contacts_failed': 0,
            'states_written': 0,
            'reminders_due': 0,
        }

        try:
            contacts = self.tracked_contacts()
            logger.info(f"Starting {pass_name} pass over {len(contacts)} contacts (run {run_id})")
            self.store.begin_cycle()

            iterator = contacts
            if progress:
                iterator = tqdm(contacts, desc=f"{pass_name} pass", unit="contact",
                                disable=not self.config.show_progress)

            for contact in iterator:
                try:
                    process(contact, stats)
                    stats['contacts_processed'] += 1
                except Exception:
                    stats['contacts_failed'] += 1
                    logger.exception(f"Failed to process contact {contact.id} ({contact.full_name}) "
                                     f"during {pass_name} pass")

            stats['states_written'] = self.store.writes
            self.db_manager.update_run(
                run_pk,
                'completed',
                contacts_processed=stats['contacts_processed'],
                contacts_failed=stats['contacts_failed'],
                states_written=stats['states_written'],
                reminders_due=stats['reminders_due'],
            )
        except Exception as e:
            self.db_manager.update_run(
                run_pk,
                'failed',
                error_message=str(e),
                contacts_processed=stats['contacts_processed'],
                contacts_failed=stats['contacts_failed'],
            )
            logger.error(f"{pass_name} pass failed: {e}")
            raise

        logger.info(
            f"{pass_name} pass complete: {stats['contacts_processed']} processed, "
            f"{stats['contacts_failed']} failed, {stats['states_written']} written, "
            f"{stats['reminders_due']} reminders due"
        )
        return stats

    # ------------------------------------------------------------------
    # Refresh pass
    # ------------------------------------------------------------------

    def refresh_contact(self, contact: Contact, stats: Optional[Dict[str, int]] = None):
        """Update one contact with the time of its latest conversation"""
        logger.info(f"Updating last contact for {contact.full_name} {contact.primary_address}")

        observed = self.lookup.last_contact_time(contact.addresses)
        if observed is None:
            logger.info(f"No contact found with {contact.full_name}")

        state = self.store.load(contact, observed_last_contact=observed)
        self.state_machine.refresh(state, observed, now=self.clock())
        self.store.save(contact, state)

    def update_last_contact(self) -> Dict[str, Any]:
        """Refresh pass over every tracked contact"""
        return self._run_pass(REFRESH_PASS, self.refresh_contact, progress=True)

    # ------------------------------------------------------------------
    # Reminder pass
    # ------------------------------------------------------------------

    def remind_contact(self, contact: Contact, stats: Optional[Dict[str, int]] = None) -> bool:
        """Evaluate one contact and deliver a reminder when due.

        The advanced state is saved before delivery: when delivery fails the
        reminder is lost instead of being sent again on the next pass.
        """
        logger.debug(f"Processing {contact.full_name} {contact.primary_address}")

        now = self.clock()
        state = self.store.load(contact)
        state, due = self.state_machine.evaluate(state, now=now)
        self.store.save(contact, state)

        if not due:
            return False

        if stats is not None:
            stats['reminders_due'] += 1

        logger.info(f"Emailing a reminder about contact: {contact.full_name}")
        conversation = self.lookup.last_conversation(contact.addresses)
        self.notifier.deliver(contact, conversation, now)
        return True

    def send_reminders(self) -> Dict[str, Any]:
        """Reminder pass over every tracked contact"""
        return self._run_pass(REMIND_PASS, self.remind_contact)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reset_all_contact_state(self) -> int:
        """Blank the stored state of every tracked contact"""
        contacts = self.tracked_contacts()
        self.store.begin_cycle()
        for contact in contacts:
            logger.info(f"Resetting state for contact: {contact.full_name}")
            self.store.reset(contact)
        return len(contacts)

    def next_reminders(self) -> List[Tuple[Contact, int]]:
        """Each tracked contact with its next reminder time, soonest first"""
        self.store.begin_cycle()
        reminders = [(contact, self.store.load(contact).next_reminder_at)
                     for contact in self.tracked_contacts()]
        return sorted(reminders, key=lambda item: item[1])

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point for keep-in-touch passes"""
    import argparse

    parser = argparse.ArgumentParser(description='Keep In Touch reminders')
    parser.add_argument('--db', required=True, help='SQLite database path')
    parser.add_argument('--config', help='Configuration YAML path')
    parser.add_argument('--refresh', action='store_true', help='Update last contact times (run daily)')
    parser.add_argument('--remind', action='store_true', help='Send due reminders (run hourly)')
    parser.add_argument('--show-next', action='store_true', help='List next reminder time per contact')
    parser.add_argument('--reset-state', action='store_true', help='Reset stored state for all contacts')
    parser.add_argument('--quiet', '-q', action='store_true', help='Only log warnings and errors')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    args = parser.parse_args()

    if args.quiet:
        logging.basicConfig(level=logging.WARNING, format='%(levelname)s: %(message)s')
    elif args.debug:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    app = KeepInTouch(args.db, args.config)
    if args.quiet:
        app.config.show_progress = False

    if args.reset_state:
        count = app.reset_all_contact_state()
        print(f"Reset state for {count} contacts")
    elif args.refresh or args.remind:
        if args.refresh:
            app.update_last_contact()
        if args.remind:
            app.send_reminders()
    elif args.show_next:
        for contact, next_at in app.next_reminders():
            print(f"{contact.full_name}: {app.scheduler.format(next_at)}")
    else:
        print("Please specify --refresh, --remind, --show-next or --reset-state")


if __name__ == '__main__':
    main()
