#!/usr/bin/env python3
"""
Health Monitor for Keep In Touch

Health checks over the run audit trail and the stored reminder state: whether
both passes have been running on schedule, how many runs failed recently and
how many contacts are overdue for a reminder.
"""

import sqlite3
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, asdict

from keep_in_touch import REFRESH_PASS, REMIND_PASS
from reminder_engine import ReminderConfig, current_time_ms, parse_state_blob, NEXT_REMINDER_KEY

logger = logging.getLogger(__name__)

# Maximum age of the last successful run of each pass
REFRESH_MAX_AGE = timedelta(days=2)
REMIND_MAX_AGE = timedelta(hours=3)
OVERDUE_GRACE_MS = 2 * 60 * 60 * 1000

# ============================================================================
# HEALTH CHECK DATA STRUCTURES
# ============================================================================

@dataclass
class HealthStatus:
    """Overall health status of the reminder system"""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    database_connected: bool
    last_refresh_run: Optional[str]
    last_remind_run: Optional[str]
    tracked_contacts: int
    overdue_contacts: int
    failure_rate_24h: float
    issues: List[str]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)

# ============================================================================
# HEALTH MONITOR CLASS
# ============================================================================

class HealthMonitor:
    """Health monitoring for the refresh and reminder passes"""

    def __init__(self, db_path: str, config: Optional[ReminderConfig] = None):
        self.db_path = db_path
        self.config = config or ReminderConfig()

    def get_health_status(self, now: Optional[datetime] = None) -> HealthStatus:
        """Get current health status of the system"""
        now = now or datetime.now()
        issues = []

        db_connected = self.check_db_connection()
        if not db_connected:
            issues.append("Database connection failed")

        last_refresh = self.get_last_successful_run(REFRESH_PASS)
        last_remind = self.get_last_successful_run(REMIND_PASS)
        for pass_name, last_run, max_age in ((REFRESH_PASS, last_refresh, REFRESH_MAX_AGE),
                                             (REMIND_PASS, last_remind, REMIND_MAX_AGE)):
            if not last_run:
                issues.append(f"No successful {pass_name} runs found")
            elif now - datetime.fromisoformat(last_run) > max_age:
                issues.append(f"Last successful {pass_name} run was at {last_run}")

        tracked, overdue = self.count_overdue_contacts(int(now.timestamp() * 1000))
        if overdue > 0:
            issues.append(f"{overdue} contacts overdue for a reminder")

        failure_rate = self.calculate_failure_rate_24h(now)
        if failure_rate > 0.05:
            issues.append(f"High run failure rate: {failure_rate:.2%}")

        if not db_connected:
            status = "unhealthy"
        elif issues:
            status = "degraded"
        else:
            status = "healthy"

        return HealthStatus(
            status=status,
            timestamp=now.isoformat(),
            database_connected=db_connected,
            last_refresh_run=last_refresh,
            last_remind_run=last_remind,
            tracked_contacts=tracked,
            overdue_contacts=overdue,
            failure_rate_24h=failure_rate,
            issues=issues
        )

    def check_db_connection(self) -> bool:
        """Check if database connection is working"""
        try:
            with sqlite3.connect(self.db_path, timeout=5) as conn:
                conn.execute("SELECT 1").fetchone()
                return True
        except sqlite3.Error as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    def get_last_successful_run(self, pass_name: str) -> Optional[str]:
        """Completion timestamp of the last successful run of a pass"""
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute("""
                    SELECT completed_at FROM reminder_runs
                    WHERE status = 'completed' AND pass_name = ?
                    ORDER BY completed_at DESC
                    LIMIT 1
                """, (pass_name,)).fetchone()
                return row[0] if row else None
        except sqlite3.Error as e:
            logger.error(f"Error checking last successful {pass_name} run: {e}")
            return None

    def count_overdue_contacts(self, now_ms: Optional[int] = None) -> Tuple[int, int]:
        """Tracked contacts, and those whose stored reminder time passed more than two hours ago"""
        now_ms = current_time_ms() if now_ms is None else now_ms
        try:
            with sqlite3.connect(self.db_path) as conn:
                rows = conn.execute("""
                    SELECT g.contact_id, f.value
                    FROM contact_groups g
                    LEFT JOIN contact_custom_fields f
                      ON f.contact_id = g.contact_id AND f.label = g.group_name
                    WHERE g.group_name = ?
                """, (self.config.group,)).fetchall()
        except sqlite3.Error as e:
            logger.error(f"Error counting overdue contacts: {e}")
            return 0, 0

        overdue = 0
        for _, value in rows:
            next_reminder = parse_state_blob(value).fields.get(NEXT_REMINDER_KEY)
            if next_reminder is not None and now_ms - next_reminder > OVERDUE_GRACE_MS:
                overdue += 1
        return len(rows), overdue

    def calculate_failure_rate_24h(self, now: Optional[datetime] = None) -> float:
        """Share of runs in the last 24 hours that failed"""
        cutoff = (now or datetime.now()) - timedelta(days=1)
        try:
            with sqlite3.connect(self.db_path) as conn:
                total, failed = conn.execute("""
                    SELECT COUNT(*), COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0)
                    FROM reminder_runs
                    WHERE started_at >= ?
                """, (cutoff.isoformat(),)).fetchone()
        except sqlite3.Error as e:
            logger.error(f"Error calculating failure rate: {e}")
            return 0.0

        return failed / total if total else 0.0

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point for health monitoring"""
    import argparse

    parser = argparse.ArgumentParser(description='Keep In Touch Health Monitor')
    parser.add_argument('--db', required=True, help='SQLite database path')
    parser.add_argument('--config', help='Configuration YAML path')
    parser.add_argument('--json', action='store_true', help='Output in JSON format')

    args = parser.parse_args()

    config = ReminderConfig.from_yaml(args.config) if args.config else ReminderConfig()
    health = HealthMonitor(args.db, config).get_health_status()

    if args.json:
        print(json.dumps(health.to_dict(), indent=2))
        return

    print(f"System Status: {health.status.upper()}")
    print(f"Database Connected: {health.database_connected}")
    print(f"Last Refresh Run: {health.last_refresh_run or 'Never'}")
    print(f"Last Remind Run: {health.last_remind_run or 'Never'}")
    print(f"Tracked Contacts: {health.tracked_contacts}")
    print(f"Overdue Contacts: {health.overdue_contacts}")
    print(f"Failure Rate (24h): {health.failure_rate_24h:.2%}")
    if health.issues:
        print("Issues:")
        for issue in health.issues:
            print(f"  - {issue}")


if __name__ == '__main__':
    main()
