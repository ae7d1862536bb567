"""Daily check-in and check-out of children."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .exceptions import ValidationError
from .models import AttendanceLog, Child, utcnow
from .ops import StructuredLogger
from .store import Store


@dataclass(slots=True)
class RosterEntry:
    child: Child
    log: Optional[AttendanceLog]

    @property
    def is_present(self) -> bool:
        return self.log is not None and self.log.is_present


class AttendanceBook:
    """Record when children arrive and leave on the current day."""

    def __init__(self, store: Store, *, clock: Callable[[], datetime] = utcnow, logger: Optional[StructuredLogger] = None) -> None:
        self.store = store
        self._clock = clock
        self.logger = logger or StructuredLogger(clock=clock)

    def _start_of_day(self) -> datetime:
        return self._clock().replace(hour=0, minute=0, second=0, microsecond=0)

    def todays_log(self, child_id: str) -> Optional[AttendanceLog]:
        """Return the latest log started today for ``child_id``."""

        logs = self.store.attendance_since(self._start_of_day(), child_id=child_id)
        return logs[0] if logs else None

    def is_checked_in(self, child_id: str) -> bool:
        log = self.todays_log(child_id)
        return log is not None and log.is_present

    def check_in(self, child_id: str, staff_id: str) -> AttendanceLog:
        if self.is_checked_in(child_id):
            raise ValidationError("Child is already checked in.", message_key="validation.attendance.already_in", field="child_id")
        log = self.store.add_attendance(AttendanceLog(child_id=child_id, checked_in_at=self._clock(), checked_in_by=staff_id))
        self.logger.log("child_checked_in", child=child_id, staff=staff_id)
        return log

    def check_out(self, child_id: str, staff_id: str) -> AttendanceLog:
        log = self.todays_log(child_id)
        if log is None or not log.is_present:
            raise ValidationError("Child is not checked in.", message_key="validation.attendance.not_in", field="child_id")
        updated = self.store.update_attendance(log.log_id, checked_out_at=self._clock(), checked_out_by=staff_id)
        self.logger.log("child_checked_out", child=child_id, staff=staff_id)
        return updated

    def roster(self) -> List[RosterEntry]:
        logs = self.store.attendance_since(self._start_of_day())
        latest: dict[str, AttendanceLog] = {}
        for log in logs:
            latest.setdefault(log.child_id, log)
        return [RosterEntry(child=child, log=latest.get(child.child_id)) for child in self.store.list_children()]

    def present_count(self) -> int:
        return sum(1 for entry in self.roster() if entry.is_present)


__all__ = ["AttendanceBook", "RosterEntry"]
