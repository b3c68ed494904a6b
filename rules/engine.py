"""
Rule Engine — Decides whether a heat reading warrants an alert.

Quiet hours always suppress issuance. Outside quiet hours an alert is
issued when the level is at or above "warning" on the severity scale
caution < warning < severe-warning < danger. Unknown levels never issue.

Pure and deterministic: no I/O, no clock.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Union

from models.schemas import HEAT_LEVEL_ORDER, HeatLevel


@dataclass(frozen=True)
class IssueDecision:
    issue: bool
    reason: str          # "alert" | "below_threshold" | "quiet_hours" | "unknown_level"

    def __bool__(self):
        return self.issue


def _level_rank(level: Union[HeatLevel, str, None]) -> int:
    if isinstance(level, str):
        level = level.replace("_", "-")
    try:
        return HEAT_LEVEL_ORDER.index(HeatLevel(level))
    except ValueError:
        return -1


class RuleEngine:

    def __init__(
        self,
        quiet_hours: tuple[int, int] = (22, 7),
        notification_windows: Iterable[int] = (9, 13, 17),
        threshold: HeatLevel = HeatLevel.WARNING,
    ):
        self.quiet_start, self.quiet_end = quiet_hours
        self.notification_windows = sorted(set(notification_windows))
        self.threshold_rank = _level_rank(threshold)

    def is_quiet_hour(self, hour: int) -> bool:
        """True inside [start, end), wrapping midnight when start > end."""
        if self.quiet_start == self.quiet_end:
            return False
        if self.quiet_start > self.quiet_end:
            return hour >= self.quiet_start or hour < self.quiet_end
        return self.quiet_start <= hour < self.quiet_end

    def in_notification_window(self, hour: int) -> bool:
        return hour in self.notification_windows and not self.is_quiet_hour(hour)

    def next_notification_hour(self, hour: int) -> Optional[int]:
        """Next window hour strictly after `hour`, wrapping to tomorrow's first."""
        allowed = [h for h in self.notification_windows if not self.is_quiet_hour(h)]
        if not allowed:
            return None
        for h in allowed:
            if h > hour:
                return h
        return allowed[0]

    def should_issue(self, level: Union[HeatLevel, str, None], hour: int) -> IssueDecision:
        if self.is_quiet_hour(hour):
            return IssueDecision(False, "quiet_hours")
        rank = _level_rank(level)
        if rank < 0:
            return IssueDecision(False, "unknown_level")
        if rank >= self.threshold_rank:
            return IssueDecision(True, "alert")
        return IssueDecision(False, "below_threshold")
