"""
Periodic jobs — alert issuance and escalation, driven by the Scheduler.

- HeatAlertJob: opens alerts in notification windows and places call 1
- EscalationJob: advances unanswered alerts through contact stages
- Scheduler: per-job interval loops with skip-if-busy guards
"""
from jobs.base import JobRunStats
from jobs.heat_alert import HeatAlertJob
from jobs.escalation import EscalationJob
from jobs.scheduler import Scheduler

__all__ = ["JobRunStats", "HeatAlertJob", "EscalationJob", "Scheduler"]
