import math
from dataclasses import dataclass
from datetime import datetime, timedelta

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class CirculationPolicy:
    """Numeric rules governing loan eligibility and fine accrual."""

    loan_period_days: int = 14
    max_renewals: int = 2
    max_active_loans_per_patron: int = 5
    daily_fine_rate: float = 1.0

    @property
    def loan_period(self) -> timedelta:
        return timedelta(days=self.loan_period_days)

    def compute_due_date(self, borrowed_at: datetime) -> datetime:
        return borrowed_at + self.loan_period

    def compute_fine(self, due_at: datetime, as_of: datetime) -> float:
        # Any started day counts as a full overdue day.
        if as_of <= due_at:
            return 0
        days_overdue = math.ceil((as_of - due_at) / ONE_DAY)
        return max(0, days_overdue) * self.daily_fine_rate


DEFAULT_POLICY = CirculationPolicy()
