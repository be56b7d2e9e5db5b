from datetime import datetime
from typing import Dict, List, Optional

from circulation.loans import accrued_fine, with_derived_status
from circulation.models import Loan, LoanStatus
from circulation.policy import CirculationPolicy

from .crud import LibraryRepository
from .schemas import LoanDetail


async def present_loans(
    db: LibraryRepository, loans: List[Loan], now: datetime, policy: CirculationPolicy
) -> List[LoanDetail]:
    """Loans with their derived status, current fine and book attached."""
    books = await db.find_books([loan.book_id for loan in loans])
    return [
        LoanDetail(
            **with_derived_status(loan, now, policy).model_dump(),
            book=books.get(loan.book_id),
        )
        for loan in loans
    ]


async def loan_totals(
    db: LibraryRepository,
    now: datetime,
    policy: CirculationPolicy,
    patron_id: Optional[str] = None,
) -> Dict[str, float]:
    counts = {
        status: await db.count_loans(now, patron_id=patron_id, status=status)
        for status in LoanStatus
    }
    overdue_loans, _ = await db.list_loans(now, patron_id=patron_id, status=LoanStatus.OVERDUE)
    outstanding = sum(accrued_fine(loan, now, policy) for loan in overdue_loans)

    return {
        "total": sum(counts.values()),
        "active": counts[LoanStatus.ACTIVE] + counts[LoanStatus.RENEWED],
        "overdue": counts[LoanStatus.OVERDUE],
        "returned": counts[LoanStatus.RETURNED],
        "fines": await db.sum_fines(patron_id) + outstanding,
    }
