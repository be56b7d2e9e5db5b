import logging
from datetime import datetime
from typing import Optional

from .errors import (
    AlreadyBorrowedError,
    AlreadyReturnedError,
    BookNotFoundError,
    ConflictError,
    InvalidStateError,
    LimitExceededError,
    LoanNotFoundError,
    RenewalLimitExceededError,
)
from .ledger import InventoryLedger
from .models import Loan, LoanStatus, as_utc, utcnow
from .policy import DEFAULT_POLICY, CirculationPolicy
from .repository import CirculationRepository
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


def derive_status(loan: Loan, now: Optional[datetime] = None) -> LoanStatus:
    """Lifecycle state of a loan computed from its timestamps."""
    now = as_utc(now) or utcnow()
    if loan.returned_at is not None:
        return LoanStatus.RETURNED
    if now > loan.due_at:
        return LoanStatus.OVERDUE
    if loan.status == LoanStatus.RENEWED:
        return LoanStatus.RENEWED
    return LoanStatus.ACTIVE


def accrued_fine(
    loan: Loan, now: Optional[datetime] = None, policy: CirculationPolicy = DEFAULT_POLICY
) -> float:
    """Frozen fine of a returned loan, or what an open loan would owe at ``now``."""
    if loan.returned_at is not None:
        return loan.fine_amount
    return policy.compute_fine(loan.due_at, as_utc(now) or utcnow())


def with_derived_status(
    loan: Loan, now: Optional[datetime] = None, policy: CirculationPolicy = DEFAULT_POLICY
) -> Loan:
    """Copy of ``loan`` carrying its derived status and current fine, for display."""
    return loan.model_copy(
        update={
            "status": derive_status(loan, now),
            "fine_amount": accrued_fine(loan, now, policy),
        }
    )


class LoanService:
    """Borrow, renew and return operations on loan records."""

    def __init__(
        self,
        repository: CirculationRepository,
        ledger: Optional[InventoryLedger] = None,
        policy: CirculationPolicy = DEFAULT_POLICY,
    ):
        self.repository = repository
        self.ledger = ledger or InventoryLedger(repository)
        self.policy = policy

    async def open_loan(
        self, patron_id: str, book_id: str, now: Optional[datetime] = None
    ) -> Loan:
        now = as_utc(now) or utcnow()

        book = await self.repository.find_book(book_id)
        if book is None or not book.is_active:
            raise BookNotFoundError(book_id)

        if await self.repository.find_open_loan(patron_id, book_id):
            logger.warning(f"Patron {patron_id} already holds book {book_id}")
            raise AlreadyBorrowedError(patron_id, book_id)

        limit = self.policy.max_active_loans_per_patron
        if await self.repository.count_open_loans(patron_id) >= limit:
            logger.warning(f"Patron {patron_id} is at the loan limit of {limit}")
            raise LimitExceededError(patron_id, limit)

        loan = Loan(
            patron_id=patron_id,
            book_id=book_id,
            borrowed_at=now,
            due_at=self.policy.compute_due_date(now),
            status=LoanStatus.ACTIVE,
            fine_amount=0,
        )

        async with UnitOfWork("borrow") as uow:
            await self.ledger.reserve_copy(book_id)
            uow.on_rollback(self.ledger.release_copy, book_id)

            loan = await self.repository.create_loan(loan)
            uow.on_rollback(self.repository.delete_loan, loan.id)

            # Concurrent borrows by the same patron may all have passed the
            # first check. Only the oldest loans within the cap are kept.
            if loan.id not in (await self.repository.open_loan_ids(patron_id))[:limit]:
                raise LimitExceededError(patron_id, limit)

        logger.info(f"Patron {patron_id} borrowed book {book_id}, due {loan.due_at}")
        return loan

    async def renew(
        self, loan_id: str, now: Optional[datetime] = None, patron_id: Optional[str] = None
    ) -> Loan:
        now = as_utc(now) or utcnow()
        loan = await self._get_loan(loan_id, patron_id)

        status = derive_status(loan, now)
        if status in (LoanStatus.RETURNED, LoanStatus.OVERDUE):
            logger.warning(f"Loan {loan_id} cannot be renewed while {status.value}")
            raise InvalidStateError(
                f"Loan with id {loan_id} is {status.value} and cannot be renewed"
            )
        if loan.renewed_count >= self.policy.max_renewals:
            raise RenewalLimitExceededError(loan_id, self.policy.max_renewals)

        renewed = loan.model_copy(
            update={
                "due_at": loan.due_at + self.policy.loan_period,
                "renewed_count": loan.renewed_count + 1,
                "status": LoanStatus.RENEWED,
                "version": loan.version + 1,
            }
        )
        saved = await self.repository.update_loan(renewed, expected_version=loan.version)
        if saved is None:
            await self._raise_lost_race(loan_id, renewing=True)

        logger.info(f"Loan {loan_id} renewed, now due {saved.due_at}")
        return saved

    async def close_loan(self, loan_id: str, now: Optional[datetime] = None) -> Loan:
        now = as_utc(now) or utcnow()
        loan = await self._get_loan(loan_id)
        if loan.returned_at is not None:
            raise AlreadyReturnedError(loan_id)

        fine = self.policy.compute_fine(loan.due_at, now) if now > loan.due_at else 0
        closed = loan.model_copy(
            update={
                "returned_at": now,
                "fine_amount": fine,
                "status": LoanStatus.RETURNED,
                "version": loan.version + 1,
            }
        )

        async with UnitOfWork("return") as uow:
            saved = await self.repository.update_loan(closed, expected_version=loan.version)
            if saved is None:
                await self._raise_lost_race(loan_id)
            uow.on_rollback(self._reopen, loan, saved.version)

            await self.ledger.release_copy(loan.book_id)

        logger.info(f"Loan {loan_id} returned with fine {saved.fine_amount}")
        return saved

    async def _get_loan(self, loan_id: str, patron_id: Optional[str] = None) -> Loan:
        loan = await self.repository.find_loan(loan_id)
        if loan is None or (patron_id is not None and loan.patron_id != patron_id):
            raise LoanNotFoundError(loan_id)
        return loan

    async def _reopen(self, original: Loan, current_version: int) -> None:
        restored = original.model_copy(update={"version": current_version + 1})
        await self.repository.update_loan(restored, expected_version=current_version)

    async def _raise_lost_race(self, loan_id: str, renewing: bool = False):
        current = await self.repository.find_loan(loan_id)
        if current is None:
            raise LoanNotFoundError(loan_id)
        if current.returned_at is not None:
            if renewing:
                raise InvalidStateError(
                    f"Loan with id {loan_id} is returned and cannot be renewed"
                )
            raise AlreadyReturnedError(loan_id)
        raise ConflictError(f"Loan with id {loan_id} was modified concurrently")
