from fastapi import Depends, Request

from circulation.ledger import InventoryLedger
from circulation.loans import LoanService

from .config import settings
from .crud import LibraryRepository


def get_db(request: Request) -> LibraryRepository:
    return request.app.state.repository


def get_ledger(db: LibraryRepository = Depends(get_db)) -> InventoryLedger:
    return InventoryLedger(db)


def get_loan_service(
    db: LibraryRepository = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
) -> LoanService:
    return LoanService(db, ledger=ledger, policy=settings.policy())
