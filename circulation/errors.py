class LibraryException(Exception):
    """Base exception for library-related errors."""

    code = "LIBRARY_ERROR"
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NotFoundError(LibraryException):
    code = "NOT_FOUND"
    status_code = 404


class BookNotFoundError(NotFoundError):
    code = "BOOK_NOT_FOUND"

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} not found")


class LoanNotFoundError(NotFoundError):
    code = "LOAN_NOT_FOUND"

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan with id {loan_id} not found")


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User with id {user_id} not found")


class BookUnavailableError(LibraryException):
    """Raised when no copy of a book can be reserved."""

    code = "UNAVAILABLE"
    status_code = 409

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} is not available for borrowing")


class AlreadyBorrowedError(LibraryException):
    code = "ALREADY_BORROWED"
    status_code = 409

    def __init__(self, patron_id: str, book_id: str):
        self.patron_id = patron_id
        self.book_id = book_id
        super().__init__(f"Patron {patron_id} already has book {book_id} borrowed")


class LimitExceededError(LibraryException):
    code = "LIMIT_EXCEEDED"
    status_code = 403

    def __init__(self, patron_id: str, limit: int):
        self.patron_id = patron_id
        self.limit = limit
        super().__init__(
            f"Patron {patron_id} has reached the maximum borrowing limit ({limit} books)"
        )


class InvalidStateError(LibraryException):
    code = "INVALID_STATE"
    status_code = 409


class AlreadyReturnedError(InvalidStateError):
    code = "ALREADY_RETURNED"

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan with id {loan_id} has already been returned")


class RenewalLimitExceededError(LibraryException):
    code = "RENEWAL_LIMIT_EXCEEDED"
    status_code = 403

    def __init__(self, loan_id: str, limit: int):
        self.loan_id = loan_id
        self.limit = limit
        super().__init__(
            f"Loan with id {loan_id} has already been renewed {limit} times"
        )


class InvalidArgumentError(LibraryException):
    code = "INVALID_ARGUMENT"
    status_code = 400


class ConflictError(LibraryException):
    """Raised when a concurrent update won the race on the same record."""

    code = "CONFLICT"
    status_code = 409


class AlreadyExistsError(LibraryException):
    code = "ALREADY_EXISTS"
    status_code = 409


class AuthenticationError(LibraryException):
    code = "UNAUTHENTICATED"
    status_code = 401


class PermissionDeniedError(LibraryException):
    code = "PERMISSION_DENIED"
    status_code = 403
