from datetime import timedelta

import pytest
from bson import ObjectId

from circulation.models import Loan, Role, utcnow


@pytest.fixture(scope="function")
def book(make_book):
    return make_book(
        title="The Left Hand of Darkness",
        author="Ursula K. Le Guin",
        genre="Science Fiction",
        total_copies=2,
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# Auth


def test_register(client):
    response = client.post(
        "/api/auth/register",
        json={"name": "New Reader", "email": "New@Example.com", "password": "hunter22"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["email"] == "new@example.com"
    assert data["role"] == "user"
    assert data["isActive"] is True
    assert "passwordHash" not in data

    me = client.get("/api/auth/me", auth=("new@example.com", "hunter22"))
    assert me.status_code == 200
    assert me.json()["_id"] == data["_id"]


def test_register_duplicate_email(client, patron):
    response = client.post(
        "/api/auth/register",
        json={"name": "Someone", "email": patron.email, "password": "hunter22"},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "ALREADY_EXISTS"


def test_register_validation(client):
    response = client.post(
        "/api/auth/register", json={"name": "X", "email": "not-an-email", "password": "123"}
    )

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "VALIDATION_FAILED"
    assert {error["field"] for error in body["errors"]} == {"name", "email", "password"}


def test_missing_credentials(client):
    response = client.get("/api/auth/me")
    assert response.status_code == 401
    assert "Basic" in response.headers["WWW-Authenticate"]


def test_wrong_password(client, patron):
    response = client.get("/api/auth/me", auth=(patron.email, "wrong-password"))

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHENTICATED"


def test_deactivated_account(client, repository, patron, patron_auth):
    repository.users[patron.id] = patron.model_copy(update={"is_active": False})

    response = client.get("/api/auth/me", auth=patron_auth)
    assert response.status_code == 401


# Books


def test_list_books_skips_inactive(client, make_book):
    make_book(title="Alpha")
    make_book(title="Beta")
    make_book(title="Gamma", is_active=False)

    response = client.get("/api/books", params={"limit": 1})

    assert response.status_code == 200
    data = response.json()
    assert [book["title"] for book in data["books"]] == ["Alpha"]
    assert data["pagination"]["totalRecords"] == 2
    assert data["pagination"]["totalPages"] == 2
    assert data["pagination"]["hasNextPage"] is True


def test_list_books_by_genre_sorted_desc(client, make_book):
    make_book(title="Dune", genre="Science Fiction")
    make_book(title="Solaris", genre="Science Fiction")
    make_book(title="Emma", genre="Romance")

    response = client.get(
        "/api/books", params={"genre": "science", "sortBy": "title", "sortOrder": "desc"}
    )

    assert [book["title"] for book in response.json()["books"]] == ["Solaris", "Dune"]


def test_search_books(client, make_book):
    make_book(title="Dune", author="Frank Herbert")
    make_book(title="Emma", author="Jane Austen", tags=["classic"])

    response = client.get("/api/books/search", params={"q": "austen"})

    data = response.json()
    assert data["searchQuery"] == "austen"
    assert [book["title"] for book in data["books"]] == ["Emma"]


def test_read_book(client, book):
    response = client.get(f"/api/books/{book.id}")

    assert response.status_code == 200
    data = response.json()
    assert data["_id"] == book.id
    assert data["totalCopies"] == 2
    assert data["availableCopies"] == 2


def test_read_missing_book(client):
    response = client.get(f"/api/books/{ObjectId()}")

    assert response.status_code == 404
    assert response.json()["code"] == "BOOK_NOT_FOUND"


def test_read_book_with_malformed_id(client):
    response = client.get("/api/books/not-an-id")

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_ARGUMENT"


# Circulation


def test_borrow_book(client, repository, book, patron_auth):
    response = client.post(f"/api/books/{book.id}/borrow", auth=patron_auth)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "active"
    assert data["loanId"] in repository.loans
    assert client.get(f"/api/books/{book.id}").json()["availableCopies"] == 1


def test_borrow_requires_login(client, book):
    response = client.post(f"/api/books/{book.id}/borrow")
    assert response.status_code == 401


def test_borrow_same_book_twice(client, book, patron_auth):
    client.post(f"/api/books/{book.id}/borrow", auth=patron_auth)

    response = client.post(f"/api/books/{book.id}/borrow", auth=patron_auth)

    assert response.status_code == 409
    assert response.json()["code"] == "ALREADY_BORROWED"


def test_borrow_unavailable_book(client, make_book, patron_auth):
    book = make_book(total_copies=1, available_copies=0)

    response = client.post(f"/api/books/{book.id}/borrow", auth=patron_auth)

    assert response.status_code == 409
    assert response.json()["code"] == "UNAVAILABLE"


def test_borrow_over_limit(client, make_book, patron_auth):
    for _ in range(5):
        assert client.post(f"/api/books/{make_book().id}/borrow", auth=patron_auth).status_code == 201

    response = client.post(f"/api/books/{make_book().id}/borrow", auth=patron_auth)

    assert response.status_code == 403
    assert response.json()["code"] == "LIMIT_EXCEEDED"


def test_return_book(client, book, patron_auth):
    loan_id = client.post(f"/api/books/{book.id}/borrow", auth=patron_auth).json()["loanId"]

    response = client.post(f"/api/books/{book.id}/return", auth=patron_auth)

    assert response.status_code == 200
    data = response.json()
    assert data["loanId"] == loan_id
    assert data["status"] == "returned"
    assert data["fineAmount"] == 0
    assert client.get(f"/api/books/{book.id}").json()["availableCopies"] == 2


def test_return_book_not_borrowed(client, book, patron_auth):
    response = client.post(f"/api/books/{book.id}/return", auth=patron_auth)

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_renew_loan(client, book, patron_auth):
    loan_id = client.post(f"/api/books/{book.id}/borrow", auth=patron_auth).json()["loanId"]

    response = client.post(f"/api/user/renew/{loan_id}", auth=patron_auth)

    assert response.status_code == 200
    data = response.json()
    assert data["renewedCount"] == 1
    assert data["status"] == "renewed"


def test_renewal_limit(client, book, patron_auth):
    loan_id = client.post(f"/api/books/{book.id}/borrow", auth=patron_auth).json()["loanId"]
    client.post(f"/api/user/renew/{loan_id}", auth=patron_auth)
    client.post(f"/api/user/renew/{loan_id}", auth=patron_auth)

    response = client.post(f"/api/user/renew/{loan_id}", auth=patron_auth)

    assert response.status_code == 403
    assert response.json()["code"] == "RENEWAL_LIMIT_EXCEEDED"


def test_cannot_renew_another_patrons_loan(client, book, patron_auth, make_user):
    make_user("other@example.com")
    loan_id = client.post(f"/api/books/{book.id}/borrow", auth=patron_auth).json()["loanId"]

    response = client.post(
        f"/api/user/renew/{loan_id}", auth=("other@example.com", "secret123")
    )

    assert response.status_code == 404
    assert response.json()["code"] == "LOAN_NOT_FOUND"


# Patron account


@pytest.fixture(scope="function")
def overdue_loan(repository, patron, book):
    now = utcnow()
    loan = Loan(
        id=str(ObjectId()),
        patron_id=patron.id,
        book_id=book.id,
        borrowed_at=now - timedelta(days=20, hours=1),
        due_at=now - timedelta(days=6, hours=1),
    )
    repository.loans[loan.id] = loan
    return loan


def test_active_borrows_show_overdue_fine(client, overdue_loan, patron_auth):
    response = client.get("/api/user/active-borrows", auth=patron_auth)

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    loan = data["data"][0]
    assert loan["_id"] == overdue_loan.id
    assert loan["status"] == "overdue"
    assert loan["fineAmount"] == 7.0
    assert loan["book"]["title"] == "The Left Hand of Darkness"


def test_overdue_loan_cannot_be_renewed(client, overdue_loan, patron_auth):
    response = client.post(f"/api/user/renew/{overdue_loan.id}", auth=patron_auth)

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"


def test_borrow_history_filters_by_status(client, make_book, overdue_loan, patron_auth):
    other = make_book(title="Kindred")
    client.post(f"/api/books/{other.id}/borrow", auth=patron_auth)
    client.post(f"/api/books/{other.id}/return", auth=patron_auth)

    everything = client.get("/api/user/borrow-history", auth=patron_auth).json()
    returned = client.get(
        "/api/user/borrow-history", params={"status": "returned"}, auth=patron_auth
    ).json()

    assert everything["pagination"]["totalRecords"] == 2
    assert [loan["book"]["title"] for loan in returned["data"]] == ["Kindred"]


def test_user_stats(client, make_book, overdue_loan, patron_auth):
    other = make_book(title="Kindred", genre="Science Fiction")
    client.post(f"/api/books/{other.id}/borrow", auth=patron_auth)

    response = client.get("/api/user/stats", auth=patron_auth)

    data = response.json()
    assert data["totalBorrows"] == 2
    assert data["activeBorrows"] == 1
    assert data["overdueBorrows"] == 1
    assert data["returnedBooks"] == 0
    assert data["totalFines"] == 7.0
    assert data["favoriteGenres"] == [{"genre": "Science Fiction", "count": 2}]


def test_update_profile(client, patron_auth):
    response = client.put("/api/user/profile", json={"name": "Renamed Reader"}, auth=patron_auth)

    assert response.status_code == 200
    assert response.json()["name"] == "Renamed Reader"


def test_update_profile_email_taken(client, admin, patron_auth):
    response = client.put("/api/user/profile", json={"email": admin.email}, auth=patron_auth)

    assert response.status_code == 409


# Wishlist


def test_wishlist(client, book, patron_auth):
    added = client.post(f"/api/wishlist/{book.id}", auth=patron_auth)
    assert added.status_code == 200

    duplicate = client.post(f"/api/wishlist/{book.id}", auth=patron_auth)
    assert duplicate.status_code == 409

    check = client.get(f"/api/wishlist/check/{book.id}", auth=patron_auth)
    assert check.json()["data"]["inWishlist"] is True

    listing = client.get("/api/wishlist", auth=patron_auth).json()
    assert listing["count"] == 1
    assert listing["wishlist"][0]["book"]["_id"] == book.id

    removed = client.delete(f"/api/wishlist/{book.id}", auth=patron_auth)
    assert removed.status_code == 200
    again = client.delete(f"/api/wishlist/{book.id}", auth=patron_auth)
    assert again.status_code == 404


def test_wishlist_missing_book(client, patron_auth):
    response = client.post(f"/api/wishlist/{ObjectId()}", auth=patron_auth)
    assert response.status_code == 404


# Admin


def test_admin_routes_need_admin_role(client, patron_auth):
    response = client.get("/api/admin/dashboard/stats", auth=patron_auth)

    assert response.status_code == 403
    assert response.json()["code"] == "PERMISSION_DENIED"


def test_dashboard_stats(client, book, overdue_loan, patron, admin_auth):
    response = client.get("/api/admin/dashboard/stats", auth=admin_auth)

    assert response.status_code == 200
    data = response.json()
    assert data["totalBooks"] == 1
    assert data["totalUsers"] == 1
    assert data["activeBorrowings"] == 0
    assert data["overdueBorrowings"] == 1
    assert data["totalFines"] == 7.0
    assert [loan["_id"] for loan in data["recentBorrows"]] == [overdue_loan.id]
    assert data["popularBooks"][0]["borrowCount"] == 1


def test_add_book(client, admin_auth):
    response = client.post(
        "/api/admin/books",
        json={
            "title": "Beloved",
            "author": "Toni Morrison",
            "isbn": "9781400033416",
            "genre": "Fiction",
            "publishedYear": 1987,
            "totalCopies": 3,
        },
        auth=admin_auth,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["availableCopies"] == 3
    assert client.get(f"/api/books/{data['_id']}").status_code == 200


def test_add_book_duplicate_isbn(client, make_book, admin_auth):
    make_book(isbn="9781400033416")

    response = client.post(
        "/api/admin/books",
        json={"title": "Beloved", "author": "Toni Morrison", "isbn": "9781400033416"},
        auth=admin_auth,
    )
    assert response.status_code == 409


def test_add_book_rejects_more_available_than_total(client, admin_auth):
    response = client.post(
        "/api/admin/books",
        json={"title": "Beloved", "author": "Toni Morrison", "totalCopies": 1, "availableCopies": 2},
        auth=admin_auth,
    )
    assert response.status_code == 422


def test_modify_book_total_copies(client, book, patron_auth, admin_auth):
    client.post(f"/api/books/{book.id}/borrow", auth=patron_auth)

    response = client.put(
        f"/api/admin/books/{book.id}",
        json={"title": "The Left Hand of Darkness (2nd ed.)", "totalCopies": 1},
        auth=admin_auth,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["title"] == "The Left Hand of Darkness (2nd ed.)"
    assert data["totalCopies"] == 1
    assert data["availableCopies"] == 1


def test_remove_book_with_open_loans(client, book, patron_auth, admin_auth):
    client.post(f"/api/books/{book.id}/borrow", auth=patron_auth)

    response = client.delete(f"/api/admin/books/{book.id}", auth=admin_auth)

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"


def test_deactivate_book_with_open_loans(client, repository, book, patron_auth, admin_auth):
    client.post(f"/api/books/{book.id}/borrow", auth=patron_auth)

    response = client.put(
        f"/api/admin/books/{book.id}", json={"isActive": False}, auth=admin_auth
    )

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"
    assert repository.books[book.id].is_active is True


def test_deactivate_book_through_update(client, repository, book, admin_auth):
    response = client.put(
        f"/api/admin/books/{book.id}", json={"isActive": False}, auth=admin_auth
    )

    assert response.status_code == 200
    assert repository.books[book.id].is_active is False


def test_book_ids_are_case_insensitive(client, book, patron_auth, admin_auth):
    client.post(f"/api/books/{book.id.upper()}/borrow", auth=patron_auth)

    again = client.post(f"/api/books/{book.id}/borrow", auth=patron_auth)
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_BORROWED"

    response = client.delete(f"/api/admin/books/{book.id.upper()}", auth=admin_auth)
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"


def test_remove_book(client, repository, book, admin_auth):
    response = client.delete(f"/api/admin/books/{book.id}", auth=admin_auth)

    assert response.status_code == 200
    assert repository.books[book.id].is_active is False
    assert client.get(f"/api/books/{book.id}").status_code == 404

    listing = client.get(
        "/api/admin/books", params={"includeInactive": "true"}, auth=admin_auth
    ).json()
    assert listing["pagination"]["totalRecords"] == 1


def test_list_users(client, patron, admin_auth):
    response = client.get("/api/admin/users", params={"role": "user"}, auth=admin_auth)

    data = response.json()
    assert [user["email"] for user in data["users"]] == [patron.email]


def test_promote_user(client, repository, patron, admin_auth):
    response = client.put(f"/api/admin/users/{patron.id}", json={"role": "admin"}, auth=admin_auth)

    assert response.status_code == 200
    assert response.json()["role"] == "admin"
    assert repository.users[patron.id].role == Role.ADMIN


def test_admin_cannot_deactivate_self(client, admin, admin_auth):
    response = client.put(
        f"/api/admin/users/{admin.id}", json={"isActive": False}, auth=admin_auth
    )
    assert response.status_code == 400


def test_remove_user_with_open_loans(client, patron, overdue_loan, admin_auth):
    response = client.delete(f"/api/admin/users/{patron.id}", auth=admin_auth)
    assert response.status_code == 409


def test_deactivate_user_with_open_loans(client, repository, patron, overdue_loan, admin_auth):
    response = client.put(
        f"/api/admin/users/{patron.id}", json={"isActive": False}, auth=admin_auth
    )

    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"
    assert repository.users[patron.id].is_active is True


def test_remove_user(client, repository, patron, admin_auth):
    response = client.delete(f"/api/admin/users/{patron.id}", auth=admin_auth)

    assert response.status_code == 200
    assert repository.users[patron.id].is_active is False
