import pytest

from libdesk.accounts import hash_password, verify_password


def test_create_user_gets_reader_role(accounts):
    user = accounts.create_user("Anna Reader", "Anna@Example.com", "secret-pass")
    assert user.email == "anna@example.com"
    assert user.roles == ["reader"]
    stored = accounts.get_user(user.id)
    assert stored.roles == ["reader"]
    assert stored.max_books_allowed == 5
    assert stored.loan_period_days == 14


def test_create_user_validation(accounts):
    accounts.create_user("Anna", "anna@example.com", "secret-pass")
    with pytest.raises(ValueError, match="already exists"):
        accounts.create_user("Other", "ANNA@example.com", "secret-pass")
    with pytest.raises(ValueError):
        accounts.create_user("Bob", "not-an-email", "secret-pass")
    with pytest.raises(ValueError):
        accounts.create_user("Bob", "bob@example.com", "short")
    with pytest.raises(ValueError):
        accounts.create_user("  ", "bob@example.com", "secret-pass")
    with pytest.raises(LookupError):
        accounts.create_user("Bob", "bob@example.com", "secret-pass", roles=["wizard"])


def test_password_hashing():
    hashed = hash_password("secret-pass")
    assert hashed != "secret-pass"
    assert verify_password("secret-pass", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("secret-pass", "not-a-hash")


def test_authenticate(accounts, reader):
    user = accounts.authenticate("ANNA@example.com", "secret-pass")
    assert user.id == reader.id
    assert user.last_login is not None
    with pytest.raises(PermissionError):
        accounts.authenticate("anna@example.com", "wrong-pass")
    with pytest.raises(PermissionError):
        accounts.authenticate("nobody@example.com", "secret-pass")


def test_blocked_user_cannot_sign_in(accounts, reader):
    accounts.set_active(reader.id, False)
    with pytest.raises(PermissionError, match="blocked"):
        accounts.authenticate("anna@example.com", "secret-pass")


def test_token_round_trip(accounts, reader):
    token = accounts.issue_token(reader)
    claims = accounts.decode_token(token)
    assert claims["sub"] == reader.id
    assert claims["roles"] == ["reader"]
    with pytest.raises(PermissionError):
        accounts.decode_token(token + "x")


def test_change_password(accounts, reader):
    with pytest.raises(PermissionError):
        accounts.change_password(reader.id, "wrong-pass", "new-secret-pass")
    with pytest.raises(ValueError):
        accounts.change_password(reader.id, "secret-pass", "short")
    accounts.change_password(reader.id, "secret-pass", "new-secret-pass")
    assert accounts.authenticate("anna@example.com", "new-secret-pass").id == reader.id
    with pytest.raises(LookupError):
        accounts.change_password("ghost", "a", "b")


def test_reset_password_forces_change(accounts, reader):
    temporary = accounts.reset_password(reader.id)
    user = accounts.authenticate("anna@example.com", temporary)
    assert user.must_change_password is True
    accounts.change_password(reader.id, temporary, "brand-new-pass")
    assert accounts.get_user(reader.id).must_change_password is False


def test_update_and_search_users(accounts, reader):
    accounts.create_user("Boris Borrower", "boris@example.com", "secret-pass", phone="555-0101")
    updated = accounts.update_user(reader.id, full_name="Anna Karenina", loan_period_days=21, unknown="x")
    assert updated.full_name == "Anna Karenina"
    assert updated.loan_period_days == 21
    assert [u.email for u in accounts.search_users("555")] == ["boris@example.com"]
    assert accounts.count_users() == 2
    assert [u.full_name for u in accounts.list_users(limit=1)] == ["Anna Karenina"]
    with pytest.raises(ValueError):
        accounts.update_user(reader.id, max_books_allowed=0)
    with pytest.raises(ValueError):
        accounts.update_user(reader.id, email="boris@example.com")


def test_delete_user(accounts, reader):
    assert accounts.delete_user(reader.id) is True
    assert accounts.get_user(reader.id) is None
    assert accounts.delete_user(reader.id) is False


def test_delete_user_with_issued_book_refused(accounts, circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    circulation.change_status(reservation.id, "approved")
    circulation.change_status(reservation.id, "issued")
    with pytest.raises(ValueError):
        accounts.delete_user(reader.id)


def test_default_roles_seeded(accounts):
    assert [r.name for r in accounts.list_roles()] == ["admin", "librarian", "reader"]


def test_role_management(accounts, reader):
    role = accounts.create_role("volunteer", "Helps at events")
    with pytest.raises(ValueError):
        accounts.create_role("volunteer")

    accounts.assign_role(reader.id, role.id)
    assert sorted(accounts.get_user(reader.id).roles) == ["reader", "volunteer"]
    assert accounts.get_role(role.id).users_count == 1
    assert accounts.remove_role(reader.id, role.id) is True
    assert accounts.remove_role(reader.id, role.id) is False

    assert accounts.update_role(role.id, description="Events").description == "Events"
    assert accounts.delete_role(role.id) is True
    assert accounts.delete_role(role.id) is False


def test_builtin_roles_are_protected(accounts):
    admin = next(r for r in accounts.list_roles() if r.name == "admin")
    with pytest.raises(ValueError):
        accounts.delete_role(admin.id)
    with pytest.raises(ValueError):
        accounts.update_role(admin.id, name="root")


def test_set_user_role_replaces_roles(accounts, reader):
    librarian = next(r for r in accounts.list_roles() if r.name == "librarian")
    user = accounts.set_user_role(reader.id, librarian.id)
    assert user.roles == ["librarian"]
    assert accounts.user_has_role(reader.id, "librarian")
    assert not accounts.user_has_role(reader.id, "reader")


def test_assign_role_to_many_reports_failures(accounts, reader):
    librarian = next(r for r in accounts.list_roles() if r.name == "librarian")
    result = accounts.assign_role_to_many([reader.id, "ghost"], librarian.id)
    assert result["success"] == [reader.id]
    assert result["failed"][0]["user_id"] == "ghost"
    removed = accounts.remove_role_from_many([reader.id], librarian.id)
    assert removed["success"] == [reader.id]


def test_user_statistics(accounts, reader):
    accounts.create_user("Boris", "boris@example.com", "secret-pass")
    accounts.set_active(reader.id, False)
    stats = accounts.get_user_statistics()
    assert stats["total_users"] == 2
    assert stats["blocked_users"] == 1
    assert stats["by_role"]["reader"] == 2
    assert stats["by_role"]["admin"] == 0


def test_recommendations_follow_favorite_genres(accounts, lib, reader):
    liked = lib.create_book("The Hobbit", "Tolkien", genre="Fantasy")
    other_fantasy = lib.create_book("Earthsea", "Le Guin", genre="Fantasy")
    lib.create_book("SPQR", "Mary Beard", genre="History")
    lib.add_favorite(reader.id, liked.id)

    recommended = accounts.get_recommendations(reader.id, limit=2)
    assert recommended[0].id == other_fantasy.id
    assert liked.id not in [b.id for b in recommended]
    with pytest.raises(LookupError):
        accounts.get_recommendations("ghost")
