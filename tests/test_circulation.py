from datetime import datetime, timedelta, timezone

import pytest

from libdesk.config import settings
from libdesk.reservation import get_status_info, group_by_status, is_expiring_soon, overdue_days


def _issue(circulation, reservation_id):
    circulation.change_status(reservation_id, "approved")
    return circulation.change_status(reservation_id, "issued")


def _days_ago(days):
    return (datetime.now() - timedelta(days=days)).isoformat(timespec="seconds")


def test_create_reservation_defaults(circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id, notes="for the exam")
    assert reservation.status == "pending"
    start = datetime.fromisoformat(reservation.reservation_date)
    end = datetime.fromisoformat(reservation.expiration_date)
    assert (end - start).days == reader.loan_period_days

    pending = circulation.drain_notifications()
    assert [n.type for n in pending] == ["BookReserved"]
    assert circulation.drain_notifications() == []


def test_reservation_rules(circulation, accounts, lib, reader, book):
    circulation.create_reservation(reader.id, book.id)
    with pytest.raises(ValueError, match="already have"):
        circulation.create_reservation(reader.id, book.id)

    second = lib.create_book("Emma", "Jane Austen")
    third = lib.create_book("Persuasion", "Jane Austen")
    circulation.create_reservation(reader.id, second.id)
    with pytest.raises(ValueError, match="Limit"):
        circulation.create_reservation(reader.id, third.id)

    with pytest.raises(LookupError):
        circulation.create_reservation(reader.id, "missing")
    with pytest.raises(LookupError):
        circulation.create_reservation("ghost", book.id)


def test_blocked_reader_cannot_reserve(circulation, accounts, reader, book):
    accounts.set_active(reader.id, False)
    with pytest.raises(ValueError, match="blocked"):
        circulation.create_reservation(reader.id, book.id)


def test_expiration_must_follow_start(circulation, reader, book):
    with pytest.raises(ValueError):
        circulation.create_reservation(reader.id, book.id, reservation_date="2030-01-10",
                                       expiration_date="2030-01-05")
    with pytest.raises(ValueError, match="Invalid date"):
        circulation.create_reservation(reader.id, book.id, reservation_date="someday")


def test_approve_issue_return_moves_the_copy(circulation, lib, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)

    approved = circulation.change_status(reservation.id, "approved")
    instance_id = approved.book_instance_id
    assert lib.get_instance(instance_id).status == "reserved"
    assert lib.get_book(book.id).available_copies == 1

    circulation.change_status(reservation.id, "issued")
    assert lib.get_instance(instance_id).status == "borrowed"

    returned = circulation.change_status(reservation.id, "returned")
    assert returned.actual_return_date is not None
    assert lib.get_instance(instance_id).status == "available"
    assert lib.get_book(book.id).available_copies == 2


def test_invalid_transitions(circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    with pytest.raises(ValueError, match="Cannot change"):
        circulation.change_status(reservation.id, "issued")
    with pytest.raises(ValueError, match="Unknown"):
        circulation.change_status(reservation.id, "lost")
    circulation.change_status(reservation.id, "cancelled")
    with pytest.raises(ValueError):
        circulation.change_status(reservation.id, "approved")


def test_approve_without_free_copy(circulation, lib, reader):
    empty = lib.create_book("Rare", "Nobody")
    reservation = circulation.create_reservation(reader.id, empty.id)
    with pytest.raises(ValueError, match="No available copy"):
        circulation.change_status(reservation.id, "approved")


def test_cancel_releases_copy(circulation, lib, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    approved = circulation.change_status(reservation.id, "approved")
    circulation.change_status(reservation.id, "cancelled")
    assert lib.get_instance(approved.book_instance_id).status == "available"


def test_late_return_creates_overdue_fine(circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id, reservation_date=_days_ago(30))
    _issue(circulation, reservation.id)
    circulation.update_reservation(reservation.id, expiration_date=_days_ago(3))

    marked = circulation.mark_overdue()
    assert [r.id for r in marked] == [reservation.id]
    assert circulation.get_reservation(reservation.id).status == "overdue"

    circulation.drain_notifications()
    circulation.change_status(reservation.id, "returned")
    fines = circulation.list_fines(user_id=reader.id)
    assert len(fines) == 1
    assert fines[0].fine_type == "Overdue"
    assert fines[0].overdue_days == 3
    assert fines[0].amount == 3 * settings.overdue_fine_per_day
    assert {n.type for n in circulation.drain_notifications()} == {"FineAdded", "BookReturned"}


def test_return_wakes_first_in_queue(circulation, accounts, reader, book):
    waiting = accounts.create_user("Boris", "boris@example.com", "secret-pass")
    later = accounts.create_user("Clara", "clara@example.com", "secret-pass")
    circulation.join_queue(waiting.id, book.id)
    circulation.join_queue(later.id, book.id)

    reservation = circulation.create_reservation(reader.id, book.id)
    _issue(circulation, reservation.id)
    circulation.drain_notifications()
    circulation.change_status(reservation.id, "returned")

    woken = [n for n in circulation.drain_notifications() if n.type == "NewBookAvailable"]
    assert [n.user_id for n in woken] == [waiting.id]
    assert [e["user_id"] for e in circulation.queue_for_book(book.id)] == [later.id]


def test_queue(circulation, accounts, reader, book):
    entry = circulation.join_queue(reader.id, book.id)
    assert entry["position"] == 1
    with pytest.raises(ValueError):
        circulation.join_queue(reader.id, book.id)

    other = accounts.create_user("Boris", "boris@example.com", "secret-pass")
    assert circulation.join_queue(other.id, book.id)["position"] == 2
    assert [e["book_id"] for e in circulation.queue_for_user(reader.id)] == [book.id]

    assert circulation.leave_queue(entry["id"]) is True
    assert circulation.queue_for_book(book.id)[0]["position"] == 1
    assert circulation.leave_queue(entry["id"]) is False


def test_update_and_delete_reservation(circulation, lib, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    updated = circulation.update_reservation(reservation.id, notes="window seat", status="approved")
    assert updated.notes == "window seat"
    assert updated.status == "approved"
    instance_id = updated.book_instance_id

    assert circulation.delete_reservation(reservation.id) is True
    assert lib.get_instance(instance_id).status == "available"
    assert circulation.delete_reservation(reservation.id) is False


def test_list_search_and_count(circulation, accounts, lib, reader, book):
    other = accounts.create_user("Boris", "boris@example.com", "secret-pass")
    emma = lib.create_book("Emma", "Jane Austen")
    circulation.create_reservation(reader.id, book.id)
    circulation.create_reservation(other.id, emma.id)

    assert circulation.count_reservations() == 2
    assert circulation.count_reservations(user_id=other.id) == 1
    assert [r.book_id for r in circulation.search_reservations("emma")] == [emma.id]
    assert [r.user_id for r in circulation.search_reservations("boris")] == [other.id]
    assert len(circulation.list_reservations(limit=1)) == 1


def test_reservations_for_user_filters(circulation, lib, reader, book):
    emma = lib.create_book("Emma", "Jane Austen")
    first = circulation.create_reservation(reader.id, book.id)
    circulation.create_reservation(reader.id, emma.id)
    circulation.change_status(first.id, "cancelled")

    assert len(circulation.reservations_for_user(reader.id)) == 2
    assert len(circulation.reservations_for_user(reader.id, active_only=True)) == 1
    assert circulation.reservations_for_user(reader.id, overdue_only=True) == []


def test_bulk_update_reports_each_reservation(circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    results = circulation.bulk_update_reservations([reservation.id, "missing"], "approved")
    assert results[0] == {"id": reservation.id, "success": True}
    assert results[1]["success"] is False


def test_reservation_dates(circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    dates = circulation.get_reservation_dates(book.id)
    assert dates[0]["reservation_id"] == reservation.id
    assert dates[0]["end"] == reservation.expiration_date
    circulation.change_status(reservation.id, "cancelled")
    assert circulation.get_reservation_dates() == []


def test_shelf_access_follows_reservation_status(circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    assert circulation.has_book_access(book.id, reader.id) is False
    circulation.change_status(reservation.id, "approved")
    assert circulation.has_book_access(book.id, reader.id) is True
    circulation.change_status(reservation.id, "cancelled")
    assert circulation.has_book_access(book.id, reader.id) is False


def test_statistics(circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    circulation.change_status(reservation.id, "cancelled")
    stats = circulation.get_reservation_statistics()
    assert stats["total"] == 1
    assert stats["by_status"]["cancelled"] == 1
    assert stats["by_group"]["cancelled"] == 1
    assert len(stats["per_month"]) == 6
    assert stats["per_month"][datetime.now().strftime("%Y-%m")] == 1


def test_fines(circulation, reader):
    fine = circulation.create_fine(reader.id, amount=12.5, reason="Torn cover", fine_type="Damage")
    circulation.create_fine(reader.id, fine_type="Overdue", overdue_days=2)
    assert circulation.user_fine_total(reader.id) == 12.5 + 2 * settings.overdue_fine_per_day

    paid = circulation.pay_fine(fine.id)
    assert paid.is_paid and paid.paid_at
    assert circulation.user_fine_total(reader.id) == 2 * settings.overdue_fine_per_day
    assert len(circulation.list_fines(user_id=reader.id, unpaid_only=True)) == 1
    with pytest.raises(ValueError):
        circulation.pay_fine(fine.id)
    with pytest.raises(LookupError):
        circulation.pay_fine("missing")


def test_fine_validation(circulation, reader):
    with pytest.raises(ValueError):
        circulation.create_fine(reader.id, amount=5, reason="x", fine_type="Parking")
    with pytest.raises(ValueError):
        circulation.create_fine(reader.id, amount=-1, reason="refund")
    with pytest.raises(ValueError):
        circulation.create_fine(reader.id, amount=5, reason="  ")
    with pytest.raises(ValueError):
        circulation.create_fine(reader.id, fine_type="Overdue")
    with pytest.raises(LookupError):
        circulation.create_fine("ghost", amount=5, reason="x")


def test_status_helpers():
    assert get_status_info("APPROVED")["allows_shelf_access"] is True
    assert get_status_info("pending")["allows_shelf_access"] is False
    assert get_status_info("expired")["group"] == "cancelled"
    assert get_status_info("overdue")["group"] == "active"
    assert get_status_info("weird")["group"] == "unknown"

    now = datetime(2024, 5, 10, 12, 0)
    assert is_expiring_soon("2024-05-12T12:00:00", 3, now) is True
    assert is_expiring_soon("2024-05-20T12:00:00", 3, now) is False
    assert is_expiring_soon("2024-05-09T12:00:00", 3, now) is False
    assert overdue_days("2024-05-07T12:00:00", now) == 3
    assert overdue_days("2024-05-12", now) == 0


def test_group_by_status(circulation, lib, reader, book):
    emma = lib.create_book("Emma", "Jane Austen")
    first = circulation.create_reservation(reader.id, book.id)
    circulation.create_reservation(reader.id, emma.id)
    circulation.change_status(first.id, "cancelled")
    grouped = group_by_status(circulation.reservations_for_user(reader.id))
    assert len(grouped["active"]) == 1
    assert len(grouped["cancelled"]) == 1
    assert grouped["returned"] == []


def test_failed_update_leaves_status_alone(circulation, lib, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    with pytest.raises(ValueError, match="Expiration"):
        circulation.update_reservation(reservation.id, status="approved", expiration_date="2000-01-01")

    stored = circulation.get_reservation(reservation.id)
    assert stored.status == "pending"
    assert stored.book_instance_id is None
    assert lib.get_book(book.id).available_copies == 2


def test_dates_with_utc_offset(circulation, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id, reservation_date="2029-12-20T10:00:00Z",
                                                 expiration_date="2030-01-01T00:00:00+00:00")
    expected = datetime(2030, 1, 1, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    assert reservation.expiration_date == expected.isoformat(timespec="seconds")

    updated = circulation.update_reservation(reservation.id, expiration_date="2030-02-01T12:00:00+03:00")
    assert datetime.fromisoformat(updated.expiration_date).tzinfo is None

    soon = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
    late = (datetime.now(timezone.utc) - timedelta(days=3, hours=1)).isoformat()
    assert is_expiring_soon(soon)
    assert overdue_days(late) == 3


def test_book_with_active_reservation_cannot_be_deleted(circulation, lib, reader, book):
    reservation = circulation.create_reservation(reader.id, book.id)
    _issue(circulation, reservation.id)
    with pytest.raises(ValueError, match="active reservation"):
        lib.delete_book(book.id)
    assert circulation.get_reservation(reservation.id).status == "issued"

    circulation.change_status(reservation.id, "returned")
    assert lib.delete_book(book.id) is True
