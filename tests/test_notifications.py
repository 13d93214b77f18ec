from datetime import datetime, timedelta

import pytest

from libdesk.services.mailer import Mailer


def _at(days):
    return (datetime.now() + timedelta(days=days)).isoformat(timespec="seconds")


def _issued(circulation, reader, book, **kwargs):
    reservation = circulation.create_reservation(reader.id, book.id, **kwargs)
    circulation.change_status(reservation.id, "approved")
    circulation.change_status(reservation.id, "issued")
    return reservation


def test_send_and_read(notifications, reader):
    sent = notifications.send(reader.id, " Welcome ", "Your card is ready", type="GeneralInfo")
    assert sent.title == "Welcome"
    assert notifications.unread_count(reader.id) == 1

    read = notifications.mark_read(sent.id)
    assert read.is_read and read.read_at
    assert notifications.unread_count(reader.id) == 0
    with pytest.raises(LookupError):
        notifications.mark_read("missing")


def test_send_validation(notifications, reader):
    with pytest.raises(ValueError):
        notifications.send(reader.id, "Hi", "There", type="Gossip")
    with pytest.raises(ValueError):
        notifications.send(reader.id, "Hi", "There", priority="Urgent")
    with pytest.raises(ValueError):
        notifications.send(reader.id, "  ", "There")
    with pytest.raises(LookupError):
        notifications.send("ghost", "Hi", "There")


def test_send_bulk_skips_unknown_users(notifications, accounts, reader):
    other = accounts.create_user("Boris", "boris@example.com", "secret-pass")
    sent = notifications.send_bulk([reader.id, "ghost", other.id, reader.id], "Closed", "Closed on Monday",
                                   type="SystemMaintenance")
    assert sorted(n.user_id for n in sent) == sorted([reader.id, other.id])


def test_paging_and_filters(notifications, reader):
    for i in range(5):
        notifications.send(reader.id, f"Note {i}", "text")
    page, total = notifications.list_for_user(reader.id, page=2, page_size=2)
    assert total == 5
    assert [n.title for n in page] == ["Note 2", "Note 1"]

    notifications.mark_many_read([n.id for n in page])
    unread, unread_total = notifications.list_for_user(reader.id, is_read=False)
    assert unread_total == 3
    assert all(not n.is_read for n in unread)

    assert notifications.mark_all_read(reader.id) == 3
    assert notifications.mark_all_read(reader.id) == 0
    assert notifications.mark_many_read([]) == 0


def test_delete(notifications, reader):
    sent = notifications.send(reader.id, "Hi", "There")
    assert notifications.delete(sent.id) is True
    assert notifications.get(sent.id) is None
    assert notifications.delete(sent.id) is False


def test_stats(notifications, reader):
    notifications.send(reader.id, "A", "a", type="FineAdded", priority="High")
    notifications.send(reader.id, "B", "b")
    first, _ = notifications.list_all(type="FineAdded")
    notifications.mark_read(first[0].id)

    stats = notifications.stats_for_user(reader.id)
    assert stats["total"] == 2
    assert stats["unread"] == 1
    assert stats["by_priority"] == {"High": 1, "Normal": 1}

    admin = notifications.admin_stats()
    assert admin["read_rate"] == 50.0
    assert admin["last_7_days"] == 2
    assert admin["by_type"]["GeneralInfo"] == 1


def test_due_reminders_sent_once_a_day(notifications, circulation, reader, book):
    reservation = _issued(circulation, reader, book)
    circulation.update_reservation(reservation.id, expiration_date=_at(2))

    sent = notifications.send_due_reminders()
    assert [n.reservation_id for n in sent] == [reservation.id]
    assert sent[0].type == "BookDueSoon"
    assert notifications.send_due_reminders() == []


def test_due_reminders_ignore_far_deadlines(notifications, circulation, reader, book):
    _issued(circulation, reader, book)
    assert notifications.send_due_reminders(days=3) == []


def test_overdue_sweep_marks_and_notifies(notifications, circulation, reader, book):
    reservation = _issued(circulation, reader, book, reservation_date=_at(-10))
    circulation.update_reservation(reservation.id, expiration_date=_at(-2))

    sent = notifications.send_overdue_notifications()
    assert [n.type for n in sent] == ["BookOverdue"]
    assert sent[0].priority == "High"
    assert circulation.get_reservation(reservation.id).status == "overdue"
    assert notifications.send_overdue_notifications() == []


def test_fine_sweep(notifications, circulation, reader):
    circulation.create_fine(reader.id, amount=15, reason="Lost bookmark", fine_type="Other")
    # the reader already heard about this fine today
    assert notifications.send_fine_notifications() == []

    for notification in circulation.drain_notifications():
        notifications.delete(notification.id)
    sent = notifications.send_fine_notifications()
    assert len(sent) == 1
    assert "15.00" in sent[0].message


def test_mailer_templates():
    subject, body = Mailer.render_template("fine", name="Anna", amount="15.00")
    assert subject == "Unpaid fines: 15.00"
    assert "Anna" in body
    with pytest.raises(LookupError):
        Mailer.render_template("birthday", name="Anna")
    with pytest.raises(ValueError):
        Mailer.render_template("fine", name="Anna")


def test_disabled_mailer_does_not_send():
    assert Mailer(enabled=False).send_template("anna@example.com", "welcome", name="Anna",
                                               email="anna@example.com") is False
