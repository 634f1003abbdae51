from datetime import timedelta

import pytest

from circulation.errors import (
    DuplicateHold,
    InvalidDueDate,
    InvalidReturnDate,
    InvalidState,
    ItemAvailable,
    ItemNotFound,
    ItemReservedForAnotherUser,
    ItemUnavailable,
    LoanAlreadyClosed,
    ReservationNotFound,
)
from circulation.schemas import ItemStatus, LoanStatus, ReservationStatus, ReturnCondition


# ----------------------
# Walkthrough
# ----------------------

def test_checkout_available_item(system, item, clock):
    loan = system.checkout(item.id, "A", due_date=clock.now + timedelta(days=14))

    assert loan.status == LoanStatus.CHECKED_OUT
    assert loan.fine_amount == 0
    assert loan.checkout_date == clock.now
    assert system.get_item(item.id).status == ItemStatus.CHECKED_OUT


def test_late_good_return_charges_per_diem(system, item, clock):
    loan = system.checkout(item.id, "A", due_date=clock.now + timedelta(days=14))
    clock.advance(days=17)

    outcome = system.return_item(loan.id, ReturnCondition.GOOD)

    assert outcome.loan.fine_amount == 1.50
    assert outcome.loan.status == LoanStatus.RETURNED
    assert outcome.loan.return_date == clock.now
    assert outcome.promoted is None
    assert system.get_item(item.id).status == ItemStatus.AVAILABLE


def test_holds_queue_in_order(system, checked_out):
    item, _ = checked_out
    b = system.place_hold(item.id, "B")
    c = system.place_hold(item.id, "C")

    assert system.queue_position(b.id) == 1
    assert system.queue_position(c.id) == 2


def test_return_promotes_queue_head(system, checked_out, clock):
    item, loan = checked_out
    b = system.place_hold(item.id, "B")
    c = system.place_hold(item.id, "C")

    outcome = system.return_item(loan.id)

    assert outcome.promoted.id == b.id
    b_now = system.store.reservations.get(b.id)
    assert b_now.status == ReservationStatus.READY_FOR_PICKUP
    assert b_now.expiry_date == clock.now + timedelta(days=7)
    current = system.get_item(item.id)
    assert current.status == ItemStatus.RESERVED
    assert current.reserved_for == "B"
    assert system.queue_position(c.id) == 1


def test_lapsed_pickup_promotes_next(system, checked_out, clock):
    item, loan = checked_out
    b = system.place_hold(item.id, "B")
    c = system.place_hold(item.id, "C")
    system.return_item(loan.id)

    clock.advance(days=8)
    expired = system.coordinator.expire_stale_pickups()

    assert [r.id for r in expired] == [b.id]
    assert system.store.reservations.get(b.id).status == ReservationStatus.EXPIRED
    assert system.store.reservations.get(c.id).status == ReservationStatus.READY_FOR_PICKUP
    current = system.get_item(item.id)
    assert current.status == ItemStatus.RESERVED
    assert current.reserved_for == "C"


def test_reserved_item_refuses_other_borrowers(system, checked_out):
    item, loan = checked_out
    system.place_hold(item.id, "B")
    system.return_item(loan.id)

    with pytest.raises(ItemReservedForAnotherUser):
        system.checkout(item.id, "D")
    assert system.get_item(item.id).status == ItemStatus.RESERVED


def test_reserved_borrower_picks_up(system, checked_out):
    item, loan = checked_out
    b = system.place_hold(item.id, "B")
    system.return_item(loan.id)

    second = system.checkout(item.id, "B")

    assert second.borrower_id == "B"
    assert system.store.reservations.get(b.id).status == ReservationStatus.FULFILLED
    assert system.get_item(item.id).status == ItemStatus.CHECKED_OUT


# ----------------------
# Checkout rules
# ----------------------

def test_default_due_date_uses_loan_period(system, item, clock):
    loan = system.checkout(item.id, "A")
    assert loan.due_date == clock.now + timedelta(days=14)


def test_due_date_must_be_in_the_future(system, item, clock):
    with pytest.raises(InvalidDueDate):
        system.checkout(item.id, "A", due_date=clock.now)
    assert system.get_item(item.id).status == ItemStatus.AVAILABLE
    assert system.list_loans() == []


def test_only_one_open_loan_per_item(system, checked_out):
    item, _ = checked_out
    with pytest.raises(ItemUnavailable):
        system.checkout(item.id, "B")


def test_open_loan_blocks_checkout_even_if_status_is_stale(system, checked_out, store):
    item, _ = checked_out
    stale = store.items.get(item.id).model_copy(update={"status": ItemStatus.AVAILABLE})
    store.items.save(stale)

    with pytest.raises(ItemUnavailable):
        system.checkout(item.id, "B")
    assert len(system.list_loans(item_id=item.id)) == 1


def test_checkout_unknown_item(system):
    with pytest.raises(ItemNotFound):
        system.checkout("65f000000000000000000000", "A")


@pytest.mark.parametrize("status", [ItemStatus.LOST, ItemStatus.UNDER_MAINTENANCE, ItemStatus.DISCARDED])
def test_checkout_refused_when_out_of_circulation(system, item, status):
    system.force_status(item.id, status, "inventory check")
    with pytest.raises(ItemUnavailable):
        system.checkout(item.id, "A")


# ----------------------
# Returns
# ----------------------

def test_return_twice_fails(system, checked_out):
    _, loan = checked_out
    system.return_item(loan.id)
    with pytest.raises(LoanAlreadyClosed):
        system.return_item(loan.id)


def test_damaged_return(system, checked_out):
    item, loan = checked_out
    system.place_hold(item.id, "B")

    outcome = system.return_item(loan.id, ReturnCondition.DAMAGED)

    assert outcome.loan.status == LoanStatus.DAMAGED
    assert outcome.loan.fine_amount == 10.00
    assert outcome.promoted is None
    assert system.get_item(item.id).status == ItemStatus.DAMAGED


def test_lost_return(system, checked_out, clock):
    item, loan = checked_out
    clock.advance(days=40)

    outcome = system.return_item(loan.id, ReturnCondition.LOST)

    assert outcome.loan.status == LoanStatus.LOST
    assert outcome.loan.fine_amount == 50.00
    assert system.get_item(item.id).status == ItemStatus.LOST


def test_backdated_return(system, checked_out, clock):
    _, loan = checked_out
    clock.advance(days=20)

    outcome = system.return_item(loan.id, return_date=loan.due_date - timedelta(days=1))

    assert outcome.loan.fine_amount == 0
    assert outcome.loan.return_date == loan.due_date - timedelta(days=1)


@pytest.mark.parametrize("offset", [timedelta(days=-1), timedelta(days=1)])
def test_return_date_outside_loan_window(system, checked_out, clock, offset):
    _, loan = checked_out
    bad = loan.checkout_date + offset if offset < timedelta(0) else clock.now + offset
    with pytest.raises(InvalidReturnDate):
        system.return_item(loan.id, return_date=bad)
    assert system.get_loan(loan.id).is_open


def test_return_after_sweep_keeps_larger_fine(system, checked_out, clock):
    _, loan = checked_out
    clock.advance(days=20)
    system.run_sweep()
    assert system.get_loan(loan.id).fine_amount == 3.00

    outcome = system.return_item(loan.id, return_date=loan.due_date + timedelta(days=2))

    assert outcome.loan.fine_amount == 3.00


# ----------------------
# Holds
# ----------------------

def test_hold_on_available_item_is_refused(system, item):
    with pytest.raises(ItemAvailable):
        system.place_hold(item.id, "B")


def test_duplicate_hold_is_refused(system, checked_out):
    item, _ = checked_out
    system.place_hold(item.id, "B")
    with pytest.raises(DuplicateHold):
        system.place_hold(item.id, "B")


def test_borrower_cannot_hold_own_loan(system, checked_out):
    item, _ = checked_out
    with pytest.raises(DuplicateHold):
        system.place_hold(item.id, "A")


def test_hold_on_discarded_item_is_refused(system, item):
    system.force_status(item.id, ItemStatus.DISCARDED, "withdrawn")
    with pytest.raises(ItemUnavailable):
        system.place_hold(item.id, "B")


def test_hold_allowed_while_under_maintenance(system, item):
    system.force_status(item.id, ItemStatus.UNDER_MAINTENANCE, "rebinding")
    hold = system.place_hold(item.id, "B")
    assert hold.status == ReservationStatus.PENDING


def test_same_instant_holds_keep_insertion_order(system, checked_out):
    item, _ = checked_out
    ids = [system.place_hold(item.id, b).id for b in ("B", "C", "D")]
    assert [system.queue_position(i) for i in ids] == [1, 2, 3]


def test_cancel_pending_hold_moves_queue_up(system, checked_out):
    item, _ = checked_out
    b = system.place_hold(item.id, "B")
    c = system.place_hold(item.id, "C")

    cancelled = system.cancel_hold(b.id)

    assert cancelled.status == ReservationStatus.CANCELLED
    assert system.queue_position(c.id) == 1
    with pytest.raises(InvalidState):
        system.queue_position(b.id)
    with pytest.raises(InvalidState):
        system.cancel_hold(b.id)


def test_cancel_ready_hold_hands_item_on(system, checked_out):
    item, loan = checked_out
    b = system.place_hold(item.id, "B")
    c = system.place_hold(item.id, "C")
    system.return_item(loan.id)

    system.cancel_hold(b.id)

    assert system.store.reservations.get(c.id).status == ReservationStatus.READY_FOR_PICKUP
    assert system.get_item(item.id).reserved_for == "C"


def test_cancel_last_ready_hold_frees_item(system, checked_out):
    item, loan = checked_out
    b = system.place_hold(item.id, "B")
    system.return_item(loan.id)

    system.cancel_hold(b.id)

    current = system.get_item(item.id)
    assert current.status == ItemStatus.AVAILABLE
    assert current.reserved_for is None


def test_unknown_reservation(system):
    with pytest.raises(ReservationNotFound):
        system.queue_position("missing")
    with pytest.raises(ReservationNotFound):
        system.cancel_hold("missing")


def test_pending_holds_do_not_lapse(system, checked_out, clock):
    item, _ = checked_out
    b = system.place_hold(item.id, "B")
    clock.advance(days=30)

    system.run_sweep()

    assert system.store.reservations.get(b.id).status == ReservationStatus.PENDING


def test_queue_view_estimates_wait(system, checked_out, clock):
    item, loan = checked_out
    system.place_hold(item.id, "B")
    system.place_hold(item.id, "C")
    clock.advance(days=4)

    entries = system.queue_snapshot(item.id)

    assert [e.reservation.borrower_id for e in entries] == ["B", "C"]
    assert [e.position for e in entries] == [1, 2]
    assert [e.estimated_wait_days for e in entries] == [11, 25]


def test_queue_view_for_overdue_loan_uses_flat_wait(system, checked_out, clock):
    item, loan = checked_out
    system.place_hold(item.id, "B")
    system.place_hold(item.id, "C")
    clock.now = loan.due_date + timedelta(days=2)

    entries = system.queue_snapshot(item.id)

    assert [e.estimated_wait_days for e in entries] == [3, 17]


def test_queue_view_lists_ready_hold_first(system, checked_out):
    item, loan = checked_out
    system.place_hold(item.id, "B")
    system.place_hold(item.id, "C")
    system.return_item(loan.id)

    entries = system.queue_snapshot(item.id)

    assert entries[0].reservation.borrower_id == "B"
    assert entries[0].position is None
    assert entries[1].position == 1
    assert entries[1].estimated_wait_days == 14


# ----------------------
# Staff overrides and removal
# ----------------------

def test_force_status_records_reason(system, item):
    updated = system.force_status(item.id, ItemStatus.UNDER_MAINTENANCE, "spine repair")
    assert updated.status == ItemStatus.UNDER_MAINTENANCE
    assert updated.status_reason == "spine repair"


def test_force_status_cannot_fake_circulation(system, item):
    with pytest.raises(InvalidState):
        system.force_status(item.id, ItemStatus.CHECKED_OUT, "nope")
    with pytest.raises(InvalidState):
        system.force_status(item.id, ItemStatus.RESERVED, "nope")


def test_restore_promotes_waiting_hold(system, checked_out):
    item, loan = checked_out
    system.place_hold(item.id, "B")
    system.return_item(loan.id, ReturnCondition.DAMAGED)

    restored = system.force_status(item.id, ItemStatus.AVAILABLE, "repaired")

    assert restored.status == ItemStatus.RESERVED
    assert restored.reserved_for == "B"
    assert restored.status_reason == "repaired"


def test_restore_with_open_loan_stays_checked_out(system, checked_out):
    item, _ = checked_out
    system.force_status(item.id, ItemStatus.UNDER_MAINTENANCE, "spill")

    restored = system.force_status(item.id, ItemStatus.AVAILABLE, "cleaned")

    assert restored.status == ItemStatus.CHECKED_OUT


def test_remove_item(system, item):
    system.remove_item(item.id)
    with pytest.raises(ItemNotFound):
        system.get_item(item.id)
    assert system.list_items() == []


def test_remove_item_with_open_loan_is_refused(system, checked_out):
    item, _ = checked_out
    with pytest.raises(InvalidState):
        system.remove_item(item.id)
    assert system.get_item(item.id).status == ItemStatus.CHECKED_OUT


# ----------------------
# Fines
# ----------------------

def test_payment_reduces_outstanding(system, checked_out, clock):
    _, loan = checked_out
    clock.advance(days=18)
    closed = system.return_item(loan.id).loan
    assert closed.fine_amount == 2.00

    paid = system.record_payment(loan.id, 1.25)

    assert paid.fine_paid == 1.25
    assert paid.outstanding_fine == 0.75
    assert paid.fine_amount == 2.00


def test_round_trip_leaves_one_closed_loan(system, item, clock):
    loan = system.checkout(item.id, "A")
    clock.advance(days=3)
    system.return_item(loan.id)

    loans = system.list_loans(item_id=item.id)
    assert len(loans) == 1
    assert loans[0].status == LoanStatus.RETURNED
    assert loans[0].return_date == clock.now
    assert loans[0].fine_amount == 0
    assert system.get_item(item.id).status == ItemStatus.AVAILABLE


def test_catalog_status_follows_circulation(system, checked_out):
    item, loan = checked_out
    assert system.catalog.get_status(item.id) == ItemStatus.CHECKED_OUT
    system.return_item(loan.id)
    assert system.catalog.get_status(item.id) == ItemStatus.AVAILABLE


def test_list_holds_filters(system, checked_out):
    item, _ = checked_out
    other = system.add_item("Emma", "Jane Austen")
    system.checkout(other.id, "Z")
    b = system.place_hold(item.id, "B")
    c = system.place_hold(item.id, "C")
    elsewhere = system.place_hold(other.id, "B")
    system.cancel_hold(c.id)

    assert [r.id for r in system.list_holds()] == [b.id, c.id, elsewhere.id]
    assert [r.id for r in system.list_holds(borrower_id="B")] == [b.id, elsewhere.id]
    assert [r.id for r in system.list_holds(borrower_id="B", item_id=other.id)] == [elsewhere.id]
    assert [r.id for r in system.list_holds(item_id=item.id, status=ReservationStatus.PENDING)] == [b.id]
