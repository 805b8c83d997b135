from datetime import date, datetime

import pytest

from charges import ChargeCategory
from errors import GuestSelectionRequired, ValidationError
from slip import SlipReconciler, build_window


@pytest.fixture
def slip(fake_backend):
    reconciler = SlipReconciler(fake_backend)
    assert reconciler.load_session(1)
    return reconciler


def seat_guests(slip, *guest_ids):
    for guest_id in guest_ids:
        assert slip.add_guest(guest_id)


def test_load_missing_session_fails_closed(fake_backend):
    slip = SlipReconciler(fake_backend)
    assert slip.load_session(999) is False
    assert slip.session is None
    assert slip.orders == []


def test_load_caches_reference_data(slip):
    assert [c.display_name for c in slip.state.casts] == ["あかり"]
    assert slip.pricing_system.set_fee == 5000
    assert slip.header.start_time == "20:00"
    assert slip.header.end_time == ""


def test_build_window_rolls_end_to_next_day():
    start, end = build_window(date(2026, 10, 19), "23:30", "01:15")
    assert start == datetime(2026, 10, 19, 23, 30)
    assert end == datetime(2026, 10, 20, 1, 15)


def test_build_window_rejects_bad_time():
    with pytest.raises(ValidationError):
        build_window(date(2026, 10, 19), "25-00", "")


def test_discount_is_stored_negative(slip, fake_backend):
    assert slip.add_discount("常連割引", 1000)

    discount = slip.orders_in(ChargeCategory.ADJUSTMENT)[0]
    assert discount.unit_price == -1000
    assert discount.quantity == 1
    assert discount.item_name == "常連割引"
    assert isinstance(discount.id, int)
    assert slip.totals().subtotal == -1000
    assert fake_backend.mutations() == ["create_order"]


def test_surcharge_is_stored_positive(slip):
    assert slip.add_discount("持ち込み料", 2000, is_subtractive=False)
    assert slip.orders_in(ChargeCategory.ADJUSTMENT)[0].unit_price == 2000


@pytest.mark.parametrize("name, amount", [("", 1000), ("   ", 1000), ("割引", 0), ("割引", -5)])
def test_invalid_discount_is_rejected_before_any_call(slip, fake_backend, name, amount):
    with pytest.raises(ValidationError):
        slip.add_discount(name, amount)
    assert fake_backend.mutations() == []
    assert slip.orders == []


def test_failed_create_removes_temporary_order(slip, fake_backend):
    fake_backend.fail_on.add("create_order")

    assert slip.add_discount("常連割引", 1000) is False
    assert slip.orders == []
    assert slip.notifications[-1].level == "error"


def test_add_set_fee_uses_guest_count(slip, fake_backend):
    fake_backend.session.guest_count = 3
    slip.load_session(1)

    assert slip.add_set_fee()
    set_fee = slip.orders_in(ChargeCategory.SET_FEE)[0]
    assert (set_fee.quantity, set_fee.unit_price) == (3, 5000)


def test_add_extension_fee_follows_set_fee_quantity(slip, fake_backend):
    slip.add_set_fee(quantity=2)
    assert slip.add_extension_fee()
    extension = slip.orders_in(ChargeCategory.EXTENSION_FEE)[0]
    assert (extension.quantity, extension.unit_price) == (2, 3000)


def test_set_fee_requires_pricing_system(slip, fake_backend):
    slip.session.pricing_system_id = None
    with pytest.raises(ValidationError):
        slip.add_set_fee()
    assert fake_backend.mutations() == []


def test_failed_update_restores_quantity_and_amount(slip, fake_backend):
    slip.add_discount("常連割引", 1000)
    order = slip.orders[0]
    fake_backend.fail_on.add("update_order")

    assert slip.update_order(order.id, quantity=5, amount=-3000) is False
    restored = slip.find_order(order.id)
    assert restored.quantity == 1
    assert restored.unit_price == -1000
    assert slip.notifications[-1].message == "更新に失敗しました"


def test_update_order_reloads_authoritative_state(slip, fake_backend):
    slip.add_discount("常連割引", 1000)
    order = slip.orders[0]

    assert slip.update_order(order.id, amount=-2000)
    assert slip.find_order(order.id).unit_price == -2000
    assert fake_backend.session.orders[0].unit_price == -2000
    assert slip.totals().subtotal == -2000


def test_update_order_rejects_unknown_field(slip):
    slip.add_discount("常連割引", 1000)
    with pytest.raises(ValidationError):
        slip.update_order(slip.orders[0].id, item_name="変更")


def test_failed_delete_restores_order_in_place(slip, fake_backend):
    slip.add_discount("A", 100)
    slip.add_discount("B", 200)
    slip.add_discount("C", 300)
    before = [o.id for o in slip.orders]
    fake_backend.fail_on.add("delete_order")

    assert slip.delete_order(before[1]) is False
    assert [o.id for o in slip.orders] == before


def test_add_guest_creates_set_fee_and_increments_count(slip, fake_backend):
    assert slip.add_guest(20)

    assert slip.session.guest_count == 1
    assert [g.guest_id for g in slip.session.guests] == [20]
    set_fee = slip.orders_in(ChargeCategory.SET_FEE)[0]
    assert (set_fee.guest_id, set_fee.cast_id, set_fee.quantity) == (20, None, 1)
    assert fake_backend.mutations() == ["add_guest_to_session", "update_session", "create_order"]


def test_duplicate_guest_is_rejected(slip, fake_backend):
    seat_guests(slip, 20)
    with pytest.raises(ValidationError):
        slip.add_guest(20)
    assert slip.session.guest_count == 1


def test_remove_guest_keeps_cast_fees(slip, fake_backend):
    seat_guests(slip, 20, 21)
    slip.add_cast_fee(ChargeCategory.NOMINATION_FEE, 10, 20)
    entry = next(g for g in slip.session.guests if g.guest_id == 20)

    assert slip.remove_guest(entry.id)
    assert slip.session.guest_count == 1
    assert [o.guest_id for o in slip.orders_in(ChargeCategory.SET_FEE)] == [21]
    nomination = slip.orders_in(ChargeCategory.NOMINATION_FEE)
    assert len(nomination) == 1
    assert nomination[0].guest_id == 20


def test_failed_remove_guest_restores_roster(slip, fake_backend):
    seat_guests(slip, 20)
    entry = slip.session.guests[0]
    fake_backend.fail_on.add("remove_guest_from_session")

    assert slip.remove_guest(entry.id) is False
    assert [g.guest_id for g in slip.session.guests] == [20]
    assert slip.session.guest_count == 1
    assert len(slip.orders_in(ChargeCategory.SET_FEE)) == 1


def test_update_guest_set_fee_amount_updates_existing(slip, fake_backend):
    seat_guests(slip, 20)
    assert slip.update_guest_set_fee_amount(20, 3000)
    set_fees = slip.orders_in(ChargeCategory.SET_FEE)
    assert [(o.guest_id, o.unit_price) for o in set_fees] == [(20, 3000)]


def test_update_guest_set_fee_amount_creates_missing(slip, fake_backend):
    assert slip.update_guest_set_fee_amount(21, 4000)
    set_fee = slip.orders_in(ChargeCategory.SET_FEE)[0]
    assert (set_fee.guest_id, set_fee.quantity, set_fee.unit_price) == (21, 1, 4000)


def test_cast_fee_without_guests_has_no_attribution(slip, fake_backend):
    fake_backend.session.end_time = datetime(2026, 10, 19, 22, 30)
    slip.load_session(1)

    assert slip.add_cast_fee(ChargeCategory.NOMINATION_FEE, 10)
    nomination = slip.orders_in(ChargeCategory.NOMINATION_FEE)[0]
    assert nomination.guest_id is None
    assert nomination.cast_id == 10
    assert nomination.quantity == 2  # 150分 / 60分
    assert nomination.start_time == datetime(2026, 10, 19, 20, 0)


def test_cast_fee_with_guests_requires_selection(slip, fake_backend):
    seat_guests(slip, 20, 21)
    calls = len(fake_backend.mutations())

    with pytest.raises(GuestSelectionRequired):
        slip.add_cast_fee(ChargeCategory.DOUHAN_FEE, 10)
    assert slip.state.pending_cast_fee == (ChargeCategory.DOUHAN_FEE, 10)
    assert len(fake_backend.mutations()) == calls

    assert slip.choose_cast_fee_guest(21)
    douhan = slip.orders_in(ChargeCategory.DOUHAN_FEE)[0]
    assert (douhan.guest_id, douhan.cast_id) == (21, 10)
    assert slip.state.pending_cast_fee is None


def test_cast_fee_for_absent_guest_is_rejected(slip):
    seat_guests(slip, 20)
    with pytest.raises(ValidationError):
        slip.add_cast_fee(ChargeCategory.NOMINATION_FEE, 10, 99)


def test_companion_fee_starts_empty(slip):
    assert slip.add_cast_fee(ChargeCategory.COMPANION_FEE, 10)
    companion = slip.orders_in(ChargeCategory.COMPANION_FEE)[0]
    assert companion.quantity == 0
    assert companion.start_time is None
    assert companion.end_time is None


def test_recalculate_order_uses_edited_window(slip):
    slip.add_cast_fee(ChargeCategory.COMPANION_FEE, 10)
    companion = slip.orders_in(ChargeCategory.COMPANION_FEE)[0]

    assert slip.recalculate_order(companion.id, "21:00", "21:45")
    updated = slip.find_order(companion.id)
    assert updated.quantity == 2
    assert updated.unit_price == 1000
    assert updated.start_time == datetime(2026, 10, 19, 21, 0)
    assert updated.end_time == datetime(2026, 10, 19, 21, 45)


def test_recalculate_order_rejects_empty_window(slip, fake_backend):
    slip.add_cast_fee(ChargeCategory.COMPANION_FEE, 10)
    companion = slip.orders_in(ChargeCategory.COMPANION_FEE)[0]
    calls = len(fake_backend.mutations())

    with pytest.raises(ValidationError):
        slip.recalculate_order(companion.id, "21:00", "21:00")
    assert len(fake_backend.mutations()) == calls


def test_recalculate_order_rejects_non_cast_order(slip):
    slip.add_discount("常連割引", 1000)
    with pytest.raises(ValidationError):
        slip.recalculate_order(slip.orders[0].id, "20:00", "21:00")


def test_recalculate_all_rebuilds_charges(slip, fake_backend):
    seat_guests(slip, 20, 21)
    slip.add_cast_fee(ChargeCategory.NOMINATION_FEE, 10, 20)
    nomination = slip.orders_in(ChargeCategory.NOMINATION_FEE)[0]
    slip.update_order(nomination.id, start_time="20:00", end_time="21:30")
    slip.add_discount("常連割引", 1000)

    assert slip.recalculate_all(end_time="21:40")

    assert slip.session.end_time == datetime(2026, 10, 19, 21, 40)
    assert [o.guest_id for o in slip.orders_in(ChargeCategory.SET_FEE)] == [20, 21]
    extensions = slip.orders_in(ChargeCategory.EXTENSION_FEE)
    assert [(o.quantity, o.unit_price) for o in extensions] == [(2, 3000), (2, 3000)]
    nominations = slip.orders_in(ChargeCategory.NOMINATION_FEE)
    assert [(o.quantity, o.cast_id, o.guest_id) for o in nominations] == [(2, 10, 20)]
    assert len(slip.orders_in(ChargeCategory.ADJUSTMENT)) == 1
    assert slip.totals().subtotal == 22000 + 4000 - 1000
    assert slip.state.editing_header is False


def test_recalculate_all_twice_is_stable(slip):
    seat_guests(slip, 20)
    slip.recalculate_all(end_time="22:10")
    first = sorted((o.category, o.quantity, o.unit_price) for o in slip.orders)
    slip.recalculate_all()
    second = sorted((o.category, o.quantity, o.unit_price) for o in slip.orders)
    assert first == second


def test_recalculate_all_without_end_time_issues_no_calls(slip, fake_backend):
    seat_guests(slip, 20)
    calls = len(fake_backend.mutations())
    orders_before = [o.id for o in slip.orders]

    with pytest.raises(ValidationError):
        slip.recalculate_all()
    assert len(fake_backend.mutations()) == calls
    assert [o.id for o in slip.orders] == orders_before


def test_recalculate_all_without_pricing_system(slip, fake_backend):
    with pytest.raises(ValidationError):
        slip.recalculate_all(pricing_system_id=None, end_time="21:00")
    assert fake_backend.mutations() == []


def test_partial_recalculation_failure_reloads_server_state(slip, fake_backend):
    seat_guests(slip, 20)
    fake_backend.fail_on.add("apply_charge_plan")

    assert slip.recalculate_all(end_time="21:40") is False
    assert slip.notifications[-1].message == "再計算に失敗しました"
    # サーバー側では削除だけが反映されている
    assert slip.orders_in(ChargeCategory.SET_FEE) == []
    assert fake_backend.calls[-1] == "get_session_by_id"


def test_save_header_across_midnight(slip, fake_backend):
    slip.begin_header_edit()
    assert slip.save_header(start_time="23:30", end_time="00:45", guest_count=2)

    assert fake_backend.session.start_time == datetime(2026, 10, 19, 23, 30)
    assert fake_backend.session.end_time == datetime(2026, 10, 20, 0, 45)
    assert fake_backend.session.guest_count == 2
    assert slip.state.editing_header is False
    assert slip.orders == []


def test_cancel_header_edit_restores_fields(slip):
    slip.begin_header_edit()
    slip.header.guest_count = 9
    slip.cancel_header_edit()
    assert slip.header.guest_count == 0
    assert slip.state.editing_header is False


def test_checkout_and_reopen_keep_orders(slip, fake_backend):
    updates = []
    slip.on_update = lambda: updates.append(True)
    slip.add_discount("常連割引", 1000)

    assert slip.checkout()
    assert slip.session.status == "completed"
    assert slip.session.end_time is not None

    assert slip.reopen()
    assert slip.session.status == "active"
    assert len(slip.orders) == 1
    assert len(updates) == 3


def test_failed_checkout_rolls_back_status(slip, fake_backend):
    fake_backend.fail_on.add("close_session")
    assert slip.checkout() is False
    assert slip.session.status == "active"
    assert slip.session.end_time is None


def test_delete_session_notifies_listeners(fake_backend):
    deleted = []
    updates = []
    slip = SlipReconciler(
        fake_backend,
        on_update=lambda: updates.append(True),
        on_session_deleted=lambda: deleted.append(True),
    )
    slip.load_session(1)

    assert slip.delete_session()
    assert deleted == [True]
    assert updates == [True]
    assert slip.session is None


def test_failed_delete_session_keeps_slip_open(slip, fake_backend):
    fake_backend.fail_on.add("delete_session")
    assert slip.delete_session() is False
    assert slip.session is not None


def test_switching_pricing_system_reprices_default_set_fees(slip, fake_backend, standard_pricing):
    fake_backend.pricing_systems.append(standard_pricing.model_copy(update={"id": 2, "name": "VIP", "set_fee": 8000}))
    slip.load_session(1)
    seat_guests(slip, 20, 21)
    assert slip.update_guest_set_fee_amount(21, 3000)

    assert slip.recalculate_all(pricing_system_id=2, end_time="21:00")

    set_fees = {o.guest_id: o.unit_price for o in slip.orders_in(ChargeCategory.SET_FEE)}
    assert set_fees == {20: 8000, 21: 3000}
    assert slip.session.pricing_system_id == 2


def test_order_end_before_start_is_next_day(slip):
    slip.add_cast_fee(ChargeCategory.NOMINATION_FEE, 10)
    nomination = slip.orders_in(ChargeCategory.NOMINATION_FEE)[0]

    assert slip.update_order(nomination.id, start_time="23:30", end_time="00:30")
    updated = slip.find_order(nomination.id)
    assert updated.start_time == datetime(2026, 10, 19, 23, 30)
    assert updated.end_time == datetime(2026, 10, 20, 0, 30)

    assert slip.update_order(nomination.id, end_time="01:15")
    assert slip.find_order(nomination.id).end_time == datetime(2026, 10, 20, 1, 15)


def test_cast_fee_across_midnight_survives_recalculation(slip):
    slip.add_cast_fee(ChargeCategory.NOMINATION_FEE, 10)
    nomination = slip.orders_in(ChargeCategory.NOMINATION_FEE)[0]
    slip.update_order(nomination.id, start_time="23:30", end_time="00:30")

    assert slip.recalculate_all(guest_count=1, end_time="01:00")

    nominations = slip.orders_in(ChargeCategory.NOMINATION_FEE)
    assert [(o.quantity, o.cast_id) for o in nominations] == [(1, 10)]
    assert nominations[0].end_time == datetime(2026, 10, 20, 0, 30)


def test_remove_guest_failing_midway_shows_server_state(slip, fake_backend):
    seat_guests(slip, 20)
    entry = slip.session.guests[0]
    fake_backend.fail_on.add("delete_order")

    assert slip.remove_guest(entry.id) is False
    assert slip.notifications[-1].message == "削除に失敗しました"
    # 卓からは外れ、セット料金だけ残っている
    assert slip.session.guests == []
    assert slip.session.guest_count == 0
    assert [o.guest_id for o in slip.orders_in(ChargeCategory.SET_FEE)] == [20]
    assert fake_backend.calls[-1] == "get_session_by_id"

    fake_backend.fail_on.clear()
    set_fee = slip.orders_in(ChargeCategory.SET_FEE)[0]
    assert slip.delete_order(set_fee.id)
    assert slip.orders == []


def test_add_guest_failing_midway_shows_server_state(slip, fake_backend):
    fake_backend.fail_on.add("create_order")

    assert slip.add_guest(20) is False
    assert [g.guest_id for g in slip.session.guests] == [20]
    assert slip.session.guest_count == 1
    assert slip.orders == []
    assert all(not str(g.id).startswith("temp-") for g in slip.session.guests)


def test_rejected_recalculation_leaves_header_untouched(slip, fake_backend):
    with pytest.raises(ValidationError):
        slip.recalculate_all(guest_count=3, end_time="25:99")
    assert slip.header.end_time == ""
    assert slip.header.guest_count == 0
    assert fake_backend.mutations() == []


def test_rejected_header_save_leaves_header_untouched(slip, fake_backend):
    slip.begin_header_edit()
    with pytest.raises(ValidationError):
        slip.save_header(start_time="bad", table_id=2)
    assert slip.header.start_time == "20:00"
    assert slip.header.table_id == 1
    assert fake_backend.mutations() == []


def test_checkout_stamps_venue_clock(slip, fake_backend):
    stamped = []
    fake_backend.close_session = lambda session_id: stamped.append(slip.session.end_time)

    before = datetime.now()
    assert slip.checkout()
    after = datetime.now()
    assert before <= stamped[0] <= after
