# Overview: Pytest coverage for candidate resolution, assign, release and warranty swap.

from datetime import datetime, timedelta

import pytest

from conftest import T0, assert_binding_invariants
from slotkeeper.extensions import db
from slotkeeper.errors import (
    BindingError,
    CatalogError,
    NoSlotSelected,
    OrderLocked,
    OrderNotFound,
    SlotAlreadyAssigned,
    SlotNeedsUpdate,
    SlotNotFound,
    UnitExpired,
    UnitNotFound,
)
from slotkeeper.models import BindingEvent, Order
from slotkeeper.services import allocation_service, inventory_service, order_service


class TestBindingLifecycle:

    def test_classic_assign_then_release(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order()
        assert unit.status == "AVAILABLE"
        assert order.status == "PROCESSING"

        allocation_service.assign(order, unit.id, now=T0)
        db.session.commit()

        assert unit.status == "SOLD"
        assert unit.linked_order_id == order.id
        assert order.inventory_item_id == unit.id
        assert order.status == "COMPLETED"

        allocation_service.release(order.id, now=T0)
        db.session.commit()

        assert unit.status == "AVAILABLE"
        assert unit.linked_order_id is None
        assert order.inventory_item_id is None
        assert order.status == "PROCESSING"
        assert_binding_invariants()

    def test_account_unit_sells_out_when_last_slot_taken(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        assert unit.total_slots == 3
        assert [s.slot_key for s in unit.slots] == ["slot-1", "slot-2", "slot-3"]

        o1 = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1", "slot-2"])
        assert unit.status == "AVAILABLE"
        assert o1.status == "COMPLETED"
        assert o1.inventory_profile_ids == ["slot-1", "slot-2"]

        o2 = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-3"])
        assert unit.status == "SOLD"
        assert o2.status == "COMPLETED"
        assert_binding_invariants()


class TestAssign:

    def test_missing_unit(self, make_order):
        order = make_order()
        with pytest.raises(UnitNotFound):
            allocation_service.assign(order, 99999, now=T0)
        db.session.rollback()

    def test_missing_slot_is_a_unit_not_found(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg)
        with pytest.raises(UnitNotFound) as exc:
            allocation_service.assign(order, unit.id, ["slot-9"], now=T0)
        assert isinstance(exc.value, SlotNotFound)
        assert exc.value.details["slot_id"] == "slot-9"
        db.session.rollback()

    def test_account_unit_requires_a_slot(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg)
        with pytest.raises(NoSlotSelected):
            allocation_service.assign(order, unit.id, [], now=T0)
        db.session.rollback()

    def test_sold_classic_unit_rejected(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        make_order(inventory_item_id=unit.id)
        other = make_order()
        with pytest.raises(SlotAlreadyAssigned):
            allocation_service.assign(other, unit.id, now=T0)
        db.session.rollback()

    def test_slot_of_another_order_rejected(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])
        other = make_order(package=catalog.account_pkg)
        with pytest.raises(SlotAlreadyAssigned) as exc:
            allocation_service.assign(other, unit.id, ["slot-2", "slot-1"], now=T0)
        assert exc.value.details["slot_id"] == "slot-1"
        db.session.rollback()

        unit = inventory_service.get_unit(unit.id)
        assert unit.slot_by_key("slot-2").assigned_order_id is None

    def test_expired_unit_rejected(self, make_classic_unit, make_order):
        unit = make_classic_unit(expiry_date=datetime(2024, 12, 1))
        assert unit.status == "EXPIRED"
        order = make_order()
        with pytest.raises(UnitExpired):
            allocation_service.assign(order, unit.id, now=T0)
        db.session.rollback()

    def test_unit_outside_package_pool_rejected(self, catalog, make_classic_unit, make_order):
        unit = make_classic_unit(package_id=catalog.classic_pkg_6m.id)
        order = make_order(package=catalog.classic_pkg)
        with pytest.raises(CatalogError):
            allocation_service.assign(order, unit.id, now=T0)
        db.session.rollback()

    def test_pooled_unit_serves_every_package_of_the_product(self, catalog, make_classic_unit, make_order):
        unit = make_classic_unit(product_id=catalog.pooled_product.id, package_id=None, pool_warranty_months=6)
        order = make_order(package=catalog.pooled_b, inventory_item_id=unit.id)
        assert order.inventory_item_id == unit.id
        assert unit.status == "SOLD"

    def test_unsaved_order_cannot_be_bound(self, catalog, make_classic_unit):
        unit = make_classic_unit()
        order = Order(code="TMP", customer_id=catalog.retail.id, package_id=catalog.classic_pkg.id)
        with pytest.raises(OrderNotFound):
            allocation_service.assign(order, unit.id, now=T0)
        db.session.rollback()

    def test_cogs_and_delivery_text(self, catalog, make_account_unit, make_classic_unit, make_order):
        account = make_account_unit()
        o1 = make_order(package=catalog.account_pkg, inventory_item_id=account.id, slot_ids=["slot-1", "slot-2"])
        assert o1.cogs == 60000
        assert o1.order_info == "\n".join([
            "--- Slot 1: Slot 1 ---",
            "Email: shared@example.com",
            "Password: s3cret",
            "",
            "--- Slot 2: Slot 2 ---",
            "Email: shared@example.com",
            "Password: s3cret",
            "",
            "Tổng slot: 2 | Đã dùng: 2/3",
        ])

        classic = make_classic_unit()
        o2 = make_order(inventory_item_id=classic.id)
        assert o2.cogs == 50000
        assert o2.order_info == "KEY-AAAA-BBBB"

    def test_reassign_keeps_owned_slot_and_frees_dropped_one(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1", "slot-2"])

        later = T0 + timedelta(days=5)
        allocation_service.assign(order, unit.id, ["slot-2", "slot-3"], now=later)
        db.session.commit()

        assert unit.slot_by_key("slot-1").assigned_order_id is None
        assert unit.slot_by_key("slot-2").assigned_at == T0
        assert unit.slot_by_key("slot-3").assigned_at == later
        assert order.inventory_profile_ids == ["slot-2", "slot-3"]
        assert_binding_invariants()

    def test_expired_unit_keeps_existing_slot_but_gains_none(self, catalog, make_account_unit, make_order):
        unit = make_account_unit(expiry_date=datetime(2025, 1, 15))
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])
        after_expiry = datetime(2025, 1, 20)

        allocation_service.assign(order, unit.id, ["slot-1"], now=after_expiry)
        db.session.commit()
        assert order.inventory_profile_ids == ["slot-1"]

        with pytest.raises(UnitExpired):
            allocation_service.assign(order, unit.id, ["slot-1", "slot-2"], now=after_expiry)
        db.session.rollback()

    def test_binding_to_another_unit_moves_the_order(self, make_classic_unit, make_order):
        first = make_classic_unit()
        second = make_classic_unit()
        order = make_order(inventory_item_id=first.id)

        allocation_service.assign(order, second.id, now=T0)
        db.session.commit()

        assert first.linked_order_id is None
        assert first.status == "AVAILABLE"
        assert second.linked_order_id == order.id
        assert order.inventory_item_id == second.id

    def test_assign_writes_binding_event(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id, actor="alice")
        event = (
            db.session.query(BindingEvent)
            .filter_by(order_id=order.id, event_type="binding.assigned")
            .one()
        )
        assert event.inventory_id == unit.id
        assert event.actor == "alice"
        assert event.occurred_at == T0


class TestRelease:

    def test_release_is_idempotent(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])

        first = allocation_service.release(order.id, now=T0)
        db.session.commit()
        snapshot = (
            order.status,
            order.inventory_item_id,
            order.inventory_profile_ids,
            unit.status,
            [(s.slot_key, s.assigned_order_id) for s in unit.slots],
        )

        second = allocation_service.release(order.id, now=T0)
        db.session.commit()

        assert first == [{"inventory_id": unit.id, "slot_keys": ["slot-1"]}]
        assert second == []
        assert snapshot == (
            order.status,
            order.inventory_item_id,
            order.inventory_profile_ids,
            unit.status,
            [(s.slot_key, s.assigned_order_id) for s in unit.slots],
        )

    def test_release_finds_units_when_order_pointer_is_missing(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id)
        order.inventory_item_id = None
        db.session.commit()

        released = allocation_service.release(order.id, now=T0)
        db.session.commit()

        assert released == [{"inventory_id": unit.id, "slot_keys": []}]
        assert unit.linked_order_id is None
        assert unit.status == "AVAILABLE"

    def test_release_limited_to_one_unit(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])
        other = make_account_unit()

        assert allocation_service.release(order.id, unit_id=other.id, now=T0) == []
        db.session.commit()
        assert order.inventory_item_id == unit.id

    def test_release_order_binding_requires_existing_order(self, db_session):
        with pytest.raises(OrderNotFound):
            allocation_service.release_order_binding(12345)


class TestCandidates:

    def test_eligible_units_only(self, catalog, make_classic_unit, make_order):
        available = make_classic_unit()
        sold = make_classic_unit()
        make_order(inventory_item_id=sold.id)
        make_classic_unit(expiry_date=datetime(2024, 12, 1))
        reserved = make_classic_unit()
        inventory_service.reserve_unit(reserved.id, now=T0)
        make_classic_unit(package_id=catalog.classic_pkg_6m.id)

        candidates = allocation_service.resolve_candidates(catalog.classic_pkg.id, now=T0)
        assert [u.id for u in candidates] == [available.id]

    def test_unit_bound_to_edited_order_listed_first(self, catalog, make_classic_unit, make_order):
        available = make_classic_unit()
        sold = make_classic_unit()
        order = make_order(inventory_item_id=sold.id)

        candidates = allocation_service.resolve_candidates(catalog.classic_pkg.id, order.id, now=T0)
        assert [u.id for u in candidates] == [sold.id, available.id]

    def test_bound_unit_kept_even_after_expiry(self, catalog, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id)
        much_later = datetime(2025, 6, 1)

        assert allocation_service.resolve_candidates(catalog.classic_pkg.id, now=much_later) == []
        candidates = allocation_service.resolve_candidates(catalog.classic_pkg.id, order.id, now=much_later)
        assert [u.id for u in candidates] == [unit.id]

    def test_account_unit_needs_a_free_slot(self, catalog, make_account_unit, make_order):
        unit = make_account_unit(total_slots=1)
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])
        assert allocation_service.resolve_candidates(catalog.account_pkg.id, now=T0) == []

        allocation_service.release(order.id, mark_needs_update=True, now=T0)
        db.session.commit()
        # A needs_update slot is not free
        assert allocation_service.resolve_candidates(catalog.account_pkg.id, now=T0) == []

    def test_pooled_product_ignores_package_boundary(self, catalog, make_classic_unit):
        unit = make_classic_unit(product_id=catalog.pooled_product.id, package_id=None, pool_warranty_months=3)
        for package in (catalog.pooled_a, catalog.pooled_b):
            assert [u.id for u in allocation_service.resolve_candidates(package.id, now=T0)] == [unit.id]

    def test_unknown_package(self, db_session):
        with pytest.raises(CatalogError):
            allocation_service.resolve_candidates(4242, now=T0)


class TestSwap:

    def test_classic_swap_reserves_old_unit(self, catalog, make_classic_unit, make_order):
        old = make_classic_unit()
        new = make_classic_unit()
        order = make_order(inventory_item_id=old.id)

        allocation_service.swap_binding(order.id, new.id, now=T0)

        assert old.status == "RESERVED"
        assert old.linked_order_id is None
        assert old.previous_linked_order_id == order.id
        assert new.linked_order_id == order.id
        assert order.inventory_item_id == new.id
        assert order.status == "COMPLETED"
        assert [u.id for u in allocation_service.resolve_candidates(catalog.classic_pkg.id, now=T0)] == []
        assert_binding_invariants()

    def test_account_swap_flags_old_slot(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])

        allocation_service.swap_binding(order.id, unit.id, ["slot-2"], now=T0)

        old_slot = unit.slot_by_key("slot-1")
        assert old_slot.assigned_order_id is None
        assert old_slot.needs_update is True
        assert old_slot.previous_order_id == order.id
        assert order.inventory_profile_ids == ["slot-2"]

        other = make_order(package=catalog.account_pkg)
        with pytest.raises(SlotNeedsUpdate):
            allocation_service.assign(other, unit.id, ["slot-1"], now=T0)
        db.session.rollback()

        # slot-1 waits for an update, slot-2 is held: taking slot-3 sells the unit out
        make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-3"])
        assert unit.status == "SOLD"

        inventory_service.clear_slot_needs_update(unit.id, "slot-1", now=T0)
        assert unit.status == "AVAILABLE"
        allocation_service.assign(other, unit.id, ["slot-1"], now=T0)
        db.session.commit()
        assert other.inventory_profile_ids == ["slot-1"]
        assert_binding_invariants()

    def test_swap_without_binding(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order()
        with pytest.raises(BindingError):
            allocation_service.swap_binding(order.id, unit.id, now=T0)

    def test_swap_cancelled_order(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order()
        order_service.cancel_order(order.id, now=T0)
        with pytest.raises(OrderLocked):
            allocation_service.swap_binding(order.id, unit.id, now=T0)
