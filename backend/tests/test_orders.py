# Overview: Pytest coverage for the order coordinator: create, update, cancel, refund, delete and binding checks.

import logging
from datetime import datetime

import pytest

from conftest import T0, assert_binding_invariants
from slotkeeper.extensions import db
from slotkeeper.errors import BindingError, CatalogError, InconsistentBinding, OrderLocked, OrderNotFound
from slotkeeper.models import BindingEvent, InventoryUnit, Order
from slotkeeper.services import catalog_service, order_service, renewal_service
from slotkeeper.validation import ConflictError


class TestCreateOrder:

    def test_codes_are_sequential(self, make_order):
        first = make_order()
        second = make_order()
        assert first.code == "DH0001"
        assert second.code == "DH0002"

    def test_duplicate_code_conflicts(self, make_order):
        make_order(code="VIP-1")
        with pytest.raises(ConflictError):
            make_order(code="VIP-1")

    def test_sale_price_by_customer_tier(self, catalog, make_order):
        assert make_order(customer=catalog.retail).sale_price == 100000
        assert make_order(customer=catalog.ctv).sale_price == 80000
        assert make_order(use_custom_price=True, custom_price=95000).sale_price == 95000

    def test_unbound_order_is_processing(self, make_order):
        order = make_order()
        assert order.status == "PROCESSING"
        assert order.inventory_item_id is None
        assert order.expiry_date == datetime(2025, 2, 1)

    def test_failed_binding_persists_nothing(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        with pytest.raises(BindingError):
            make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1", "nope"])
        assert db.session.query(Order).count() == 0
        assert all(s.assigned_order_id is None for s in unit.slots)

    def test_unknown_catalog_refs(self, catalog, make_order):
        with pytest.raises(CatalogError):
            make_order(customer_id=999)
        with pytest.raises(CatalogError):
            make_order(package_id=999)

    def test_created_refunded_is_cancelled(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id, payment_status="REFUNDED")
        assert order.status == "CANCELLED"
        assert order.inventory_item_id is None
        assert unit.status == "AVAILABLE"


class TestUpdateOrder:

    def test_sale_price_is_a_snapshot(self, catalog, make_order):
        order = make_order()
        catalog_service.update_package(package_id=catalog.classic_pkg.id, patch={"retail_price": 120000})

        order_service.update_order(order.id, patch={"notes": "call first"}, now=T0)
        assert order.sale_price == 100000

        order_service.update_order(order.id, patch={"customer_id": catalog.ctv.id}, now=T0)
        assert order.sale_price == 80000

        order_service.update_order(order.id, patch={"use_custom_price": True, "custom_price": 70000}, now=T0)
        assert order.sale_price == 70000

        order_service.update_order(order.id, patch={"custom_price": 65000}, now=T0)
        assert order.sale_price == 65000

    def test_package_change_recomputes_expiry(self, catalog, make_order):
        order = make_order()
        order_service.update_order(order.id, patch={"package_id": catalog.classic_pkg_6m.id}, now=T0)
        assert order.expiry_date == datetime(2025, 7, 1)
        assert order.sale_price == 500000

    def test_package_change_keeps_renewed_expiry(self, catalog, make_order):
        order = make_order()
        renewal_service.renew_order(order.id, months=2, now=T0)
        assert order.expiry_date == datetime(2025, 4, 1)

        order_service.update_order(order.id, patch={"package_id": catalog.classic_pkg_6m.id}, now=T0)

        assert order.expiry_date == datetime(2025, 4, 1)

    def test_package_change_rejects_unit_outside_new_package(self, catalog, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id)

        with pytest.raises(CatalogError):
            order_service.update_order(order.id, patch={"package_id": catalog.account_pkg.id}, now=T0)

        order = db.session.get(Order, order.id)
        assert order.package_id == catalog.classic_pkg.id
        assert order.inventory_item_id == unit.id
        assert order.status == "COMPLETED"

    def test_package_change_with_new_unit_in_same_edit(self, catalog, make_classic_unit, make_order):
        old = make_classic_unit()
        new = make_classic_unit(package_id=catalog.classic_pkg_6m.id)
        order = make_order(inventory_item_id=old.id)

        order_service.update_order(
            order.id,
            patch={"package_id": catalog.classic_pkg_6m.id, "inventory_item_id": new.id},
            now=T0,
        )

        assert order.inventory_item_id == new.id
        assert old.linked_order_id is None
        assert_binding_invariants()

    def test_package_change_within_shared_pool_keeps_unit(self, catalog, make_order):
        from slotkeeper.services import inventory_service

        unit = inventory_service.create_unit(
            product_id=catalog.pooled_product.id, purchase_date=T0, now=T0, pool_warranty_months=6,
        )
        order = make_order(package=catalog.pooled_a, inventory_item_id=unit.id)

        order_service.update_order(order.id, patch={"package_id": catalog.pooled_b.id}, now=T0)

        assert order.package_id == catalog.pooled_b.id
        assert order.inventory_item_id == unit.id

    def test_rebind_releases_old_unit(self, make_classic_unit, make_order):
        first = make_classic_unit()
        second = make_classic_unit(purchase_price=70000)
        order = make_order(inventory_item_id=first.id)

        order_service.update_order(order.id, patch={"inventory_item_id": second.id}, now=T0)

        assert first.status == "AVAILABLE"
        assert first.linked_order_id is None
        assert second.status == "SOLD"
        assert order.inventory_item_id == second.id
        assert order.cogs == 70000
        assert_binding_invariants()

    def test_unbind_clears_snapshots(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id)

        order_service.update_order(order.id, patch={"inventory_item_id": None}, now=T0)

        assert order.status == "PROCESSING"
        assert order.cogs is None
        assert order.order_info is None
        assert unit.status == "AVAILABLE"

    def test_change_slots_on_same_unit(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])

        order_service.update_order(order.id, patch={"slot_ids": ["slot-2", "slot-3"]}, now=T0)

        assert order.inventory_profile_ids == ["slot-2", "slot-3"]
        assert unit.slot_by_key("slot-1").assigned_order_id is None
        assert order.cogs == 60000

    def test_expiry_change_moves_slot_expiry(self, catalog, make_account_unit, make_order):
        unit = make_account_unit(expiry_date=datetime(2026, 1, 1))
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])

        order_service.update_order(order.id, patch={"custom_expiry_date": datetime(2025, 3, 15)}, now=T0)

        assert order.expiry_date == datetime(2025, 3, 15)
        assert unit.slot_by_key("slot-1").expiry_at == datetime(2025, 3, 15)

    def test_unknown_field_rejected(self, make_order):
        order = make_order()
        with pytest.raises(BindingError):
            order_service.update_order(order.id, patch={"sale_price": 1}, now=T0)

    def test_missing_order(self, db_session):
        with pytest.raises(OrderNotFound):
            order_service.update_order(404, patch={"notes": "x"}, now=T0)


class TestCancelAndRefund:

    def test_cancel_releases(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id)

        order_service.cancel_order(order.id, now=T0)

        assert order.status == "CANCELLED"
        assert order.inventory_item_id is None
        assert unit.status == "AVAILABLE"

    def test_cancelled_order_cannot_be_bound(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order()
        order_service.cancel_order(order.id, now=T0)
        with pytest.raises(OrderLocked):
            order_service.update_order(order.id, patch={"inventory_item_id": unit.id}, now=T0)

    def test_refund_forces_cancel(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])

        order_service.set_payment_status(order.id, "REFUNDED", now=T0)

        assert order.payment_status == "REFUNDED"
        assert order.status == "CANCELLED"
        assert unit.slot_by_key("slot-1").assigned_order_id is None

    def test_refunded_order_status_is_locked(self, make_order):
        order = make_order()
        order_service.update_order(order.id, patch={"payment_status": "REFUNDED"}, now=T0)
        assert order.status == "CANCELLED"

        with pytest.raises(OrderLocked):
            order_service.update_order(order.id, patch={"status": "PROCESSING"}, now=T0)
        assert order.status == "CANCELLED"

    def test_cancelled_order_status_is_locked(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id)
        order_service.cancel_order(order.id, now=T0)

        for patch in ({"status": "PROCESSING"}, {"status": "COMPLETED", "inventory_item_id": unit.id}):
            with pytest.raises(OrderLocked):
                order_service.update_order(order.id, patch=patch, now=T0)

        order = db.session.get(Order, order.id)
        assert order.status == "CANCELLED"
        assert order.inventory_item_id is None
        assert unit.linked_order_id is None
        assert unit.status == "AVAILABLE"

    def test_invalid_payment_status(self, make_order):
        order = make_order()
        with pytest.raises(BindingError):
            order_service.set_payment_status(order.id, "SOMETIMES", now=T0)


class TestDeleteOrder:

    def test_delete_frees_slot_next_to_foreign_slot(self, catalog, make_account_unit, make_order):
        unit = make_account_unit(total_slots=2)
        keeper = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])
        leaving = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-2"])
        assert unit.status == "SOLD"
        leaving_id = leaving.id

        result = order_service.delete_order(leaving_id, now=T0)

        assert result["deleted"] is True
        assert result["warnings"] == []
        assert result["released"] == [{"inventory_id": unit.id, "slot_keys": ["slot-2"]}]
        assert unit.slot_by_key("slot-2").assigned_order_id is None
        assert unit.slot_by_key("slot-1").assigned_order_id == keeper.id
        assert unit.status == "AVAILABLE"
        assert db.session.get(Order, leaving_id) is None
        assert_binding_invariants()

    def test_delete_warns_about_expired_unit(self, catalog, make_account_unit, make_order, caplog):
        unit = make_account_unit(expiry_date=datetime(2025, 1, 10))
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])

        with caplog.at_level(logging.WARNING):
            result = order_service.delete_order(order.id, now=datetime(2025, 1, 20))

        assert len(result["warnings"]) == 1
        assert result["warnings"][0]["inventory_id"] == unit.id
        assert result["warnings"][0]["slot_ids"] == ["slot-1"]
        assert "expired units" in caplog.text
        assert unit.slot_by_key("slot-1").assigned_order_id is None
        assert unit.status == "EXPIRED"

    def test_delete_drops_order_renewals(self, make_order):
        order = make_order()
        renewal_service.renew_order(order.id, months=1, now=T0)
        order_service.delete_order(order.id, now=T0)
        assert db.session.query(Order).count() == 0
        assert db.session.query(BindingEvent).filter_by(event_type="order.deleted").count() == 1

    def test_delete_missing_order(self, db_session):
        with pytest.raises(OrderNotFound):
            order_service.delete_order(1, now=T0)


class TestConsistency:

    def test_consistent_binding(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id)
        assert order_service.check_binding_consistency(order.id) == {"order_id": order.id, "consistent": True}
        assert order_service.check_all_bindings() == []

    def test_one_sided_binding_is_surfaced_not_fixed(self, make_classic_unit, make_order):
        unit = make_classic_unit()
        order = make_order(inventory_item_id=unit.id)
        unit.linked_order_id = None
        db.session.commit()

        with pytest.raises(InconsistentBinding) as exc:
            order_service.check_binding_consistency(order.id)
        assert exc.value.details["problems"] == [
            {"problem": "unit_does_not_reference_order", "inventory_id": unit.id},
        ]
        # Nothing was repaired
        assert order.inventory_item_id == unit.id
        assert order_service.check_all_bindings() == [exc.value.details]

    def test_slot_mismatch(self, catalog, make_account_unit, make_order):
        unit = make_account_unit()
        order = make_order(package=catalog.account_pkg, inventory_item_id=unit.id, slot_ids=["slot-1"])
        order.inventory_profile_ids = ["slot-1", "slot-2"]
        db.session.commit()

        with pytest.raises(InconsistentBinding) as exc:
            order_service.check_binding_consistency(order.id)
        problem = exc.value.details["problems"][0]
        assert problem["problem"] == "slot_mismatch"
        assert problem["order_slot_ids"] == ["slot-1", "slot-2"]
        assert problem["unit_slot_ids"] == ["slot-1"]


class TestOrphans:

    def test_find_and_release_orphans(self, catalog, make_classic_unit, make_account_unit, make_order):
        classic = make_classic_unit()
        account = make_account_unit()
        gone_a = make_order(inventory_item_id=classic.id)
        gone_b = make_order(package=catalog.account_pkg, inventory_item_id=account.id, slot_ids=["slot-2"])
        ids = (gone_a.id, gone_b.id)
        db.session.execute(Order.__table__.delete().where(Order.__table__.c.id.in_(ids)))
        db.session.commit()

        orphans = order_service.find_orphaned_bindings()
        assert sorted((o["inventory_id"], o["slot_id"], o["order_id"]) for o in orphans) == sorted([
            (classic.id, None, ids[0]),
            (account.id, "slot-2", ids[1]),
        ])

        released = order_service.release_orphaned_bindings(actor="ops", now=T0)
        assert len(released) == 2
        assert order_service.find_orphaned_bindings() == []

        classic = db.session.get(InventoryUnit, classic.id)
        account = db.session.get(InventoryUnit, account.id)
        assert classic.status == "AVAILABLE"
        assert account.slot_by_key("slot-2").assigned_order_id is None
