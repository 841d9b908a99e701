from .catalog import Product, Package, Customer
from .inventory import InventoryUnit, InventorySlot
from .orders import Order, Renewal
from .ledger import BindingEvent, CodeSequence

__all__ = [
    'Product', 'Package', 'Customer',
    'InventoryUnit', 'InventorySlot',
    'Order', 'Renewal',
    'BindingEvent', 'CodeSequence',
]
