from .stores import Store, ProductVariant
from .inventory import InventoryRecord, InventoryTransaction, InventoryTransfer
from .orders import Order, OrderLine, LineKind, Refund, RefundLine
from .purchases import Purchase, PurchaseLine, PurchaseStatusHistory, BackorderAllocation
from .documents import DocumentSequence

__all__ = [
    'Store', 'ProductVariant',
    'InventoryRecord', 'InventoryTransaction', 'InventoryTransfer',
    'Order', 'OrderLine', 'LineKind', 'Refund', 'RefundLine',
    'Purchase', 'PurchaseLine', 'PurchaseStatusHistory', 'BackorderAllocation',
    'DocumentSequence',
]
