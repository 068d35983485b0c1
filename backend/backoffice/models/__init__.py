from .tenancy import Organization, Location, DocumentSequence, AuditLog
from .inventory import Product, Batch, StockLevel, StockLedgerEntry
from .sales import Sale, SaleItem
from .customers import Customer, CreditTransaction, Invoice
from .registers import CashDrawer, CashTransaction
from .documents import Return, ReturnItem, Transfer, TransferItem, StockAdjustment
from .purchasing import PurchaseOrder, PurchaseOrderItem, ReceivingRecord, ReceivingRecordItem

__all__ = [
    'Organization', 'Location', 'DocumentSequence', 'AuditLog',
    'Product', 'Batch', 'StockLevel', 'StockLedgerEntry',
    'Sale', 'SaleItem',
    'Customer', 'CreditTransaction', 'Invoice',
    'CashDrawer', 'CashTransaction',
    'Return', 'ReturnItem', 'Transfer', 'TransferItem', 'StockAdjustment',
    'PurchaseOrder', 'PurchaseOrderItem', 'ReceivingRecord', 'ReceivingRecordItem',
]
