from .catalog import Product, Variant, Customer, Supplier, PaymentMethod
from .taxes import TaxProfile, TaxCategory, TaxRule
from .sales import Sale, SaleItem, Transaction
from .returns import Return, ReturnItem
from .inventory import StockFlow, StockLot, InvoiceSequence
from .purchasing import PurchaseOrder, PurchaseOrderItem

__all__ = [
    'Product', 'Variant', 'Customer', 'Supplier', 'PaymentMethod',
    'TaxProfile', 'TaxCategory', 'TaxRule',
    'Sale', 'SaleItem', 'Transaction',
    'Return', 'ReturnItem',
    'StockFlow', 'StockLot', 'InvoiceSequence',
    'PurchaseOrder', 'PurchaseOrderItem',
]
