from .inventory import Product, StockHistory, DamagedInventory
from .customers import Customer
from .invoices import Invoice, InvoiceLine, Payment
from .returns import Return, ReturnLine

__all__ = [
    'Product', 'StockHistory', 'DamagedInventory',
    'Customer',
    'Invoice', 'InvoiceLine', 'Payment',
    'Return', 'ReturnLine',
]
