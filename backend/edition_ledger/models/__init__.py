from .ledger import LedgerEntry, EditionEvent
from .products import ProductEdition
from .orders import OrderSnapshot

__all__ = [
    'LedgerEntry', 'EditionEvent',
    'ProductEdition',
    'OrderSnapshot',
]
