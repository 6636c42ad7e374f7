from .enums import BatchStatus, MovementType, ReferenceType
from .stock import Ingredient, StockBatch, StockMovement, ProcessedDeduction

__all__ = [
    'BatchStatus', 'MovementType', 'ReferenceType',
    'Ingredient', 'StockBatch', 'StockMovement', 'ProcessedDeduction',
]
