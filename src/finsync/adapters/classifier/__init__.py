from finsync.adapters.classifier.protocol import (
    BudgetMatch,
    CategoryAssignment,
    ClassifiableTransaction,
    ClassifierGateway,
)

__all__ = [
    "BudgetMatch",
    "CategoryAssignment",
    "ClassifiableTransaction",
    "ClassifierGateway",
]
