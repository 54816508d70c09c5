from catatkas.models.category import Category
from catatkas.models.transaction import Transaction
from catatkas.models.user import User

__all__ = [
    "User",
    "Category",
    "Transaction",
]
