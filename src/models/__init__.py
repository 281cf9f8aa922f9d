from src.models.base import Base
from src.models.cursor import IndexCursor
from src.models.launch import Launch
from src.models.position import LpPosition

__all__ = [
    "Base",
    "Launch",
    "LpPosition",
    "IndexCursor",
]
