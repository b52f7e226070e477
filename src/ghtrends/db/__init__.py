from .dal import BatchUnavailableError, Store
from .engine import create_schema, create_store_engine, make_sessionmaker
from .models import Base

__all__ = [
    "Base",
    "BatchUnavailableError",
    "Store",
    "create_schema",
    "create_store_engine",
    "make_sessionmaker",
]
