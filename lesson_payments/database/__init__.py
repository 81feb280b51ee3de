"""Database package for lesson payments."""
from .connection import build_session_factory, close_db, get_session_factory, init_db
from .models import Base, MainLesson, PaymentStatus, PurchaseRecord

__all__ = [
    "Base",
    "MainLesson",
    "PaymentStatus",
    "PurchaseRecord",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
]
