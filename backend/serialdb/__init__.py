# backend/serialdb/__init__.py
"""
Serial-number tracking ledger.

Importing the models here registers the serial tables on Base.metadata for
Alembic and create_all(). The model classes live in serialdb/apps/*/models.py.
"""

from .apps.serials import models as serials_models  # serial items, movements, attributes

__all__ = ["serials_models"]
