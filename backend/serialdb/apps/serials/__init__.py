"""
Serial items, their movement ledger and attributes.
"""

from . import models  # noqa: F401
