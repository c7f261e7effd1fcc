"""
Serial lifecycle events.

An explicitly constructed gateway carries outbound announcements to
subscribers and routes inbound requests to the ledger.
"""

from .gateway import DeliveryFailure, DeliveryReport, EventEnvelope, EventGateway  # noqa: F401
from . import schemas  # noqa: F401
