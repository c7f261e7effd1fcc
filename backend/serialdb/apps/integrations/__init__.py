"""
Collaborator modules that drive the serial ledger through inbound events.
"""

from .assets import AssetsCollaborator, AssetsIntegration  # noqa: F401
