############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# __init__.py: Model routing package exports
#
############################################################

"""Model routing.

Orders local GPU, LAN and remote backends for a requesting node, always
ending with the remote API fallback.
"""

from fleetrouter.core.routing.catalog import build_backends
from fleetrouter.core.routing.router import ModelRouter, WorkloadHint

__all__ = [
    "ModelRouter",
    "WorkloadHint",
    "build_backends",
]
