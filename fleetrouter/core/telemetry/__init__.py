############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# __init__.py: Node registry and telemetry model exports
#
############################################################

"""Fleet telemetry: node registry and telemetry models."""

from fleetrouter.core.telemetry.registry import NodeRegistry
from fleetrouter.core.telemetry.models import FleetSnapshot, Node, NodeCapabilities

__all__ = [
    "NodeRegistry",
    "FleetSnapshot",
    "Node",
    "NodeCapabilities",
]
