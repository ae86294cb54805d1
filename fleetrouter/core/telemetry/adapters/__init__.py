############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# __init__.py: Capability adapter exports
#
############################################################

"""Capability sources and clients used by the prober."""

from fleetrouter.core.telemetry.adapters.capability_client import CapabilityClient
from fleetrouter.core.telemetry.adapters.gpu_sources import LocalGpuDetector

__all__ = ["CapabilityClient", "LocalGpuDetector"]
