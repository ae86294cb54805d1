############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# errors.py: Error taxonomy for probing, configuration and routing
#
############################################################

"""Fleet error types.

Probe errors never leave the prober: they are converted into ``Down``
results. ``ConfigInvalid`` is fatal at startup.
"""

from typing import Optional


class FleetError(Exception):
    """Base class for fleetrouter errors."""


class ProbeTimeout(FleetError):
    """A probe did not complete within its timeout."""

    def __init__(self, target: str, timeout: float):
        self.target = target
        self.timeout = timeout
        super().__init__(f"{target}: no response within {timeout:g}s")


class ProbeRefused(FleetError):
    """A probe could not connect to its target."""

    def __init__(self, target: str, detail: str = "connection refused"):
        self.target = target
        self.detail = detail
        super().__init__(f"{target}: {detail}")


class ConfigInvalid(FleetError):
    """The fleet definition is malformed."""

    def __init__(self, message: str, entry: Optional[str] = None):
        self.entry = entry
        if entry:
            message = f"{message} (entry: {entry})"
        super().__init__(message)


class UnknownNode(FleetError):
    """A query referenced a node the registry does not know."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"unknown node: {name}")


# Reason recorded on a RoutingDecision that holds only remote fallbacks.
# Not raised: the router always returns a usable decision.
NO_BACKENDS_AVAILABLE = "no_backends_available"
