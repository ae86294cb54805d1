############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# __init__.py: Package version
#
############################################################

"""fleetrouter - fleet health aggregation and model routing."""

__version__ = "0.1.0"
