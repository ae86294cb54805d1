############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# __init__.py: Core package
#
############################################################

"""Core fleet logic: probing, registry, routing and queries."""
