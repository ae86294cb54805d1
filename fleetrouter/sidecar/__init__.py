############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# __init__.py: Sidecar package
#
############################################################

"""Capability sidecar run on each fleet node."""
