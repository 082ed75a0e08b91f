"""
Deployment orchestrator for the OpenBio desktop application

This package decides which deployment topology the local instance runs in
(local, hub, spoke or enterprise), supervises the embedded data service,
advertises and discovers lab hubs over mDNS, and validates license
entitlement for the gated modes.
"""

__version__ = "0.1.0"
