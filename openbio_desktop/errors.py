"""Exceptions raised by the orchestrator and its components."""


class OpenBioError(Exception):
    """Base class for every error the desktop core raises."""


class ConfigStoreError(OpenBioError):
    """The deployment configuration could not be written."""


class DiscoveryError(OpenBioError):
    """The mDNS daemon or browse session could not be started."""


class ServiceStartError(OpenBioError):
    """The embedded data service did not come up on its port."""


class SetupError(OpenBioError):
    """A requested deployment configuration cannot be activated."""


class LicenseError(SetupError):
    """Entitlement for a licensed mode could not be established."""

    def __init__(self, reason: str, failure=None):
        super().__init__(reason)
        self.reason = reason
        self.failure = failure
