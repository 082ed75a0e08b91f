from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from openbio_desktop.config import settings

CONFIG_EVENT_NAME = "openbio:config"


class DeploymentMode(str, Enum):
    UNCONFIGURED = "unconfigured"
    LOCAL = "local"
    HUB = "hub"
    SPOKE = "spoke"
    ENTERPRISE = "enterprise"


class LicenseTier(str, Enum):
    HUB = "hub"
    ENTERPRISE = "enterprise"


class LicenseFailure(str, Enum):
    NETWORK = "network"
    STATUS = "status"
    INVALID = "invalid"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    MISSING = "missing"
    TIER = "tier"


class DeploymentConfig(BaseModel):
    """Persisted deployment configuration; field aliases match the on-disk keys."""

    model_config = ConfigDict(populate_by_name=True)

    mode: DeploymentMode = DeploymentMode.UNCONFIGURED
    lab_name: Optional[str] = Field(default=None, alias="labName")
    api_url: Optional[str] = Field(default=None, alias="apiUrl")
    server_port: int = Field(
        default_factory=lambda: settings.DEFAULT_SERVER_PORT,
        alias="serverPort",
        ge=1,
        le=65535,
    )


class License(BaseModel):
    key: str
    tier: LicenseTier
    expires_at: str
    organization_name: Optional[str] = None


# License server wire format
class ValidationRequest(BaseModel):
    license_key: str
    server_id: Optional[str] = None


class ValidationResponse(BaseModel):
    valid: bool
    tier: Optional[str] = None
    expires_at: Optional[str] = None
    organization_name: Optional[str] = None
    reason: Optional[str] = None


class LicenseCheckResult(BaseModel):
    valid: bool
    license: Optional[License] = None
    reason: Optional[str] = None
    failure: Optional[LicenseFailure] = None
    offline: bool = False


class TrialResult(BaseModel):
    success: bool
    trialLicense: Optional[str] = None
    error: Optional[str] = None


class DiscoveredPeer(BaseModel):
    name: str
    address: str


class ConfigEvent(BaseModel):
    apiUrl: str
    mode: DeploymentMode
    error: Optional[str] = None


# Control API bodies
class SetupRequest(BaseModel):
    config: DeploymentConfig
    licenseKey: Optional[str] = None


class SetupStatusResponse(BaseModel):
    needsSetup: bool


class LicenseActivationRequest(BaseModel):
    licenseKey: str


class TrialRequest(BaseModel):
    email: str
    tier: LicenseTier


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    mode: DeploymentMode
    serverId: Optional[str] = None
    systemInfo: Optional[Dict[str, Any]] = None
