import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from openbio_desktop.config import settings
from openbio_desktop.database import LocalLicenseCache, LocalLicenseValidationAttempt, utcnow
from openbio_desktop.models import (
    DeploymentMode,
    License,
    LicenseCheckResult,
    LicenseFailure,
    LicenseTier,
    TrialResult,
    ValidationRequest,
    ValidationResponse,
)

logger = logging.getLogger(__name__)

REVALIDATION_JOB_ID = "license_revalidation"

# Higher tiers include every mode a lower tier unlocks.
TIER_RANK = {LicenseTier.HUB: 1, LicenseTier.ENTERPRISE: 2}
MODE_REQUIRED_TIER = {
    DeploymentMode.HUB: LicenseTier.HUB,
    DeploymentMode.ENTERPRISE: LicenseTier.ENTERPRISE,
}


def requires_license(mode: DeploymentMode) -> bool:
    """Spoke instances rely on the hub they talk to, so only hub and enterprise are gated."""
    return mode in MODE_REQUIRED_TIER


def tier_satisfies(tier: LicenseTier, mode: DeploymentMode) -> bool:
    required = MODE_REQUIRED_TIER.get(mode)
    if required is None:
        return True
    return TIER_RANK[tier] >= TIER_RANK[required]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp. Naive values are taken as UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _failed(failure: LicenseFailure, reason: str) -> LicenseCheckResult:
    return LicenseCheckResult(valid=False, failure=failure, reason=reason)


class LicenseValidator:
    """Client side of the license server contract."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        grace_period: Optional[timedelta] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or settings.LICENSE_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.LICENSE_API_TIMEOUT
        if grace_period is None:
            grace_period = timedelta(days=settings.OFFLINE_GRACE_PERIOD_DAYS)
        self.grace_period = grace_period
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def validate_online(self, key: str, server_id: Optional[str] = None) -> LicenseCheckResult:
        """
        Validate a license key with the license server.

        A License is returned only when the request went through, the server
        answered with a success status and the body declares the key valid.
        """
        payload = ValidationRequest(license_key=key, server_id=server_id).model_dump()
        try:
            async with self._client() as client:
                response = await client.post(f"{self.api_url}/validate", json=payload)
        except httpx.HTTPError as e:
            return _failed(LicenseFailure.NETWORK, f"Network error: {e}")

        if not response.is_success:
            reason = "Failed to validate license"
            try:
                detail = response.json().get("reason")
            except (ValueError, AttributeError):
                detail = None
            if detail:
                reason = f"{reason}: {detail}"
            return _failed(LicenseFailure.STATUS, f"{reason} (HTTP {response.status_code})")

        try:
            validation = ValidationResponse.model_validate_json(response.content)
        except ValidationError as e:
            return _failed(LicenseFailure.MALFORMED, f"Invalid response: {e}")

        if not validation.valid:
            return _failed(LicenseFailure.INVALID, validation.reason or "License invalid")

        try:
            tier = LicenseTier((validation.tier or "").lower())
        except ValueError:
            return _failed(LicenseFailure.MALFORMED, f"Invalid response: unknown tier {validation.tier!r}")

        if parse_timestamp(validation.expires_at) is None:
            return _failed(
                LicenseFailure.MALFORMED,
                f"Invalid response: bad expiration date {validation.expires_at!r}",
            )

        license = License(
            key=key,
            tier=tier,
            expires_at=validation.expires_at,
            organization_name=validation.organization_name,
        )
        return LicenseCheckResult(valid=True, license=license)

    def validate_offline(self, cached_license: License, now: Optional[datetime] = None) -> LicenseCheckResult:
        """
        Accept a cached license until the grace period after its expiry has passed.
        """
        expires_at = parse_timestamp(cached_license.expires_at)
        if expires_at is None:
            return _failed(LicenseFailure.MALFORMED, "Invalid expiration date format")

        now = now or datetime.now(timezone.utc)
        if now > expires_at + self.grace_period:
            return _failed(LicenseFailure.EXPIRED, "License expired and requires online validation")

        return LicenseCheckResult(valid=True, license=cached_license, offline=True)

    async def start_trial(self, email: str, tier: LicenseTier) -> TrialResult:
        """
        Ask the license server for a time-limited trial key.
        """
        payload = {"action": "start-trial", "email": email, "tier": LicenseTier(tier).value}
        try:
            async with self._client() as client:
                response = await client.post(f"{self.api_url}/purchase", json=payload)
        except httpx.HTTPError as e:
            return TrialResult(success=False, error=f"Network error: {e}")

        if not response.is_success:
            return TrialResult(success=False, error="Failed to start trial")

        try:
            data = response.json()
        except ValueError as e:
            return TrialResult(success=False, error=f"Invalid response: {e}")

        trial_license = data.get("trial_license") if isinstance(data, dict) else None
        if not isinstance(trial_license, str) or not trial_license:
            return TrialResult(success=False, error="No trial license generated")

        return TrialResult(success=True, trialLicense=trial_license)


class LicenseCache:
    """Local record of validated licenses and validation attempts."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def store(self, license: License, server_id: Optional[str]) -> None:
        with self.session_factory() as db:
            existing = db.query(LocalLicenseCache).filter(
                LocalLicenseCache.license_key == license.key
            ).first()

            if existing:
                existing.tier = license.tier.value
                existing.expires_at = license.expires_at
                existing.organization_name = license.organization_name
                existing.last_validated_at = utcnow()
                existing.server_id = server_id
            else:
                db.add(LocalLicenseCache(
                    license_key=license.key,
                    tier=license.tier.value,
                    expires_at=license.expires_at,
                    organization_name=license.organization_name,
                    server_id=server_id,
                ))
            db.commit()

    def latest(self) -> Optional[License]:
        """
        Most recently validated license, if any.
        """
        with self.session_factory() as db:
            row = db.query(LocalLicenseCache).order_by(
                LocalLicenseCache.last_validated_at.desc(),
                LocalLicenseCache.id.desc(),
            ).first()
            return self._to_license(row)

    def find(self, license_key: str) -> Optional[License]:
        with self.session_factory() as db:
            row = db.query(LocalLicenseCache).filter(
                LocalLicenseCache.license_key == license_key
            ).first()
            return self._to_license(row)

    @staticmethod
    def _to_license(row: Optional[LocalLicenseCache]) -> Optional[License]:
        if row is None:
            return None
        try:
            tier = LicenseTier(row.tier)
        except ValueError:
            logger.warning("Ignoring cached license with unknown tier %r", row.tier)
            return None
        return License(
            key=row.license_key,
            tier=tier,
            expires_at=row.expires_at,
            organization_name=row.organization_name,
        )

    def log_attempt(self, license_key: str, result: str, error_message: Optional[str], server_id: Optional[str]) -> None:
        with self.session_factory() as db:
            db.add(LocalLicenseValidationAttempt(
                license_key=license_key,
                result=result,
                error_message=error_message,
                server_id=server_id,
            ))
            db.commit()


class LicenseClient:
    """Entitlement checks for gated modes, backed by the validator and local cache."""

    def __init__(self, validator: LicenseValidator, cache: LicenseCache, server_id: str):
        self.validator = validator
        self.cache = cache
        self.server_id = server_id
        self.active_license: Optional[License] = None
        self.scheduler = AsyncIOScheduler()

    async def ensure_entitlement(
        self, mode: DeploymentMode, license_key: Optional[str] = None
    ) -> LicenseCheckResult:
        """
        Establish a license covering `mode`.

        The key is validated online. Only when the license server cannot be
        reached does a cached license for the same key get validated offline.
        """
        if not requires_license(mode):
            return LicenseCheckResult(valid=True)

        key = (license_key or "").strip()
        cached = self.cache.find(key) if key else self.cache.latest()
        if not key and cached is not None:
            key = cached.key
        if not key:
            return _failed(LicenseFailure.MISSING, f"A license key is required for {mode.value} mode")

        result = await self.validator.validate_online(key, self.server_id)

        if result.valid:
            self.cache.store(result.license, self.server_id)
            self.cache.log_attempt(key, "success", None, self.server_id)
        elif result.failure == LicenseFailure.NETWORK and cached is not None and cached.key == key:
            self.cache.log_attempt(key, "offline", result.reason, self.server_id)
            logger.warning("License server unreachable, checking cached license: %s", result.reason)
            result = self.validator.validate_offline(cached)
        else:
            self.cache.log_attempt(key, "failed", result.reason, self.server_id)

        if result.valid and not tier_satisfies(result.license.tier, mode):
            result = _failed(
                LicenseFailure.TIER,
                f"A {result.license.tier.value} license does not cover {mode.value} mode",
            )

        if result.valid:
            self.active_license = result.license
        else:
            logger.error("License check for %s mode failed: %s", mode.value, result.reason)
        return result

    async def check_key(self, license_key: str) -> LicenseCheckResult:
        """
        Validate a key online without activating anything; valid keys are cached.
        """
        result = await self.validator.validate_online(license_key, self.server_id)
        if result.valid:
            self.cache.store(result.license, self.server_id)
            self.cache.log_attempt(license_key, "success", None, self.server_id)
        else:
            self.cache.log_attempt(license_key, "failed", result.reason, self.server_id)
        return result

    async def start_trial(self, email: str, tier: LicenseTier) -> TrialResult:
        result = await self.validator.start_trial(email, tier)
        if result.success:
            logger.info("Started %s trial for %s", LicenseTier(tier).value, email)
        else:
            logger.warning("Trial request failed: %s", result.error)
        return result

    def start_monitor(self, mode: DeploymentMode, on_failure: Callable[[str], None]) -> None:
        """
        Re-validate the active license periodically while a gated mode runs.
        """
        self.scheduler.add_job(
            self._revalidate,
            'interval',
            hours=settings.LICENSE_REVALIDATION_HOURS,
            id=REVALIDATION_JOB_ID,
            replace_existing=True,
            args=[mode, on_failure],
        )
        if not self.scheduler.running:
            self.scheduler.start()

    def stop_monitor(self) -> None:
        if self.scheduler.get_job(REVALIDATION_JOB_ID) is not None:
            self.scheduler.remove_job(REVALIDATION_JOB_ID)
        self.active_license = None

    def shutdown(self) -> None:
        self.stop_monitor()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def _revalidate(self, mode: DeploymentMode, on_failure: Callable[[str], None]) -> None:
        # Re-check the key the mode was activated with, not the last key checked.
        key = self.active_license.key if self.active_license else None
        result = await self.ensure_entitlement(mode, key)
        if not result.valid:
            on_failure(result.reason or "License validation failed")
