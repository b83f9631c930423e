"""Policy tables for licensing and uploads.

Kept as plain data so each policy can be unit tested, and overridden from
settings, without touching the services that consume them.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import PurePath
from typing import Dict, FrozenSet, Mapping, Optional

from digivault.core.errors import ValidationError
from digivault.core.settings import settings


@dataclass(frozen=True)
class LicensePolicy:
    activation_limit: int
    # None means the license never expires
    expiry_days: Optional[int]
    label: str

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if self.expiry_days is None:
            return None
        return now + timedelta(days=self.expiry_days)


DEFAULT_LICENSE_POLICIES: Dict[str, LicensePolicy] = {
    "single_use": LicensePolicy(activation_limit=1, expiry_days=None, label="Single Use"),
    "multi_use": LicensePolicy(activation_limit=3, expiry_days=None, label="Multi-Device"),
    "subscription": LicensePolicy(activation_limit=5, expiry_days=365, label="Subscription"),
    "trial": LicensePolicy(activation_limit=1, expiry_days=30, label="Trial"),
}


def build_license_policies(
    overrides: Optional[Mapping[str, Mapping[str, Optional[int]]]] = None,
) -> Dict[str, LicensePolicy]:
    policies = dict(DEFAULT_LICENSE_POLICIES)
    for license_type, values in (overrides or {}).items():
        if license_type not in policies:
            raise ValueError(f"Unknown license type in overrides: {license_type}")
        changes = {k: v for k, v in values.items() if k in ("activation_limit", "expiry_days")}
        policies[license_type] = replace(policies[license_type], **changes)
    return policies


LICENSE_POLICIES: Dict[str, LicensePolicy] = build_license_policies(settings.license_policy_overrides)


@dataclass(frozen=True)
class UploadPolicy:
    max_bytes: int
    allowed_mime_types: FrozenSet[str]
    allowed_extensions: FrozenSet[str]

    @classmethod
    def from_settings(cls) -> "UploadPolicy":
        return cls(
            max_bytes=settings.upload_max_bytes,
            allowed_mime_types=frozenset(m.lower() for m in settings.upload_allowed_mime_types),
            allowed_extensions=frozenset(e.lower().lstrip(".") for e in settings.upload_allowed_extensions),
        )

    def check(self, filename: str, mime_type: Optional[str], size: int) -> str:
        """Validate an upload and return its normalised extension."""
        if size <= 0:
            raise ValidationError("Uploaded file is empty")
        if size > self.max_bytes:
            raise ValidationError(f"File exceeds maximum size of {self.max_bytes} bytes")
        extension = PurePath(filename or "").suffix.lower().lstrip(".")
        if not extension or extension not in self.allowed_extensions:
            raise ValidationError(f"File extension not allowed: {extension or '(none)'}")
        if (mime_type or "").lower() not in self.allowed_mime_types:
            raise ValidationError(f"File type not allowed: {mime_type}")
        return extension
