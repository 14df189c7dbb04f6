"""Static registry of device profiles.

A profile supplies the shadow defaults handed out during bootstrap, an
optional keepalive override and an optional JSON Schema that desired
documents must satisfy. Profiles are keyed by "<tenant>/<deviceType>",
"<deviceType>" or "default" and resolved most-specific first. The table is
built once from the built-in profiles plus an optional JSON file; no code
is ever loaded from disk.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jsonschema  # type: ignore[import-untyped]

from fleetctl.config import ConfigurationError
from fleetctl.exceptions import ValidationException

if TYPE_CHECKING:
    from fleetctl.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_KEY = "default"

DEFAULT_SHADOW_DESIRED: dict[str, Any] = {
    "reporting": {"heartbeatMs": 60000},
    "sensors": {"samplingMs": 30000},
    "thresholds": {
        "voltage": {"min": 3.0, "max": 5.0},
        "current": {"min": 0.0, "max": 2.0},
    },
    "features": {"alarmEnabled": True, "autoRebootDays": 7},
}

# Shape of the profiles file
PROFILES_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["profiles"],
    "properties": {
        "profiles": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "shadowDefaults": {"type": "object"},
                    "keepalive": {"type": "integer", "minimum": 1},
                    "desiredSchema": {"type": "object"},
                },
                "additionalProperties": False,
            },
        }
    },
}


@dataclass(frozen=True)
class DeviceProfile:
    key: str
    shadow_defaults: dict[str, Any] = field(default_factory=dict)
    keepalive: int | None = None
    desired_schema: dict[str, Any] | None = None


class DeviceProfileService:
    """Singleton lookup table of device profiles."""

    def __init__(self, config: "Settings") -> None:
        self.config = config
        self._profiles: dict[str, DeviceProfile] = {
            DEFAULT_PROFILE_KEY: DeviceProfile(
                key=DEFAULT_PROFILE_KEY, shadow_defaults=DEFAULT_SHADOW_DESIRED
            )
        }

        if config.device_profiles_file:
            self.load_file(Path(config.device_profiles_file))

    def load_file(self, path: Path) -> int:
        """Register profiles from a JSON file, replacing same-keyed entries.

        Returns:
            Number of profiles loaded

        Raises:
            ConfigurationError: If the file is unreadable or malformed
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            jsonschema.validate(instance=data, schema=PROFILES_FILE_SCHEMA)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read device profiles from {path}: {e}") from e
        except jsonschema.ValidationError as e:
            raise ConfigurationError(f"Invalid device profiles file {path}: {e.message}") from e

        for key, entry in data["profiles"].items():
            self.register(
                DeviceProfile(
                    key=key,
                    shadow_defaults=entry.get("shadowDefaults", DEFAULT_SHADOW_DESIRED),
                    keepalive=entry.get("keepalive"),
                    desired_schema=entry.get("desiredSchema"),
                )
            )

        logger.info("Loaded %d device profiles from %s", len(data["profiles"]), path)
        return len(data["profiles"])

    def register(self, profile: DeviceProfile) -> None:
        """Add or replace a profile.

        Raises:
            ConfigurationError: If the profile's desired schema is not a valid JSON Schema
        """
        if profile.desired_schema is not None:
            try:
                jsonschema.Draft7Validator.check_schema(profile.desired_schema)
            except jsonschema.SchemaError as e:
                raise ConfigurationError(
                    f"Device profile '{profile.key}' has an invalid desired schema: {e.message}"
                ) from e
        self._profiles[profile.key] = profile

    def resolve(self, tenant_id: str, device_type: str) -> DeviceProfile:
        for key in (f"{tenant_id}/{device_type}", device_type):
            profile = self._profiles.get(key)
            if profile is not None:
                return profile
        return self._profiles[DEFAULT_PROFILE_KEY]

    def shadow_defaults(self, tenant_id: str, device_type: str) -> dict[str, Any]:
        """Fresh copy of the default desired document for a device type."""
        return copy.deepcopy(self.resolve(tenant_id, device_type).shadow_defaults)

    def keepalive(self, tenant_id: str, device_type: str) -> int:
        profile = self.resolve(tenant_id, device_type)
        return profile.keepalive or self.config.mqtt_keepalive_seconds

    def validate_desired(
        self, tenant_id: str, device_type: str, desired: dict[str, Any]
    ) -> None:
        """Check a merged desired document against the profile schema.

        Raises:
            ValidationException: If the document violates the schema
        """
        schema = self.resolve(tenant_id, device_type).desired_schema
        if schema is None:
            return

        try:
            jsonschema.validate(instance=desired, schema=schema)
        except jsonschema.ValidationError as e:
            raise ValidationException(f"Desired state validation failed: {e.message}") from e
