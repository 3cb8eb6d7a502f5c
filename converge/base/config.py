"""
Pydantic configuration models.

Validates provider credentials and reconciler timing at initialization time
instead of silently passing bad values to SDK clients or wait loops.
"""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AWSConfig(BaseModel):
    """Configuration for the EC2-backed instance client.

    Credentials are resolved in order:
    1. Explicit values passed in the config dict.
    2. Environment variables (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, AWS_DEFAULT_REGION).
    3. If neither is set, fields are left as None so boto3 can fall back to its
       own credential chain (instance metadata, ~/.aws/credentials, etc.).
    """

    model_config = ConfigDict(extra="forbid")

    aws_access_key_id: str | None = Field(default=None, description="AWS access key ID")
    aws_secret_access_key: str | None = Field(default=None, description="AWS secret access key")
    region_name: str | None = Field(default=None, description="AWS region (e.g. 'us-east-1')")

    @model_validator(mode="before")
    @classmethod
    def resolve_from_env(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Fall back to environment variables for missing credentials."""
        env_map = {
            "aws_access_key_id": "AWS_ACCESS_KEY_ID",
            "aws_secret_access_key": "AWS_SECRET_ACCESS_KEY",
            "region_name": "AWS_DEFAULT_REGION",
        }
        for field, env_var in env_map.items():
            if not values.get(field):
                values[field] = os.environ.get(env_var)
        return values


class ReconcilerSettings(BaseModel):
    """Timing budgets for the reconciliation workflows (seconds).

    Any field not given explicitly is read from ``CONVERGE_<FIELD>`` in the
    environment (e.g. ``CONVERGE_START_TIMEOUT=900``), then the default.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    stop_timeout: float = Field(default=120.0, gt=0, description="Wait for Stopped")
    # Booting some images takes well over eight minutes.
    start_timeout: float = Field(default=500.0, gt=0, description="Wait for Running")
    poll_interval: float = Field(default=5.0, ge=0, description="Status poll interval")
    retry_interval: float = Field(default=10.0, ge=0, description="Wait between retries")
    modify_timeout: float = Field(
        default=360.0, gt=0, description="Budget for throttling-prone modifications"
    )
    delete_timeout: float = Field(default=300.0, gt=0, description="Budget for deletion")
    image_timeout: float = Field(
        default=120.0, gt=0, description="Wait for a replaced image to be reported"
    )

    @model_validator(mode="before")
    @classmethod
    def resolve_from_env(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Fall back to ``CONVERGE_*`` environment variables."""
        for field in cls.model_fields:
            if values.get(field) is None:
                env_val = os.environ.get(f"CONVERGE_{field.upper()}")
                if env_val is not None:
                    values[field] = env_val
        return values

    @model_validator(mode="after")
    def validate_budgets(self) -> ReconcilerSettings:
        """Booting is never given less time than stopping."""
        if self.start_timeout <= self.stop_timeout:
            raise ValueError(
                f"start_timeout ({self.start_timeout}) must exceed "
                f"stop_timeout ({self.stop_timeout})"
            )
        return self


# Map provider names to their config models for dynamic validation
CONFIG_REGISTRY: dict[str, type[BaseModel]] = {
    "aws": AWSConfig,
}


def validate_config(cloud_provider: str, config: dict) -> BaseModel:
    """Validate and return a typed config model for the given provider.

    Args:
        cloud_provider: The cloud provider name (e.g. 'aws').
        config: Raw configuration dictionary.

    Returns:
        A validated Pydantic config model.

    Raises:
        ValueError: If the provider is unknown.
        pydantic.ValidationError: If the config is invalid.
    """
    model = CONFIG_REGISTRY.get(cloud_provider)
    if model is None:
        raise ValueError(f"No config model registered for provider: {cloud_provider}")
    return model(**config)


__all__ = [
    "AWSConfig",
    "ReconcilerSettings",
    "CONFIG_REGISTRY",
    "validate_config",
]
