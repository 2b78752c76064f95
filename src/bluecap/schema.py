"""
Schema definitions for Bluecap.

This module defines the Pydantic models for the JSON records Bluecap reads
and writes:
- CapsuleDefinition: One capsule (image, options, persistent directories)
- DefaultsDefinition: Administrator-provided options for new capsules
- TrustRecord: Capsule names exempt from interactive authorization

Design Decisions:
    - Records are frozen; mutations go through model_copy(update=...)
    - Unknown keys are rejected so typos in hand-edited files surface early
    - The capsule name pattern lives here because every module that embeds
      a name (file names, container names, polkit rules) checks it
"""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bluecap.errors import InvalidCapsuleNameError


# =============================================================================
# Capsule Names
# =============================================================================

CAPSULE_NAME_PATTERN = r"^[0-9a-zA-Z_.\-]+$"
CAPSULE_NAME_RE = re.compile(CAPSULE_NAME_PATTERN)


def is_valid_capsule_name(name: str) -> bool:
    """Return True if name matches the capsule name pattern."""
    # fullmatch so a trailing newline cannot sneak past "$"
    return CAPSULE_NAME_RE.fullmatch(name) is not None


def validate_capsule_name(name: str) -> str:
    """
    Check a capsule name against the capsule name pattern.

    Args:
        name: The candidate capsule name

    Returns:
        The name, unchanged

    Raises:
        InvalidCapsuleNameError: If the name does not match
    """
    if not is_valid_capsule_name(name):
        raise InvalidCapsuleNameError(name=name)
    return name


def is_valid_image(image: str) -> bool:
    """Return True if image can be passed to the runtime as one argument."""
    return bool(image) and not image.startswith("-") and not any(ch.isspace() for ch in image)


# =============================================================================
# Records
# =============================================================================


class CapsuleDefinition(BaseModel):
    """
    A capsule record, stored as <store>/<name>.json.

    Attributes:
        image: Container image reference, passed to the runtime as-is
        options: Runtime flags without the leading "--" (e.g., "net=none")
        persistence: Absolute in-sandbox directories backed by host storage
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    image: str = Field(
        ...,
        description="Container image reference",
        min_length=1,
    )
    options: list[str] = Field(
        default_factory=list,
        description="Runtime options, without leading dashes",
    )
    # Older records were written without this key.
    persistence: list[str] = Field(
        default_factory=list,
        description="Absolute logical directories that persist across runs",
    )

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """The image follows the options, so it must not look like one."""
        if not is_valid_image(v):
            msg = f"Invalid image reference: {v}"
            raise ValueError(msg)
        return v

    @field_validator("persistence")
    @classmethod
    def validate_absolute(cls, v: list[str]) -> list[str]:
        """Persistent directories are always absolute in-sandbox paths."""
        for directory in v:
            if not directory.startswith("/"):
                msg = f"Persistent directory must be absolute: {directory}"
                raise ValueError(msg)
        return v


class DefaultsDefinition(BaseModel):
    """Options applied to every new capsule and to direct-image runs."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    options: list[str] = Field(
        default_factory=list,
        description="Runtime options, without leading dashes",
    )


class TrustRecord(BaseModel):
    """The trust set, mirrored into the generated polkit rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    trusted: list[str] = Field(
        default_factory=list,
        description="Names of capsules that run without an authorization prompt",
    )
