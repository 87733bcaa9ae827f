# -*- coding: utf-8 -*-
"""
Error taxonomy for phase-based volume registration.

Every error raised by the registration engine derives from
RegistrationError and carries the stage in which the run failed, so a
caller can decide whether to retry (for example with another device).

Classes
-------
1. RegistrationError: Base class, carries ``stage``
2. ConfigurationError: Invalid voxel size, iteration count, crop, ...
3. LoadError: Volume or filter assets could not be loaded
4. ShapeError: Degenerate volume after cropping or resampling
5. DeviceError: Compute backend unavailable or failed mid-run
6. NumericError: Least-squares system singular or non-finite
"""

from __future__ import annotations

from typing import Optional


class RegistrationError(Exception):
    """Base class for all registration failures."""

    default_stage = "registration"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage or self.default_stage

    def with_stage(self, stage: str) -> "RegistrationError":
        """Return the same error tagged with the stage that raised it."""
        self.stage = stage
        return self

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class ConfigurationError(RegistrationError, ValueError):
    default_stage = "configuration"


class LoadError(RegistrationError, OSError):
    default_stage = "load"


class ShapeError(RegistrationError, ValueError):
    default_stage = "resample"


class DeviceError(RegistrationError, RuntimeError):
    default_stage = "device"


class NumericError(RegistrationError, ArithmeticError):
    default_stage = "solve"
