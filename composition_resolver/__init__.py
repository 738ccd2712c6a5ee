"""Resolve composition metadata by evaluating a served bundle in headless Chromium."""

from .errors import (
    InjectionError,
    InvalidTimeoutError,
    NotReadyError,
    OutOfBandError,
    ProvisionError,
    RemoteInvocationError,
    ResolverError,
    ServerStartError,
)
from .orchestrator import CompositionMetadata, ResolutionRequest, select_composition

__all__ = [
    "CompositionMetadata",
    "InjectionError",
    "InvalidTimeoutError",
    "NotReadyError",
    "OutOfBandError",
    "ProvisionError",
    "RemoteInvocationError",
    "ResolutionRequest",
    "ResolverError",
    "ServerStartError",
    "select_composition",
]
