"""Eloqua platform integration."""

from smsbridge_core.providers.eloqua.client import (
    EloquaClient,
    PlatformError,
    pod_for_site,
)

__all__ = [
    "EloquaClient",
    "PlatformError",
    "pod_for_site",
]
