"""
One-time provisioning of encrypted volumes.
"""

from secure_unlocker.core.provisioning.initializer import (
    DeviceInitializer,
    InitAction,
    InitPlan,
    ProvisioningError,
    SourceSurvey,
)

__all__ = [
    "DeviceInitializer",
    "InitAction",
    "InitPlan",
    "ProvisioningError",
    "SourceSurvey",
]
