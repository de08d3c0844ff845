from .client import MarzbanClient, PanelNotFound, PanelUser, ProvisioningError
from .service import ProvisionedCredential, VpnProvisioningService

__all__ = [
    "MarzbanClient",
    "PanelNotFound",
    "PanelUser",
    "ProvisionedCredential",
    "ProvisioningError",
    "VpnProvisioningService",
]
