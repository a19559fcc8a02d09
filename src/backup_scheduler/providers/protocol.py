from typing import List, Optional, Protocol

from backup_scheduler.domain.device import Device, Share


class ConfigProvider(Protocol):
    """Read-only view of the device/share configuration."""

    async def list_devices(self) -> List[Device]:
        """List every configured device."""
        ...

    async def get_device(self, device_id: str) -> Optional[Device]:
        """Retrieve a device by its ID, or None if it does not exist."""
        ...

    async def list_shares(self, device_id: str) -> List[Share]:
        """List all shares (enabled or not) belonging to a device."""
        ...

    async def get_share(self, share_id: str) -> Optional[Share]:
        """Retrieve a share by its ID, or None if it does not exist."""
        ...
