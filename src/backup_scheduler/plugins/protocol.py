from typing import Protocol

from backup_scheduler.domain.device import Device, ProtocolType, Share


class ProtocolPlugin(Protocol):
    """
    Protocol class for per-protocol connectivity plugins.
    """

    protocol: ProtocolType
    default_port: int
    supports_wake_on_lan: bool
    requires_authentication: bool

    async def test_connection(self, device: Device) -> bool:
        """
        Return True if the device answers on its protocol port.
        """
        ...

    async def wake_device(self, device: Device) -> None:
        """
        Send a Wake-on-LAN magic packet to the device.

        Raises:
            ValueError: If the device has no valid MAC address configured.
        """
        ...

    def resolve_source_path(self, device: Device, share: Share) -> str:
        """
        Return the local path the engine should read the share from.
        """
        ...
