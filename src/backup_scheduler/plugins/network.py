import asyncio
import logging
import socket
from pathlib import Path, PurePosixPath

from backup_scheduler.domain.device import Device, ProtocolType, Share
from backup_scheduler.errors import ConfigurationError

logger = logging.getLogger(__name__)

WOL_PORT = 9
BROADCAST_ADDRESS = "255.255.255.255"


def build_magic_packet(mac_address: str) -> bytes:
    """
    Build a Wake-on-LAN magic packet: six 0xFF bytes followed by the MAC repeated 16 times.

    Accepts "00:11:22:33:44:55", "00-11-22-33-44-55", "0011.2233.4455" and "001122334455".
    """
    cleaned = mac_address.replace(":", "").replace("-", "").replace(".", "")
    if len(cleaned) != 12:
        raise ValueError(f"Invalid MAC address format: {mac_address!r}")
    try:
        mac = bytes.fromhex(cleaned)
    except ValueError as exc:
        raise ValueError(f"Invalid MAC address format: {mac_address!r}") from exc
    return b"\xff" * 6 + mac * 16


def _send_broadcast(packet: bytes, address: str, port: int) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.sendto(packet, (address, port))


class NetworkProtocolPlugin:
    """
    Shared behaviour of the built-in plugins.

    Connectivity is a plain TCP connect to the protocol port. Shares are expected to be
    mounted by the host under ``<mount_root>/<device name>/<share path>``.
    """

    protocol: ProtocolType
    default_port: int
    supports_wake_on_lan = True
    requires_authentication = True

    def __init__(self, mount_root: Path, connect_timeout: float = 5.0):
        self.mount_root = Path(mount_root)
        self.connect_timeout = connect_timeout

    def port_for(self, device: Device) -> int:
        return device.port or self.default_port

    async def test_connection(self, device: Device) -> bool:
        port = self.port_for(device)
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(device.host, port), timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.info("%s connection to %s:%s failed: %s", self.protocol.value, device.host, port, exc)
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def wake_device(self, device: Device) -> None:
        if not device.wake_on_lan_mac_address:
            raise ValueError(f"Device '{device.name}' has no Wake-on-LAN MAC address")
        packet = build_magic_packet(device.wake_on_lan_mac_address)
        await asyncio.to_thread(_send_broadcast, packet, BROADCAST_ADDRESS, WOL_PORT)
        logger.info("Sent Wake-on-LAN packet to %s (%s)", device.name, device.wake_on_lan_mac_address)

    def resolve_source_path(self, device: Device, share: Share) -> str:
        relative = PurePosixPath(share.path.replace("\\", "/").lstrip("/"))
        if ".." in relative.parts or ".." in PurePosixPath(device.name).parts or "/" in device.name:
            raise ConfigurationError(f"Source path for share '{share.name}' escapes the mount tree")
        return str(self.mount_root / device.name / relative)


class SmbPlugin(NetworkProtocolPlugin):
    protocol = ProtocolType.SMB
    default_port = 445


class SshPlugin(NetworkProtocolPlugin):
    protocol = ProtocolType.SSH
    default_port = 22


class RsyncPlugin(NetworkProtocolPlugin):
    protocol = ProtocolType.RSYNC
    default_port = 873
