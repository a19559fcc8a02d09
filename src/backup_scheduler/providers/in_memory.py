from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from backup_scheduler.domain.device import Device, Share
from backup_scheduler.errors import DeviceNotFoundError


class ConfigDocument(BaseModel):
    devices: List[Device] = Field(default_factory=list)
    shares: List[Share] = Field(default_factory=list)


class InMemoryConfigProvider:
    """
    Device/share configuration held in process memory.

    Mutations do not notify the scheduler; callers that change configuration are
    expected to call back into it (see BackupScheduler.reschedule_device/remove_device).
    """

    def __init__(self, devices: Optional[List[Device]] = None, shares: Optional[List[Share]] = None):
        self._devices: Dict[str, Device] = {}
        self._shares: Dict[str, Share] = {}
        for device in devices or []:
            self.upsert_device(device)
        for share in shares or []:
            self.upsert_share(share)

    @classmethod
    def from_json_file(cls, path: Path) -> "InMemoryConfigProvider":
        document = ConfigDocument.model_validate_json(Path(path).read_text(encoding="utf-8"))
        return cls(document.devices, document.shares)

    def upsert_device(self, device: Device) -> None:
        self._devices[device.id] = device

    def upsert_share(self, share: Share) -> None:
        if share.device_id not in self._devices:
            raise DeviceNotFoundError(share.device_id)
        self._shares[share.id] = share

    def remove_device(self, device_id: str) -> List[str]:
        """Remove a device and its shares. Returns the removed share IDs."""
        self._devices.pop(device_id, None)
        removed = [share_id for share_id, share in self._shares.items() if share.device_id == device_id]
        for share_id in removed:
            del self._shares[share_id]
        return removed

    def remove_share(self, share_id: str) -> bool:
        return self._shares.pop(share_id, None) is not None

    async def list_devices(self) -> List[Device]:
        return list(self._devices.values())

    async def get_device(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    async def list_shares(self, device_id: str) -> List[Share]:
        return [share for share in self._shares.values() if share.device_id == device_id]

    async def get_share(self, share_id: str) -> Optional[Share]:
        return self._shares.get(share_id)
