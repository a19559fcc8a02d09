import uuid
from datetime import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, model_validator

from backup_scheduler.errors import InvalidTimeWindowError


class ProtocolType(str, Enum):
    SMB = "smb"
    SSH = "ssh"
    RSYNC = "rsync"


class Schedule(BaseModel):
    """
    When backups should run: a cron expression plus an optional daily execution window.

    The cron expression is only syntax-checked when a trigger is installed for it.
    """
    cron_expression: str = Field(..., description="Cron expression, e.g. '0 2 * * *' for 2 AM daily")
    time_window_start: Optional[time] = Field(None, description="Firings before this time of day are skipped")
    time_window_end: Optional[time] = Field(None, description="Firings after this time of day are skipped")

    @model_validator(mode="after")
    def _check_window(self) -> "Schedule":
        if self.time_window_start and self.time_window_end and self.time_window_end <= self.time_window_start:
            raise InvalidTimeWindowError("time_window_end must be after time_window_start")
        return self

    def allows(self, moment: time) -> bool:
        if self.time_window_start and moment < self.time_window_start:
            return False
        if self.time_window_end and moment > self.time_window_end:
            return False
        return True


class IncludeExcludeRules(BaseModel):
    include_paths: List[str] = Field(default_factory=list, description="Sub-paths of the share to back up; empty means the whole share")
    exclude_patterns: List[str] = Field(default_factory=list, description="Glob patterns to exclude, e.g. '*.tmp'")
    exclude_if_present: List[str] = Field(default_factory=list, description="Marker files that exclude their directory")

    @classmethod
    def default(cls) -> "IncludeExcludeRules":
        return cls(
            exclude_patterns=["*.tmp", "*.temp", "Thumbs.db", ".DS_Store", "$RECYCLE.BIN/"],
            exclude_if_present=[".nobackup"],
        )


class Device(BaseModel):
    """
    A backup source endpoint (NAS, server, workstation) reachable over one protocol.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    protocol: ProtocolType
    host: str
    port: Optional[int] = Field(None, description="Overrides the protocol's default port")
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    wake_on_lan_enabled: bool = False
    wake_on_lan_mac_address: Optional[str] = None
    schedule: Optional[Schedule] = None
    include_exclude_rules: Optional[IncludeExcludeRules] = None


class Share(BaseModel):
    """
    A named path on a device, with its own enable flag and optional schedule/rule overrides.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    device_id: str
    name: str
    path: str
    enabled: bool = True
    schedule: Optional[Schedule] = None
    include_exclude_rules: Optional[IncludeExcludeRules] = None

    def effective_rules(self, device: Device) -> IncludeExcludeRules:
        return self.include_exclude_rules or device.include_exclude_rules or IncludeExcludeRules.default()
