import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Mapping, Union

from backup_scheduler.domain.device import ProtocolType
from backup_scheduler.errors import UnsupportedProtocolError
from backup_scheduler.plugins.network import RsyncPlugin, SmbPlugin, SshPlugin
from backup_scheduler.plugins.protocol import ProtocolPlugin

logger = logging.getLogger(__name__)


class ProtocolPluginRegistry:
    """
    Read-only lookup from protocol type to its connectivity plugin, built once at startup.
    """
    def __init__(self, plugins: Iterable[ProtocolPlugin]):
        registered = {}
        for plugin in plugins:
            if plugin.protocol in registered:
                raise ValueError(f"A plugin for protocol '{plugin.protocol.value}' is already registered")
            registered[plugin.protocol] = plugin
        self._plugins: Mapping[ProtocolType, ProtocolPlugin] = MappingProxyType(registered)
        logger.info(
            "Loaded %d protocol plugins: %s",
            len(registered), ", ".join(protocol.value for protocol in registered),
        )

    @classmethod
    def with_builtin_plugins(cls, mount_root: Path, connect_timeout: float = 5.0) -> "ProtocolPluginRegistry":
        return cls([
            SmbPlugin(mount_root, connect_timeout),
            SshPlugin(mount_root, connect_timeout),
            RsyncPlugin(mount_root, connect_timeout),
        ])

    @property
    def supported_protocols(self) -> List[ProtocolType]:
        return list(self._plugins)

    def get_plugin(self, protocol: Union[ProtocolType, str]) -> ProtocolPlugin:
        """
        Get the plugin for a protocol.

        Raises:
            UnsupportedProtocolError: If no plugin is registered for the protocol.
        """
        try:
            key = ProtocolType(protocol)
        except ValueError:
            raise UnsupportedProtocolError(protocol) from None
        plugin = self._plugins.get(key)
        if plugin is None:
            raise UnsupportedProtocolError(key.value)
        return plugin

    def get_all_plugins(self) -> List[ProtocolPlugin]:
        return list(self._plugins.values())
