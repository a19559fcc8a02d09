from .protocol import ProtocolPlugin
from .network import NetworkProtocolPlugin, SmbPlugin, SshPlugin, RsyncPlugin, build_magic_packet

__all__ = ["ProtocolPlugin", "NetworkProtocolPlugin", "SmbPlugin", "SshPlugin", "RsyncPlugin", "build_magic_packet"]
