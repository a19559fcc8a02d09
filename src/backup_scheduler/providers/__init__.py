from .protocol import ConfigProvider
from .in_memory import InMemoryConfigProvider

__all__ = ["ConfigProvider", "InMemoryConfigProvider"]
