from .protocol import BackupEngine, MessageCallback, ProgressCallback
from .restic import ResticEngine

__all__ = ["BackupEngine", "MessageCallback", "ProgressCallback", "ResticEngine"]
