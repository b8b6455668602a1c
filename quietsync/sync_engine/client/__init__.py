"""Remote index service clients."""

from quietsync.sync_engine.client.base import IndexService, ProtocolShapeError
from quietsync.sync_engine.client.http import HttpIndexService

__all__ = ["HttpIndexService", "IndexService", "ProtocolShapeError"]
