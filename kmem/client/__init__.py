from kmem.client.api import MemoryAPIClient
from kmem.client.sync import MemoryListSynchronizer

__all__ = ["MemoryAPIClient", "MemoryListSynchronizer"]
