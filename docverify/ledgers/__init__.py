# Ledger and blob store capabilities plus their implementations.

from .base import BlobStore, EventSubscription, LedgerAClient, LedgerBClient
from .memory import InMemoryBlobStore, InMemoryLedgerA, InMemoryLedgerB
from .gateway import GatewayConfig, HttpLedgerAClient, HttpLedgerBClient, IpfsBlobStore

__all__ = [
    "BlobStore",
    "EventSubscription",
    "LedgerAClient",
    "LedgerBClient",
    "InMemoryBlobStore",
    "InMemoryLedgerA",
    "InMemoryLedgerB",
    "GatewayConfig",
    "HttpLedgerAClient",
    "HttpLedgerBClient",
    "IpfsBlobStore",
]
