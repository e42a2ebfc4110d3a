"""
Services module for offsync.

Provides the durable mutation queue, the read cache, connectivity
monitoring, store-and-forward sync and request interception.
"""

from .api_client import BeaconSender, HttpRemoteEndpoint, RemoteEndpoint
from .cache_store import CacheStore
from .config import SyncConfig
from .engine import OfflineEngine
from .interceptor import BackgroundInterceptor, Request, Response
from .local_db import LocalDatabase
from .models import MutationRecord, Priority, SyncStats, SyncStatus
from .mutation_queue import MutationQueue
from .offline_mode import NetworkMonitor
from .sync_manager import SyncCoordinator

__all__ = [
    'BackgroundInterceptor',
    'BeaconSender',
    'CacheStore',
    'HttpRemoteEndpoint',
    'LocalDatabase',
    'MutationQueue',
    'MutationRecord',
    'NetworkMonitor',
    'OfflineEngine',
    'Priority',
    'RemoteEndpoint',
    'Request',
    'Response',
    'SyncConfig',
    'SyncCoordinator',
    'SyncStats',
    'SyncStatus',
]
