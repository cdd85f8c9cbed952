"""
Off-chain sources package.

This package contains the metadata store and history index facades.
"""

from velto.sources.history_index import Candle, HistoryIndex, PricePoint
from velto.sources.metadata_store import MetadataStore
from velto.sources.postgrest import PostgrestClient

__all__ = [
    "Candle",
    "HistoryIndex",
    "PricePoint",
    "MetadataStore",
    "PostgrestClient",
]
