"""Recipe sources and the aggregation cascade."""

from .aggregator import SourceAggregator, SourceMetrics
from .base import BaseSource, DailyQuota, RecipeSource
from .dummyjson import DummyJSONSource
from .http import FetchResponse, HttpClient, raise_for_status
from .themealdb import TheMealDBSource

__all__ = [
    "SourceAggregator",
    "SourceMetrics",
    "RecipeSource",
    "BaseSource",
    "DailyQuota",
    "HttpClient",
    "FetchResponse",
    "raise_for_status",
    "TheMealDBSource",
    "DummyJSONSource",
]
