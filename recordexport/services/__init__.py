from .custom_fields import CustomFieldFetcher
from .export_job import ExportJobManager
from .field_detection import FieldDetectionService
from .field_discovery import FieldDiscoverer
from .platform_client import PlatformClient
from .preference_store import DatabaseKeyValueStore, InMemoryKeyValueStore
from .selection_store import SelectionStore

__all__ = [
    "CustomFieldFetcher",
    "ExportJobManager",
    "FieldDetectionService",
    "FieldDiscoverer",
    "PlatformClient",
    "DatabaseKeyValueStore",
    "InMemoryKeyValueStore",
    "SelectionStore",
]
