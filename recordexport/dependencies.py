from recordexport.core.config import settings
from recordexport.core.logging_config import logger
from recordexport.database import SessionLocal
from recordexport.services.custom_fields import CustomFieldFetcher
from recordexport.services.export_formatter import pandas_xlsx_encoder
from recordexport.services.export_job import ExportJobManager
from recordexport.services.field_detection import FieldDetectionService
from recordexport.services.platform_client import PlatformClient
from recordexport.services.preference_store import (
    DatabaseKeyValueStore,
    InMemoryKeyValueStore,
    KeyValueStore,
)
from recordexport.services.selection_store import SelectionStore


def build_preference_store(backend: str = None) -> KeyValueStore:
    """
    Create the key-value store selected by PREFERENCE_STORE_BACKEND.

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = (backend or settings.PREFERENCE_STORE_BACKEND).lower()
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "database":
        return DatabaseKeyValueStore(SessionLocal)
    raise ValueError(f"Unknown PREFERENCE_STORE_BACKEND: {backend}")


platform_client = PlatformClient()
preference_store = build_preference_store()
selection_store = SelectionStore(preference_store)
custom_field_fetcher = CustomFieldFetcher(platform_client)
field_detection_service = FieldDetectionService(custom_field_fetcher, selection_store)
export_job_manager = ExportJobManager(
    xlsx_encoder=pandas_xlsx_encoder if settings.EXPORT_XLSX_ENABLED else None
)

logger.info(f"Services wired: preference_store={type(preference_store).__name__}")


# FastAPI dependencies. Tests swap these through app.dependency_overrides.

def get_platform_client() -> PlatformClient:
    return platform_client


def get_selection_store() -> SelectionStore:
    return selection_store


def get_custom_field_fetcher() -> CustomFieldFetcher:
    return custom_field_fetcher


def get_field_detection_service() -> FieldDetectionService:
    return field_detection_service


def get_export_job_manager() -> ExportJobManager:
    return export_job_manager
