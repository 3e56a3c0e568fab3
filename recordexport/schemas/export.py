import enum
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from recordexport.schemas.field import CamelModel, FieldMapping


class ExportStatus(str, enum.Enum):
    preparing = "preparing"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({ExportStatus.completed, ExportStatus.failed, ExportStatus.cancelled})


class ExportFormat(str, enum.Enum):
    csv = "csv"
    json = "json"
    xlsx = "xlsx"


class ExportOptions(CamelModel):
    include_headers: bool = True
    date_format: str = "%Y-%m-%d"  # strftime pattern
    timezone: str = "UTC"


class ExportProgress(CamelModel):
    job_id: str
    status: ExportStatus
    progress: float = Field(default=0, ge=0, le=100)
    processed_records: int = 0
    total_records: int = 0
    start_time: float  # epoch seconds
    estimated_time_remaining: Optional[float] = None  # seconds
    download_url: Optional[str] = None
    error: Optional[str] = None
    filename: Optional[str] = None
    format: Optional[ExportFormat] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExportArtifact(BaseModel):
    """Generated export file kept in memory until the job is cleaned up"""
    filename: str
    mime_type: str
    content: bytes


class ExportCreateRequest(CamelModel):
    """Request body for POST /api/exports"""
    entity_type: str
    format: ExportFormat = ExportFormat.csv
    fields: List[FieldMapping]
    data: Optional[List[Dict[str, Any]]] = None  # Rows already resident on the client
    total_records: Optional[int] = None
    filters: Dict[str, Any] = {}
    options: ExportOptions = ExportOptions()


class PageResult(BaseModel):
    """One page returned by a page-fetch or data-provider callable"""
    data: List[Any]
    total: Optional[int] = None


class PaginationResult(CamelModel):
    data: List[Any]
    total: int
    pages: int
    has_more: bool
    last_offset: int


class SampleCollectionRequest(CamelModel):
    entity_types: List[str]
    limit: int = Field(default=100, ge=1, le=2000)


class SampleCollectionSummary(CamelModel):
    completed: int
    failed: int
    errors: List[Dict[str, str]] = []  # [{entity_type, error}]
    samples: Dict[str, List[Any]] = {}
