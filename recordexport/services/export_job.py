"""
Export job lifecycle.

A job moves preparing -> processing -> completed | failed | cancelled and is
immutable once terminal. Small exports are formatted straight from records
the caller already holds. Large exports run as a background asyncio task that
pulls pages from a data provider and can be cancelled between pages. Progress
is exposed by polling get_progress.
"""

import asyncio
import random
import string
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from recordexport.core.config import settings
from recordexport.core.exceptions import ExportJobNotFoundError, UnsupportedExportFormatError
from recordexport.core.logging_config import logger
from recordexport.schemas.export import (
    ExportArtifact,
    ExportFormat,
    ExportOptions,
    ExportProgress,
    ExportStatus,
    PageResult,
)
from recordexport.schemas.field import FieldMapping
from recordexport.services.export_formatter import (
    XlsxEncoder,
    active_fields,
    build_export_filename,
    mime_type,
    render_export,
    transform_records,
)
from recordexport.services.pagination import MAX_PAGES, coerce_page

DataProvider = Callable[[int, int], Awaitable[Union[PageResult, dict, list]]]

FETCH_PROGRESS_CEILING = 80


class ExportJob:
    """Mutable bookkeeping for one export; callers only ever see ExportProgress copies"""

    def __init__(self, progress: ExportProgress):
        self.progress = progress
        self.cancel_requested = asyncio.Event()
        self.task: Optional[asyncio.Task] = None
        self.artifact: Optional[ExportArtifact] = None
        self.finished_at: Optional[float] = None


class ExportJobManager:
    def __init__(
        self,
        xlsx_encoder: Optional[XlsxEncoder] = None,
        batch_size: Optional[int] = None,
        streaming_threshold: Optional[int] = None,
        max_age_seconds: Optional[float] = None,
    ):
        self.xlsx_encoder = xlsx_encoder
        self.batch_size = batch_size or settings.EXPORT_BATCH_SIZE
        self.streaming_threshold = streaming_threshold or settings.EXPORT_STREAMING_THRESHOLD
        self.max_age_seconds = max_age_seconds if max_age_seconds is not None else settings.EXPORT_JOB_MAX_AGE_SECONDS
        self.jobs: Dict[str, ExportJob] = {}
        logger.info(
            f"Export job manager initialized: batch_size={self.batch_size}, "
            f"streaming_threshold={self.streaming_threshold}, xlsx_encoder={'yes' if xlsx_encoder else 'no'}"
        )

    @staticmethod
    def generate_job_id() -> str:
        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
        return f"export-{int(time.time() * 1000)}-{suffix}"

    def should_stream(self, record_count: Optional[int]) -> bool:
        """Streaming mode is used at or above the configured row count"""
        return record_count is not None and record_count >= self.streaming_threshold

    # Job bookkeeping

    def _create_job(self, total_records: int, export_format: ExportFormat, filename: str) -> ExportJob:
        job_id = self.generate_job_id()
        while job_id in self.jobs:
            job_id = self.generate_job_id()
        job = ExportJob(ExportProgress(
            job_id=job_id,
            status=ExportStatus.preparing,
            total_records=max(0, total_records),
            start_time=time.time(),
            filename=filename,
            format=export_format,
        ))
        self.jobs[job_id] = job
        logger.debug(f"Export job initialized: job_id={job_id}, total_records={total_records}, active_jobs={len(self.jobs)}")
        return job

    def _update(self, job: ExportJob, **updates: Any) -> bool:
        """Apply updates unless the job already reached a terminal state"""
        current = job.progress
        if current.is_terminal:
            logger.debug(f"Ignoring update for terminal export job {current.job_id}: {list(updates)}")
            return False

        if "progress" in updates:
            updates["progress"] = max(0.0, min(100.0, float(updates["progress"])))
        job.progress = current.model_copy(update=updates)

        new_status = updates.get("status")
        if new_status and new_status != current.status:
            logger.info(
                f"Export status changed: job_id={current.job_id}, {current.status.value} -> "
                f"{ExportStatus(new_status).value}, progress={job.progress.progress}"
            )
            if job.progress.is_terminal:
                job.finished_at = time.time()
        return True

    def _get_job(self, job_id: str) -> ExportJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise ExportJobNotFoundError(job_id)
        return job

    def _build_artifact(
        self,
        job: ExportJob,
        rows: List[Dict[str, Any]],
        fields: List[FieldMapping],
        export_format: ExportFormat,
        options: ExportOptions,
    ) -> ExportArtifact:
        content = render_export(rows, fields, export_format, options, self.xlsx_encoder)
        filename = job.progress.filename
        content_type = mime_type(export_format)
        if export_format == ExportFormat.xlsx and self.xlsx_encoder is None:
            # Annotated JSON fallback
            filename = filename.rsplit(".", 1)[0] + ".json"
            content_type = mime_type(ExportFormat.json)
        logger.info(
            f"Export content generated: job_id={job.progress.job_id}, format={export_format.value}, "
            f"size={len(content)}, mime_type={content_type}"
        )
        return ExportArtifact(filename=filename, mime_type=content_type, content=content)

    def _complete(self, job: ExportJob, artifact: ExportArtifact, processed_records: int) -> None:
        job.artifact = artifact
        self._update(
            job,
            status=ExportStatus.completed,
            progress=100,
            processed_records=processed_records,
            estimated_time_remaining=None,
            filename=artifact.filename,
            download_url=f"/api/exports/{job.progress.job_id}/download",
        )

    def _fail(self, job: ExportJob, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"Export job failed: job_id={job.progress.job_id}, error={message}")
        self._update(job, status=ExportStatus.failed, error=message)

    # In-memory mode

    def start_export(
        self,
        records: List[Any],
        fields: List[FieldMapping],
        export_format: ExportFormat,
        entity_type: str,
        tenant_slug: Optional[str] = None,
        options: Optional[ExportOptions] = None,
    ) -> ExportProgress:
        """
        Export records already held by the caller.

        Formatting happens before this returns, so the returned progress is
        either completed or failed.

        Raises:
            UnsupportedExportFormatError: If the format is not csv, json or xlsx
        """
        export_format = self._validate_format(export_format)
        options = options or ExportOptions()
        filename = build_export_filename(entity_type, export_format, tenant_slug)
        job = self._create_job(len(records), export_format, filename)
        job_id = job.progress.job_id

        logger.info(
            f"Starting export job: job_id={job_id}, entity={entity_type}, format={export_format.value}, "
            f"records={len(records)}, fields={len(active_fields(fields))}"
        )
        try:
            self._update(job, status=ExportStatus.processing, progress=10)
            rows = transform_records(records, fields, options)
            self._update(job, progress=30)
            artifact = self._build_artifact(job, rows, fields, export_format, options)
            self._update(job, progress=80)
            self._complete(job, artifact, len(records))
            logger.info(f"Export completed: job_id={job_id}, records={len(records)}")
        except Exception as e:
            self._fail(job, e)
        return job.progress

    # Streaming mode

    async def start_streaming_export(
        self,
        data_provider: DataProvider,
        fields: List[FieldMapping],
        export_format: ExportFormat,
        entity_type: str,
        tenant_slug: Optional[str] = None,
        options: Optional[ExportOptions] = None,
        total_records: Optional[int] = None,
    ) -> ExportProgress:
        """
        Start a background export that pulls pages from data_provider.

        Args:
            data_provider: async (offset, limit) -> page with data and optional total
            fields: Field mappings, only included fields are exported
            export_format: csv, json or xlsx
            entity_type: Entity type, used for the filename
            tenant_slug: Tenant slug, used for the filename
            options: Export options
            total_records: Known record count; when missing the provider is asked for (0, 1) first

        Returns:
            Initial progress of the job, usually still preparing
        """
        export_format = self._validate_format(export_format)
        options = options or ExportOptions()

        if not total_records:
            logger.debug(f"Fetching total record count for streaming export: entity={entity_type}")
            first_page = coerce_page(await data_provider(0, 1))
            total_records = first_page.total

        filename = build_export_filename(entity_type, export_format, tenant_slug)
        job = self._create_job(total_records or 0, export_format, filename)
        logger.info(
            f"Starting streaming export job: job_id={job.progress.job_id}, entity={entity_type}, "
            f"format={export_format.value}, total_records={total_records}, fields={len(active_fields(fields))}"
        )

        job.task = asyncio.create_task(
            self._run_streaming(job, data_provider, fields, export_format, options, total_records)
        )
        return job.progress

    async def _run_streaming(
        self,
        job: ExportJob,
        data_provider: DataProvider,
        fields: List[FieldMapping],
        export_format: ExportFormat,
        options: ExportOptions,
        total_records: Optional[int],
    ) -> None:
        job_id = job.progress.job_id
        rows: List[Dict[str, Any]] = []
        processed = 0
        offset = 0
        batch_number = 0
        started = time.monotonic()

        try:
            self._update(job, status=ExportStatus.processing, progress=5)

            while total_records is None or processed < total_records:
                if job.cancel_requested.is_set():
                    logger.info(f"Streaming export aborted: job_id={job_id}, processed={processed}, batches={batch_number}")
                    return
                if batch_number >= MAX_PAGES:
                    logger.warning(f"Reached maximum batch limit ({MAX_PAGES}), stopping export: job_id={job_id}")
                    break

                batch_number += 1
                logger.debug(f"Fetching batch {batch_number}: job_id={job_id}, offset={offset}, limit={self.batch_size}")
                page = coerce_page(await data_provider(offset, self.batch_size))

                # A cancel that arrived while the request was in flight discards the page
                if job.cancel_requested.is_set():
                    logger.info(f"Streaming export aborted after fetch: job_id={job_id}, processed={processed}")
                    return
                if not page.data:
                    logger.debug(f"No more data available: job_id={job_id}, batch={batch_number}")
                    break

                rows.extend(transform_records(page.data, fields, options))
                processed += len(page.data)
                offset += len(page.data)

                updates: Dict[str, Any] = {"processed_records": processed}
                if total_records:
                    updates["progress"] = min(processed / total_records * FETCH_PROGRESS_CEILING, FETCH_PROGRESS_CEILING)
                    elapsed = time.monotonic() - started
                    updates["estimated_time_remaining"] = max(0.0, elapsed / processed * (total_records - processed))
                self._update(job, **updates)
                logger.debug(f"Batch {batch_number} processed: job_id={job_id}, processed={processed}/{total_records}")

                if len(page.data) < self.batch_size:
                    break

            if job.cancel_requested.is_set():
                return

            self._update(job, progress=85)
            artifact = self._build_artifact(job, rows, fields, export_format, options)
            if job.cancel_requested.is_set():
                return
            self._update(job, progress=95)
            self._complete(job, artifact, processed)

            duration = time.monotonic() - started
            logger.info(
                f"Streaming export completed: job_id={job_id}, records={processed}, "
                f"batches={batch_number}, duration={duration:.2f}s"
            )
        except Exception as e:
            self._fail(job, e)

    @staticmethod
    def _validate_format(export_format: Union[ExportFormat, str]) -> ExportFormat:
        try:
            return ExportFormat(export_format)
        except ValueError:
            raise UnsupportedExportFormatError(str(export_format))

    # Queries and control

    def cancel_export(self, job_id: str) -> bool:
        """
        Request cancellation.

        The job is marked cancelled immediately. A running streaming task stops
        before requesting its next page.

        Returns:
            True if the job was running and is now cancelled
        """
        job = self.jobs.get(job_id)
        if job is None:
            logger.warning(f"Attempted to cancel non-existent export job '{job_id}'")
            return False
        if job.progress.is_terminal:
            logger.info(f"Export job {job_id} already {job.progress.status.value}, nothing to cancel")
            return False

        job.cancel_requested.set()
        self._update(job, status=ExportStatus.cancelled, estimated_time_remaining=None)
        logger.info(f"Export job cancelled: job_id={job_id}")
        return True

    def get_progress(self, job_id: str) -> Optional[ExportProgress]:
        job = self.jobs.get(job_id)
        return job.progress if job else None

    def get_active_jobs(self) -> List[ExportProgress]:
        return [job.progress for job in self.jobs.values() if not job.progress.is_terminal]

    def list_jobs(self) -> List[ExportProgress]:
        return [job.progress for job in self.jobs.values()]

    def get_artifact(self, job_id: str) -> ExportArtifact:
        """
        Get the generated file of a completed job.

        Raises:
            ExportJobNotFoundError: If the job does not exist or has no file
        """
        job = self._get_job(job_id)
        if job.artifact is None or job.progress.status != ExportStatus.completed:
            raise ExportJobNotFoundError(job_id)
        return job.artifact

    async def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> ExportProgress:
        """Wait for the background task of a job to finish and return its final progress"""
        job = self._get_job(job_id)
        if job.task is not None and not job.task.done():
            await asyncio.wait_for(asyncio.shield(job.task), timeout)
        return job.progress

    def cleanup_stale_jobs(self, now: Optional[float] = None) -> int:
        """Drop terminal jobs older than max_age_seconds, returns the number removed"""
        now = now or time.time()
        stale = [
            job_id for job_id, job in self.jobs.items()
            if job.progress.is_terminal and now - (job.finished_at or job.progress.start_time) > self.max_age_seconds
        ]
        for job_id in stale:
            del self.jobs[job_id]
        if stale:
            logger.debug(f"Cleaned up {len(stale)} stale export jobs, remaining={len(self.jobs)}")
        return len(stale)

    async def force_cleanup(self) -> None:
        """Cancel every running job and forget all jobs"""
        tasks = []
        for job in self.jobs.values():
            if not job.progress.is_terminal:
                job.cancel_requested.set()
                self._update(job, status=ExportStatus.cancelled)
            if job.task is not None and not job.task.done():
                job.task.cancel()
                tasks.append(job.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        count = len(self.jobs)
        self.jobs.clear()
        logger.info(f"Export job manager cleaned up: jobs={count}")
