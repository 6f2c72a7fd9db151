from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from websets.application.ports.artifact_port import ArtifactWriter
from websets.domain.enrichment import ExportJob, JobStatus
from websets.domain.errors import NotFoundError, ValidationError
from websets.infrastructure.exporters.file_writers import CsvArtifactWriter, JsonArtifactWriter
from websets.infrastructure.stores.export_store import ExportJobStore
from websets.infrastructure.stores.webset_store import WebsetStore
from websets.utils.logging_config import LogFiles, Logger, trace_context
from websets.utils.settings import EngineSettings

logger = logging.getLogger(__name__)


def default_writers(export_dir: str) -> Dict[str, ArtifactWriter]:
    return {
        "csv": CsvArtifactWriter(export_dir),
        "json": JsonArtifactWriter(export_dir),
    }


class ExportRunner:
    """Builds an export table from the current version and hands it to a writer.

    Same four-state lifecycle as enrichment jobs, without row progress.
    """

    def __init__(
        self,
        webset_store: WebsetStore,
        export_store: ExportJobStore,
        *,
        writers: Optional[Dict[str, ArtifactWriter]] = None,
        settings: Optional[EngineSettings] = None,
        launcher: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._websets = webset_store
        self._exports = export_store
        self._settings = settings or EngineSettings.from_env()
        self._writers = writers if writers is not None else default_writers(self._settings.export_dir)
        self._launcher = launcher
        self._tasks: Dict[str, asyncio.Task] = {}

    def register_writer(self, writer: ArtifactWriter) -> None:
        self._writers[writer.format.lower()] = writer

    async def start_export(
        self,
        webset_id: str,
        format: str,
        file_name: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
    ) -> str:
        webset = self._websets.require_webset(webset_id)
        fmt = str(format or "").strip().lower()
        if fmt not in self._writers:
            raise ValidationError(
                f"unsupported export format: {format} (available: {', '.join(sorted(self._writers))})"
            )
        stem = Path(str(file_name or "").strip() or webset.name).stem or "export"
        export = self._exports.create_export(
            webset_id=webset.id, format=fmt, file_name=stem, user_id=user_id
        )
        Logger.info(f"export {export.id} queued webset={webset.id} format={fmt}", file=LogFiles.EXPORT)

        if self._launcher is not None:
            launched = self._launcher(export.id)
            if inspect.isawaitable(launched):
                await launched
        else:
            task = asyncio.create_task(self.run_export(export.id))
            self._tasks[export.id] = task
            task.add_done_callback(lambda t, export_id=export.id: self._tasks.pop(export_id, None))
        return export.id

    def get_status(self, export_id: str) -> Dict[str, Any]:
        return self.get_export(export_id).to_status()

    def get_export(self, export_id: str) -> ExportJob:
        export = self._exports.get_export(export_id)
        if export is None:
            raise NotFoundError(f"export job not found: {export_id}")
        return export

    def list_exports(self, webset_id: Optional[str] = None) -> List[ExportJob]:
        return self._exports.list_exports(webset_id=webset_id)

    async def join(self, export_id: str) -> ExportJob:
        task = self._tasks.get(export_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_export(export_id)

    def build_table(self, webset_id: str) -> List[List[Optional[str]]]:
        """Header of column names, then one row per index in ``0..row_count-1``."""
        webset = self._websets.require_webset(webset_id)
        values: Dict[tuple, Optional[str]] = {
            (cell.row, cell.column): cell.value for cell in self._websets.get_cells(webset_id)
        }
        table: List[List[Optional[str]]] = [[c.name for c in webset.columns]]
        for row in range(webset.row_count):
            table.append([values.get((row, c.id), c.default_value) for c in webset.columns])
        return table

    async def run_export(self, export_id: str) -> ExportJob:
        with trace_context(export_id):
            export = self.get_export(export_id)
            if export.status.is_terminal:
                return export
            self._exports.update_status(export_id, status=JobStatus.RUNNING)
            try:
                writer = self._writers.get(export.format)
                if writer is None:
                    raise ValidationError(f"no writer registered for {export.format}")
                table = self.build_table(export.webset_id)
                name = f"{export.file_name}-{export.id[:8]}"
                url = writer.write(name, table)
            except (OSError, ValidationError) as exc:
                logger.warning("export %s failed: %s", export_id, exc)
                Logger.error(f"export {export_id} failed: {exc}", file=LogFiles.ERROR)
                return self._exports.update_status(export_id, status=JobStatus.FAILED, error=str(exc))
            except Exception as exc:
                logger.exception("export %s crashed", export_id)
                Logger.error(f"export {export_id} failed: {exc}", file=LogFiles.ERROR)
                return self._exports.update_status(export_id, status=JobStatus.FAILED, error=str(exc))

            Logger.info(f"export {export_id} written to {url} ({len(table) - 1} rows)", file=LogFiles.EXPORT)
            return self._exports.update_status(export_id, status=JobStatus.COMPLETED, export_url=url)
