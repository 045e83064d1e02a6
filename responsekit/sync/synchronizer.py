"""
Content-addressed vector index synchronizer.

Makes a remote vector index hold exactly the files of a template's manifest:

    manifest (TemplateFile rows)
         ↓
    resolve or create index  →  list live files
         ↓
    per entry: fetch → SHA-256 → skip | upload + attach (+ detach superseded)
         ↓
    live - still valid = orphans  →  remove from index

Unchanged entries cost one fetch and no remote mutation. Entry failures are
recorded on the entry and in the SyncReport; they never abort the pass.
"""

import hashlib
from pathlib import Path

import aiofiles
from pydantic import BaseModel, Field

from responsekit.api.client import ResponsesApiClient
from responsekit.api.errors import ApiError
from responsekit.config.logging import get_logger
from responsekit.store.base import RecordStore
from responsekit.store.models import Template, TemplateFile, UploadStatus
from responsekit.sync.sources import DocumentFetcher, DocumentFetchError

logger = get_logger(__name__)


class SyncReport(BaseModel):
    """
    Outcome of one reconciliation pass.

    Attributes:
        completed: The pass ran to the end (index resolved, live set listed)
        uploaded: Files uploaded
        attached: Uploaded files attached to the index
        skipped: Entries already in sync
        failed: Entries that could not be synced
        replaced: Superseded versions detached after a content change
        deleted: Orphaned files removed from the index
    """

    template_id: int | None = None
    index_id: str | None = None
    completed: bool = False
    uploaded: int = 0
    attached: int = 0
    skipped: int = 0
    failed: int = 0
    replaced: int = 0
    deleted: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or not self.completed


def content_hash(content: bytes) -> str:
    """SHA-256 hex digest of file content."""
    return hashlib.sha256(content).hexdigest()


def index_name(template: Template) -> str:
    return f"Template_{template.id}_{template.name}"


class VectorStoreSynchronizer:
    """
    Reconciles template manifests with remote vector indexes.

    Args:
        client: Remote API client
        store: Record store holding templates and their files
        fetcher: Document fetcher (a default one if omitted)
        temp_dir: Where downloaded content is staged before upload
    """

    def __init__(
        self,
        client: ResponsesApiClient,
        store: RecordStore,
        fetcher: DocumentFetcher | None = None,
        temp_dir: Path | str = "data/tmp",
    ):
        self._client = client
        self._store = store
        self._fetcher = fetcher or DocumentFetcher()
        self._temp_dir = Path(temp_dir)

    async def reconcile(self, template: Template) -> bool:
        """
        Sync one template's files.

        Returns:
            True if the pass completed. Individual file failures do not make
            it False; inspect entry statuses or use reconcile_with_report().
        """
        report = await self.reconcile_with_report(template)
        return report.completed

    async def reconcile_with_report(self, template: Template) -> SyncReport:
        files = await self._store.list_template_files(template.id)
        report = await self.reconcile_manifest(files, index_name(template))
        report.template_id = template.id
        logger.info(
            f"Synced template '{template.name}': {report.uploaded} uploaded, "
            f"{report.skipped} skipped, {report.failed} failed, "
            f"{report.replaced} replaced, {report.deleted} deleted"
        )
        return report

    async def reconcile_all(self) -> list[SyncReport]:
        """Sync every template that has at least one file."""
        reports = []
        for template in await self._store.list_templates(with_files_only=True):
            reports.append(await self.reconcile_with_report(template))
        return reports

    async def reconcile_manifest(self, files: list[TemplateFile], name: str) -> SyncReport:
        """
        Make one remote index match a manifest.

        Args:
            files: Manifest entries
            name: Name for the index if a new one has to be created
        """
        report = SyncReport()
        if not files:
            report.completed = True
            return report

        try:
            index_id = await self._resolve_index(files, name)
            live = {
                remote["id"]
                for remote in await self._client.list_vector_store_files(index_id)
                if remote.get("id")
            }
        except ApiError as e:
            logger.error(f"Cannot prepare vector index '{name}': {e}")
            report.errors.append(str(e))
            return report

        report.index_id = index_id
        still_valid: set[str] = set()
        detached: set[str] = set()

        for entry in files:
            file_id = await self._sync_entry(entry, index_id, live, detached, report)
            if file_id:
                still_valid.add(file_id)

        for orphan in sorted(live - still_valid - detached):
            try:
                await self._client.remove_file_from_vector_store(index_id, orphan)
            except ApiError as e:
                logger.warning(f"Could not remove orphan {orphan} from {index_id}: {e}")
                report.errors.append(f"{orphan}: {e}")
                continue
            report.deleted += 1
            logger.debug(f"Removed orphan {orphan} from {index_id}")

        report.completed = True
        return report

    async def _resolve_index(self, files: list[TemplateFile], name: str) -> str:
        """Reuse the index the manifest is bound to if it still exists, else create one."""
        known = [f.remote_index_id for f in files if f.remote_index_id]
        for index_id in dict.fromkeys(known):
            try:
                await self._client.get_vector_store(index_id)
            except ApiError as e:
                logger.warning(f"Vector index {index_id} unavailable ({e}), creating a new one")
                continue
            return index_id

        created = await self._client.create_vector_store(name)
        if not created.get("id"):
            raise ApiError(f"Vector index creation for '{name}' returned no id", body=str(created))
        logger.info(f"Created vector index {created['id']} ({name})")
        return created["id"]

    async def _sync_entry(
        self,
        entry: TemplateFile,
        index_id: str,
        live: set[str],
        detached: set[str],
        report: SyncReport,
    ) -> str | None:
        """Sync one entry. Returns its remote file id if it is now valid in the index."""
        try:
            document = await self._fetcher.fetch(entry)
        except DocumentFetchError as e:
            await self._fail_entry(entry, str(e), report)
            return None

        digest = content_hash(document.content)
        if (
            entry.content_hash == digest
            and entry.remote_index_id == index_id
            and entry.remote_file_id
            and entry.remote_file_id in live
        ):
            report.skipped += 1
            return entry.remote_file_id

        await self._store.update_template_file(
            entry.id, upload_status=UploadStatus.UPLOADING, error_message=None
        )

        temp_path: Path | None = None
        try:
            path = document.local_path
            if path is None:
                temp_path = await self._stage(entry, document.content)
                path = temp_path

            uploaded = await self._client.upload_file(path, purpose="assistants")
            file_id = uploaded["id"]
            report.uploaded += 1

            await self._client.add_file_to_vector_store(index_id, file_id)
            report.attached += 1
        except (ApiError, OSError) as e:
            await self._fail_entry(entry, str(e), report)
            return None
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

        superseded = entry.remote_file_id
        if superseded and superseded != file_id and superseded in live:
            try:
                await self._client.remove_file_from_vector_store(index_id, superseded)
            except ApiError as e:
                # Left in the live set; the orphan pass retries it.
                logger.warning(f"Could not detach superseded {superseded}: {e}")
            else:
                detached.add(superseded)
                report.replaced += 1

        await self._store.update_template_file(
            entry.id,
            remote_index_id=index_id,
            remote_file_id=file_id,
            content_hash=digest,
            upload_status=UploadStatus.COMPLETED,
            error_message=None,
        )
        logger.debug(f"Uploaded {entry.file_url} as {file_id}")
        return file_id

    async def _stage(self, entry: TemplateFile, content: bytes) -> Path:
        self._temp_dir.mkdir(parents=True, exist_ok=True)
        path = self._temp_dir / f"template_file_{entry.id}.{entry.file_type}"
        async with aiofiles.open(path, "wb") as f:
            await f.write(content)
        return path

    async def _fail_entry(self, entry: TemplateFile, message: str, report: SyncReport) -> None:
        logger.error(f"Sync of {entry.file_url} failed: {message}")
        report.failed += 1
        report.errors.append(f"{entry.file_url}: {message}")
        await self._store.update_template_file(
            entry.id, upload_status=UploadStatus.FAILED, error_message=message
        )
