"""
Google Sheets document store.

A spreadsheet stands in for the remote document database: every
collection of a namespace is a worksheet titled
"<prefix><namespace>.<collection>" holding [id, document_json] rows, and
audit events go to one shared worksheet. Users can open their budget in
Sheets directly, which is the reason for this backend.

There are no multi-document transactions here; the sync coordinator
compensates partial writes itself. Queries are filters over the full
worksheet, done in Python. gspread blocks, so calls run in worker
threads and transient failures are retried with tenacity.
"""

import asyncio
import json
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from envelope_budget.config import GoogleSheetsSettings, get_settings
from envelope_budget.models.audit import AuditEvent
from envelope_budget.services.storage.interface import (
    AuditStorageInterface,
    DocumentNotFoundError,
    DocumentStorageInterface,
    PermissionDeniedError,
    StorageError,
    StorageUnavailableError,
)


logger = structlog.get_logger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

DOCUMENT_COLUMNS = ["id", "document_json"]

# Order written by AuditEvent.to_sheets_row
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

transient_retry = retry(
    retry=retry_if_exception_type(StorageUnavailableError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def _translate_error(error: Exception, action: str) -> StorageError:
    """Map gspread / transport failures onto the storage exception family."""
    if isinstance(error, gspread.exceptions.APIError):
        status = error.response.status_code
        if status in (401, 403):
            return PermissionDeniedError(f"{action}: {error}")
        if status == 429 or status >= 500:
            return StorageUnavailableError(f"{action}: {error}")
        return StorageError(f"{action}: {error}")
    # requests' transport errors derive from OSError
    if isinstance(error, OSError):
        return StorageUnavailableError(f"{action}: {error}")
    return StorageError(f"{action}: {error}")


class GoogleSheetsClient:
    """
    Opens the configured spreadsheet on first use and hands out its
    worksheets, creating missing ones with a header row.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._settings = settings or get_settings().google_sheets
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}

    def _open(self) -> gspread.Spreadsheet:
        path = self._settings.credentials_path
        try:
            credentials = Credentials.from_service_account_file(path, scopes=SCOPES)
        except FileNotFoundError:
            raise PermissionDeniedError(f"credentials file not found: {path}")
        try:
            return gspread.authorize(credentials).open_by_key(self._settings.spreadsheet_id)
        except gspread.SpreadsheetNotFound:
            raise PermissionDeniedError(
                f"no access to spreadsheet {self._settings.spreadsheet_id}"
            )
        except Exception as e:
            raise _translate_error(e, "open spreadsheet")

    @property
    def spreadsheet(self) -> gspread.Spreadsheet:
        if self._spreadsheet is None:
            self._spreadsheet = self._open()
        return self._spreadsheet

    def get_worksheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        sheet = self._worksheets.get(title)
        if sheet is not None:
            return sheet
        try:
            sheet = self.spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = self.spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        self._worksheets[title] = sheet
        return sheet

    def get_collection_sheet(self, namespace: str, collection: str) -> gspread.Worksheet:
        title = f"{self._settings.worksheet_prefix}{namespace}.{collection}"
        return self.get_worksheet(title, DOCUMENT_COLUMNS)

    def get_audit_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000)


class GoogleSheetsDocumentStorage(DocumentStorageInterface):
    """Documents as [id, json] rows, one worksheet per collection."""

    def __init__(
        self,
        namespace: str = "default",
        client: Optional[GoogleSheetsClient] = None,
    ):
        super().__init__(namespace)
        self._client = client or GoogleSheetsClient()

    def _sheet(self, collection: str) -> gspread.Worksheet:
        return self._client.get_collection_sheet(self.namespace, collection)

    @staticmethod
    def _row_to_doc(row: list) -> dict[str, Any]:
        body = json.loads(row[1]) if len(row) > 1 and row[1] else {}
        return {"id": row[0], **body}

    @staticmethod
    def _find_row(sheet: gspread.Worksheet, doc_id: str) -> tuple[Optional[int], Optional[list]]:
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if row and row[0] == doc_id:
                return idx, row
        return None, None

    @transient_retry
    async def _run(self, action: str, fn: Callable, *args) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageError:
            raise
        except Exception as e:
            raise _translate_error(e, action)

    # --- blocking helpers -----------------------------------------------------

    def _create_sync(self, collection: str, doc: dict[str, Any]) -> str:
        sheet = self._sheet(collection)
        doc_id = uuid4().hex
        body = {k: v for k, v in doc.items() if k != "id"}
        sheet.append_row([doc_id, json.dumps(body, default=str)], value_input_option="RAW")
        return doc_id

    def _get_sync(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        _, row = self._find_row(self._sheet(collection), doc_id)
        return self._row_to_doc(row) if row else None

    def _update_sync(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        sheet = self._sheet(collection)
        idx, row = self._find_row(sheet, doc_id)
        if idx is None:
            raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
        doc = self._row_to_doc(row)
        doc.update(patch)
        body = {k: v for k, v in doc.items() if k != "id"}
        sheet.update_cell(idx, 2, json.dumps(body, default=str))

    def _delete_sync(self, collection: str, doc_id: str) -> bool:
        sheet = self._sheet(collection)
        idx, _ = self._find_row(sheet, doc_id)
        if idx is None:
            return False
        sheet.delete_rows(idx)
        return True

    def _list_sync(self, collection: str) -> list[dict[str, Any]]:
        documents = []
        for row in self._sheet(collection).get_all_values()[1:]:
            if not row or not row[0]:
                continue
            try:
                documents.append(self._row_to_doc(row))
            except json.JSONDecodeError:
                logger.warning("malformed_row_skipped", collection=collection, doc_id=row[0])
        return documents

    # --- DocumentStorageInterface ---------------------------------------------

    async def create(self, collection: str, doc: dict[str, Any]) -> str:
        return await self._run(f"Failed to create {collection}", self._create_sync, collection, doc)

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        return await self._run(f"Failed to get {collection}", self._get_sync, collection, doc_id)

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        await self._run(f"Failed to update {collection}", self._update_sync, collection, doc_id, patch)

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await self._run(f"Failed to delete {collection}", self._delete_sync, collection, doc_id)

    async def query_by_equality(
        self,
        collection: str,
        field: str,
        value: Any,
    ) -> list[dict[str, Any]]:
        documents = await self.list_all(collection)
        return [doc for doc in documents if doc.get(field) == value]

    async def list_all(self, collection: str) -> list[dict[str, Any]]:
        return await self._run(f"Failed to list {collection}", self._list_sync, collection)


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """Append-only audit trail in a single worksheet."""

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    @staticmethod
    def _row_to_event(row: list) -> AuditEvent:
        fields = {
            column: value
            for column, value in zip(AUDIT_COLUMNS, row)
            if value != ""
        }
        details = fields.pop("details_json", None)
        fields["details"] = json.loads(details) if details else {}
        fields["is_user_action"] = fields.get("is_user_action", "").lower() == "true"
        return AuditEvent.model_validate(fields)

    def _read_events(self) -> list[AuditEvent]:
        events = []
        for row in self._client.get_audit_sheet().get_all_values()[1:]:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except ValueError:
                logger.warning("malformed_audit_row_skipped", event_id=row[0])
        return events

    async def _load_events(self) -> list[AuditEvent]:
        try:
            return await asyncio.to_thread(self._read_events)
        except Exception as e:
            raise _translate_error(e, "read audit log")

    @transient_retry
    async def _append_row(self, row: list) -> None:
        try:
            sheet = await asyncio.to_thread(self._client.get_audit_sheet)
            await asyncio.to_thread(sheet.append_row, row, value_input_option="RAW")
        except StorageError:
            raise
        except Exception as e:
            raise _translate_error(e, "append audit event")

    async def append_event(self, event: AuditEvent) -> bool:
        try:
            await self._append_row(event.to_sheets_row())
        except StorageError as e:
            logger.warning("audit_write_failed", event_id=str(event.event_id), error=str(e))
            return False
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in await self._load_events() if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(await self._load_events(), key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
