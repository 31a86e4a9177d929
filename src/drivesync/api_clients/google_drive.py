"""Google Drive API client implementation."""

import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload

from .base import BaseRemoteClient, RemoteItem, FOLDER_MIME_TYPE
from ..exceptions import (
    APIConnectionError,
    AuthenticationError,
    NotFoundError,
    RateLimitError,
)
from ..performance import AsyncRateLimiter, MetricsCollector
from ..utils.logging import log_async_execution_time


FILE_FIELDS = "id, name, mimeType, modifiedTime, md5Checksum, size, parents"
DOWNLOAD_CHUNK_SIZE = 10 * 1024 * 1024
RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


class GoogleDriveClient(BaseRemoteClient):
    """Google Drive API client for bidirectional file synchronization."""

    def __init__(
        self,
        credentials_path: str,
        token_path: str,
        scopes: Optional[List[str]] = None,
        large_file_threshold: int = 5 * 1024 * 1024,
        rate_limit_calls: int = 100,
        rate_limit_window: float = 100.0,
        metrics: Optional[MetricsCollector] = None,
        **kwargs
    ):
        """Initialize Google Drive client.

        Args:
            credentials_path: Path to a service account JSON file (fallback)
            token_path: Path to the authorized-user token written by the sign-in flow
            scopes: OAuth scopes to request
            large_file_threshold: Uploads above this size use resumable uploads
            rate_limit_calls: Maximum API calls per rate limit window
            rate_limit_window: Rate limit window in seconds
            metrics: Metrics collector for API call accounting
        """
        super().__init__(**kwargs)
        self.credentials_path = credentials_path
        self.token_path = token_path
        self.scopes = scopes or ["https://www.googleapis.com/auth/drive"]
        self.large_file_threshold = large_file_threshold
        self.api_version = "v3"

        self.service = None
        self.credentials = None

        self.metrics = metrics or MetricsCollector()
        self.rate_limiter = AsyncRateLimiter(
            max_calls=rate_limit_calls,
            time_window=rate_limit_window
        )

        self.logger.info(
            "Google Drive client initialized",
            token_path=token_path,
            large_file_threshold=large_file_threshold
        )

    @log_async_execution_time
    async def authenticate(self) -> bool:
        """Authenticate with the stored user token, or a service account as fallback."""
        loop = asyncio.get_event_loop()

        try:
            self.credentials = await loop.run_in_executor(None, self._load_credentials)
            self.service = build(
                "drive", self.api_version, credentials=self.credentials, cache_discovery=False
            )
        except AuthenticationError:
            raise
        except RefreshError as e:
            error_msg = f"Token refresh failed: {e}"
            self.logger.error("Google Drive authentication failed", error=error_msg)
            raise AuthenticationError(error_msg)
        except (ValueError, KeyError, json.JSONDecodeError) as e:
            error_msg = f"Invalid credentials file format: {e}"
            self.logger.error("Google Drive authentication failed", error=error_msg)
            raise AuthenticationError(error_msg)

        about = await self._execute(self.service.about().get(fields="user"), "about")
        user_email = about.get("user", {}).get("emailAddress", "Unknown")

        self._authenticated = True
        self.logger.info("Google Drive authentication successful", user_email=user_email)
        return True

    def _load_credentials(self):
        """Load credentials from disk, refreshing and persisting an expired user token."""
        if os.path.exists(self.token_path):
            credentials = Credentials.from_authorized_user_file(self.token_path, self.scopes)
            if not credentials.valid and credentials.expired and credentials.refresh_token:
                credentials.refresh(Request())
                self._save_token(credentials)
                self.logger.info("Access token refreshed")
            return credentials

        if os.path.exists(self.credentials_path):
            with open(self.credentials_path, 'r', encoding='utf-8') as f:
                info = json.load(f)
            if info.get("type") == "service_account":
                return service_account.Credentials.from_service_account_info(info, scopes=self.scopes)

        raise AuthenticationError(
            f"No usable credentials found (token: {self.token_path}, credentials: {self.credentials_path})"
        )

    def _save_token(self, credentials: Credentials):
        token_file = Path(self.token_path)
        token_file.parent.mkdir(parents=True, exist_ok=True)
        token_file.write_text(credentials.to_json(), encoding='utf-8')

    async def invalidate_credentials(self) -> None:
        """Remove the stored user token so the sign-in flow runs again."""
        await super().invalidate_credentials()
        self.service = None
        self.credentials = None

        try:
            os.remove(self.token_path)
            self.logger.warning("Removed invalid token file", token_path=self.token_path)
        except FileNotFoundError:
            pass

    async def list_folder(self, parent_id: str) -> List[RemoteItem]:
        """List all non-trashed children of a folder, following pagination."""
        self._require_service()

        query = f"'{_escape(parent_id)}' in parents and trashed=false"
        items: List[RemoteItem] = []
        page_token = None

        while True:
            request = self.service.files().list(
                q=query,
                fields=f"nextPageToken, files({FILE_FIELDS})",
                pageSize=1000,
                pageToken=page_token,
                includeItemsFromAllDrives=True,
                supportsAllDrives=True
            )
            result = await self._execute(request, "list")

            files = result.get("files", [])
            self.metrics.record_value("google_drive.files_per_page", len(files))

            for file_data in files:
                try:
                    items.append(self._convert_to_remote_item(file_data))
                except (KeyError, ValueError) as e:
                    self.logger.warning(
                        "Failed to process file metadata",
                        file_id=file_data.get("id"),
                        error=str(e)
                    )
                    self.metrics.increment_counter("google_drive.processing_errors")

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        self.logger.debug("Listed Google Drive folder", parent_id=parent_id, items=len(items))
        return items

    async def list_all_folders(self) -> List[RemoteItem]:
        """List every folder visible to the account."""
        self._require_service()

        query = f"mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        folders: List[RemoteItem] = []
        page_token = None

        while True:
            request = self.service.files().list(
                q=query,
                fields=f"nextPageToken, files({FILE_FIELDS})",
                pageSize=1000,
                pageToken=page_token,
                spaces="drive"
            )
            result = await self._execute(request, "list_folders")
            folders.extend(self._convert_to_remote_item(f) for f in result.get("files", []))

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return folders

    async def get(self, item_id: str, destination: Path) -> None:
        """Stream a file's content into ``destination`` via a temporary sibling file."""
        self._require_service()

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(f".{destination.name}.drivesync-part")
        request = self.service.files().get_media(fileId=item_id, supportsAllDrives=True)

        def _download():
            try:
                with open(partial, 'wb') as fh:
                    downloader = MediaIoBaseDownload(fh, request, chunksize=DOWNLOAD_CHUNK_SIZE)
                    done = False
                    while not done:
                        _, done = downloader.next_chunk()
                os.replace(partial, destination)
            finally:
                if partial.exists():
                    partial.unlink()

        await self._run(_download, "download")
        self.metrics.increment_counter("google_drive.downloads")

    async def create(self, name: str, parent_id: str, source: Path) -> RemoteItem:
        """Upload a new file; large files use a resumable session."""
        self._require_service()

        media = self._media_for(Path(source), name)
        request = self.service.files().create(
            body={"name": name, "parents": [parent_id]},
            media_body=media,
            fields=FILE_FIELDS,
            supportsAllDrives=True
        )
        result = await self._execute(request, "create")
        self.metrics.increment_counter("google_drive.uploads")
        return self._convert_to_remote_item(result)

    async def update(self, item_id: str, source: Path) -> RemoteItem:
        """Overwrite a file's content in place, keeping its id."""
        self._require_service()

        source = Path(source)
        media = self._media_for(source, source.name)
        request = self.service.files().update(
            fileId=item_id,
            media_body=media,
            fields=FILE_FIELDS,
            supportsAllDrives=True
        )
        result = await self._execute(request, "update")
        self.metrics.increment_counter("google_drive.uploads")
        return self._convert_to_remote_item(result)

    async def delete(self, item_id: str) -> None:
        self._require_service()

        request = self.service.files().delete(fileId=item_id, supportsAllDrives=True)
        await self._execute(request, "delete")
        self.metrics.increment_counter("google_drive.deletes")

    async def find_folder(self, name: str, parent_id: str) -> Optional[str]:
        self._require_service()

        query = (
            f"name='{_escape(name)}' and '{_escape(parent_id)}' in parents "
            f"and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        )
        request = self.service.files().list(q=query, fields="files(id, name)", spaces="drive")
        result = await self._execute(request, "find_folder")

        files = result.get("files", [])
        return files[0]["id"] if files else None

    async def create_folder(self, name: str, parent_id: Optional[str]) -> str:
        self._require_service()

        body: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME_TYPE}
        if parent_id:
            body["parents"] = [parent_id]

        request = self.service.files().create(body=body, fields="id", supportsAllDrives=True)
        result = await self._execute(request, "create_folder")

        self.logger.info("Created Google Drive folder", name=name, parent_id=parent_id, folder_id=result["id"])
        return result["id"]

    async def get_sync_info(self) -> Dict[str, Any]:
        base_info = await super().get_sync_info()
        base_info.update({
            "token_path": self.token_path,
            "metrics": self.metrics.snapshot()
        })
        return base_info

    def _require_service(self):
        if self.service is None:
            raise AuthenticationError("Google Drive client is not authenticated")

    def _media_for(self, source: Path, name: str) -> MediaFileUpload:
        size = source.stat().st_size
        resumable = size > self.large_file_threshold
        if resumable:
            self.logger.info(
                "Uploading large file with resumable session",
                name=name,
                size_mb=round(size / 1024 / 1024, 2)
            )
        return MediaFileUpload(str(source), mimetype="application/octet-stream", resumable=resumable)

    async def _execute(self, request, operation: str) -> Dict[str, Any]:
        """Execute a Google API request off the event loop."""
        result = await self._run(request.execute, operation)
        return result or {}

    async def _run(self, func, operation: str):
        async with self.rate_limiter.limit():
            async with self.metrics.time_operation(
                "google_drive.api_request", tags={"operation": operation}
            ):
                try:
                    result = await asyncio.get_event_loop().run_in_executor(None, func)
                except HttpError as e:
                    self.metrics.increment_counter("google_drive.api_errors")
                    raise self._translate_http_error(e, operation)
                except RefreshError as e:
                    self.metrics.increment_counter("google_drive.api_errors")
                    raise AuthenticationError(f"Token refresh failed during {operation}: {e}")
                except OSError as e:
                    self.metrics.increment_counter("google_drive.api_errors")
                    raise APIConnectionError(f"Network error during {operation}: {e}")

        self.metrics.increment_counter("google_drive.api_calls")
        return result

    def _translate_http_error(self, error: HttpError, operation: str) -> Exception:
        status = error.resp.status
        message = f"Google Drive {operation} failed ({status}): {error}"
        details = str(error)
        if isinstance(error.content, bytes):
            details += error.content.decode("utf-8", "ignore")

        if status == 429 or (status == 403 and any(r in details for r in RATE_LIMIT_REASONS)):
            self.metrics.increment_counter("google_drive.rate_limit_errors")
            retry_after = error.resp.get("retry-after") if hasattr(error.resp, "get") else None
            return RateLimitError(message, int(retry_after) if str(retry_after or "").isdigit() else None)
        if status in (401, 403):
            return AuthenticationError(message, status=status)
        if status == 404:
            return NotFoundError(message)
        return APIConnectionError(message, status=status)

    def _convert_to_remote_item(self, file_data: Dict[str, Any]) -> RemoteItem:
        size = None
        if file_data.get("size") is not None:
            size = int(file_data["size"])

        return RemoteItem(
            id=file_data["id"],
            name=file_data.get("name", ""),
            mime_type=file_data.get("mimeType", "application/octet-stream"),
            modified_time=self._parse_timestamp(file_data.get("modifiedTime")),
            size=size,
            checksum=file_data.get("md5Checksum"),
            parents=list(file_data.get("parents", []))
        )

    def _parse_timestamp(self, timestamp_str: Optional[str]) -> datetime:
        """Parse Google Drive RFC 3339 timestamp; missing values sort as oldest."""
        if not timestamp_str:
            return datetime.fromtimestamp(0, tz=timezone.utc)

        try:
            return datetime.fromisoformat(timestamp_str.replace("Z", "+00:00"))
        except ValueError:
            self.logger.warning("Failed to parse timestamp", timestamp=timestamp_str)
            return datetime.fromtimestamp(0, tz=timezone.utc)


def _escape(value: str) -> str:
    """Escape a value for use inside a single-quoted Drive query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")
