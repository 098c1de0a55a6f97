import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from google.auth.exceptions import GoogleAuthError
from googleapiclient.errors import HttpError

from config import config
from schemas.catalog import AccessGrant, CatalogEntry
from services.google_auth import GoogleAuthService
from services.sync_errors import CatalogAuthError, CatalogUnavailableError
from utils.retry import RetryExhausted, exponential_backoff_retry, http_status_of

SCOPES = ['https://www.googleapis.com/auth/drive.readonly']

ENTRY_FIELDS = "id, name, mimeType, parents, size, createdTime, modifiedTime, trashed"
GRANT_FIELDS = "id, type, role, emailAddress, domain, allowFileDiscovery"

logger = logging.getLogger("drive_mirror.catalog")


def build_listing_query(parent_id: Optional[str] = None) -> str:
    """Drive `q` expression: non-trashed items, optionally direct children of one folder."""
    if parent_id:
        escaped = parent_id.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}' in parents and trashed = false"
    return "trashed = false"


class GoogleDriveCatalogClient:
    """
    Read-only view of a Google Drive catalog.

    Pages and permission lists come back as typed records; transient API
    failures are retried with exponential backoff before surfacing as
    CatalogUnavailableError.
    """

    def __init__(
        self,
        service: Optional[Any] = None,
        page_size: int = config.SYNC_PAGE_SIZE,
        max_retries: int = config.SYNC_PAGE_MAX_RETRIES,
        initial_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if service is None:
            self.auth_service = GoogleAuthService(scopes=SCOPES)
            service = self.auth_service.get_service('drive', 'v3')
        self.service = service
        self.page_size = page_size
        self._retry = exponential_backoff_retry(
            max_retries=max_retries,
            initial_delay=initial_delay,
            sleep=sleep,
        )

    def _check_auth(self):
        if not self.service:
            raise CatalogAuthError(
                "Drive service configuration error: GOOGLE_SERVICE_ACCOUNT_JSON is missing or invalid."
            )

    def _execute(self, build_request: Callable[[], Any], description: str) -> Dict[str, Any]:
        self._check_auth()

        @self._retry
        def _api_call():
            return build_request().execute()

        try:
            return _api_call()
        except RetryExhausted as e:
            raise CatalogUnavailableError(f"{description} failed: {e}") from e
        except GoogleAuthError as e:
            raise CatalogAuthError(f"{description} failed: {e}") from e
        except HttpError as e:
            if http_status_of(e) == 401:
                raise CatalogAuthError(f"{description} failed: {e}") from e
            raise CatalogUnavailableError(f"{description} failed: {e}") from e

    def list_page(
        self,
        parent_id: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> Tuple[List[CatalogEntry], Optional[str]]:
        def _request():
            return self.service.files().list(
                q=build_listing_query(parent_id),
                pageSize=self.page_size,
                pageToken=page_token,
                fields=f"nextPageToken, files({ENTRY_FIELDS})",
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            )

        result = self._execute(_request, "files.list")
        entries = [CatalogEntry.from_drive(item) for item in result.get('files', [])]
        return entries, result.get('nextPageToken') or None

    def count_entries(
        self,
        parent_id: Optional[str] = None,
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> int:
        """
        Count listable entries with an id-only listing.

        on_page(page_count, running_total) is called after every page.
        """
        total = 0
        page_token = None

        while True:
            def _request(token=page_token):
                return self.service.files().list(
                    q=build_listing_query(parent_id),
                    pageSize=self.page_size,
                    pageToken=token,
                    fields="nextPageToken, files(id)",
                    supportsAllDrives=True,
                    includeItemsFromAllDrives=True,
                )

            result = self._execute(_request, "files.list (count)")
            page_count = len(result.get('files', []))
            total += page_count
            if on_page:
                on_page(page_count, total)

            page_token = result.get('nextPageToken')
            if not page_token:
                return total

    def list_grants(self, entry_id: str) -> List[AccessGrant]:
        grants: List[AccessGrant] = []
        page_token = None

        while True:
            def _request(token=page_token):
                return self.service.permissions().list(
                    fileId=entry_id,
                    pageToken=token,
                    fields=f"nextPageToken, permissions({GRANT_FIELDS})",
                    supportsAllDrives=True,
                )

            result = self._execute(_request, f"permissions.list {entry_id}")
            grants.extend(AccessGrant.from_drive(entry_id, p) for p in result.get('permissions', []))

            page_token = result.get('nextPageToken')
            if not page_token:
                return grants
