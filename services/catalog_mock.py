import json
import os
import uuid
import datetime
from typing import Any, Dict, List, Optional, Tuple

from schemas.catalog import FOLDER_MIME_TYPE, AccessGrant, CatalogEntry


class MockCatalogClient:
    """
    In-memory Drive catalog with the same read contract as GoogleDriveCatalogClient.

    Items are stored in Drive's resource shape, so the same conversion code
    runs for mock and real listings. Used for local development
    (USE_MOCK_DRIVE=true, optionally seeded from MOCK_DRIVE_FILE) and tests.
    """

    def __init__(self, page_size: int = 100, db_file: Optional[str] = None):
        self.page_size = page_size
        self.db_file = db_file
        self.db: Dict[str, Dict[str, Any]] = {"files": {}, "permissions": {}}
        if db_file:
            self._load_db()

    def _load_db(self):
        if not os.path.exists(self.db_file):
            return
        with open(self.db_file, "r") as f:
            data = json.load(f)
        # Older seed files keep folders in their own map
        self.db["files"].update(data.get("folders", {}))
        self.db["files"].update(data.get("files", {}))
        self.db["files"].pop("root", None)
        self.db["permissions"].update(data.get("permissions", {}))

    def save(self):
        if not self.db_file:
            return
        with open(self.db_file, "w") as f:
            json.dump(self.db, f, indent=2)

    # --- seeding helpers ---

    def create_folder(self, name: str, parent_id: str = "root", folder_id: Optional[str] = None) -> Dict[str, Any]:
        return self._add_item(folder_id, name, FOLDER_MIME_TYPE, parent_id)

    def upload_file(
        self,
        name: str,
        mime_type: str = "application/octet-stream",
        parent_id: str = "root",
        size: int = 0,
        file_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._add_item(file_id, name, mime_type, parent_id, size=str(size))

    def _add_item(self, item_id, name, mime_type, parent_id, **extra) -> Dict[str, Any]:
        item_id = item_id or str(uuid.uuid4())
        now = datetime.datetime.now(datetime.timezone.utc).isoformat()
        item = {
            "id": item_id,
            "name": name,
            "mimeType": mime_type,
            "parents": [parent_id] if parent_id else [],
            "createdTime": now,
            "modifiedTime": now,
            "trashed": False,
            **extra,
        }
        self.db["files"][item_id] = item
        self.db["permissions"].setdefault(item_id, [])
        return item

    def update_item(self, item_id: str, **changes) -> Dict[str, Any]:
        item = self.db["files"].get(item_id)
        if item is None:
            raise KeyError(f"File not found: {item_id}")
        item.update(changes)
        return item

    def delete_item(self, item_id: str) -> None:
        self.db["files"].pop(item_id, None)
        self.db["permissions"].pop(item_id, None)

    def add_permission(
        self,
        file_id: str,
        role: str,
        email: Optional[str] = None,
        type: str = "user",
        permission_id: Optional[str] = None,
        **extra,
    ) -> Dict[str, Any]:
        permission = {
            "id": permission_id or str(uuid.uuid4()),
            "role": role,
            "type": type,
            **extra,
        }
        if email:
            permission["emailAddress"] = email
        self.db["permissions"].setdefault(file_id, []).append(permission)
        return permission

    # --- catalog contract ---

    def _listable(self, parent_id: Optional[str]) -> List[Dict[str, Any]]:
        items = [f for f in self.db["files"].values() if not f.get("trashed")]
        if parent_id:
            items = [f for f in items if parent_id in f.get("parents", [])]
        return items

    def list_page(
        self,
        parent_id: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> Tuple[List[CatalogEntry], Optional[str]]:
        items = self._listable(parent_id)
        start = int(page_token) if page_token else 0
        end = start + self.page_size
        page = [CatalogEntry.from_drive(item) for item in items[start:end]]
        next_token = str(end) if end < len(items) else None
        return page, next_token

    def count_entries(self, parent_id: Optional[str] = None, on_page=None) -> int:
        total = 0
        page_token = None
        while True:
            page, page_token = self.list_page(parent_id, page_token)
            total += len(page)
            if on_page:
                on_page(len(page), total)
            if not page_token:
                return total

    def list_grants(self, entry_id: str) -> List[AccessGrant]:
        return [
            AccessGrant.from_drive(entry_id, p)
            for p in self.db["permissions"].get(entry_id, [])
        ]
