import sys

from config import config
from services.catalog_mock import MockCatalogClient

DEMO_FOLDER_ID = "demo-root"


def seed_mock_catalog(db_file: str) -> MockCatalogClient:
    """
    Write a small demo catalog for USE_MOCK_DRIVE=true.

    Existing items in the file are kept; demo items are overwritten by id,
    so running the script twice gives the same catalog.
    """
    catalog = MockCatalogClient(db_file=db_file)

    catalog.create_folder("Demo Workspace", parent_id="root", folder_id=DEMO_FOLDER_ID)
    catalog.create_folder("Contracts", parent_id=DEMO_FOLDER_ID, folder_id="demo-contracts")
    catalog.upload_file(
        "Onboarding.pdf", "application/pdf", parent_id=DEMO_FOLDER_ID, size=48213, file_id="demo-onboarding"
    )
    catalog.upload_file(
        "Budget 2026", "application/vnd.google-apps.spreadsheet", parent_id=DEMO_FOLDER_ID, file_id="demo-budget"
    )
    catalog.upload_file(
        "Signed NDA.pdf", "application/pdf", parent_id="demo-contracts", size=120044, file_id="demo-nda"
    )

    # Reset demo permissions so reseeding does not duplicate them
    for item_id in ("demo-root", "demo-contracts", "demo-onboarding", "demo-budget", "demo-nda"):
        catalog.db["permissions"][item_id] = []

    catalog.add_permission(DEMO_FOLDER_ID, "owner", "owner@example.com", permission_id="perm-owner")
    catalog.add_permission(DEMO_FOLDER_ID, "writer", "team@example.com", type="group", permission_id="perm-team")
    catalog.add_permission("demo-onboarding", "reader", type="anyone", permission_id="perm-anyone", allowFileDiscovery=False)
    catalog.add_permission("demo-budget", "writer", "finance@example.com", permission_id="perm-finance")
    catalog.add_permission("demo-nda", "reader", type="domain", permission_id="perm-domain", domain="example.com")

    catalog.save()
    return catalog


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else config.MOCK_DRIVE_FILE
    if not target:
        print("Usage: python seed_db.py <catalog.json> (or set MOCK_DRIVE_FILE)")
        sys.exit(1)
    seeded = seed_mock_catalog(target)
    print(f"Seeded {len(seeded.db['files'])} items into {target}")
