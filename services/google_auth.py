import json
import logging
from typing import List
from google.oauth2 import service_account
from googleapiclient.discovery import build
from config import config

logger = logging.getLogger("drive_mirror.google_auth")


class GoogleAuthService:
    """
    Centralized service for handling Google Service Account authentication.
    Supports Domain-Wide Delegation (impersonation) if GOOGLE_IMPERSONATE_EMAIL is set.
    """

    def __init__(self, scopes: List[str]):
        self.scopes = scopes
        self.creds = None
        self._authenticate()

    def _authenticate(self):
        if not config.GOOGLE_SERVICE_ACCOUNT_JSON:
            logger.warning("GOOGLE_SERVICE_ACCOUNT_JSON not set. Drive sync will fail.")
            return

        try:
            # Inline JSON or a path to the key file
            if config.GOOGLE_SERVICE_ACCOUNT_JSON.strip().startswith("{"):
                info = json.loads(config.GOOGLE_SERVICE_ACCOUNT_JSON)
                self.creds = service_account.Credentials.from_service_account_info(info, scopes=self.scopes)
            else:
                self.creds = service_account.Credentials.from_service_account_file(
                    config.GOOGLE_SERVICE_ACCOUNT_JSON, scopes=self.scopes
                )

            if config.GOOGLE_IMPERSONATE_EMAIL:
                logger.info("Authentication: impersonating workspace user", extra={"subject": config.GOOGLE_IMPERSONATE_EMAIL})
                self.creds = self.creds.with_subject(config.GOOGLE_IMPERSONATE_EMAIL)
            else:
                logger.info("Authentication: using service account directly (no impersonation)")

        except (ValueError, OSError) as e:
            logger.error(f"Authentication failed: {e}")
            self.creds = None

    def get_service(self, service_name: str, version: str):
        if not self.creds:
            return None
        return build(service_name, version, credentials=self.creds, cache_discovery=False)
