"""
Firebase service-account credentials and the Google Cloud clients built on them.

Credentials come from the inline FIREBASE_* variables first and fall back to
FIREBASE_SERVICE_ACCOUNT_JSON. Nothing here catches errors: bad credentials
must stop the worker at startup.
"""

import json
import logging
from functools import lru_cache

from google.cloud import firestore
from google.cloud import storage as gcs
from google.oauth2 import service_account

from common import config

log = logging.getLogger(__name__)


def _service_account_info() -> dict:
    if config.FIREBASE_CLIENT_EMAIL and config.FIREBASE_PRIVATE_KEY and config.FIREBASE_PROJECT_ID:
        log.info("Using service account from FIREBASE_* environment variables")
        return {
            "type": "service_account",
            "project_id": config.FIREBASE_PROJECT_ID,
            "client_email": config.FIREBASE_CLIENT_EMAIL,
            # .env files store the key with literal "\n" sequences
            "private_key": config.FIREBASE_PRIVATE_KEY.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }
    if config.FIREBASE_SERVICE_ACCOUNT_JSON:
        log.info("Using service account from FIREBASE_SERVICE_ACCOUNT_JSON")
        return json.loads(config.FIREBASE_SERVICE_ACCOUNT_JSON)
    raise RuntimeError(
        "Firebase credentials not found: set FIREBASE_PROJECT_ID, FIREBASE_CLIENT_EMAIL "
        "and FIREBASE_PRIVATE_KEY, or FIREBASE_SERVICE_ACCOUNT_JSON"
    )


@lru_cache(maxsize=1)
def get_credentials() -> service_account.Credentials:
    return service_account.Credentials.from_service_account_info(_service_account_info())


def get_firestore_client() -> firestore.Client:
    credentials = get_credentials()
    return firestore.Client(project=credentials.project_id, credentials=credentials)


def get_storage_client() -> gcs.Client:
    credentials = get_credentials()
    return gcs.Client(project=credentials.project_id, credentials=credentials)
