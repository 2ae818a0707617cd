from __future__ import annotations

import secrets
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storesync.config import settings
from storesync.models_sqlalchemy import SessionLocal
from storesync.models_sqlalchemy.models import ConnectorSettings
from storesync.services.platform_client import PlatformCredentials
from storesync.utils.logger import logger


def get_connector_settings(db: Session) -> Optional[ConnectorSettings]:
    return db.query(ConnectorSettings).order_by(ConnectorSettings.id.asc()).first()


def load_credentials(session_factory: sessionmaker = SessionLocal) -> PlatformCredentials:
    """Credentials from the connector_settings row, field by field falling back to env."""
    db = session_factory()
    try:
        row = get_connector_settings(db)
        stored = PlatformCredentials(
            base_url=row.base_url if row else None,
            consumer_key=row.consumer_key if row else None,
            consumer_secret=row.consumer_secret if row else None,
            webhook_secret=row.webhook_secret if row else None,
        )
    except SQLAlchemyError as exc:
        # Table may not exist yet on a fresh database.
        logger.warning(f"[settings] Could not read connector settings, using environment: {exc}")
        stored = PlatformCredentials()
    finally:
        db.close()

    return PlatformCredentials(
        base_url=stored.base_url or settings.PLATFORM_BASE_URL,
        consumer_key=stored.consumer_key or settings.PLATFORM_CONSUMER_KEY,
        consumer_secret=stored.consumer_secret or settings.PLATFORM_CONSUMER_SECRET,
        webhook_secret=stored.webhook_secret or settings.PLATFORM_WEBHOOK_SECRET,
    )


def credentials_loader(session_factory: sessionmaker = SessionLocal) -> Callable[[], PlatformCredentials]:
    return lambda: load_credentials(session_factory)


def save_connector_settings(
    db: Session,
    *,
    base_url: Optional[str] = None,
    consumer_key: Optional[str] = None,
    consumer_secret: Optional[str] = None,
    webhook_secret: Optional[str] = None,
    sync_enabled: Optional[bool] = None,
) -> ConnectorSettings:
    """Update the settings row. ``None`` leaves a field unchanged."""
    row = get_connector_settings(db)
    if row is None:
        row = ConnectorSettings()
        db.add(row)
    if base_url is not None:
        row.base_url = base_url.rstrip("/")
    if consumer_key is not None:
        row.consumer_key = consumer_key
    if consumer_secret is not None:
        row.consumer_secret = consumer_secret
    if webhook_secret is not None:
        row.webhook_secret = webhook_secret
    if sync_enabled is not None:
        row.sync_enabled = sync_enabled
    db.commit()
    db.refresh(row)
    logger.info(f"[settings] Connector settings saved base_url={row.base_url}")
    return row


def generate_webhook_secret() -> str:
    return secrets.token_hex(32)
