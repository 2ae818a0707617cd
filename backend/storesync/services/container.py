from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from storesync.models_sqlalchemy import SessionLocal
from storesync.services.connector_settings import credentials_loader
from storesync.services.platform_client import PlatformClient
from storesync.services.sync_workers import JobController


@dataclass
class ConnectorServices:
    """Long-lived services shared by the routers, built once at startup."""

    client: PlatformClient
    jobs: JobController


def build_services(session_factory: sessionmaker = SessionLocal) -> ConnectorServices:
    client = PlatformClient(credentials_loader(session_factory))
    return ConnectorServices(client=client, jobs=JobController(session_factory, client))


def get_services(request: Request) -> ConnectorServices:
    return request.app.state.services
