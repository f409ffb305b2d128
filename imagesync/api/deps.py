"""Shared API dependencies: settings and services from app state."""

from __future__ import annotations

from fastapi import Request

from imagesync.config import Settings
from imagesync.services.crypto_service import WeChatCrypto
from imagesync.services.sync_service import SyncService


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_crypto(request: Request) -> WeChatCrypto:
    """Get the callback crypto helper from app state."""
    crypto: WeChatCrypto = request.app.state.crypto
    return crypto


def get_sync_service(request: Request) -> SyncService:
    """Get the sync pipeline from app state."""
    service: SyncService = request.app.state.sync_service
    return service
