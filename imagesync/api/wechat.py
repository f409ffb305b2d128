"""WeChat Work callback endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from imagesync.api.deps import get_crypto, get_settings, get_sync_service
from imagesync.config import Settings
from imagesync.exceptions import AuthenticationError, DecryptionError
from imagesync.services.callback_service import read_callback
from imagesync.services.crypto_service import WeChatCrypto
from imagesync.services.sync_service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wechat", tags=["wechat"])

# WeChat Work redelivers any callback not answered with this body.
ACK = "success"


@router.get("/callback", response_class=PlainTextResponse)
async def verify_callback_url(
    crypto: Annotated[WeChatCrypto, Depends(get_crypto)],
    echostr: Annotated[str, Query()],
    msg_signature: Annotated[str | None, Query()] = None,
    timestamp: Annotated[str | None, Query()] = None,
    nonce: Annotated[str | None, Query()] = None,
) -> str:
    """URL validation: verify the signature and return the decrypted echo string.

    A signature mismatch raises AuthenticationError, answered with 403 by the
    application-wide handler.
    """
    logger.info("Received callback URL validation request")
    try:
        return crypto.decrypt_echo(msg_signature, timestamp, nonce, echostr)
    except DecryptionError as exc:
        logger.warning("Could not decrypt validation echo string: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid echostr") from exc


@router.post("/callback", response_class=PlainTextResponse)
async def receive_callback(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    crypto: Annotated[WeChatCrypto, Depends(get_crypto)],
    sync_service: Annotated[SyncService, Depends(get_sync_service)],
    msg_signature: Annotated[str | None, Query()] = None,
    timestamp: Annotated[str | None, Query()] = None,
    nonce: Annotated[str | None, Query()] = None,
) -> str:
    """Message callback. Always acknowledged so the platform does not redeliver."""
    body = await request.body()
    try:
        message = read_callback(
            body, settings.callback_format, crypto, msg_signature, timestamp, nonce
        )
    except AuthenticationError as exc:
        logger.warning("Rejected callback with bad signature: %s", exc)
        return ACK
    except DecryptionError as exc:
        logger.error("Could not decrypt callback: %s", exc)
        return ACK
    except ValueError as exc:
        logger.warning("Malformed callback body: %s", exc)
        return ACK

    if not message.is_text:
        logger.info("Ignoring %r message from %s", message.msg_type, message.from_user)
        return ACK
    if not message.from_user:
        logger.warning("Text message without sender, ignoring")
        return ACK

    logger.info("Received message from %s: %r", message.from_user, message.content[:200])
    try:
        result = await sync_service.handle_text(message.from_user, message.content)
        logger.info("Handled message from %s: %s", message.from_user, result.status)
    except Exception:
        logger.exception("Error handling message from %s", message.from_user)
    return ACK
