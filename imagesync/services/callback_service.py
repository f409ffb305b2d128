"""Inbound callback bodies: field extraction, verification, and decryption."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal
from xml.parsers.expat import ExpatError

import xmltodict

from imagesync.exceptions import DecryptionError
from imagesync.services.crypto_service import verify_signature

if TYPE_CHECKING:
    from imagesync.services.crypto_service import WeChatCrypto

logger = logging.getLogger(__name__)

CallbackFormat = Literal["xml", "json"]


@dataclass(frozen=True)
class InboundMessage:
    """A decrypted message pushed by WeChat Work."""

    msg_type: str
    from_user: str
    content: str = ""
    msg_id: str = ""
    agent_id: str = ""

    @property
    def is_text(self) -> bool:
        return self.msg_type == "text"


def parse_fields(body: bytes | str, fmt: CallbackFormat) -> dict[str, str]:
    """Flatten a callback body into a field map. Raises ValueError if malformed."""
    if fmt == "json":
        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Callback body is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Callback body must be a JSON object")
        return {str(k): "" if v is None else str(v) for k, v in data.items()}

    try:
        doc = xmltodict.parse(body)
    except ExpatError as exc:
        raise ValueError(f"Callback body is not valid XML: {exc}") from exc
    if "xml" not in doc:
        raise ValueError("Callback body has no <xml> root element")
    root = doc["xml"]
    if root is None:
        return {}
    if not isinstance(root, dict):
        raise ValueError("Callback <xml> element has no fields")
    return {name: _field_text(value) for name, value in root.items() if not name.startswith("@")}


def _field_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        return str(value.get("#text") or "")
    return str(value)


def read_callback(
    body: bytes,
    fmt: CallbackFormat,
    crypto: WeChatCrypto,
    signature: str | None,
    timestamp: str | None,
    nonce: str | None,
) -> InboundMessage:
    """Verify and open a message callback.

    Raises AuthenticationError on a bad signature, DecryptionError when the
    envelope cannot be opened, and ValueError for malformed bodies.
    """
    outer = parse_fields(body, fmt)
    encrypted = outer.get("Encrypt", "")
    if encrypted:
        inner = crypto.open_envelope(signature, timestamp, nonce, encrypted)
        fields = parse_fields(inner, fmt)
    else:
        if crypto.encrypted:
            raise DecryptionError("Callback body has no Encrypt field")
        verify_signature(signature, crypto.token, timestamp, nonce)
        fields = outer

    return InboundMessage(
        msg_type=fields.get("MsgType", ""),
        from_user=fields.get("FromUserName", ""),
        content=fields.get("Content", ""),
        msg_id=fields.get("MsgId", ""),
        agent_id=fields.get("AgentID", ""),
    )
