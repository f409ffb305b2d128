"""Shared test fixtures for the image sync service."""

from __future__ import annotations

import base64
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from imagesync.config import Settings
from imagesync.main import create_app, init_services
from imagesync.services.crypto_service import WeChatCrypto, compute_signature
from tests.fakes import GITHUB_REPO, FakeUpstream

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

TEST_TOKEN = "test-callback-token"
TEST_CORP_ID = "wwtestcorp0001"
# 43 characters: a 32-byte key, base64 without the trailing "=".
TEST_AES_KEY = base64.b64encode(bytes(range(32))).decode().rstrip("=")
TEST_REGISTRY = "registry.example.com"
TEST_NAMESPACE = "mirror"


def make_settings(tmp_path: Path, **overrides: object) -> Settings:
    """Settings wired to temporary paths and fast polling."""
    values: dict[str, object] = {
        "debug": True,
        "wechat_corp_id": TEST_CORP_ID,
        "wechat_agent_id": 1000002,
        "wechat_secret": "test-secret",
        "wechat_token": TEST_TOKEN,
        "wechat_encoding_aes_key": TEST_AES_KEY,
        "github_token": "ghp_test",
        "github_repo": GITHUB_REPO,
        "target_registry": TEST_REGISTRY,
        "target_namespace": TEST_NAMESPACE,
        "queue_file": tmp_path / "queue" / "images.txt",
        "lock_retry_count": 3,
        "lock_retry_interval": 0.01,
        "poll_start_delay": 0,
        "poll_interval": 0.01,
        "poll_timeout": 0.5,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[arg-type]


def signed_encrypted_body(
    crypto: WeChatCrypto, inner_xml: str, timestamp: str = "1700000000", nonce: str = "n0nce"
) -> tuple[dict[str, str], str]:
    """Build query params and XML body for an encrypted message callback."""
    encrypted = crypto.encrypt(inner_xml)
    params = {
        "msg_signature": compute_signature(crypto.token, timestamp, nonce, encrypted),
        "timestamp": timestamp,
        "nonce": nonce,
    }
    body = (
        f"<xml><ToUserName><![CDATA[{TEST_CORP_ID}]]></ToUserName>"
        f"<Encrypt><![CDATA[{encrypted}]]></Encrypt>"
        "<AgentID><![CDATA[1000002]]></AgentID></xml>"
    )
    return params, body


def text_message_xml(content: str, from_user: str = "alice") -> str:
    return (
        f"<xml><ToUserName><![CDATA[{TEST_CORP_ID}]]></ToUserName>"
        f"<FromUserName><![CDATA[{from_user}]]></FromUserName>"
        "<CreateTime>1700000000</CreateTime>"
        "<MsgType><![CDATA[text]]></MsgType>"
        f"<Content><![CDATA[{content}]]></Content>"
        "<MsgId>1234567890</MsgId><AgentID>1000002</AgentID></xml>"
    )


@asynccontextmanager
async def create_test_client(
    settings: Settings, upstream: FakeUpstream
) -> AsyncGenerator[tuple[AsyncClient, FastAPI]]:
    """Create an HTTP test client for an app whose upstream APIs are faked.

    Performs the work of the application lifespan by hand because
    ASGITransport does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()
    http_client = upstream.client()
    init_services(app, settings, http_client)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac, app

    await app.state.tracker.shutdown()
    await http_client.aclose()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def crypto() -> WeChatCrypto:
    return WeChatCrypto(TEST_TOKEN, TEST_AES_KEY, receive_id=TEST_CORP_ID)


@pytest.fixture
async def http_client(upstream: FakeUpstream) -> AsyncGenerator[AsyncClient]:
    async with upstream.client() as client:
        yield client
