"""Tests for the end-to-end handling of a chat message."""

from __future__ import annotations

import asyncio
import base64
from typing import TYPE_CHECKING

import httpx
import pytest

from imagesync.services.github_service import GitHubClient
from imagesync.services.parser_service import build_request, parse_message
from imagesync.services.publish_service import Publisher
from imagesync.services.queue_service import PendingQueue, QueueLock
from imagesync.services.sync_service import SyncService, SyncStatus, commit_message
from imagesync.services.tracker_service import CompletionTracker, OutcomeKind
from imagesync.services.wechat_service import AccessTokenProvider, WeChatNotifier
from tests.conftest import TEST_NAMESPACE, TEST_REGISTRY
from tests.fakes import GITHUB_REPO, FakeUpstream, commit_sha, make_run

if TYPE_CHECKING:
    from pathlib import Path

PATH = "images.txt"
NGINX_LINE = f"nginx:latest to {TEST_REGISTRY}/{TEST_NAMESPACE}/nginx:latest"


@pytest.fixture
def service(tmp_path: Path, http_client: httpx.AsyncClient) -> SyncService:
    queue = PendingQueue(tmp_path / "images.txt")
    lock = QueueLock(tmp_path / "images.txt.lock", retry_count=3, retry_interval=0.01)
    github = GitHubClient("ghp_test", GITHUB_REPO, client=http_client)
    notifier = WeChatNotifier(AccessTokenProvider("corp", "secret", http_client), 1, http_client)
    tracker = CompletionTracker(
        github, notifier, poll_interval=0.01, poll_timeout=0.5, start_delay=0
    )
    return SyncService(
        registry=TEST_REGISTRY,
        namespace=TEST_NAMESPACE,
        queue=queue,
        lock=lock,
        publisher=Publisher(github, queue, PATH, "main"),
        tracker=tracker,
        notifier=notifier,
    )


def test_commit_message() -> None:
    requests = [build_request(r, "r", "ns") for r in ("nginx", "redis:7")]
    assert commit_message(requests) == "feat: add 2 image sync tasks\n\nnginx:latest\nredis:7"
    assert commit_message(requests[:1]).startswith("feat: add 1 image sync task\n")


class TestHandleText:
    async def test_usage_for_unparseable_message(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        result = await service.handle_text("alice", "   ")
        assert result.status is SyncStatus.USAGE
        (text,) = upstream.texts
        assert "Usage" in text
        assert upstream.writes == []

    async def test_queued_published_and_tracked(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        upstream.set_runs([make_run(11, head_sha=commit_sha(1))])
        result = await service.handle_text("alice", "nginx")

        assert result.status is SyncStatus.QUEUED
        assert result.commit_sha == commit_sha(1)
        assert [r.source_image for r in result.added] == ["nginx:latest"]
        assert upstream.files[PATH][0] == NGINX_LINE + "\n"
        assert service.queue.is_empty()
        assert not service.lock.locked

        (outcome,) = await service.tracker.drain()
        assert outcome.kind is OutcomeKind.SUCCESS
        confirmation, queued, finished = upstream.texts
        assert "Processing image sync request" in confirmation
        assert "Added 1 image(s)" in queued
        assert "Image sync finished" in finished
        assert "Synced: 1 image(s)" in finished

    async def test_batch_with_duplicate_in_queue(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        service.queue.enqueue([build_request("nginx", TEST_REGISTRY, TEST_NAMESPACE)])
        result = await service.handle_text("alice", "nginx, redis")

        assert result.status is SyncStatus.QUEUED
        assert [r.source_image for r in result.added] == ["redis:latest"]
        assert [r.source_image for r in result.skipped] == ["nginx:latest"]
        # Leftover lines are published together with the new one.
        assert upstream.files[PATH][0].splitlines() == [
            NGINX_LINE,
            f"redis:latest to {TEST_REGISTRY}/{TEST_NAMESPACE}/redis:latest",
        ]
        assert "Skipped 1 image(s)" in upstream.texts[1]
        await service.tracker.shutdown()

    async def test_repeat_after_publish_is_queued_again(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        await service.handle_text("alice", "nginx")
        await service.tracker.shutdown()
        upstream.messages.clear()

        # The queue was reset by the publish, so this is queued again.
        result = await service.handle_text("alice", "nginx nginx")
        assert result.status is SyncStatus.QUEUED
        assert len(result.added) == 1
        assert len(result.skipped) == 1
        await service.tracker.shutdown()

    async def test_publish_failure_keeps_queue_and_reports(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        upstream.put_status = 502
        result = await service.handle_text("alice", "nginx")

        assert result.status is SyncStatus.PUBLISH_FAILED
        assert service.queue.read_lines() == [NGINX_LINE]
        assert not service.lock.locked
        assert "Could not publish" in upstream.texts[-1]
        assert service.tracker.active_count == 0

    async def test_duplicate_of_unpublished_line_is_republished(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        upstream.put_status = 502
        await service.handle_text("alice", "nginx")
        upstream.put_status = None
        upstream.messages.clear()

        result = await service.handle_text("bob", "nginx")
        assert result.status is SyncStatus.REPUBLISHED
        assert result.added == []
        assert result.commit_sha == commit_sha(1)
        assert upstream.files[PATH][0] == NGINX_LINE + "\n"
        assert upstream.writes[-1]["message"].startswith("chore: republish 1 pending")
        assert "already queued" in upstream.texts[-1]
        assert service.queue.is_empty()
        await service.tracker.shutdown()

    async def test_owner_of_failed_publish_hears_outcome(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        upstream.put_status = 502
        first = await service.handle_text("alice", "nginx")
        assert first.status is SyncStatus.PUBLISH_FAILED
        upstream.put_status = None
        upstream.set_runs([make_run(11, head_sha=commit_sha(1))])
        upstream.messages.clear()

        result = await service.handle_text("bob", "redis")
        assert result.status is SyncStatus.QUEUED
        assert result.recipients == {"alice": 1, "bob": 1}
        assert upstream.files[PATH][0].splitlines() == [
            NGINX_LINE,
            f"redis:latest to {TEST_REGISTRY}/{TEST_NAMESPACE}/redis:latest",
        ]
        assert not service.queue.owners_path.exists()

        await service.tracker.drain()
        finished = [
            (m["touser"], m["text"]["content"])
            for m in upstream.messages
            if "Image sync finished" in m["text"]["content"]
        ]
        assert sorted(user for user, _ in finished) == ["alice", "bob"]
        assert all("Synced: 1 image(s)" in text for _, text in finished)
        assert [m["touser"] for m in upstream.messages].count("alice") == 1

    async def test_leftover_line_without_new_work_is_republished(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        service.queue.enqueue([build_request("nginx", TEST_REGISTRY, TEST_NAMESPACE)])
        result = await service.handle_text("alice", "nginx")
        assert result.status is SyncStatus.REPUBLISHED
        assert result.recipients == {"alice": 1}
        await service.tracker.shutdown()

    async def test_busy_lock(self, service: SyncService, upstream: FakeUpstream) -> None:
        await service.lock.acquire()
        try:
            result = await service.handle_text("alice", "nginx")
        finally:
            service.lock.release()

        assert result.status is SyncStatus.BUSY
        assert service.queue.is_empty()
        assert "Another sync request" in upstream.texts[-1]
        assert upstream.writes == []

    async def test_unexpected_error_reported(
        self, service: SyncService, upstream: FakeUpstream, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken_enqueue(requests: object, owner: str | None = None) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(service.queue, "enqueue", broken_enqueue)
        result = await service.handle_text("alice", "nginx")
        assert result.status is SyncStatus.ERROR
        assert "disk full" in upstream.texts[-1]
        assert not service.lock.locked

    async def test_platform_in_confirmation(
        self, service: SyncService, upstream: FakeUpstream
    ) -> None:
        await service.handle_text("alice", "--platform=linux/arm64 nginx")
        assert "Platform: linux/arm64" in upstream.texts[0]
        assert upstream.files[PATH][0].startswith("--platform=linux/arm64 nginx:latest to ")
        await service.tracker.shutdown()


class TestConcurrentMessages:
    @pytest.fixture
    def patient_service(self, service: SyncService, tmp_path: Path) -> SyncService:
        lock_path = tmp_path / "images.txt.lock"
        service.lock = QueueLock(lock_path, retry_count=500, retry_interval=0.002)
        return service

    async def test_every_line_published_exactly_once(
        self, patient_service: SyncService, upstream: FakeUpstream
    ) -> None:
        users = [f"user{i}" for i in range(8)]
        results = await asyncio.gather(
            *(
                patient_service.handle_text(user, f"{user}-a {user}-b:1 {user}-a")
                for user in users
            )
        )

        assert all(r.status is SyncStatus.QUEUED for r in results)
        expected = {
            request.line
            for user in users
            for request in parse_message(f"{user}-a {user}-b:1", TEST_REGISTRY, TEST_NAMESPACE)
        }
        assert sum(len(r.added) for r in results) == len(expected)
        assert sum(len(r.skipped) for r in results) == len(users)

        published: list[str] = []
        for write in upstream.writes:
            published.extend(
                line for line in base64.b64decode(write["content"]).decode().splitlines() if line
            )
        assert sorted(published) == sorted(expected)
        assert len(upstream.writes) == upstream.commits
        assert patient_service.queue.is_empty()
        assert not patient_service.lock.locked
        await patient_service.tracker.shutdown()
