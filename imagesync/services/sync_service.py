"""Sync pipeline: parse a chat message, queue it, publish it, and follow up."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from imagesync.exceptions import PublishError, QueueBusyError
from imagesync.services import messages
from imagesync.services.parser_service import parse_message, usage_text

if TYPE_CHECKING:
    from imagesync.services.parser_service import SyncRequest
    from imagesync.services.publish_service import Publisher, PublishResult
    from imagesync.services.queue_service import PendingQueue, QueueLock
    from imagesync.services.tracker_service import CompletionTracker
    from imagesync.services.wechat_service import Notifier

logger = logging.getLogger(__name__)


class SyncStatus(StrEnum):
    """How a message was handled."""

    USAGE = "usage"
    QUEUED = "queued"
    REPUBLISHED = "republished"
    BUSY = "busy"
    PUBLISH_FAILED = "publish_failed"
    ERROR = "error"


@dataclass
class SyncResult:
    """Outcome of handling one message."""

    status: SyncStatus
    requests: list[SyncRequest] = field(default_factory=list)
    added: list[SyncRequest] = field(default_factory=list)
    skipped: list[SyncRequest] = field(default_factory=list)
    commit_sha: str | None = None
    recipients: dict[str, int] = field(default_factory=dict)


def commit_message(added: list[SyncRequest]) -> str:
    """Commit message for publishing newly queued requests."""
    noun = "task" if len(added) == 1 else "tasks"
    header = f"feat: add {len(added)} image sync {noun}"
    return header + "\n\n" + "\n".join(request.source_image for request in added)


class SyncService:
    """Runs one chat message through parse, enqueue, publish, and tracking.

    The lock is held across enqueue and publish so that no other request can
    append to a queue that is about to be reset.
    """

    def __init__(
        self,
        *,
        registry: str,
        namespace: str,
        queue: PendingQueue,
        lock: QueueLock,
        publisher: Publisher,
        tracker: CompletionTracker,
        notifier: Notifier,
    ) -> None:
        self.registry = registry
        self.namespace = namespace
        self.queue = queue
        self.lock = lock
        self.publisher = publisher
        self.tracker = tracker
        self.notifier = notifier

    async def _enqueue_and_publish(
        self, user_id: str, requests: list[SyncRequest], result: SyncResult
    ) -> PublishResult:
        async with self.lock.hold():
            enqueued = self.queue.enqueue(requests, owner=user_id)
            result.added = enqueued.added
            result.skipped = enqueued.skipped
            pending = self.queue.read_lines()
            result.recipients = self.queue.recipients(pending, fallback=user_id)
            if enqueued.added:
                message = commit_message(enqueued.added)
            else:
                # Every line is left over from an earlier publish that failed.
                logger.info("Retrying publish of %d pending line(s)", len(pending))
                message = f"chore: republish {len(pending)} pending image sync line(s)"
            return await self.publisher.publish(message)

    async def handle_text(self, user_id: str, content: str) -> SyncResult:
        """Handle a text message from ``user_id``; every outcome is reported to the user."""
        requests = parse_message(content, self.registry, self.namespace)
        if not requests:
            logger.info("No image references in message from %s", user_id)
            await self.notifier.send_message(user_id, usage_text(self.registry, self.namespace))
            return SyncResult(SyncStatus.USAGE)

        logger.info("Parsed %d sync request(s) from %s", len(requests), user_id)
        result = SyncResult(SyncStatus.QUEUED, requests=requests)
        await self.notifier.send_message(user_id, messages.confirmation(requests))

        try:
            published = await self._enqueue_and_publish(user_id, requests, result)
        except QueueBusyError:
            logger.warning("Queue busy, dropping request from %s", user_id)
            await self.notifier.send_message(user_id, messages.busy())
            result.status = SyncStatus.BUSY
            return result
        except PublishError as exc:
            await self.notifier.send_message(user_id, messages.publish_failed(str(exc)))
            result.status = SyncStatus.PUBLISH_FAILED
            return result
        except Exception as exc:
            logger.exception("Unexpected error handling sync request from %s", user_id)
            await self.notifier.send_message(user_id, messages.unexpected_error(str(exc)))
            result.status = SyncStatus.ERROR
            return result

        result.commit_sha = published.commit_sha
        if result.added:
            await self.notifier.send_message(
                user_id, messages.queued(len(result.added), len(result.skipped))
            )
        else:
            result.status = SyncStatus.REPUBLISHED
            await self.notifier.send_message(user_id, messages.republished(len(result.skipped)))

        self.tracker.start(result.recipients, published.commit_sha)
        return result
