"""Publisher: writes the pending queue to the repository and resets it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from imagesync.exceptions import GitHubAPIError, PublishError
from imagesync.services.github_service import RemoteFile

if TYPE_CHECKING:
    from imagesync.services.github_service import GitHubClient
    from imagesync.services.queue_service import PendingQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    """Remote state after a successful publish."""

    remote: RemoteFile
    commit_sha: str
    created: bool


class Publisher:
    """Publishes the pending queue file to ``path`` on ``branch``.

    Must be called while the queue lock is held: the queue content that is
    read, published, and reset has to be the same.
    """

    def __init__(self, github: GitHubClient, queue: PendingQueue, path: str, branch: str) -> None:
        self.github = github
        self.queue = queue
        self.path = path
        self.branch = branch

    async def publish(self, commit_message: str) -> PublishResult:
        """Write the queue to the remote file, then empty the local queue.

        Raises PublishError when the remote write fails; the local queue is
        left untouched in that case.
        """
        content = self.queue.read_content()
        try:
            current = await self.github.get_file(self.path, ref=self.branch)
            previous_sha = current.sha if current is not None else None
            commit = await self.github.put_file(
                self.path, content, branch=self.branch, message=commit_message, sha=previous_sha
            )
        except GitHubAPIError as exc:
            logger.error("Publishing %s failed: %s", self.path, exc)
            raise PublishError(str(exc)) from exc
        except httpx.HTTPError as exc:
            logger.error("Publishing %s failed: %s: %s", self.path, type(exc).__name__, exc)
            raise PublishError(f"Could not reach GitHub: {exc}") from exc

        self.queue.reset()
        logger.info(
            "Published %s (%s, commit %s)",
            self.path,
            "created" if previous_sha is None else "updated",
            commit.commit_sha[:7],
        )
        return PublishResult(
            remote=RemoteFile(path=self.path, content=content, sha=commit.file_sha),
            commit_sha=commit.commit_sha,
            created=previous_sha is None,
        )
