"""Pending queue: durable list of unpublished sync requests guarded by a lock file."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from imagesync.exceptions import QueueBusyError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Iterable
    from pathlib import Path

    from imagesync.services.parser_service import SyncRequest

logger = logging.getLogger(__name__)


class QueueLock:
    """Advisory lock represented by the existence of a marker file.

    The marker is created with ``O_CREAT | O_EXCL`` so that exactly one holder
    wins, across coroutines and processes alike. The holder's pid is written
    into the file for diagnosis only.
    """

    def __init__(self, path: Path, retry_count: int = 50, retry_interval: float = 0.2) -> None:
        if retry_count < 1:
            msg = f"retry_count must be >= 1, got {retry_count}"
            raise ValueError(msg)
        self.path = path
        self.retry_count = retry_count
        self.retry_interval = retry_interval

    @property
    def locked(self) -> bool:
        return self.path.exists()

    def holder(self) -> str | None:
        """Return the recorded holder id, or None when the lock is free."""
        try:
            return self.path.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{os.getpid()}\n")
        return True

    async def acquire(self) -> None:
        """Create the marker, retrying on a fixed interval. Raises QueueBusyError."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(self.retry_count):
            if self._try_create():
                if attempt:
                    logger.debug("Acquired queue lock after %d retries", attempt)
                return
            if attempt + 1 < self.retry_count:
                await asyncio.sleep(self.retry_interval)
        holder = self.holder()
        logger.warning(
            "Queue lock %s still held by %s after %d attempts",
            self.path,
            holder or "unknown",
            self.retry_count,
        )
        msg = f"Pending queue is busy (lock held by {holder or 'unknown'})"
        raise QueueBusyError(msg)

    def release(self) -> None:
        self.path.unlink(missing_ok=True)

    @asynccontextmanager
    async def hold(self) -> AsyncGenerator[None]:
        """Hold the lock for the duration of the block; released on every exit path."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def break_if_stale(self) -> bool:
        """Remove a marker whose recorded holder process no longer exists.

        Returns True when a stale marker was removed.
        """
        holder = self.holder()
        if holder is None or not holder.isdigit():
            return False
        pid = int(holder)
        if pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            logger.warning("Removing stale queue lock left by process %d", pid)
            self.release()
            return True
        except PermissionError:
            return False
        return False


@dataclass
class EnqueueResult:
    """Outcome of an enqueue call, in request order."""

    added: list[SyncRequest] = field(default_factory=list)
    skipped: list[SyncRequest] = field(default_factory=list)


def queue_lines(content: str) -> list[str]:
    lines = (line.strip() for line in content.splitlines())
    return [line for line in lines if line and not line.startswith("#")]


class PendingQueue:
    """Plain-text queue file, one request line per line.

    A JSON sidecar next to it records which users asked for each line, so that
    everyone whose lines go out in a publish hears how the run ended.

    Callers must hold the associated QueueLock around every method that reads
    for a decision or writes.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.owners_path = path.with_name(f"{path.name}.owners.json")

    def read_content(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def read_lines(self) -> list[str]:
        """Return queued request lines, without comments and blank lines."""
        return queue_lines(self.read_content())

    def is_empty(self) -> bool:
        return not self.read_lines()

    def read_owners(self) -> dict[str, list[str]]:
        """Return the recorded owners of each queued line."""
        try:
            data = json.loads(self.owners_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning("Ignoring unreadable owner file %s", self.owners_path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            str(line): [str(user) for user in users]
            for line, users in data.items()
            if isinstance(users, list)
        }

    def recipients(self, lines: Iterable[str], fallback: str) -> dict[str, int]:
        """Count ``lines`` per owner. Lines without a recorded owner count for ``fallback``."""
        owners = self.read_owners()
        counts: dict[str, int] = {}
        for line in lines:
            for user in owners.get(line) or [fallback]:
                counts[user] = counts.get(user, 0) + 1
        return counts

    def enqueue(
        self, requests: Iterable[SyncRequest], owner: str | None = None
    ) -> EnqueueResult:
        """Append requests whose line is not already queued.

        The file is read fresh on every call. A request is skipped when its
        canonical line matches an existing line exactly, including lines added
        earlier in the same call. When ``owner`` is given it is recorded for
        every requested line, skipped ones included.
        """
        content = self.read_content()
        present = set(queue_lines(content))
        result = EnqueueResult()
        new_lines: list[str] = []
        for request in requests:
            line = request.line
            if line in present:
                result.skipped.append(request)
                continue
            present.add(line)
            new_lines.append(line)
            result.added.append(request)

        if new_lines:
            if content and not content.endswith("\n"):
                content += "\n"
            content += "".join(f"{line}\n" for line in new_lines)
            self._write(content)
            logger.info(
                "Queued %d request(s), skipped %d duplicate(s)",
                len(result.added),
                len(result.skipped),
            )
        if owner:
            self._record_owner(owner, [r.line for r in [*result.added, *result.skipped]])
        return result

    def _record_owner(self, owner: str, lines: list[str]) -> None:
        owners = self.read_owners()
        changed = False
        for line in lines:
            users = owners.setdefault(line, [])
            if owner not in users:
                users.append(owner)
                changed = True
        if changed:
            _replace_file(self.owners_path, json.dumps(owners, ensure_ascii=False, indent=2))

    def reset(self) -> None:
        """Empty the queue and forget its owners after the content was published."""
        self._write("")
        self.owners_path.unlink(missing_ok=True)

    def _write(self, content: str) -> None:
        _replace_file(self.path, content)


def _replace_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(content, encoding="utf-8")
    os.replace(tmp_path, path)
