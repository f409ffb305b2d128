"""Completion tracker: follows the workflow run triggered by a publish."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import httpx

from imagesync.exceptions import PollError
from imagesync.services import messages

if TYPE_CHECKING:
    from collections.abc import Mapping

    from imagesync.services.github_service import GitHubClient, JobRun
    from imagesync.services.wechat_service import Notifier

logger = logging.getLogger(__name__)


class OutcomeKind(StrEnum):
    """Terminal states of a tracking task."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True)
class TrackOutcome:
    """How tracking ended, with the last run seen (if any)."""

    kind: OutcomeKind
    run: JobRun | None = None


def outcome_for_run(run: JobRun) -> TrackOutcome:
    """Map a completed run's conclusion onto an outcome."""
    if run.conclusion == "success":
        return TrackOutcome(OutcomeKind.SUCCESS, run)
    if run.conclusion == "cancelled":
        return TrackOutcome(OutcomeKind.CANCELLED, run)
    return TrackOutcome(OutcomeKind.FAILURE, run)


class CompletionTracker:
    """Polls GitHub Actions until the latest run completes or time runs out.

    Each call to ``start`` spawns an independent task with its own deadline.
    Tasks share nothing but the HTTP client and are only kept here so they
    can be cancelled on shutdown.
    """

    def __init__(
        self,
        github: GitHubClient,
        notifier: Notifier,
        poll_interval: float = 10.0,
        poll_timeout: float = 300.0,
        start_delay: float = 5.0,
        runs_per_page: int = 5,
    ) -> None:
        self.github = github
        self.notifier = notifier
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.start_delay = start_delay
        self.runs_per_page = runs_per_page
        self._tasks: set[asyncio.Task[TrackOutcome]] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def _latest_run(self, head_sha: str | None) -> JobRun | None:
        """Return the most recent relevant run, or None if there is none yet or polling failed."""
        try:
            runs = await self.github.list_runs(per_page=self.runs_per_page, head_sha=head_sha)
        except (PollError, httpx.HTTPError) as exc:
            logger.warning("Polling workflow runs failed, will retry: %s", exc)
            return None
        if head_sha:
            runs = [run for run in runs if run.head_sha == head_sha]
        return runs[0] if runs else None

    async def wait_for_completion(self, head_sha: str | None = None) -> TrackOutcome:
        """Poll until a terminal run is seen or ``poll_timeout`` elapses.

        When ``head_sha`` is given only runs for that commit are considered,
        so a run finished before the publish is never mistaken for this one.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout
        if self.start_delay > 0:
            await asyncio.sleep(min(self.start_delay, self.poll_timeout))

        last_run: JobRun | None = None
        while True:
            run = await self._latest_run(head_sha)
            if run is not None:
                last_run = run
                logger.info(
                    "Workflow run #%d: %s - %s",
                    run.number,
                    run.status,
                    run.conclusion or "running",
                )
                if run.is_terminal:
                    return outcome_for_run(run)

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("Gave up waiting for workflow run after %.0fs", self.poll_timeout)
                return TrackOutcome(OutcomeKind.TIMEOUT, last_run)
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def track(self, recipients: Mapping[str, int], head_sha: str | None) -> TrackOutcome:
        """Wait for the run, then send each recipient exactly one notification.

        ``recipients`` maps user ids to the number of their lines in the
        published content.
        """
        try:
            result = await self.wait_for_completion(head_sha)
        except Exception:
            logger.exception("Tracking workflow run for %s failed", head_sha or "latest commit")
            result = TrackOutcome(OutcomeKind.ERROR)
        for user_id, synced in recipients.items():
            await self.notifier.send_message(user_id, messages.outcome(result, synced))
        return result

    def start(
        self, recipients: Mapping[str, int], head_sha: str | None
    ) -> asyncio.Task[TrackOutcome]:
        """Spawn a detached tracking task."""
        task = asyncio.create_task(
            self.track(dict(recipients), head_sha),
            name=f"track-run-{(head_sha or 'latest')[:7]}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> list[TrackOutcome]:
        """Wait for every outstanding tracking task to finish."""
        tasks = list(self._tasks)
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def shutdown(self) -> None:
        """Cancel outstanding tracking tasks."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d workflow tracking task(s)", len(tasks))
