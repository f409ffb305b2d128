"""Application-level exception types.

Convention:
- ``AuthenticationError``: the callback signature did not match. The request
  is rejected and never processed.
- ``DecryptionError``: the envelope could not be opened. Processing is
  skipped but the callback is still acknowledged so the platform does not
  redeliver it.
- ``QueueBusyError``: the pending-queue lock could not be acquired within the
  retry budget. Nothing was enqueued.
- ``PublishError``: writing the queue to the remote repository failed. The
  local queue is left untouched for the next attempt.
- ``PollError`` / ``GitHubAPIError``: transient failures while talking to
  GitHub. The completion tracker swallows them and retries.
- ``WeChatAPIError``: the messaging API rejected a call. Notifications log it
  and report ``False`` instead of raising.

A poll timeout is not an exception: it is a terminal outcome of its own.
"""

from __future__ import annotations


class ImageSyncError(Exception):
    """Base class for errors raised by the sync pipeline."""


class AuthenticationError(ImageSyncError):
    """Raised when a callback signature does not match the shared token."""


class DecryptionError(ImageSyncError):
    """Raised when an encrypted callback envelope cannot be decrypted."""


class QueueBusyError(ImageSyncError):
    """Raised when the pending-queue lock stays held past the retry budget."""


class PublishError(ImageSyncError):
    """Raised when the pending queue could not be written to the remote store."""


class PollError(ImageSyncError):
    """Raised for a failed poll of the remote job-status endpoint."""


class GitHubAPIError(PollError):
    """Raised when the GitHub REST API answers with an unexpected status.

    Carries the HTTP status code so callers can tell "not found" apart from
    real failures.
    """

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"GitHub API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class WeChatAPIError(ImageSyncError):
    """Raised when the WeChat Work API returns a non-zero ``errcode``."""

    def __init__(self, errcode: int, errmsg: str) -> None:
        super().__init__(f"WeChat API error {errcode}: {errmsg}")
        self.errcode = errcode
        self.errmsg = errmsg
