"""GitHub REST client: repository contents and Actions workflow runs."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from imagesync.exceptions import GitHubAPIError

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 15.0
_API_VERSION = "2022-11-28"


@dataclass(frozen=True)
class RemoteFile:
    """A file in the repository together with its current blob sha."""

    path: str
    content: str
    sha: str


@dataclass(frozen=True)
class FileCommit:
    """Result of a contents write: the new commit and the new blob sha."""

    commit_sha: str
    file_sha: str


@dataclass(frozen=True)
class JobRun:
    """A GitHub Actions workflow run."""

    id: int
    status: str
    conclusion: str | None
    url: str
    number: int
    head_sha: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status == "completed"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> JobRun:
        return cls(
            id=int(data["id"]),
            status=str(data.get("status") or ""),
            conclusion=data.get("conclusion"),
            url=str(data.get("html_url") or ""),
            number=int(data.get("run_number") or 0),
            head_sha=str(data.get("head_sha") or ""),
        )


class GitHubClient:
    """Thin async wrapper around the endpoints the sync pipeline needs.

    Args:
        token: Token with ``contents:write`` and ``actions:read`` on the repo.
        repo: Repository in ``owner/name`` form.
        api_base: REST API root, overridable for GitHub Enterprise.
        client: Optional pre-built ``httpx.AsyncClient`` (owned by the caller).
    """

    def __init__(
        self,
        token: str,
        repo: str,
        api_base: str = "https://api.github.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.repo = repo
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=_REQUEST_TIMEOUT)
        self._base = f"{api_base.rstrip('/')}/repos/{repo}"
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": _API_VERSION,
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.request(
            method, f"{self._base}{path}", headers=self._headers, **kwargs
        )

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            data = resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            message = str(data.get("message", ""))
        else:
            message = resp.text[:200]
        raise GitHubAPIError(resp.status_code, message or resp.reason_phrase)

    def _contents_path(self, path: str) -> str:
        return f"/contents/{quote(path.lstrip('/'))}"

    async def get_file(self, path: str, ref: str | None = None) -> RemoteFile | None:
        """Return the file at ``ref``, or None if it does not exist."""
        params = {"ref": ref} if ref else None
        resp = await self._request("GET", self._contents_path(path), params=params)
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp)
        data = resp.json()
        encoded = str(data.get("content") or "")
        content = base64.b64decode(encoded).decode("utf-8") if encoded else ""
        return RemoteFile(path=str(data.get("path") or path), content=content, sha=data["sha"])

    async def put_file(
        self,
        path: str,
        content: str,
        branch: str,
        message: str,
        sha: str | None = None,
    ) -> FileCommit:
        """Create or update a file.

        ``sha`` must be the current blob sha when the file already exists;
        omitting it makes the request a file creation.
        """
        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha is not None:
            payload["sha"] = sha
        resp = await self._request("PUT", self._contents_path(path), json=payload)
        self._raise_for_status(resp)
        data = resp.json()
        result = FileCommit(
            commit_sha=str(data["commit"]["sha"]),
            file_sha=str(data["content"]["sha"]),
        )
        logger.info("Committed %s to %s@%s (%s)", path, self.repo, branch, result.commit_sha[:7])
        return result

    async def list_runs(self, per_page: int = 1, head_sha: str | None = None) -> list[JobRun]:
        """Return the most recent workflow runs, newest first."""
        params: dict[str, Any] = {"per_page": per_page}
        if head_sha:
            params["head_sha"] = head_sha
        resp = await self._request("GET", "/actions/runs", params=params)
        self._raise_for_status(resp)
        return [JobRun.from_api(run) for run in resp.json().get("workflow_runs", [])]

    async def get_run(self, run_id: int) -> JobRun:
        resp = await self._request("GET", f"/actions/runs/{run_id}")
        self._raise_for_status(resp)
        return JobRun.from_api(resp.json())
