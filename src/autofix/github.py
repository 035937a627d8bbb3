"""Minimal GitHub REST client covering what an autofix run needs."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

from .errors import AutofixError
from .utils.retry import is_transient_status, retry_transient

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
COMMENT_CHUNK_SIZE = 60_000

# (method, url, headers, body, timeout) -> (status, response body)
Transport = Callable[[str, str, Dict[str, str], Optional[bytes], float], Tuple[int, bytes]]


class GitHubAPIError(AutofixError):
    """Raised when the GitHub API rejects a request."""

    def __init__(self, message: str, *, status: int | None = None, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.status = status


class GitHubTransientError(GitHubAPIError):
    """Rate limits, timeouts and server errors; retried before surfacing."""


@dataclass(slots=True, frozen=True)
class GitHubIssue:
    number: int
    title: str
    body: str
    labels: Tuple[str, ...] = ()
    html_url: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "GitHubIssue":
        labels: List[str] = []
        for entry in payload.get("labels") or []:
            name = entry if isinstance(entry, str) else (entry or {}).get("name")
            if isinstance(name, str):
                labels.append(name)
        return cls(
            number=int(payload.get("number") or 0),
            title=str(payload.get("title") or ""),
            body=str(payload.get("body") or ""),
            labels=tuple(labels),
            html_url=str(payload.get("html_url") or ""),
        )


@dataclass(slots=True, frozen=True)
class PullRequest:
    number: int
    html_url: str


def chunk_text(text: str, limit: int = COMMENT_CHUNK_SIZE) -> List[str]:
    """Split ``text`` into pieces of at most ``limit`` characters.

    Splits prefer line boundaries; a single overlong line is cut hard.
    """

    if limit <= 0:
        raise ValueError("limit must be positive")
    if len(text) <= limit:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return chunks


def _urllib_transport(
    method: str,
    url: str,
    headers: Dict[str, str],
    body: Optional[bytes],
    timeout: float,
) -> Tuple[int, bytes]:
    import socket
    import urllib.error
    import urllib.request

    request = urllib.request.Request(url, data=body, headers=headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status, response.read()
    except urllib.error.HTTPError as error:
        return error.code, error.read() or b""
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as error:
        raise GitHubTransientError(f"{method} {url} failed: {error}") from error


class GitHubClient:
    """Issue, branch, comment and pull-request calls against the REST API."""

    def __init__(
        self,
        token: str | None,
        *,
        api_url: str = DEFAULT_API_URL,
        transport: Transport | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token = (token or "").strip() or None
        self._api_url = api_url.rstrip("/")
        self._transport = transport or _urllib_transport
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay
        self._sleep = sleep

    # ------------------------------------------------------------------ transport

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "issue-autofix",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _send(self, method: str, path: str, payload: Any | None) -> Tuple[int, Any]:
        url = f"{self._api_url}{path}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        headers = self._headers()
        if body is not None:
            headers["Content-Type"] = "application/json"

        status, raw = self._transport(method, url, headers, body, self._timeout)
        text = raw.decode("utf-8", errors="replace") if raw else ""
        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            data = text

        if 200 <= status < 300:
            return status, data

        message = data.get("message") if isinstance(data, dict) else text
        summary = f"GitHub API {method} {path} returned {status}: {message or 'no message'}"
        rate_limited = status == 403 and "rate limit" in str(message).lower()
        if is_transient_status(status) or rate_limited:
            raise GitHubTransientError(summary, status=status)
        raise GitHubAPIError(summary, status=status, details={"path": path})

    def _request(self, method: str, path: str, payload: Any | None = None) -> Tuple[int, Any]:
        return retry_transient(
            lambda: self._send(method, path, payload),
            is_transient=lambda error: isinstance(error, GitHubTransientError),
            max_attempts=self._max_attempts,
            base_delay=self._retry_delay,
            max_delay=self._max_retry_delay,
            sleep=self._sleep,
            label=f"GitHub {method} {path}",
        )

    # ------------------------------------------------------------------ endpoints

    def get_issue(self, owner: str, repo: str, number: int) -> GitHubIssue:
        _, data = self._request("GET", f"/repos/{owner}/{repo}/issues/{number}")
        if not isinstance(data, dict):
            raise GitHubAPIError(f"Unexpected issue payload for {owner}/{repo}#{number}.")
        return GitHubIssue.from_payload(data)

    def get_default_branch(self, owner: str, repo: str) -> str:
        _, data = self._request("GET", f"/repos/{owner}/{repo}")
        branch = data.get("default_branch") if isinstance(data, dict) else None
        if not isinstance(branch, str) or not branch:
            raise GitHubAPIError(f"Repository {owner}/{repo} did not report a default branch.")
        return branch

    def branch_exists(self, owner: str, repo: str, branch: str) -> bool:
        try:
            self._request("GET", f"/repos/{owner}/{repo}/branches/{quote(branch, safe='')}")
        except GitHubAPIError as error:
            if error.status == 404:
                return False
            raise
        return True

    def create_comment(self, owner: str, repo: str, number: int, body: str) -> int:
        """Post ``body`` on the issue, split into numbered parts when oversized.

        Returns the number of comments created.
        """

        chunks = chunk_text(body)
        total = len(chunks)
        for index, chunk in enumerate(chunks, start=1):
            text = chunk if total == 1 else f"(part {index}/{total})\n\n{chunk}"
            self._request("POST", f"/repos/{owner}/{repo}/issues/{number}/comments", {"body": text})
        LOGGER.info("Posted %d comment(s) on %s/%s#%d", total, owner, repo, number)
        return total

    def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        head: str,
        base: str,
        body: str,
    ) -> PullRequest:
        _, data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            {"title": title, "head": head, "base": base, "body": body},
        )
        if not isinstance(data, dict) or not data.get("html_url"):
            raise GitHubAPIError("Pull request creation returned no URL.")
        return PullRequest(number=int(data.get("number") or 0), html_url=str(data["html_url"]))


__all__ = [
    "COMMENT_CHUNK_SIZE",
    "GitHubAPIError",
    "GitHubClient",
    "GitHubIssue",
    "GitHubTransientError",
    "PullRequest",
    "chunk_text",
]
