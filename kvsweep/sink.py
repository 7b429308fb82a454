"""
Archive sinks: durable destinations for finished CSV backups.

Every sink offers one call, upsert(path, content, message), which overwrites
whatever is stored at `path`. The GitHub sink commits the file through the
repository contents API; the directory sink writes to local disk.
"""

import base64
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol
import time

import requests

from .config import MaintenanceConfig
from .errors import ConfigurationError, TransientIOError
from .logger import get_logger
from .retry import RetryError, exponential_backoff, should_retry_http_status

logger = get_logger()


@dataclass
class UpsertResult:
    success: bool
    error: Optional[str] = None
    sha: Optional[str] = None
    url: Optional[str] = None


class ArchiveSink(Protocol):
    def upsert(self, path: str, content: str, message: str) -> UpsertResult: ...


class _RetryableStatus(Exception):
    def __init__(self, response: requests.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class GitHubArchiveSink:
    """Commits archives to a GitHub repository via the contents API."""

    API_ROOT = "https://api.github.com"

    def __init__(
        self,
        token: Optional[str],
        owner: Optional[str],
        repo: Optional[str],
        branch: str = "main",
        session: Optional[requests.Session] = None,
        timeout: float = 5.0,
        # a flush runs inside one time-boxed invocation
        max_retries: int = 2,
        base_delay: float = 0.05,
        max_delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.token = token
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def _check_configured(self) -> None:
        if not self.token:
            raise ConfigurationError("GITHUB_TOKEN is not configured")
        if not self.owner:
            raise ConfigurationError("GITHUB_OWNER is not configured")
        if not self.repo:
            raise ConfigurationError("GITHUB_BACKUP_REPO is not configured")

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "kvsweep",
        }

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        @exponential_backoff(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exceptions=(requests.exceptions.Timeout, requests.exceptions.ConnectionError, _RetryableStatus),
            on_retry=lambda attempt, e, delay: logger.warning(
                "GitHub request retrying", method=method, attempt=attempt, error=str(e), delay=delay
            ),
            sleep=self._sleep,
        )
        def send() -> requests.Response:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            if should_retry_http_status(resp.status_code):
                raise _RetryableStatus(resp)
            return resp

        try:
            return send()
        except RetryError as e:
            raise TransientIOError(f"GitHub {method} {url} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientIOError(f"GitHub {method} {url} error: {e}") from e

    def _contents_url(self, path: str) -> str:
        return f"{self.API_ROOT}/repos/{self.owner}/{self.repo}/contents/{path}"

    def _existing_sha(self, path: str) -> Optional[str]:
        resp = self._request("GET", self._contents_url(path), params={"ref": self.branch})
        if resp.status_code == 404:
            return None
        if resp.status_code in (401, 403):
            raise ConfigurationError(f"GitHub rejected credentials ({resp.status_code})")
        if not resp.ok:
            raise TransientIOError(f"GitHub GET {path} failed ({resp.status_code})")
        return resp.json().get("sha")

    def upsert(self, path: str, content: str, message: str) -> UpsertResult:
        self._check_configured()

        sha = self._existing_sha(path)
        body = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            body["sha"] = sha

        resp = self._request("PUT", self._contents_url(path), json=body)
        if resp.status_code == 401:
            raise ConfigurationError("Invalid GitHub token - please check GITHUB_TOKEN")
        if resp.status_code == 403:
            raise ConfigurationError("GitHub token lacks permissions - ensure it has repo write access")
        if resp.status_code == 404:
            raise ConfigurationError(
                f"Repository {self.owner}/{self.repo} not found or branch {self.branch} does not exist"
            )
        if not resp.ok:
            try:
                error = resp.json().get("message") or f"GitHub API error: {resp.status_code}"
            except ValueError:
                error = f"GitHub API error: {resp.status_code}"
            logger.error("GitHub upsert failed", path=path, status=resp.status_code, error=error)
            return UpsertResult(success=False, error=error)

        content_info = resp.json().get("content") or {}
        logger.info("Archive committed to GitHub", path=path, sha=content_info.get("sha"))
        return UpsertResult(success=True, sha=content_info.get("sha"), url=content_info.get("html_url"))


class DirectoryArchiveSink:
    """Writes archives below a local directory; the message is ignored."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def upsert(self, path: str, content: str, message: str) -> UpsertResult:
        target = self.root / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        except OSError as e:
            raise TransientIOError(f"Cannot write archive {target}: {e}") from e
        logger.info("Archive written", path=str(target), commit_message=message)
        return UpsertResult(success=True, url=str(target))


def build_sink(config: MaintenanceConfig) -> ArchiveSink:
    """Local directory sink when KVSWEEP_ARCHIVE_DIR is set, GitHub otherwise."""
    if config.archive_dir is not None:
        return DirectoryArchiveSink(config.archive_dir)
    return GitHubArchiveSink(
        token=config.github_token,
        owner=config.github_owner,
        repo=config.github_backup_repo,
        branch=config.github_backup_branch,
    )
