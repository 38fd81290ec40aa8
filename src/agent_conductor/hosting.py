from __future__ import annotations

import logging
import os
from typing import Any

from .errors import ConfigurationError
from .http_client import request_json

logger = logging.getLogger(__name__)

_GITHUB_API = "https://api.github.com"


class GitHubClient:
    """``SourceHostingClient`` for one GitHub repository via the REST API."""

    def __init__(self, repository: str, token: str, *, api_url: str = _GITHUB_API) -> None:
        if "/" not in repository:
            raise ConfigurationError(f"repository must look like owner/name, got: {repository!r}")
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @classmethod
    def from_env(cls) -> "GitHubClient":
        """Build a client from GITHUB_REPOSITORY and GITHUB_TOKEN.

        Raises:
            ConfigurationError: If either variable is missing.
        """
        repository = os.getenv("GITHUB_REPOSITORY", "").strip()
        token = os.getenv("GITHUB_TOKEN", "").strip()
        if not repository or not token:
            raise ConfigurationError("GitHub access requires GITHUB_REPOSITORY and GITHUB_TOKEN")
        return cls(repository, token)

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.api_url}/repos/{self.repository}/{path}"
        response = request_json("POST", url, payload, self._headers)
        if not isinstance(response, dict):
            raise RuntimeError(f"unexpected response from {url}")
        return response

    def create_issue(self, title: str, body: str) -> str:
        response = self._post("issues", {"title": title, "body": body})
        logger.info("opened issue #%s in %s", response.get("number"), self.repository)
        return str(response.get("html_url", ""))

    def create_pull_request(self, title: str, body: str, head: str, base: str) -> str:
        response = self._post("pulls", {"title": title, "body": body, "head": head, "base": base})
        logger.info("opened pull request #%s in %s", response.get("number"), self.repository)
        return str(response.get("html_url", ""))

    def add_comment(self, ref: str, body: str) -> str:
        """Comment on an issue or pull request; ``ref`` is its number or html url."""
        number = ref.rstrip("/").rsplit("/", 1)[-1]
        if not number.isdigit():
            raise ValueError(f"cannot derive an issue number from {ref!r}")
        response = self._post(f"issues/{number}/comments", {"body": body})
        return str(response.get("html_url", ""))
