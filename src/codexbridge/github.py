from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
HTTP_TIMEOUT = 30.0

_REMOTE_PATTERNS = (
    re.compile(r"^git@github\.com:(?P<slug>[^/]+/[^/]+?)(?:\.git)?/?$"),
    re.compile(r"^(?:https?|ssh|git)://(?:[^@/]+@)?github\.com(?::\d+)?/(?P<slug>[^/]+/[^/]+?)(?:\.git)?/?$"),
)


class GitHubError(RuntimeError):
    """Raised when a GitHub API call fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class PullRequest:
    number: int
    url: str
    title: str


@dataclass(slots=True)
class WorkflowRun:
    name: str
    status: str
    conclusion: str | None
    url: str

    def summary(self) -> str:
        result = self.conclusion or self.status
        return f"- {self.name}: {result}"


def parse_github_slug(remote_url: str) -> str | None:
    url = str(remote_url or "").strip()
    for pattern in _REMOTE_PATTERNS:
        match = pattern.match(url)
        if match:
            return match.group("slug")
    return None


class GitHubClient:
    def __init__(
        self,
        token: str,
        api_base: str = GITHUB_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @property
    def configured(self) -> bool:
        return bool(self.token.strip())

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers=self.headers,
            timeout=HTTP_TIMEOUT,
            transport=self.transport,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:500]
        message = str(payload.get("message", "")) if isinstance(payload, dict) else ""
        errors = payload.get("errors") if isinstance(payload, dict) else None
        if isinstance(errors, list):
            details = [
                str(item.get("message") or item.get("code"))
                for item in errors
                if isinstance(item, dict)
            ]
            if details:
                message = f"{message}: {'; '.join(details)}"
        return message or f"HTTP {response.status_code}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if not self.configured:
            raise GitHubError("GitHub token is not configured.")
        async with self._client() as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                raise GitHubError(f"GitHub request failed: {exc}") from exc
        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning("GitHub %s %s failed: %s %s", method, path, response.status_code, message)
            raise GitHubError(
                f"GitHub API error {response.status_code}: {message}",
                status_code=response.status_code,
            )
        return response.json()

    async def create_pull_request(
        self,
        slug: str,
        *,
        head: str,
        base: str,
        title: str,
        body: str = "",
    ) -> PullRequest:
        payload = await self._request(
            "POST",
            f"/repos/{slug}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        return PullRequest(
            number=int(payload.get("number", 0)),
            url=str(payload.get("html_url", "")),
            title=str(payload.get("title", title)),
        )

    async def list_workflow_runs(
        self,
        slug: str,
        *,
        branch: str | None = None,
        limit: int = 5,
    ) -> list[WorkflowRun]:
        params: dict[str, Any] = {"per_page": limit}
        if branch:
            params["branch"] = branch
        payload = await self._request("GET", f"/repos/{slug}/actions/runs", params=params)
        runs = payload.get("workflow_runs", []) if isinstance(payload, dict) else []
        return [
            WorkflowRun(
                name=str(run.get("name") or run.get("display_title") or "workflow"),
                status=str(run.get("status") or "unknown"),
                conclusion=run.get("conclusion"),
                url=str(run.get("html_url") or ""),
            )
            for run in runs
            if isinstance(run, dict)
        ]
