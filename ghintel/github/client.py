"""GitHub API client implementation."""
import os
from datetime import datetime, timedelta, timezone
from functools import wraps
from itertools import islice
from typing import Optional, Callable, Any, List, Dict

import requests
from github import Auth, Github, GithubException, RateLimitExceededException, UnknownObjectException
from dotenv import load_dotenv

from common.logging import LoggingManager
from ghintel.errors import UpstreamError, UpstreamRateLimited, retry_on_failure
from ghintel.models.base import as_naive_utc

logger = LoggingManager.get_logger('ghintel.github_client')

SEARCH_RESULT_CAP = 1000  # GitHub never returns more than this for one search
# Samples stay within the first page (per_page=100) of each listing.
COMMIT_SAMPLE_CAP = 100
PR_SAMPLE_SIZE = 30
ISSUE_SAMPLE_SIZE = 50
ISSUE_SCAN_CAP = 100

# REST requests each endpoint makes. Repository handles are lazy, so the
# lookup itself costs nothing; get_releases also asks for the total count.
ENDPOINT_REQUESTS = {
    "get_commit_activity": 1,
    "get_releases": 2,
    "get_pull_request_metrics": 1,
    "get_issue_metrics": 1,
    "get_readme": 1,
}


def _retry_after_ms(headers: Optional[dict]) -> Optional[int]:
    if not headers:
        return None
    headers = {k.lower(): v for k, v in headers.items()}
    if headers.get("retry-after"):
        try:
            return int(float(headers["retry-after"]) * 1000)
        except ValueError:
            return None
    if headers.get("x-ratelimit-reset"):
        try:
            reset = int(headers["x-ratelimit-reset"])
        except ValueError:
            return None
        return max(0, int((reset - datetime.now(timezone.utc).timestamp()) * 1000))
    return None


def translate_github_errors(func: Callable) -> Callable:
    """Re-raise PyGithub and transport failures as UpstreamError subclasses.

    PyGithub pages lazily, so the whole method body runs inside the
    translation, not just the first request.
    """

    @wraps(func)
    def wrapper(*args, **kwargs) -> Any:
        try:
            return func(*args, **kwargs)
        except RateLimitExceededException as e:
            raise UpstreamRateLimited("github", e.status, e.data,
                                      retry_after_ms=_retry_after_ms(e.headers)) from e
        except GithubException as e:
            message = str(e.data).lower() if e.data else ""
            if e.status in (403, 429) and "rate limit" in message:
                raise UpstreamRateLimited("github", e.status, e.data,
                                          retry_after_ms=_retry_after_ms(e.headers)) from e
            raise UpstreamError("github", e.status, e.data) from e
        except requests.exceptions.RequestException as e:
            raise UpstreamError("github", None, str(e)) from e

    return wrapper


def repository_to_dict(repo) -> Dict[str, Any]:
    """Flatten a PyGithub Repository into the fields we persist."""
    return {
        "id": repo.id,
        "owner": repo.owner.login if repo.owner else repo.full_name.split("/")[0],
        "name": repo.name,
        "full_name": repo.full_name,
        "description": repo.description,
        "language": repo.language,
        "topics": list(repo.topics or []),
        "stars": repo.stargazers_count,
        "forks": repo.forks_count,
        "open_issues": repo.open_issues_count,
        "watchers": getattr(repo, "subscribers_count", None) or repo.watchers_count,
        "html_url": repo.html_url,
        "default_branch": repo.default_branch,
        "is_archived": bool(repo.archived),
        "is_fork": bool(repo.fork),
        "created_at": as_naive_utc(repo.created_at),
        "updated_at": as_naive_utc(repo.updated_at),
        "pushed_at": as_naive_utc(repo.pushed_at),
    }


class GitHubClient:
    """Client for interacting with the GitHub API."""

    def __init__(self, token: Optional[str] = None, timeout: int = 15, load_env: bool = True):
        """Initialize the GitHub client.

        Args:
            token: GitHub personal access token. If not provided, will try to load from GITHUB_TOKEN env var.
            timeout: Per-request timeout in seconds.
            load_env: Whether to load environment variables from .env file (default: True).
        """
        if load_env:
            load_dotenv()
        self.token = token or os.getenv("GITHUB_TOKEN")
        if not self.token:
            logger.error("GitHub token not found in environment variables")
            raise ValueError("GitHub token is required. Set GITHUB_TOKEN environment variable or pass token directly.")

        logger.info("Initializing GitHub client")
        # Retries are decided by retry_on_failure, not by PyGithub's urllib3 policy.
        self.gh = Github(auth=Auth.Token(self.token), per_page=100, timeout=timeout, retry=None)

    @retry_on_failure()
    @translate_github_errors
    def search_repositories(self, query: str, max_results: int = 100, sort: str = "stars") -> List[Dict[str, Any]]:
        """Search repositories and return at most `max_results` flattened results.

        Args:
            query: GitHub search query, e.g. "topic:llm stars:>10".
            max_results: Cap on returned repositories. GitHub itself stops at 1000.
            sort: Search sort key.
        """
        effective_max_results = min(max_results, SEARCH_RESULT_CAP)
        if max_results > SEARCH_RESULT_CAP:
            logger.warning(f"Requested max_results {max_results} exceeds GitHub API limit of {SEARCH_RESULT_CAP}.")
        logger.info(f"Executing repository search: '{query}'. Max results: {effective_max_results}.")

        results = []
        for repo in self.gh.search_repositories(query=query, sort=sort, order="desc"):
            results.append(repository_to_dict(repo))
            if len(results) >= effective_max_results:
                break
        logger.info(f"Finished collecting repositories for query '{query}'. Total collected: {len(results)}.")
        return results

    @retry_on_failure()
    @translate_github_errors
    def get_repository(self, full_name: str) -> Dict[str, Any]:
        """Fetch one repository by "owner/name" (or numeric id)."""
        logger.debug(f"Fetching repository: {full_name}")
        return repository_to_dict(self.gh.get_repo(full_name))

    @retry_on_failure()
    @translate_github_errors
    def get_commit_activity(self, full_name: str, days: int = 30) -> Dict[str, int]:
        """Commits and distinct authors on the default branch over the last `days` days."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        repo = self.gh.get_repo(full_name, lazy=True)
        commits = 0
        authors = set()
        for commit in repo.get_commits(since=since):
            commits += 1
            if commit.author is not None:
                authors.add(commit.author.login)
            elif commit.commit.author is not None:
                authors.add(commit.commit.author.email)
            if commits >= COMMIT_SAMPLE_CAP:
                break
        logger.debug(f"{full_name}: {commits} commits by {len(authors)} authors in {days} days")
        return {"commits_30d": commits, "commit_authors_30d": len(authors)}

    @retry_on_failure()
    @translate_github_errors
    def get_releases(self, full_name: str) -> Dict[str, Any]:
        repo = self.gh.get_repo(full_name, lazy=True)
        releases = repo.get_releases()
        count = releases.totalCount
        newest = releases.get_page(0)
        latest = None
        if newest:
            latest = as_naive_utc(newest[0].published_at or newest[0].created_at)
        return {"releases_count": count, "latest_release_at": latest}

    @retry_on_failure()
    @translate_github_errors
    def get_pull_request_metrics(self, full_name: str) -> Dict[str, Any]:
        """Merge rate and average time to merge over the most recently updated closed PRs."""
        repo = self.gh.get_repo(full_name, lazy=True)
        total = merged = 0
        merge_hours = []
        for pr in repo.get_pulls(state="closed", sort="updated", direction="desc"):
            total += 1
            if pr.merged_at is not None:
                merged += 1
                merge_hours.append((pr.merged_at - pr.created_at).total_seconds() / 3600)
            if total >= PR_SAMPLE_SIZE:
                break
        return {
            "prs_total": total,
            "prs_merged": merged,
            "avg_merge_hours": sum(merge_hours) / len(merge_hours) if merge_hours else None,
        }

    @retry_on_failure()
    @translate_github_errors
    def get_issue_metrics(self, full_name: str) -> Dict[str, Any]:
        """Close rate, response share and average time to close over recent issues (PRs excluded)."""
        repo = self.gh.get_repo(full_name, lazy=True)
        total = closed = responded = 0
        close_hours = []
        issues = repo.get_issues(state="all", sort="created", direction="desc")
        for issue in islice(issues, ISSUE_SCAN_CAP):
            if issue.pull_request is not None:
                continue
            total += 1
            if issue.comments > 0:
                responded += 1
            if issue.closed_at is not None:
                closed += 1
                close_hours.append((issue.closed_at - issue.created_at).total_seconds() / 3600)
            if total >= ISSUE_SAMPLE_SIZE:
                break
        return {
            "issues_total": total,
            "issues_closed": closed,
            "issues_with_response": responded,
            "avg_close_hours": sum(close_hours) / len(close_hours) if close_hours else None,
        }

    @retry_on_failure()
    @translate_github_errors
    def get_readme(self, full_name: str) -> Optional[str]:
        """README text, or None when the repository has none."""
        repo = self.gh.get_repo(full_name, lazy=True)
        try:
            readme = repo.get_readme()
        except UnknownObjectException:
            logger.debug(f"No README file found for {full_name}.")
            return None
        return readme.decoded_content.decode("utf-8", errors="ignore")

    @translate_github_errors
    def get_rate_limit_info(self) -> dict:
        """Gets current rate limit status for core and search."""
        rate_limits = self.gh.get_rate_limit()
        # Newer PyGithub releases nest the buckets under `resources`.
        resources = getattr(rate_limits, "resources", rate_limits)
        info = {}
        for bucket in ("core", "search"):
            limits = getattr(resources, bucket)
            reset_dt = limits.reset.replace(tzinfo=timezone.utc) if limits.reset.tzinfo is None else limits.reset
            info[bucket] = {
                "limit": limits.limit,
                "remaining": limits.remaining,
                "reset_time_unix": int(reset_dt.timestamp()),
                "reset_time_datetime": reset_dt,
            }
        logger.debug(f"Rate limit info: core {info['core']['remaining']}/{info['core']['limit']}, "
                     f"search {info['search']['remaining']}/{info['search']['limit']}")
        return info
