"""Tests for the GitHub client implementation."""
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch, MagicMock

import pytest
import requests
from github import GithubException, RateLimitExceededException, UnknownObjectException

from ghintel.errors import UpstreamError, UpstreamRateLimited, retry_on_failure
from ghintel.github.client import GitHubClient, repository_to_dict, translate_github_errors

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def mock_github():
    """Fixture to mock the GitHub client."""
    with patch("ghintel.github.client.Github") as mock:
        yield mock


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("ghintel.errors.time.sleep") as sleep:
        yield sleep


def make_repo(repo_id=1, full_name="acme/agentkit", stars=100, **overrides):
    owner, name = full_name.split("/")
    repo = MagicMock()
    repo.id = repo_id
    repo.owner.login = owner
    repo.name = name
    repo.full_name = full_name
    repo.description = "Agents"
    repo.language = "Python"
    repo.topics = ["llm"]
    repo.stargazers_count = stars
    repo.forks_count = 10
    repo.open_issues_count = 3
    repo.subscribers_count = 7
    repo.watchers_count = stars
    repo.html_url = f"https://github.com/{full_name}"
    repo.default_branch = "main"
    repo.archived = False
    repo.fork = False
    repo.created_at = CREATED
    repo.updated_at = CREATED + timedelta(days=30)
    repo.pushed_at = CREATED + timedelta(days=31)
    for key, value in overrides.items():
        setattr(repo, key, value)
    return repo


def test_init_with_token(mock_github):
    client = GitHubClient(token="test_token", load_env=False)
    assert client.token == "test_token"
    assert mock_github.call_args.kwargs["retry"] is None
    assert mock_github.call_args.kwargs["per_page"] == 100


def test_init_with_env_var(mock_github):
    with patch.dict(os.environ, {"GITHUB_TOKEN": "env_token"}):
        client = GitHubClient(load_env=False)
    assert client.token == "env_token"


def test_init_without_token():
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValueError) as excinfo:
            GitHubClient(load_env=False)
    assert "GitHub token is required" in str(excinfo.value)


def test_repository_to_dict_normalizes_timestamps():
    data = repository_to_dict(make_repo(archived=True))
    assert data["owner"] == "acme"
    assert data["stars"] == 100
    assert data["watchers"] == 7
    assert data["is_archived"] is True
    assert data["created_at"] == datetime(2024, 1, 1)
    assert data["created_at"].tzinfo is None


def test_search_respects_max_results(mock_github):
    mock_github.return_value.search_repositories.return_value = iter(
        [make_repo(i, f"acme/repo{i}") for i in range(5)])

    results = GitHubClient(token="t", load_env=False).search_repositories("topic:llm stars:>10", max_results=3)

    assert [r["full_name"] for r in results] == ["acme/repo0", "acme/repo1", "acme/repo2"]
    mock_github.return_value.search_repositories.assert_called_once_with(
        query="topic:llm stars:>10", sort="stars", order="desc")


def test_search_caps_at_github_limit(mock_github):
    mock_github.return_value.search_repositories.return_value = iter(
        [make_repo(i, f"acme/repo{i}") for i in range(1005)])
    results = GitHubClient(token="t", load_env=False).search_repositories("topic:ai", max_results=5000)
    assert len(results) == 1000


def test_get_repository(mock_github):
    mock_github.return_value.get_repo.return_value = make_repo(42, "acme/agentkit", stars=4200)
    data = GitHubClient(token="t", load_env=False).get_repository("acme/agentkit")
    assert data["id"] == 42
    assert data["stars"] == 4200


def test_not_found_is_upstream_error(mock_github):
    mock_github.return_value.get_repo.side_effect = UnknownObjectException(404, {"message": "Not Found"}, {})
    with pytest.raises(UpstreamError) as excinfo:
        GitHubClient(token="t", load_env=False).get_repository("acme/missing")
    assert excinfo.value.status == 404
    assert mock_github.return_value.get_repo.call_count == 1


def test_rate_limit_exception_is_translated(mock_github):
    reset = int((datetime.now(timezone.utc) + timedelta(seconds=120)).timestamp())
    mock_github.return_value.get_repo.side_effect = RateLimitExceededException(
        403, {"message": "API rate limit exceeded"}, {"x-ratelimit-reset": str(reset)})

    with pytest.raises(UpstreamRateLimited) as excinfo:
        GitHubClient(token="t", load_env=False).get_repository("acme/agentkit")

    assert excinfo.value.status == 403
    assert 0 < excinfo.value.retry_after_ms <= 120_000
    assert mock_github.return_value.get_repo.call_count == 1


def test_secondary_rate_limit_403_is_translated():
    @translate_github_errors
    def call():
        raise GithubException(403, {"message": "You have exceeded a secondary rate limit"}, {"Retry-After": "30"})

    with pytest.raises(UpstreamRateLimited) as excinfo:
        call()
    assert excinfo.value.retry_after_ms == 30_000


def test_server_error_is_retried_once(mock_github, no_sleep):
    mock_github.return_value.get_repo.side_effect = [
        GithubException(502, {"message": "Bad Gateway"}, {}),
        make_repo(),
    ]
    data = GitHubClient(token="t", load_env=False).get_repository("acme/agentkit")
    assert data["full_name"] == "acme/agentkit"
    assert mock_github.return_value.get_repo.call_count == 2
    no_sleep.assert_called_once()


def test_transport_failure_has_no_status(mock_github):
    mock_github.return_value.get_repo.side_effect = requests.exceptions.ConnectionError("reset")
    with pytest.raises(UpstreamError) as excinfo:
        GitHubClient(token="t", load_env=False).get_repository("acme/agentkit")
    assert excinfo.value.status is None
    assert mock_github.return_value.get_repo.call_count == 2


def test_commit_activity_counts_distinct_authors(mock_github):
    commits = []
    for login in ["ann", "bob", "ann", None]:
        commit = MagicMock()
        if login is None:
            commit.author = None
            commit.commit.author.email = "ci@example.com"
        else:
            commit.author.login = login
        commits.append(commit)
    mock_github.return_value.get_repo.return_value.get_commits.return_value = commits

    facts = GitHubClient(token="t", load_env=False).get_commit_activity("acme/agentkit")

    assert facts == {"commits_30d": 4, "commit_authors_30d": 3}


def test_releases(mock_github):
    release = SimpleNamespace(published_at=CREATED, created_at=CREATED)
    releases = MagicMock()
    releases.totalCount = 2
    releases.get_page.return_value = [release]
    mock_github.return_value.get_repo.return_value.get_releases.return_value = releases

    facts = GitHubClient(token="t", load_env=False).get_releases("acme/agentkit")

    assert facts == {"releases_count": 2, "latest_release_at": datetime(2024, 1, 1)}
    releases.get_page.assert_called_once_with(0)


def test_releases_empty(mock_github):
    releases = MagicMock()
    releases.totalCount = 0
    releases.get_page.return_value = []
    mock_github.return_value.get_repo.return_value.get_releases.return_value = releases

    facts = GitHubClient(token="t", load_env=False).get_releases("acme/agentkit")

    assert facts == {"releases_count": 0, "latest_release_at": None}


def test_pull_request_metrics(mock_github):
    pulls = [
        SimpleNamespace(created_at=CREATED, merged_at=CREATED + timedelta(hours=10)),
        SimpleNamespace(created_at=CREATED, merged_at=CREATED + timedelta(hours=20)),
        SimpleNamespace(created_at=CREATED, merged_at=None),
    ]
    mock_github.return_value.get_repo.return_value.get_pulls.return_value = pulls

    facts = GitHubClient(token="t", load_env=False).get_pull_request_metrics("acme/agentkit")

    assert facts == {"prs_total": 3, "prs_merged": 2, "avg_merge_hours": pytest.approx(15.0)}


def test_issue_metrics_skip_pull_requests(mock_github):
    issues = [
        SimpleNamespace(pull_request=None, comments=2, created_at=CREATED, closed_at=CREATED + timedelta(hours=4)),
        SimpleNamespace(pull_request=None, comments=0, created_at=CREATED, closed_at=None),
        SimpleNamespace(pull_request=object(), comments=5, created_at=CREATED, closed_at=CREATED),
    ]
    mock_github.return_value.get_repo.return_value.get_issues.return_value = issues

    facts = GitHubClient(token="t", load_env=False).get_issue_metrics("acme/agentkit")

    assert facts["issues_total"] == 2
    assert facts["issues_closed"] == 1
    assert facts["issues_with_response"] == 1
    assert facts["avg_close_hours"] == pytest.approx(4.0)


def test_readme_missing_returns_none(mock_github):
    mock_github.return_value.get_repo.return_value.get_readme.side_effect = UnknownObjectException(404, {}, {})
    assert GitHubClient(token="t", load_env=False).get_readme("acme/agentkit") is None


def test_readme_decoded(mock_github):
    mock_github.return_value.get_repo.return_value.get_readme.return_value.decoded_content = b"# AgentKit"
    assert GitHubClient(token="t", load_env=False).get_readme("acme/agentkit") == "# AgentKit"


@pytest.mark.parametrize("nested", [True, False])
def test_get_rate_limit_info(mock_github, nested):
    reset = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
    buckets = SimpleNamespace(core=SimpleNamespace(limit=5000, remaining=4200, reset=reset),
                              search=SimpleNamespace(limit=30, remaining=29, reset=reset.replace(tzinfo=None)))
    mock_github.return_value.get_rate_limit.return_value = (
        SimpleNamespace(resources=buckets) if nested else buckets)

    info = GitHubClient(token="t", load_env=False).get_rate_limit_info()

    assert info["core"]["remaining"] == 4200
    assert info["search"]["limit"] == 30
    assert info["search"]["reset_time_datetime"] == reset
    assert info["core"]["reset_time_unix"] == int(reset.timestamp())


def test_retry_on_failure_does_not_retry_client_errors():
    calls = []

    @retry_on_failure(max_retries=3, delay=0)
    def flaky():
        calls.append(1)
        raise UpstreamError("github", 422, {"message": "Validation Failed"})

    with pytest.raises(UpstreamError):
        flaky()
    assert len(calls) == 1


def test_retry_on_failure_gives_up_after_max_retries():
    calls = []

    @retry_on_failure(max_retries=2, delay=0)
    def broken():
        calls.append(1)
        raise UpstreamError("github", 500, "oops")

    with pytest.raises(UpstreamError):
        broken()
    assert len(calls) == 3


def test_retry_on_failure_skips_retry_past_time_budget(no_sleep):
    budgets = []

    @retry_on_failure(max_retries=1, delay=1.0)
    def slow(time_budget=None):
        budgets.append(time_budget)
        raise UpstreamError("claude", 503, "overloaded")

    with pytest.raises(UpstreamError):
        slow(time_budget=0.5)
    assert budgets == [0.5]
    no_sleep.assert_not_called()


def test_retry_on_failure_shrinks_time_budget(no_sleep):
    budgets = []

    @retry_on_failure(max_retries=1, delay=1.0)
    def flaky(time_budget=None):
        budgets.append(time_budget)
        if len(budgets) == 1:
            raise UpstreamError("claude", 503, "overloaded")
        return "ok"

    assert flaky(time_budget=30.0) == "ok"
    assert budgets[0] == 30.0
    assert 0 < budgets[1] <= 29.0
    no_sleep.assert_called_once_with(1.0)


@pytest.mark.parametrize("method", ["get_commit_activity", "get_releases", "get_pull_request_metrics",
                                    "get_issue_metrics", "get_readme"])
def test_endpoints_use_lazy_repository_handles(mock_github, method):
    repo = mock_github.return_value.get_repo.return_value
    repo.get_commits.return_value = []
    repo.get_releases.return_value.totalCount = 0
    repo.get_releases.return_value.get_page.return_value = []
    repo.get_pulls.return_value = []
    repo.get_issues.return_value = []
    repo.get_readme.return_value.decoded_content = b""

    getattr(GitHubClient(token="t", load_env=False), method)("acme/agentkit")

    mock_github.return_value.get_repo.assert_called_once_with("acme/agentkit", lazy=True)


def test_issue_metrics_stay_on_first_page(mock_github):
    consumed = []

    def issues():
        for number in range(250):
            consumed.append(number)
            yield SimpleNamespace(pull_request=object(), comments=0, created_at=CREATED, closed_at=None)

    mock_github.return_value.get_repo.return_value.get_issues.return_value = issues()

    facts = GitHubClient(token="t", load_env=False).get_issue_metrics("acme/agentkit")

    assert facts["issues_total"] == 0
    assert len(consumed) == 100


def test_commit_activity_stops_at_sample_cap(mock_github):
    consumed = []

    def commits():
        for number in range(250):
            consumed.append(number)
            commit = MagicMock()
            commit.author.login = f"dev{number % 5}"
            yield commit

    mock_github.return_value.get_repo.return_value.get_commits.return_value = commits()

    facts = GitHubClient(token="t", load_env=False).get_commit_activity("acme/agentkit")

    assert facts == {"commits_30d": 100, "commit_authors_30d": 5}
    assert len(consumed) == 100
