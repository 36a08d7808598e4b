"""Fetches repository facts from GitHub at a chosen scan depth."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Any, List, Optional

from common.logging import LoggingManager
from ghintel.errors import RateLimitExceeded, UpstreamError
from ghintel.github.client import ENDPOINT_REQUESTS

logger = LoggingManager.get_logger('ghintel.collector')


class ScanDepth(str, Enum):
    MINIMAL = "minimal"
    BASIC = "basic"
    DEEP = "deep"


# Extra endpoints fetched at each depth, in order, on top of the repository itself
DEPTH_ENDPOINTS = {
    ScanDepth.MINIMAL: (),
    ScanDepth.BASIC: ("get_commit_activity", "get_releases"),
    ScanDepth.DEEP: ("get_commit_activity", "get_releases", "get_pull_request_metrics", "get_issue_metrics"),
}


@dataclass
class CollectedMetrics:
    """Repository fields plus the depth-dependent facts of one scan."""
    repository: Dict[str, Any]
    depth: ScanDepth
    facts: Dict[str, Any] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    def __getattr__(self, name):
        # Lets the classifier read stars, forks, topics, issues_total... directly.
        if name in ("repository", "facts"):
            raise AttributeError(name)
        if name in self.facts:
            return self.facts[name]
        if name in self.repository:
            return self.repository[name]
        raise AttributeError(name)

    @property
    def complete(self) -> bool:
        return not self.skipped


class MetricsCollector:
    """Collects one repository's metrics, spending one limiter token per GitHub request.

    Endpoint request counts come from ENDPOINT_REQUESTS.
    """

    def __init__(self, github_client, rate_limiter, api_name: str = "github", call_seconds: float = 0.0):
        self.github_client = github_client
        self.rate_limiter = rate_limiter
        self.api_name = api_name
        # Worst-case duration of one endpoint call, retry included
        self.call_seconds = call_seconds

    def collect(self, full_name: str, depth: ScanDepth = ScanDepth.MINIMAL,
                prefetched: Optional[Dict[str, Any]] = None,
                time_left: Optional[Callable[[], float]] = None) -> CollectedMetrics:
        """Fetch `full_name` at `depth`.

        The caller has already been granted the token for the repository
        lookup. Each further endpoint asks the limiter for its own token and
        is skipped when denied, leaving a partial but valid result.

        Args:
            full_name: "owner/name".
            depth: Which facts to fetch beyond the repository counters.
            prefetched: Repository data already in hand (e.g. from a search); saves the lookup.
            time_left: Seconds the caller can still spend; endpoints that might not
                finish in time are skipped.

        Raises:
            UpstreamError: The repository lookup itself failed.
        """
        depth = ScanDepth(depth)
        repository = prefetched if prefetched is not None else self.github_client.get_repository(full_name)
        metrics = CollectedMetrics(repository=repository, depth=depth)
        full_name = repository.get("full_name", full_name)

        for endpoint in DEPTH_ENDPOINTS[depth]:
            if time_left is not None and time_left() < self.call_seconds:
                logger.info(f"Skipping {endpoint} for {full_name}: out of time")
                metrics.skipped.append(endpoint)
                continue
            decision = self.rate_limiter.try_acquire(self.api_name, tokens=ENDPOINT_REQUESTS[endpoint])
            if not decision.allowed:
                logger.info(f"Skipping {endpoint} for {full_name}: rate limited, retry in {decision.retry_after_ms} ms")
                metrics.skipped.append(endpoint)
                continue
            try:
                metrics.facts.update(getattr(self.github_client, endpoint)(full_name))
            except RateLimitExceeded as e:
                logger.warning(f"Skipping {endpoint} for {full_name}: upstream rate limit ({e})")
                metrics.skipped.append(endpoint)
            except UpstreamError as e:
                logger.warning(f"Skipping {endpoint} for {full_name}: {e}")
                metrics.skipped.append(endpoint)

        logger.debug(f"Collected {depth.value} metrics for {full_name}"
                     + (f" (skipped: {', '.join(metrics.skipped)})" if metrics.skipped else ""))
        return metrics
