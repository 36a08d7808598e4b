"""Time-boxed scan invocation: reconcile, discover, refresh metrics, analyze."""
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Callable, List, Dict, Any, Tuple

from common.logging import LoggingManager
from ghintel.classifier import TierClassifier, TIER_HOT, TIER_NAMES
from ghintel.collector import CollectedMetrics, MetricsCollector, ScanDepth
from ghintel.errors import GhIntelError, RateLimitExceeded, UpstreamError, RETRY_DELAY_SECONDS
from ghintel.models.base import utcnow

logger = LoggingManager.get_logger('ghintel.orchestrator')

TIER_DEPTHS = {1: ScanDepth.DEEP, 2: ScanDepth.BASIC, 3: ScanDepth.MINIMAL}


@dataclass(frozen=True)
class PhaseBudget:
    """Cumulative deadlines, in seconds since the start of the invocation.

    The safety buffer is subtracted from both deadlines and is never spent.
    """
    total_seconds: float = 300.0
    safety_buffer_seconds: float = 10.0
    refresh_share: float = 0.6

    @classmethod
    def from_config(cls, config) -> "PhaseBudget":
        return cls(total_seconds=config.scan_budget_seconds,
                   safety_buffer_seconds=config.scan_safety_buffer_seconds,
                   refresh_share=config.refresh_phase_share)

    @property
    def refresh_deadline(self) -> float:
        return max(0.0, self.total_seconds * self.refresh_share - self.safety_buffer_seconds)

    @property
    def analysis_deadline(self) -> float:
        return max(0.0, self.total_seconds - self.safety_buffer_seconds)


@dataclass
class ScanReport:
    started_at: datetime
    reconciled_orphans: int = 0
    reconciled_missing: int = 0
    discovered: int = 0
    refreshed: int = 0
    skipped: int = 0
    analyzed: int = 0
    alerts: int = 0
    cost_usd: float = 0.0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    phase_seconds: Dict[str, float] = field(default_factory=dict)
    stopped_phases: List[str] = field(default_factory=list)

    def record_failure(self, repo_id, full_name, error: BaseException) -> None:
        self.failures.append({
            "repo_id": repo_id,
            "full_name": full_name,
            "kind": type(error).__name__,
            "message": str(error),
        })

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "reconciled_orphans": self.reconciled_orphans,
            "reconciled_missing": self.reconciled_missing,
            "discovered": self.discovered,
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "analyzed": self.analyzed,
            "failed": self.failed,
            "alerts": self.alerts,
            "cost_usd": round(self.cost_usd, 6),
            "phase_seconds": {k: round(v, 3) for k, v in self.phase_seconds.items()},
            "stopped_phases": list(self.stopped_phases),
        }


class ScanOrchestrator:
    """Runs one scan invocation within a fixed wall-clock budget.

    Work is done one repository at a time. A unit only starts when its
    outbound calls can finish before the hard deadline, so an in-flight
    request is never interrupted and never runs past the budget. Failures
    of a single repository are logged and counted, never raised.
    """

    def __init__(self, config, storage, github_client, rate_limiter, classifier: TierClassifier,
                 requester=None, collector: Optional[MetricsCollector] = None,
                 budget: Optional[PhaseBudget] = None,
                 clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], datetime] = utcnow):
        self.config = config
        self.storage = storage
        self.github_client = github_client
        self.rate_limiter = rate_limiter
        self.classifier = classifier
        self.requester = requester
        # Worst case for one call: timeout, retry delay, timeout again
        self.github_call_seconds = 2 * config.github_timeout_seconds + RETRY_DELAY_SECONDS
        self.claude_call_seconds = config.claude_timeout_seconds
        self.collector = collector or MetricsCollector(github_client, rate_limiter,
                                                       call_seconds=self.github_call_seconds)
        self.budget = budget or PhaseBudget.from_config(config)
        self._clock = clock
        self._now = now
        self._started: Optional[float] = None

    def elapsed(self) -> float:
        return self._clock() - self._started

    def time_left(self, deadline: float) -> float:
        return deadline - self.elapsed()

    def _deadline_reached(self, deadline: float, phase: str, report: ScanReport, reserve: float = 0.0) -> bool:
        """True once fewer than `reserve` seconds are left before `deadline`."""
        if self.elapsed() + reserve >= deadline:
            if phase not in report.stopped_phases:
                logger.info(f"{phase} phase stopping: {self.elapsed():.1f}s elapsed, deadline {deadline:.1f}s, "
                            f"{reserve:.0f}s needed per unit")
                report.stopped_phases.append(phase)
            return True
        return False

    def run(self, force: bool = False, discover: Optional[bool] = None,
            started_at: Optional[float] = None) -> ScanReport:
        """Run one invocation.

        Args:
            force: Ignore the per-tier scan intervals and run discovery.
            discover: Force discovery on (True) or off (False); by default it
                runs only while fewer than the configured minimum of
                repositories are stored.
            started_at: Clock reading at which the host started the invocation,
                if earlier than this call.
        """
        self._started = started_at if started_at is not None else self._clock()
        report = ScanReport(started_at=self._now())
        logger.info(f"Scan invocation started (budget {self.budget.total_seconds:.0f}s, "
                    f"buffer {self.budget.safety_buffer_seconds:.0f}s, force={force})")

        self.reconcile(report)
        self.seed_rate_limiter()

        phase_start = self.elapsed()
        if discover is None:
            discover = force or self._below_discovery_minimum()
        if discover:
            self.discover(report)
        report.phase_seconds["discovery"] = self.elapsed() - phase_start

        phase_start = self.elapsed()
        self.refresh_metrics(report, force=force)
        report.phase_seconds["refresh"] = self.elapsed() - phase_start

        phase_start = self.elapsed()
        self.analyze_batch(report)
        report.phase_seconds["analysis"] = self.elapsed() - phase_start

        logger.info(f"Scan invocation finished in {self.elapsed():.1f}s: discovered={report.discovered} "
                    f"refreshed={report.refreshed} skipped={report.skipped} analyzed={report.analyzed} "
                    f"failed={report.failed} alerts={report.alerts}")
        return report

    def _below_discovery_minimum(self) -> bool:
        try:
            count = self.storage.get_repository_count()
        except GhIntelError as e:
            logger.error(f"Could not count stored repositories, skipping discovery ({type(e).__name__}): {e}")
            return False
        return count < self.config.discovery_min_repositories

    def run_discovery(self) -> ScanReport:
        """Discovery alone, within the refresh share of the budget."""
        self._started = self._clock()
        report = ScanReport(started_at=self._now())
        self.seed_rate_limiter()
        self.discover(report)
        report.phase_seconds["discovery"] = self.elapsed()
        return report

    def reconcile(self, report: Optional[ScanReport] = None) -> Dict[str, int]:
        """Restore the one-tier-assignment-per-scanned-repository invariant."""
        report = report if report is not None else ScanReport(started_at=self._now())
        failed_before = report.failed
        try:
            orphans = self.storage.delete_orphaned_tier_assignments()
        except GhIntelError as e:
            logger.error(f"Could not remove orphaned tier assignments ({type(e).__name__}): {e}")
            orphans = 0
        try:
            untiered = self.storage.get_scanned_repos_without_tier()
        except GhIntelError as e:
            logger.error(f"Could not list repositories without a tier ({type(e).__name__}): {e}")
            untiered = []

        missing = 0
        for repo in untiered:
            try:
                self.assign_missing_tier(repo)
                missing += 1
            except GhIntelError as e:
                logger.error(f"Could not assign a tier to {repo.full_name} (id {repo.id}, "
                             f"{type(e).__name__}): {e}")
                report.record_failure(repo.id, repo.full_name, e)
            except Exception as e:
                logger.error(f"Unexpected error assigning a tier to {repo.full_name} (id {repo.id}): {e}",
                             exc_info=True)
                report.record_failure(repo.id, repo.full_name, e)
        report.reconciled_orphans = orphans
        report.reconciled_missing = missing
        return {"orphans": orphans, "missing": missing, "failed": report.failed - failed_before}

    def assign_missing_tier(self, repo) -> None:
        snapshots = self.storage.get_snapshots(repo.id, limit=2)
        previous = snapshots[1] if len(snapshots) > 1 else None
        result = self.classifier.classify(repo, previous, now=snapshots[0].recorded_at)
        self.storage.upsert_tier_assignment(repo.id, result, depth=snapshots[0].scan_depth,
                                            scanned_at=snapshots[0].recorded_at)
        logger.warning(f"Repository {repo.full_name} (id {repo.id}) had no tier assignment; "
                       f"assigned tier {result.tier}")

    def seed_rate_limiter(self) -> None:
        """Lower local budgets to what GitHub says is left for this token."""
        try:
            info = self.github_client.get_rate_limit_info()
        except UpstreamError as e:
            logger.warning(f"Could not read GitHub quota, keeping local limits: {e}")
            return
        for bucket, api_name in (("core", "github"), ("search", "github_search")):
            quota = info.get(bucket) or {}
            if quota.get("remaining") is not None:
                self.rate_limiter.reconcile(api_name, quota["remaining"], quota.get("reset_time_datetime"))

    def search_queries(self) -> List[str]:
        return [f"topic:{topic} stars:>{self.config.search_min_stars}" for topic in self.config.search_topics]

    def discover(self, report: ScanReport) -> int:
        """Search for new repositories and give each a first snapshot and tier."""
        deadline = self.budget.refresh_deadline
        for query in self.search_queries():
            if (self._deadline_reached(deadline, "discovery", report)
                    or self._deadline_reached(self.budget.analysis_deadline, "discovery", report,
                                              reserve=self.github_call_seconds)):
                break
            decision = self.rate_limiter.try_acquire("github_search")
            if not decision.allowed:
                logger.info(f"Search rate limit reached, skipping remaining discovery queries "
                            f"(retry in {decision.retry_after_ms} ms)")
                break
            try:
                results = self.github_client.search_repositories(query, max_results=self.config.search_max_results)
            except GhIntelError as e:
                logger.error(f"Discovery query '{query}' failed ({type(e).__name__}): {e}")
                continue
            for repo_data in results:
                try:
                    if self.storage.get_repository(repo_data["id"]) is not None:
                        continue
                    self.store_first_scan(repo_data)
                    report.discovered += 1
                except GhIntelError as e:
                    logger.error(f"Failed to store discovered repository {repo_data.get('full_name')} "
                                 f"(id {repo_data.get('id')}, {type(e).__name__}): {e}")
                    report.record_failure(repo_data.get("id"), repo_data.get("full_name"), e)
        logger.info(f"Discovery stored {report.discovered} new repositories")
        return report.discovered

    def store_first_scan(self, repo_data: Dict[str, Any]) -> None:
        """Persist repository data fetched outside a refresh as a minimal scan."""
        previous = self.storage.get_latest_snapshot(repo_data["id"])
        metrics = CollectedMetrics(repository=repo_data, depth=ScanDepth.MINIMAL)
        result = self.classifier.classify(metrics, previous, now=self._now())
        self.storage.save_scan_result(repo_data, {}, ScanDepth.MINIMAL.value, result, self._now())

    def refresh_metrics(self, report: ScanReport, force: bool = False) -> int:
        """Rescan due repositories tier by tier, highest scan priority first."""
        deadline = self.budget.refresh_deadline
        for tier in (1, 2, 3):
            if self._deadline_reached(deadline, "refresh", report):
                break
            interval = 0 if force else self.config.tier_scan_hours[tier]
            try:
                due = self.storage.get_repos_needing_scan(tier, interval, self.config.tier_quotas[tier],
                                                          now=self._now())
            except GhIntelError as e:
                logger.error(f"Could not select tier {tier} repositories for refresh ({type(e).__name__}): {e}")
                continue
            logger.info(f"Tier {tier} ({TIER_NAMES[tier]}): {len(due)} repositories due for a "
                        f"{TIER_DEPTHS[tier].value} scan")
            for repo in due:
                # The repository lookup must also fit before the hard deadline.
                if (self._deadline_reached(deadline, "refresh", report)
                        or self._deadline_reached(self.budget.analysis_deadline, "refresh", report,
                                                  reserve=self.github_call_seconds)):
                    return report.refreshed
                decision = self.rate_limiter.try_acquire("github")
                if not decision.allowed:
                    logger.debug(f"Skipping {repo.full_name}: GitHub budget exhausted "
                                 f"(retry in {decision.retry_after_ms} ms)")
                    report.skipped += 1
                    continue
                try:
                    self.refresh_repository(repo, TIER_DEPTHS[tier], report)
                except RateLimitExceeded as e:
                    logger.warning(f"Skipping {repo.full_name} (id {repo.id}): {e}")
                    report.skipped += 1
                except GhIntelError as e:
                    logger.error(f"Metrics refresh failed for {repo.full_name} (id {repo.id}, "
                                 f"{type(e).__name__}): {e}")
                    report.record_failure(repo.id, repo.full_name, e)
                except Exception as e:
                    logger.error(f"Unexpected error refreshing {repo.full_name} (id {repo.id}): {e}", exc_info=True)
                    report.record_failure(repo.id, repo.full_name, e)
        return report.refreshed

    def refresh_repository(self, repo, depth: ScanDepth, report: ScanReport) -> None:
        now = self._now()
        previous_tier = repo.tier_assignment.tier if repo.tier_assignment is not None else None
        hard_deadline = self.budget.analysis_deadline
        metrics = self.collector.collect(repo.full_name, depth, time_left=lambda: self.time_left(hard_deadline))
        previous = self.storage.get_latest_snapshot(repo.id)
        result = self.classifier.classify(metrics, previous, now=now)
        self.storage.save_scan_result(metrics.repository, metrics.facts, depth.value, result, now)
        report.refreshed += 1
        if result.tier != previous_tier:
            logger.info(f"{repo.full_name} moved from tier {previous_tier} to tier {result.tier}")
            if result.tier == TIER_HOT:
                self.storage.save_alert(
                    repo.id, "trend", "medium",
                    f"{repo.full_name} entered the hot tier at {result.growth_velocity:.1f} stars/day",
                    {"previous_tier": previous_tier, "growth_velocity": result.growth_velocity},
                )
                report.alerts += 1

    def analyze_batch(self, report: ScanReport) -> int:
        """Analyze repositories lacking a fresh analysis, most promising first."""
        deadline = self.budget.analysis_deadline
        if self._deadline_reached(deadline, "analysis", report, reserve=self.claude_call_seconds):
            return 0
        if self.requester is None:
            logger.info("No analysis requester configured; skipping analysis phase")
            return 0
        try:
            candidates = self.storage.get_repos_needing_analysis(
                self.config.analysis_freshness_days, self.config.analysis_max_tier,
                self.config.analyses_per_run, now=self._now())
        except GhIntelError as e:
            logger.error(f"Could not select repositories for analysis ({type(e).__name__}): {e}")
            return 0
        logger.info(f"{len(candidates)} repositories queued for analysis")
        for repo in candidates:
            if self._deadline_reached(deadline, "analysis", report, reserve=self.claude_call_seconds):
                break
            try:
                # Another invocation may have analyzed it since the batch was selected.
                if self.storage.has_recent_analysis(repo.id, self.config.analysis_freshness_days, now=self._now()):
                    logger.debug(f"{repo.full_name} already has a fresh analysis")
                    continue
                decision = self.rate_limiter.try_acquire("claude")
                if not decision.allowed:
                    logger.debug(f"Skipping analysis of {repo.full_name}: Claude budget exhausted "
                                 f"(retry in {decision.retry_after_ms} ms)")
                    report.skipped += 1
                    continue
                self.analyze_repository(repo, report, deadline=deadline)
            except RateLimitExceeded as e:
                logger.warning(f"Skipping analysis of {repo.full_name} (id {repo.id}): {e}")
                report.skipped += 1
            except GhIntelError as e:
                logger.error(f"Analysis failed for {repo.full_name} (id {repo.id}, {type(e).__name__}): {e}")
                report.record_failure(repo.id, repo.full_name, e)
            except Exception as e:
                logger.error(f"Unexpected error analyzing {repo.full_name} (id {repo.id}): {e}", exc_info=True)
                report.record_failure(repo.id, repo.full_name, e)
        return report.analyzed

    def analyze_repository(self, repo, report: ScanReport, deadline: Optional[float] = None,
                           replace: bool = False):
        """Fetch the README, ask Claude, store the analysis and its alerts.

        With a `deadline` the README is only fetched when the Claude call still
        fits afterwards, and the Claude call gets whatever time is left.
        """
        readme = None
        if deadline is not None and self.time_left(deadline) < self.github_call_seconds + self.claude_call_seconds:
            logger.info(f"Analyzing {repo.full_name} without README: not enough time left")
        elif self.rate_limiter.try_acquire("github").allowed:
            readme = self.github_client.get_readme(repo.full_name)
        else:
            logger.info(f"Analyzing {repo.full_name} without README: GitHub budget exhausted")
        tier = repo.tier_assignment
        model = self.requester.select_model(tier.composite_score, tier.growth_velocity)
        time_budget = self.time_left(deadline) if deadline is not None else None
        result = self.requester.analyze(repo.to_dict(), readme, model, time_budget=time_budget)
        analysis = self.storage.save_analysis(repo.id, result.to_record(), created_at=self._now(), replace=replace)
        report.analyzed += 1
        report.cost_usd += result.cost_usd
        report.alerts += self.evaluate_alerts(repo, tier, analysis)
        return analysis

    def analyze_on_demand(self, ref: str, force: bool = False) -> Tuple[Any, bool]:
        """Analyze one repository now, by "owner/name" or numeric GitHub id.

        A repository not stored yet is fetched and classified first. A fresh
        analysis is returned as is unless `force` is set, in which case a new
        one replaces any analysis in the current freshness window.

        Returns:
            The analysis and whether it was created by this call.
        """
        if self.requester is None:
            raise ValueError("Analysis requires ANTHROPIC_API_KEY to be set.")
        self._started = self._clock()
        report = ScanReport(started_at=self._now())
        repo = self.resolve_repository(ref)
        if not force and self.storage.has_recent_analysis(repo.id, self.config.analysis_freshness_days,
                                                          now=self._now()):
            logger.info(f"Returning cached analysis of {repo.full_name}")
            return self.storage.get_latest_analysis(repo.id), False
        decision = self.rate_limiter.try_acquire("claude")
        if not decision.allowed:
            raise RateLimitExceeded("Claude budget exhausted", decision.retry_after_ms)
        return self.analyze_repository(repo, report, replace=force), True

    def resolve_repository(self, ref: str):
        """Stored repository for `ref`, fetched from GitHub when unknown or untiered."""
        lookup = int(ref) if str(ref).isdigit() else ref
        if isinstance(lookup, int):
            repo = self.storage.get_repository(lookup)
        else:
            repo = self.storage.get_repository_by_name(lookup)
        if repo is not None and repo.tier_assignment is not None:
            return repo
        decision = self.rate_limiter.try_acquire("github")
        if not decision.allowed:
            raise RateLimitExceeded("GitHub budget exhausted", decision.retry_after_ms)
        repo_data = self.github_client.get_repository(lookup)
        self.store_first_scan(repo_data)
        logger.info(f"Fetched {repo_data['full_name']} from GitHub for analysis")
        return self.storage.get_repository(repo_data["id"])

    def evaluate_alerts(self, repo, tier, analysis) -> int:
        created = 0
        score = analysis.investment_score
        if score >= self.config.alert_score_threshold:
            level = "urgent" if score >= self.config.alert_urgent_score else "high"
            self.storage.save_alert(
                repo.id, "investment_opportunity", level,
                f"{repo.full_name} scored {score:.0f} for investment ({analysis.recommendation})",
                {"investment_score": score, "recommendation": analysis.recommendation, "model": analysis.model},
            )
            created += 1
        velocity = tier.growth_velocity if tier is not None else 0.0
        if velocity >= self.config.alert_growth_velocity:
            level = "high" if velocity >= 2 * self.config.alert_growth_velocity else "medium"
            self.storage.save_alert(
                repo.id, "high_growth", level,
                f"{repo.full_name} is gaining {velocity:.1f} stars/day",
                {"growth_velocity": velocity, "stars": repo.stars, "tier": tier.tier},
            )
            created += 1
        return created
