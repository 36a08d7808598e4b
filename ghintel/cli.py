import click
import re
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from common.logging import LoggingManager
from ghintel.config import get_config
from ghintel.errors import GhIntelError, UpstreamError
from ghintel.analysis import AnalysisRequester
from ghintel.claude.client import ClaudeClient
from ghintel.classifier import TierClassifier, TierThresholds, TIER_NAMES
from ghintel.github.client import GitHubClient
from ghintel.orchestrator import ScanOrchestrator, PhaseBudget
from ghintel.rate_limiter import RateLimiter
from ghintel.storage import StorageService

logger = LoggingManager.get_logger('ghintel.cli')


# --- Duration Parsing Helper ---
def parse_duration(duration_str: str) -> Optional[timedelta]:
    """Parses a duration string like '7d', '3h', '30m' into a timedelta."""
    match = re.fullmatch(r'(\d+)([dhms])', duration_str.strip().lower())
    if not match:
        logger.error(f"Invalid duration format: '{duration_str}'. Use <number><d|h|m|s>.")
        return None

    value, unit = int(match.group(1)), match.group(2)
    if unit == 'd':
        return timedelta(days=value)
    elif unit == 'h':
        return timedelta(hours=value)
    elif unit == 'm':
        return timedelta(minutes=value)
    return timedelta(seconds=value)


# --- Service wiring ---
def get_storage(config) -> StorageService:
    return StorageService(config.database_url, analysis_window_days=config.analysis_freshness_days, load_env=False)


def build_orchestrator(config, storage: StorageService, budget_seconds: Optional[float] = None) -> ScanOrchestrator:
    github_client = GitHubClient(config.github_token, timeout=config.github_timeout_seconds, load_env=False)
    rate_limiter = RateLimiter.from_config(config)
    classifier = TierClassifier(TierThresholds.from_config(config))
    requester = None
    if config.anthropic_api_key:
        claude_client = ClaudeClient(config.anthropic_api_key, timeout=config.claude_timeout_seconds, load_env=False)
        requester = AnalysisRequester.from_config(claude_client, config)
    else:
        logger.warning("ANTHROPIC_API_KEY not set; repositories will be scanned but not analyzed")
    budget = PhaseBudget.from_config(config)
    if budget_seconds is not None:
        budget = PhaseBudget(total_seconds=budget_seconds,
                             safety_buffer_seconds=budget.safety_buffer_seconds,
                             refresh_share=budget.refresh_share)
    return ScanOrchestrator(config, storage, github_client, rate_limiter, classifier,
                            requester=requester, budget=budget)


def _fail(message: str) -> None:
    logger.critical(message)
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _echo_report(report) -> None:
    data = report.to_dict()
    click.echo(f"Discovered: {data['discovered']}  Refreshed: {data['refreshed']}  Skipped: {data['skipped']}  "
               f"Analyzed: {data['analyzed']}  Failed: {data['failed']}  Alerts: {data['alerts']}")
    click.echo(f"Cost: ${data['cost_usd']:.4f}  Phases: "
               + ", ".join(f"{name} {seconds:.1f}s" for name, seconds in data['phase_seconds'].items()))
    for failure in report.failures:
        click.echo(f"  failed {failure['full_name']} ({failure['kind']}): {failure['message']}")


# --- Click Command Group ---
@click.group()
@click.pass_context
def cli(ctx):
    """GitHub AI/ML repository intelligence CLI"""
    config = get_config()
    LoggingManager.for_application('ghintel', config.log_dir, log_level=config.log_level)
    ctx.obj = config


@cli.command('scan')
@click.option('--force', is_flag=True, help='Ignore tier scan intervals and run discovery.')
@click.option('--discover/--no-discover', default=None, help='Force discovery on or off.')
@click.option('--budget', type=float, default=None, help='Total time budget in seconds for this invocation.')
@click.pass_obj
def scan(config, force: bool, discover: Optional[bool], budget: Optional[float]):
    """Run one time-boxed scan invocation."""
    try:
        storage = get_storage(config)
        orchestrator = build_orchestrator(config, storage, budget_seconds=budget)
    except ValueError as e:
        _fail(str(e))
    report = orchestrator.run(force=force, discover=discover)
    _echo_report(report)


@cli.command('watch')
@click.option('--duration', default='7d', help='Total duration to keep scanning (e.g., 7d, 12h, 30m). Default 7 days.')
@click.option('--interval', default='1h', help='Time between scan invocations (e.g., 1h, 30m). Default 1 hour.')
@click.pass_obj
def watch(config, duration: str, interval: str):
    """Run scan invocations on a fixed interval for a total duration."""
    total_duration_td = parse_duration(duration)
    if not total_duration_td:
        click.echo("Invalid --duration format.", err=True)
        sys.exit(1)
    interval_td = parse_duration(interval)
    if not interval_td:
        click.echo("Invalid --interval format.", err=True)
        sys.exit(1)

    try:
        storage = get_storage(config)
        orchestrator = build_orchestrator(config, storage)
    except ValueError as e:
        _fail(str(e))

    end_time_overall = datetime.now(timezone.utc) + total_duration_td
    logger.info(f"Watching until {end_time_overall.isoformat()} with a {interval_td} interval")
    while datetime.now(timezone.utc) < end_time_overall:
        cycle_start = datetime.now(timezone.utc)
        report = orchestrator.run()
        _echo_report(report)

        next_run = cycle_start + interval_td
        if next_run >= end_time_overall:
            logger.info(f"Total watch duration of {total_duration_td} reached. Exiting watch loop.")
            break
        sleep_seconds = max(0.0, (next_run - datetime.now(timezone.utc)).total_seconds())
        logger.info(f"Next scan invocation in {sleep_seconds:.0f}s")
        time.sleep(sleep_seconds)

    logger.info("Watch command finished.")
    click.echo("Watch command finished.")


@cli.command('discover')
@click.pass_obj
def discover(config):
    """Search GitHub for new AI/ML repositories and store them."""
    try:
        storage = get_storage(config)
        orchestrator = build_orchestrator(config, storage)
    except ValueError as e:
        _fail(str(e))
    report = orchestrator.run_discovery()
    click.echo(f"Discovered {report.discovered} new repositories "
               f"({storage.get_repository_count()} stored in total).")


@cli.command('tiers')
@click.option('--tier', type=click.IntRange(1, 3), default=1, help='Tier to list (1=hot, 2=rising, 3=long-tail).')
@click.option('--limit', type=int, default=20)
@click.pass_obj
def tiers(config, tier: int, limit: int):
    """List repositories in a tier, most starred first."""
    storage = get_storage(config)
    distribution = storage.get_tier_distribution()
    click.echo("Tier distribution: " + ", ".join(f"{t} ({TIER_NAMES[t]}): {n}" for t, n in sorted(distribution.items())))
    for repo in storage.list_by_tier(tier, limit=limit):
        assignment = repo.tier_assignment
        click.echo(f"{repo.full_name:50} {repo.stars:>8} stars  {assignment.growth_velocity:>8.1f}/day  "
                   f"priority {assignment.scan_priority:.1f}")


@cli.command('trending')
@click.option('--days', type=int, default=7, help='Look-back window in days.')
@click.option('--limit', type=int, default=20)
@click.pass_obj
def trending(config, days: int, limit: int):
    """Show the fastest-growing repositories."""
    storage = get_storage(config)
    rows = storage.get_trending(days=days, limit=limit)
    if not rows:
        click.echo("No trending repositories yet.")
        return
    for row in rows:
        repo = row["repository"]
        if row["stars_gained"] is not None:
            percent = f" ({row['growth_percent']:.1f}%)" if row["growth_percent"] is not None else ""
            click.echo(f"{repo.full_name:50} +{row['stars_gained']} stars{percent}")
        else:
            click.echo(f"{repo.full_name:50} {row['growth_velocity']:.1f} stars/day")


def _echo_analysis(full_name: str, latest) -> None:
    click.echo(f"{full_name}: {latest.recommendation.upper()} ({latest.model}, "
               f"{latest.created_at:%Y-%m-%d %H:%M} UTC, ${latest.cost_usd:.4f})")
    click.echo("Scores: " + ", ".join(f"{name} {value:.0f}" for name, value in latest.scores.items()))
    click.echo("")
    click.echo(latest.summary)
    for heading, items in (("Strengths", latest.strengths), ("Risks", latest.risks), ("Questions", latest.questions)):
        if items:
            click.echo(f"\n{heading}:")
            for item in items:
                click.echo(f"  - {item}")


@cli.command('analysis')
@click.argument('full_name')
@click.pass_obj
def analysis(config, full_name: str):
    """Show the latest analysis of a repository (owner/name)."""
    storage = get_storage(config)
    repo = storage.get_repository_by_name(full_name)
    if repo is None:
        click.echo(f"Repository {full_name} not found.", err=True)
        sys.exit(1)
    latest = storage.get_latest_analysis(repo.id)
    if latest is None:
        click.echo(f"No analysis for {full_name} yet.")
        return
    _echo_analysis(repo.full_name, latest)


@cli.command('analyze')
@click.argument('repository')
@click.option('--force', is_flag=True, help='Analyze again even if a fresh analysis exists.')
@click.pass_obj
def analyze(config, repository: str, force: bool):
    """Analyze one repository now (owner/name or GitHub id)."""
    try:
        storage = get_storage(config)
        orchestrator = build_orchestrator(config, storage)
        result, created = orchestrator.analyze_on_demand(repository, force=force)
    except ValueError as e:
        _fail(str(e))
    except GhIntelError as e:
        _fail(f"Analysis of {repository} failed ({type(e).__name__}): {e}")
    repo = storage.get_repository(result.repo_id)
    click.echo("New analysis." if created else "Fresh analysis already stored; use --force to replace it.")
    _echo_analysis(repo.full_name, result)


@cli.command('alerts')
@click.option('--unacknowledged', is_flag=True, help='Only show alerts not yet acknowledged.')
@click.option('--limit', type=int, default=50)
@click.pass_obj
def alerts(config, unacknowledged: bool, limit: int):
    """List recent alerts."""
    storage = get_storage(config)
    found = storage.list_alerts(unacknowledged_only=unacknowledged, limit=limit)
    if not found:
        click.echo("No alerts.")
        return
    for alert in found:
        ack = " (ack)" if alert.acknowledged else ""
        click.echo(f"#{alert.id} [{alert.level}] {alert.alert_type} {alert.created_at:%Y-%m-%d %H:%M}: "
                   f"{alert.message}{ack}")


@cli.command('ack-alert')
@click.argument('alert_id', type=int)
@click.pass_obj
def ack_alert(config, alert_id: int):
    """Acknowledge an alert."""
    storage = get_storage(config)
    alert = storage.acknowledge_alert(alert_id)
    if alert is None:
        click.echo(f"Alert #{alert_id} not found.", err=True)
        sys.exit(1)
    click.echo(f"Alert #{alert_id} acknowledged.")


@cli.command('reconcile')
@click.pass_obj
def reconcile(config):
    """Repair tier assignments: drop orphans, classify scanned repositories without one."""
    storage = get_storage(config)
    # Reconciliation needs no API access, so no clients are built here.
    orchestrator = ScanOrchestrator(config, storage, None, RateLimiter.from_config(config),
                                    TierClassifier(TierThresholds.from_config(config)))
    result = orchestrator.reconcile()
    click.echo(f"Removed {result['orphans']} orphaned tier assignments; "
               f"assigned tiers to {result['missing']} repositories.")
    if result["failed"]:
        click.echo(f"Could not assign tiers to {result['failed']} repositories; see the log.", err=True)


@cli.command('cleanup')
@click.option('--days', type=int, default=None, help='Retention in days (default DATA_RETENTION_DAYS).')
@click.pass_obj
def cleanup(config, days: Optional[int]):
    """Delete old snapshots and acknowledged alerts."""
    storage = get_storage(config)
    removed = storage.cleanup_old_data(retention_days=days or config.data_retention_days)
    click.echo(f"Removed {removed['snapshots']} snapshots and {removed['alerts']} alerts.")


@cli.command('status')
@click.pass_obj
def status(config):
    """Show GitHub quota, today's activity and the tier distribution."""
    storage = get_storage(config)
    if config.github_token:
        try:
            client = GitHubClient(config.github_token, timeout=config.github_timeout_seconds, load_env=False)
            info = client.get_rate_limit_info()
            for bucket in ("core", "search"):
                quota = info[bucket]
                click.echo(f"GitHub {bucket}: {quota['remaining']}/{quota['limit']} remaining, "
                           f"resets {quota['reset_time_datetime']:%H:%M:%S} UTC")
        except UpstreamError as e:
            logger.error(f"Could not retrieve rate limit: {e}")
            click.echo(f"GitHub quota unavailable: {e}", err=True)
    else:
        click.echo("GitHub quota unavailable: GITHUB_TOKEN not set")

    stats = storage.get_daily_stats()
    click.echo(f"Today ({stats['date']}): {stats['repositories_scanned']} scanned, {stats['analyses']} analyses, "
               f"{stats['alerts']} alerts, ${stats['cost_usd']:.4f} spent")
    click.echo(f"Repositories stored: {stats['repositories_total']}")
    distribution = storage.get_tier_distribution()
    click.echo("Tiers: " + ", ".join(f"{t} ({TIER_NAMES[t]}): {n}" for t, n in sorted(distribution.items())))


if __name__ == '__main__':
    cli()
