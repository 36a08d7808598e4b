"""Persistence layer: SQLAlchemy-backed storage of repositories, snapshots, tiers, analyses and alerts."""
import os
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Iterator

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, func, or_, and_, exists, select, delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm import sessionmaker, Session, contains_eager, joinedload

from common.logging import LoggingManager
from ghintel.errors import PersistenceError
from ghintel.models.base import Base, utcnow, as_naive_utc
from ghintel.models.repository import Repository, RepoMetricsSnapshot, TierAssignment
from ghintel.models.analysis import Analysis, Alert, ALERT_TYPES, ALERT_LEVELS

logger = LoggingManager.get_logger('ghintel.storage')

EPOCH = datetime(1970, 1, 1)

REPOSITORY_FIELDS = (
    "owner", "name", "full_name", "description", "language", "topics", "stars", "forks",
    "open_issues", "watchers", "html_url", "default_branch", "is_archived", "is_fork",
    "created_at", "updated_at", "pushed_at",
)
SNAPSHOT_FIELDS = (
    "commits_30d", "commit_authors_30d", "releases_count", "latest_release_at", "prs_total",
    "prs_merged", "avg_merge_hours", "issues_total", "issues_closed", "avg_close_hours",
    "issues_with_response",
)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless this is set per connection.
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class StorageService:
    """Reads and writes every persisted entity. All methods open their own session."""

    def __init__(self, db_url: Optional[str] = None, analysis_window_days: float = 7.0, load_env: bool = True):
        """Initialize the storage service.

        Args:
            db_url: Database URL. If not provided, will try to load from DATABASE_URL env var.
            analysis_window_days: Length of the freshness window used to de-duplicate analyses.
            load_env: Whether to load environment variables from .env file (default: True).
        """
        if load_env:
            load_dotenv()
        self.db_url = db_url or os.getenv("DATABASE_URL")
        if not self.db_url:
            logger.error("Database URL not found in environment variables")
            raise ValueError("DATABASE_URL environment variable not set and no fallback provided.")
        self.analysis_window_seconds = analysis_window_days * 86400

        logger.info("Initializing database connection")
        self.engine = create_engine(self.db_url)
        Base.metadata.create_all(self.engine)  # Creates tables if they don't exist
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error during {operation}: {e}")
            raise PersistenceError(f"{operation} failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Repositories

    @staticmethod
    def _apply_repository(session: Session, data: Dict[str, Any]) -> Repository:
        repo = session.get(Repository, data["id"])
        if repo is None:
            repo = Repository(id=data["id"], discovered_at=utcnow())
            session.add(repo)
        for key in REPOSITORY_FIELDS:
            if key in data:
                value = data[key]
                if isinstance(value, datetime):
                    value = as_naive_utc(value)
                setattr(repo, key, value)
        return repo

    def save_repository(self, data: Dict[str, Any]) -> Repository:
        """Insert or update a repository by GitHub id. Identity fields never change meaning."""
        with self._session("save_repository") as session:
            repo = self._apply_repository(session, data)
        logger.debug(f"Stored repository {data.get('full_name')}")
        return repo

    def get_repository(self, repo_id: int) -> Optional[Repository]:
        with self._session("get_repository") as session:
            return session.get(Repository, repo_id, options=[joinedload(Repository.tier_assignment)])

    def get_repository_by_name(self, full_name: str) -> Optional[Repository]:
        with self._session("get_repository_by_name") as session:
            return session.execute(
                select(Repository)
                .options(joinedload(Repository.tier_assignment))
                .where(func.lower(Repository.full_name) == full_name.lower())
            ).scalar_one_or_none()

    def get_repository_count(self) -> int:
        with self._session("get_repository_count") as session:
            return session.scalar(select(func.count(Repository.id))) or 0

    # Snapshots

    @staticmethod
    def _new_snapshot(repo_id: int, repo_data: Dict[str, Any], facts: Dict[str, Any],
                      depth: str, recorded_at: datetime) -> RepoMetricsSnapshot:
        snapshot = RepoMetricsSnapshot(
            repo_id=repo_id,
            stars=repo_data.get("stars", 0),
            forks=repo_data.get("forks", 0),
            open_issues=repo_data.get("open_issues", 0),
            watchers=repo_data.get("watchers", 0) or 0,
            scan_depth=depth,
            recorded_at=recorded_at,
        )
        for key in SNAPSHOT_FIELDS:
            if facts.get(key) is not None:
                setattr(snapshot, key, facts[key])
        return snapshot

    def save_snapshot(self, repo_id: int, repo_data: Dict[str, Any], facts: Optional[Dict[str, Any]] = None,
                      depth: str = "minimal", recorded_at: Optional[datetime] = None) -> RepoMetricsSnapshot:
        with self._session("save_snapshot") as session:
            snapshot = self._new_snapshot(repo_id, repo_data, facts or {}, depth, as_naive_utc(recorded_at) or utcnow())
            session.add(snapshot)
        return snapshot

    def get_latest_snapshot(self, repo_id: int) -> Optional[RepoMetricsSnapshot]:
        snapshots = self.get_snapshots(repo_id, limit=1)
        return snapshots[0] if snapshots else None

    def get_snapshots(self, repo_id: int, limit: Optional[int] = None) -> List[RepoMetricsSnapshot]:
        """Snapshots of one repository, newest first."""
        with self._session("get_snapshots") as session:
            query = (select(RepoMetricsSnapshot)
                     .where(RepoMetricsSnapshot.repo_id == repo_id)
                     .order_by(RepoMetricsSnapshot.recorded_at.desc(), RepoMetricsSnapshot.id.desc()))
            if limit:
                query = query.limit(limit)
            return list(session.scalars(query))

    # Tier assignments

    @staticmethod
    def _apply_tier(session: Session, repo_id: int, result, depth: Optional[str],
                    scanned_at: Optional[datetime]) -> TierAssignment:
        assignment = session.get(TierAssignment, repo_id)
        if assignment is None:
            assignment = TierAssignment(repo_id=repo_id)
            session.add(assignment)
        assignment.tier = result.tier
        assignment.growth_velocity = result.growth_velocity
        assignment.engagement_score = result.engagement_score
        assignment.scan_priority = result.scan_priority
        assignment.composite_score = result.composite_score
        assignment.updated_at = utcnow()
        if scanned_at is not None:
            assignment.last_scanned_at = scanned_at
            if depth == "deep":
                assignment.last_deep_scan = scanned_at
            elif depth == "basic":
                assignment.last_basic_scan = scanned_at
        return assignment

    def upsert_tier_assignment(self, repo_id: int, result, depth: Optional[str] = None,
                               scanned_at: Optional[datetime] = None) -> TierAssignment:
        """Create or replace the single tier assignment of a repository."""
        with self._session("upsert_tier_assignment") as session:
            return self._apply_tier(session, repo_id, result, depth, as_naive_utc(scanned_at))

    def get_tier_assignment(self, repo_id: int) -> Optional[TierAssignment]:
        with self._session("get_tier_assignment") as session:
            return session.get(TierAssignment, repo_id)

    def save_scan_result(self, repo_data: Dict[str, Any], facts: Dict[str, Any], depth: str, result,
                         scanned_at: Optional[datetime] = None) -> RepoMetricsSnapshot:
        """Persist counters, a new snapshot and the tier assignment atomically."""
        scanned_at = as_naive_utc(scanned_at) or utcnow()
        with self._session("save_scan_result") as session:
            repo = self._apply_repository(session, repo_data)
            session.flush()
            snapshot = self._new_snapshot(repo.id, repo_data, facts, depth, scanned_at)
            session.add(snapshot)
            self._apply_tier(session, repo.id, result, depth, scanned_at)
        return snapshot

    def get_repos_needing_scan(self, tier: int, interval_hours: float, limit: int,
                               now: Optional[datetime] = None) -> List[Repository]:
        """Repositories of `tier` whose last scan is older than the interval, highest priority first."""
        now = as_naive_utc(now) or utcnow()
        cutoff = now - timedelta(hours=interval_hours)
        with self._session("get_repos_needing_scan") as session:
            query = (select(Repository)
                     .join(Repository.tier_assignment)
                     .options(contains_eager(Repository.tier_assignment))
                     .where(TierAssignment.tier == tier,
                            Repository.is_archived.is_(False),
                            or_(TierAssignment.last_scanned_at.is_(None), TierAssignment.last_scanned_at < cutoff))
                     .order_by(TierAssignment.scan_priority.desc(), Repository.id)
                     .limit(limit))
            return list(session.scalars(query).unique())

    def list_by_tier(self, tier: int, limit: int = 50) -> List[Repository]:
        with self._session("list_by_tier") as session:
            query = (select(Repository)
                     .join(Repository.tier_assignment)
                     .options(contains_eager(Repository.tier_assignment))
                     .where(TierAssignment.tier == tier,
                            Repository.is_archived.is_(False),
                            Repository.is_fork.is_(False))
                     .order_by(Repository.stars.desc())
                     .limit(limit))
            return list(session.scalars(query).unique())

    def get_tier_distribution(self) -> Dict[int, int]:
        with self._session("get_tier_distribution") as session:
            rows = session.execute(
                select(TierAssignment.tier, func.count(TierAssignment.repo_id)).group_by(TierAssignment.tier)
            ).all()
        distribution = {1: 0, 2: 0, 3: 0}
        distribution.update({tier: count for tier, count in rows})
        return distribution

    # Reconciliation of the one-assignment-per-scanned-repository invariant

    def find_orphaned_tier_assignments(self) -> List[int]:
        with self._session("find_orphaned_tier_assignments") as session:
            query = (select(TierAssignment.repo_id)
                     .outerjoin(Repository, Repository.id == TierAssignment.repo_id)
                     .where(Repository.id.is_(None)))
            return list(session.scalars(query))

    def delete_orphaned_tier_assignments(self) -> int:
        orphaned = self.find_orphaned_tier_assignments()
        if not orphaned:
            return 0
        with self._session("delete_orphaned_tier_assignments") as session:
            session.execute(delete(TierAssignment).where(TierAssignment.repo_id.in_(orphaned)))
        logger.warning(f"Deleted {len(orphaned)} orphaned tier assignments: {orphaned}")
        return len(orphaned)

    def get_scanned_repos_without_tier(self) -> List[Repository]:
        with self._session("get_scanned_repos_without_tier") as session:
            has_snapshot = exists().where(RepoMetricsSnapshot.repo_id == Repository.id)
            has_tier = exists().where(TierAssignment.repo_id == Repository.id)
            query = select(Repository).where(has_snapshot, ~has_tier).order_by(Repository.id)
            return list(session.scalars(query))

    # Analyses

    def window_key(self, at: datetime) -> int:
        """Index of the freshness window containing `at`."""
        return int((as_naive_utc(at) - EPOCH).total_seconds() // self.analysis_window_seconds)

    def has_recent_analysis(self, repo_id: int, freshness_days: float, now: Optional[datetime] = None) -> bool:
        now = as_naive_utc(now) or utcnow()
        cutoff = now - timedelta(days=freshness_days)
        with self._session("has_recent_analysis") as session:
            found = session.scalar(
                select(Analysis.id).where(Analysis.repo_id == repo_id, Analysis.created_at > cutoff).limit(1)
            )
        return found is not None

    def get_repos_needing_analysis(self, freshness_days: float, max_tier: int, limit: int,
                                   now: Optional[datetime] = None) -> List[Repository]:
        """Repositories without a fresh analysis, ordered by tier, stars, then last update."""
        now = as_naive_utc(now) or utcnow()
        cutoff = now - timedelta(days=freshness_days)
        with self._session("get_repos_needing_analysis") as session:
            fresh = exists().where(Analysis.repo_id == Repository.id, Analysis.created_at > cutoff)
            query = (select(Repository)
                     .join(Repository.tier_assignment)
                     .options(contains_eager(Repository.tier_assignment))
                     .where(TierAssignment.tier <= max_tier,
                            Repository.is_archived.is_(False),
                            ~fresh)
                     .order_by(TierAssignment.tier.asc(), Repository.stars.desc(),
                               Repository.updated_at.desc(), Repository.id)
                     .limit(limit))
            return list(session.scalars(query).unique())

    def save_analysis(self, repo_id: int, record: Dict[str, Any], created_at: Optional[datetime] = None,
                      replace: bool = False) -> Analysis:
        """Append an analysis. A second analysis in the same freshness window is rejected.

        With `replace`, an analysis already stored in that window is deleted
        in the same transaction and the new one takes its place.
        """
        created_at = as_naive_utc(created_at) or utcnow()
        key = self.window_key(created_at)
        analysis = Analysis(repo_id=repo_id, created_at=created_at, window_key=key, **record)
        try:
            with self._session("save_analysis") as session:
                if replace:
                    replaced = session.execute(
                        delete(Analysis).where(Analysis.repo_id == repo_id, Analysis.window_key == key)
                    ).rowcount
                    if replaced:
                        logger.info(f"Replacing the analysis of repository {repo_id} in window {key}")
                session.add(analysis)
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise PersistenceError(f"Repository {repo_id} already has an analysis in this window") from e.__cause__
            raise
        logger.debug(f"Stored analysis {analysis.id} for repository {repo_id}")
        return analysis

    def get_latest_analysis(self, repo_id: int) -> Optional[Analysis]:
        history = self.get_analysis_history(repo_id, limit=1)
        return history[0] if history else None

    def get_analysis_history(self, repo_id: int, limit: int = 10) -> List[Analysis]:
        with self._session("get_analysis_history") as session:
            query = (select(Analysis)
                     .where(Analysis.repo_id == repo_id)
                     .order_by(Analysis.created_at.desc(), Analysis.id.desc())
                     .limit(limit))
            return list(session.scalars(query))

    # Alerts

    def save_alert(self, repo_id: int, alert_type: str, level: str, message: str,
                   details: Optional[Dict[str, Any]] = None) -> Alert:
        if alert_type not in ALERT_TYPES:
            raise ValueError(f"Unknown alert type '{alert_type}'")
        if level not in ALERT_LEVELS:
            raise ValueError(f"Unknown alert level '{level}'")
        with self._session("save_alert") as session:
            alert = Alert(repo_id=repo_id, alert_type=alert_type, level=level, message=message,
                          details=details, created_at=utcnow())
            session.add(alert)
        logger.info(f"Alert [{level}] {alert_type} for repository {repo_id}: {message}")
        return alert

    def list_alerts(self, unacknowledged_only: bool = False, limit: int = 50,
                    since: Optional[datetime] = None) -> List[Alert]:
        with self._session("list_alerts") as session:
            query = select(Alert)
            if unacknowledged_only:
                query = query.where(Alert.acknowledged.is_(False))
            if since is not None:
                query = query.where(Alert.created_at >= as_naive_utc(since))
            query = query.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
            return list(session.scalars(query))

    def acknowledge_alert(self, alert_id: int) -> Optional[Alert]:
        """Mark an alert acknowledged. Returns None when no such alert exists."""
        with self._session("acknowledge_alert") as session:
            alert = session.get(Alert, alert_id)
            if alert is None:
                return None
            if not alert.acknowledged:
                alert.acknowledged = True
                alert.acknowledged_at = utcnow()
            return alert

    # Read models

    def get_trending(self, days: int = 7, limit: int = 20, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Repositories with the largest star growth between snapshots in the last `days` days.

        Falls back to the stored growth velocity when there is not enough
        snapshot history in the window.
        """
        now = as_naive_utc(now) or utcnow()
        cutoff = now - timedelta(days=days)
        with self._session("get_trending") as session:
            snapshots = session.scalars(
                select(RepoMetricsSnapshot)
                .where(RepoMetricsSnapshot.recorded_at >= cutoff)
                .order_by(RepoMetricsSnapshot.repo_id, RepoMetricsSnapshot.recorded_at, RepoMetricsSnapshot.id)
            ).all()
            span: Dict[int, List[RepoMetricsSnapshot]] = {}
            for snapshot in snapshots:
                first_last = span.setdefault(snapshot.repo_id, [snapshot, snapshot])
                first_last[1] = snapshot

            rows = []
            for repo_id, (first, last) in span.items():
                if first.id == last.id:
                    continue
                gained = last.stars - first.stars
                rows.append({
                    "repo_id": repo_id,
                    "stars_gained": gained,
                    "growth_percent": (gained / first.stars * 100) if first.stars else None,
                })
            rows.sort(key=lambda r: r["stars_gained"], reverse=True)
            rows = [r for r in rows if r["stars_gained"] > 0][:limit]

            if not rows:
                fallback = session.execute(
                    select(TierAssignment.repo_id, TierAssignment.growth_velocity)
                    .join(Repository, Repository.id == TierAssignment.repo_id)
                    .where(Repository.is_archived.is_(False))
                    .order_by(TierAssignment.growth_velocity.desc(), Repository.stars.desc())
                    .limit(limit)
                ).all()
                rows = [{"repo_id": repo_id, "stars_gained": None, "growth_percent": None,
                         "growth_velocity": velocity} for repo_id, velocity in fallback]

            repos = {r.id: r for r in session.scalars(
                select(Repository).where(Repository.id.in_([row["repo_id"] for row in rows])))}
            for row in rows:
                row["repository"] = repos[row["repo_id"]]
            return rows

    def get_daily_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = as_naive_utc(now) or utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        with self._session("get_daily_stats") as session:
            scanned = session.scalar(
                select(func.count(func.distinct(RepoMetricsSnapshot.repo_id)))
                .where(RepoMetricsSnapshot.recorded_at >= day_start)) or 0
            analyses, cost = session.execute(
                select(func.count(Analysis.id), func.coalesce(func.sum(Analysis.cost_usd), 0.0))
                .where(Analysis.created_at >= day_start)).one()
            alerts = session.scalar(select(func.count(Alert.id)).where(Alert.created_at >= day_start)) or 0
            total = session.scalar(select(func.count(Repository.id))) or 0
        return {
            "date": day_start.date().isoformat(),
            "repositories_total": total,
            "repositories_scanned": scanned,
            "analyses": analyses or 0,
            "alerts": alerts,
            "cost_usd": float(cost or 0.0),
        }

    def cleanup_old_data(self, retention_days: int = 90, now: Optional[datetime] = None) -> Dict[str, int]:
        """Drop snapshots and acknowledged alerts older than the retention period.

        The newest snapshot of each repository is always kept, so growth can
        still be measured against it.
        """
        now = as_naive_utc(now) or utcnow()
        cutoff = now - timedelta(days=retention_days)
        with self._session("cleanup_old_data") as session:
            newest = select(func.max(RepoMetricsSnapshot.id)).group_by(RepoMetricsSnapshot.repo_id)
            snapshots = session.execute(
                delete(RepoMetricsSnapshot)
                .where(RepoMetricsSnapshot.recorded_at < cutoff, RepoMetricsSnapshot.id.not_in(newest))
                .execution_options(synchronize_session=False)
            ).rowcount
            alerts = session.execute(
                delete(Alert)
                .where(and_(Alert.acknowledged.is_(True), Alert.created_at < cutoff))
                .execution_options(synchronize_session=False)
            ).rowcount
        logger.info(f"Cleanup removed {snapshots} snapshots and {alerts} acknowledged alerts older than {cutoff}")
        return {"snapshots": snapshots, "alerts": alerts}
