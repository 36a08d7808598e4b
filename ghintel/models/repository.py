"""SQLAlchemy models for repositories, their metric history and tier assignments."""
from typing import Dict, Any

from sqlalchemy import (Column, Integer, BigInteger, String, Text, Boolean, DateTime, Float, JSON,
                        ForeignKey, CheckConstraint, Index)
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class Repository(Base):
    __tablename__ = 'repositories'
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=False)  # GitHub id
    owner = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    full_name = Column(String(512), nullable=False, unique=True)  # "owner/name"
    description = Column(Text, nullable=True)
    language = Column(String(100), nullable=True)
    topics = Column(JSON, nullable=False, default=list)
    stars = Column(Integer, nullable=False, default=0, index=True)
    forks = Column(Integer, nullable=False, default=0)
    open_issues = Column(Integer, nullable=False, default=0)
    watchers = Column(Integer, nullable=False, default=0)
    html_url = Column(String(512), nullable=True)
    default_branch = Column(String(255), nullable=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    is_fork = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)
    pushed_at = Column(DateTime, nullable=True)
    discovered_at = Column(DateTime, nullable=False, default=utcnow)

    snapshots = relationship("RepoMetricsSnapshot", back_populates="repository",
                             cascade="all, delete-orphan", passive_deletes=True)
    tier_assignment = relationship("TierAssignment", back_populates="repository", uselist=False,
                                   cascade="all, delete-orphan", passive_deletes=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'owner': self.owner,
            'name': self.name,
            'full_name': self.full_name,
            'description': self.description,
            'language': self.language,
            'topics': list(self.topics or []),
            'stars': self.stars,
            'forks': self.forks,
            'open_issues': self.open_issues,
            'watchers': self.watchers,
            'html_url': self.html_url,
            'is_archived': self.is_archived,
            'is_fork': self.is_fork,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'pushed_at': self.pushed_at.isoformat() if self.pushed_at else None,
            'discovered_at': self.discovered_at.isoformat() if self.discovered_at else None,
        }

    def __repr__(self):
        return f"<Repository(full_name='{self.full_name}', stars={self.stars})>"


class RepoMetricsSnapshot(Base):
    """Point-in-time copy of a repository's counters. Rows are never updated."""

    __tablename__ = 'repo_metrics'
    __table_args__ = (
        Index('ix_repo_metrics_repo_recorded', 'repo_id', 'recorded_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_id = Column(BigInteger().with_variant(Integer, "sqlite"),
                     ForeignKey('repositories.id', ondelete='CASCADE'), nullable=False)
    stars = Column(Integer, nullable=False)
    forks = Column(Integer, nullable=False)
    open_issues = Column(Integer, nullable=False)
    watchers = Column(Integer, nullable=False, default=0)
    scan_depth = Column(String(16), nullable=False, default='minimal')

    # Present only at the scan depths that fetch them
    commits_30d = Column(Integer, nullable=True)
    commit_authors_30d = Column(Integer, nullable=True)
    releases_count = Column(Integer, nullable=True)
    latest_release_at = Column(DateTime, nullable=True)
    prs_total = Column(Integer, nullable=True)
    prs_merged = Column(Integer, nullable=True)
    avg_merge_hours = Column(Float, nullable=True)
    issues_total = Column(Integer, nullable=True)
    issues_closed = Column(Integer, nullable=True)
    avg_close_hours = Column(Float, nullable=True)
    issues_with_response = Column(Integer, nullable=True)

    recorded_at = Column(DateTime, nullable=False, default=utcnow)

    repository = relationship("Repository", back_populates="snapshots")

    def to_dict(self) -> Dict[str, Any]:
        data = {c.name: getattr(self, c.name) for c in self.__table__.columns}
        for key in ('recorded_at', 'latest_release_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class TierAssignment(Base):
    """Current tier of one repository. Exactly one row per scanned repository."""

    __tablename__ = 'repository_tiers'
    __table_args__ = (
        CheckConstraint('tier IN (1, 2, 3)', name='ck_repository_tiers_tier'),
        Index('ix_repository_tiers_tier_priority', 'tier', 'scan_priority'),
    )

    repo_id = Column(BigInteger().with_variant(Integer, "sqlite"),
                     ForeignKey('repositories.id', ondelete='CASCADE'), primary_key=True)
    tier = Column(Integer, nullable=False)
    growth_velocity = Column(Float, nullable=False, default=0.0)
    engagement_score = Column(Float, nullable=False, default=0.0)
    scan_priority = Column(Float, nullable=False, default=0.0)
    composite_score = Column(Float, nullable=False, default=0.0)
    last_deep_scan = Column(DateTime, nullable=True)
    last_basic_scan = Column(DateTime, nullable=True)
    last_scanned_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    repository = relationship("Repository", back_populates="tier_assignment")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'repo_id': self.repo_id,
            'tier': self.tier,
            'growth_velocity': self.growth_velocity,
            'engagement_score': self.engagement_score,
            'scan_priority': self.scan_priority,
            'composite_score': self.composite_score,
            'last_deep_scan': self.last_deep_scan.isoformat() if self.last_deep_scan else None,
            'last_basic_scan': self.last_basic_scan.isoformat() if self.last_basic_scan else None,
            'last_scanned_at': self.last_scanned_at.isoformat() if self.last_scanned_at else None,
        }

    def __repr__(self):
        return f"<TierAssignment(repo_id={self.repo_id}, tier={self.tier}, priority={self.scan_priority:.2f})>"
