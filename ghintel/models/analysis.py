"""SQLAlchemy models for AI analyses and alerts."""
from typing import Dict, Any

from sqlalchemy import (Column, Integer, BigInteger, String, Text, Boolean, DateTime, Float, JSON,
                        ForeignKey, UniqueConstraint, Index)

from .base import Base, utcnow

RECOMMENDATIONS = ('strong-buy', 'buy', 'watch', 'pass')
ALERT_TYPES = ('high_growth', 'investment_opportunity', 'trend')
ALERT_LEVELS = ('urgent', 'high', 'medium')


class Analysis(Base):
    """One model-generated scoring of a repository. Rows are never updated."""

    __tablename__ = 'analyses'
    __table_args__ = (
        # window_key is the freshness-window index of created_at; at most one
        # analysis per repository per window even with overlapping runs.
        UniqueConstraint('repo_id', 'window_key', name='uq_analyses_repo_window'),
        Index('ix_analyses_repo_created', 'repo_id', 'created_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_id = Column(BigInteger().with_variant(Integer, "sqlite"),
                     ForeignKey('repositories.id', ondelete='CASCADE'), nullable=False)

    investment_score = Column(Float, nullable=False)
    innovation_score = Column(Float, nullable=False)
    team_score = Column(Float, nullable=False)
    market_score = Column(Float, nullable=False)
    technical_moat_score = Column(Float, nullable=True)
    scalability_score = Column(Float, nullable=True)
    developer_adoption_score = Column(Float, nullable=True)

    recommendation = Column(String(16), nullable=False)
    summary = Column(Text, nullable=False)
    strengths = Column(JSON, nullable=False, default=list)
    risks = Column(JSON, nullable=False, default=list)
    questions = Column(JSON, nullable=False, default=list)
    growth_prediction = Column(Text, nullable=True)
    investment_thesis = Column(Text, nullable=True)
    competitive_analysis = Column(Text, nullable=True)

    model = Column(String(100), nullable=False)
    cost_usd = Column(Float, nullable=False, default=0.0)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)
    window_key = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def scores(self) -> Dict[str, float]:
        scores = {
            'investment': self.investment_score,
            'innovation': self.innovation_score,
            'team': self.team_score,
            'market': self.market_score,
            'technical_moat': self.technical_moat_score,
            'scalability': self.scalability_score,
            'developer_adoption': self.developer_adoption_score,
        }
        return {name: value for name, value in scores.items() if value is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'repo_id': self.repo_id,
            'scores': self.scores,
            'recommendation': self.recommendation,
            'summary': self.summary,
            'strengths': list(self.strengths or []),
            'risks': list(self.risks or []),
            'questions': list(self.questions or []),
            'growth_prediction': self.growth_prediction,
            'investment_thesis': self.investment_thesis,
            'competitive_analysis': self.competitive_analysis,
            'model': self.model,
            'cost_usd': self.cost_usd,
            'tokens_used': self.tokens_used,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Analysis(repo_id={self.repo_id}, recommendation='{self.recommendation}', model='{self.model}')>"


class Alert(Base):
    """Threshold crossing noticed during a scan. Only acknowledgement is ever updated."""

    __tablename__ = 'alerts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo_id = Column(BigInteger().with_variant(Integer, "sqlite"),
                     ForeignKey('repositories.id', ondelete='CASCADE'), nullable=False, index=True)
    alert_type = Column('type', String(32), nullable=False)
    level = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    details = Column('metadata', JSON, nullable=True)  # "metadata" is reserved on declarative classes
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(DateTime, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'repo_id': self.repo_id,
            'type': self.alert_type,
            'level': self.level,
            'message': self.message,
            'metadata': self.details,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'acknowledged': self.acknowledged,
            'acknowledged_at': self.acknowledged_at.isoformat() if self.acknowledged_at else None,
        }
