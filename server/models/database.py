"""SQLModel record tables for the entity collections.

Timestamps are Unix seconds (float) so records round-trip through SQLite
without timezone loss.
"""

import time
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import Text, LargeBinary


class User(SQLModel, table=True):
    """User profile with preferences and analysis history."""

    __tablename__ = "users"

    id: str = Field(primary_key=True, max_length=255)
    email: str = Field(index=True, unique=True, max_length=320)
    profile: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    preferences: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    history: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: float = Field(default_factory=time.time, index=True)
    updated_at: float = Field(default_factory=time.time, index=True)


class Job(SQLModel, table=True):
    """Job posting and its AI analysis."""

    __tablename__ = "jobs"

    id: str = Field(primary_key=True, max_length=255)
    title: str = Field(index=True, max_length=500)
    company: str = Field(index=True, max_length=255)
    content: str = Field(default="", sa_column=Column(Text))
    requirements: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    skills: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    ai_analysis: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    analyzed_at: float = Field(default_factory=time.time, index=True)


class AnalysisResult(SQLModel, table=True):
    """Resume-to-job match result."""

    __tablename__ = "analysis_results"

    id: str = Field(primary_key=True, max_length=255)
    user_id: str = Field(index=True, max_length=255)
    job_id: str = Field(index=True, max_length=255)
    match_score: float = Field(index=True)
    detailed_scores: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    recommendations: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    generated_resume: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    performance_metrics: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: float = Field(default_factory=time.time, index=True)


class CachedModel(SQLModel, table=True):
    """Downloaded inference model blob.

    `manifest` carries name, type, description, checksum and download_url.
    """

    __tablename__ = "cached_models"

    id: str = Field(primary_key=True, max_length=255)
    blob: bytes = Field(default=b"", sa_column=Column(LargeBinary))
    manifest: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    version: str = Field(index=True, max_length=100)
    size: int = Field(default=0, index=True)
    last_accessed: float = Field(default_factory=time.time, index=True)
    access_count: int = Field(default=0, index=True)


class PerformanceMetric(SQLModel, table=True):
    """One timing/memory sample recorded by the application."""

    __tablename__ = "performance_metrics"

    id: str = Field(primary_key=True, max_length=255)
    operation: str = Field(index=True, max_length=255)
    timestamp: float = Field(default_factory=time.time, index=True)
    metrics: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
