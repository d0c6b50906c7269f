"""Repositories for each persisted collection."""

from typing import Any, Dict, List, Optional

from sqlmodel import select

from core.exceptions import RecordNotFoundError
from core.logging import get_logger
from models.cache import CacheMetadataEntry, FailedSyncItem
from models.database import User, Job, AnalysisResult, CachedModel, PerformanceMetric
from .repository import BaseRepository, KeyRange

logger = get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# ============================================================================
# Users
# ============================================================================

class UserRepository(BaseRepository[User]):
    model = User
    collection = "users"
    indexes = ("email", "created_at", "updated_at")

    async def find_by_email(self, email: str) -> Optional[User]:
        users = await self.query_by_index("email", email, limit=1)
        return users[0] if users else None

    async def get_created_between(self, start: float, end: float) -> List[User]:
        return await self.query_by_index("created_at", KeyRange.bound(start, end),
                                         order_direction="desc")

    async def get_recently_updated(self, limit: int = 10) -> List[User]:
        return await self.query_by_index("updated_at", limit=limit, order_direction="desc")

    async def _require(self, user_id: str) -> User:
        user = await self.get_by_id(user_id)
        if user is None:
            raise RecordNotFoundError(self.collection, user_id)
        return user

    async def update_profile(self, user_id: str, profile_updates: Dict[str, Any]) -> User:
        user = await self._require(user_id)
        user.profile = {**user.profile, **profile_updates}
        if "email" in profile_updates:
            user.email = profile_updates["email"]
        user.updated_at = self._clock()
        return await self.update(user)

    async def update_preferences(self, user_id: str, preferences: Dict[str, Any]) -> User:
        user = await self._require(user_id)
        user.preferences = {**user.preferences, **preferences}
        user.updated_at = self._clock()
        return await self.update(user)

    async def add_analysis_to_history(self, user_id: str, entry: Dict[str, Any]) -> User:
        user = await self._require(user_id)
        user.history = [*user.history, entry]
        user.updated_at = self._clock()
        return await self.update(user)

    async def get_history(self, user_id: str) -> List[Dict[str, Any]]:
        user = await self.get_by_id(user_id)
        return list(user.history) if user else []

    async def clear_history(self, user_id: str) -> User:
        user = await self._require(user_id)
        user.history = []
        user.updated_at = self._clock()
        return await self.update(user)


# ============================================================================
# Jobs
# ============================================================================

class JobRepository(BaseRepository[Job]):
    model = Job
    collection = "jobs"
    indexes = ("title", "company", "analyzed_at")

    async def find_by_title(self, title: str) -> List[Job]:
        """Case-insensitive substring match on the title."""
        needle = title.lower()
        return [job async for job in self.scan_index("title") if needle in job.title.lower()]

    async def find_by_company(self, company: str) -> List[Job]:
        stmt = (select(Job)
                .where(Job.company == company)
                .order_by(Job.analyzed_at.desc(), Job.id.desc()))
        return await self._fetch(stmt, "find_by_company")

    async def get_recently_analyzed(self, limit: int = 10) -> List[Job]:
        return await self.query_by_index("analyzed_at", limit=limit, order_direction="desc")

    async def get_analyzed_between(self, start: float, end: float) -> List[Job]:
        return await self.query_by_index("analyzed_at", KeyRange.bound(start, end),
                                         order_direction="desc")

    async def search_by_keywords(self, keywords: List[str]) -> List[Job]:
        """Jobs whose content mentions any of the keywords."""
        lowered = [k.lower() for k in keywords if k]
        if not lowered:
            return []
        matches = []
        async for job in self.scan_index("analyzed_at", order_direction="desc"):
            content = (job.content or "").lower()
            if any(keyword in content for keyword in lowered):
                matches.append(job)
        return matches

    async def get_high_match(self, min_score: float = 0.7) -> List[Job]:
        return [
            job for job in await self.get_all()
            if job.ai_analysis and job.ai_analysis.get("match_score", 0) >= min_score
        ]

    async def update_analysis(self, job_id: str, ai_analysis: Dict[str, Any]) -> Job:
        job = await self.get_by_id(job_id)
        if job is None:
            raise RecordNotFoundError(self.collection, job_id)
        job.ai_analysis = ai_analysis
        job.analyzed_at = self._clock()
        return await self.update(job)

    async def get_needing_reanalysis(self, days_old: int = 30) -> List[Job]:
        cutoff = self._clock() - days_old * DAY_SECONDS
        return await self.query_by_index("analyzed_at", KeyRange.upper_bound(cutoff))

    async def get_unique_companies(self) -> List[str]:
        return sorted({job.company for job in await self.get_all()})

    async def get_statistics(self) -> Dict[str, Any]:
        jobs = await self.get_all()
        week_ago = self._clock() - 7 * DAY_SECONDS
        scores = [job.ai_analysis["match_score"] for job in jobs
                  if job.ai_analysis and job.ai_analysis.get("match_score")]
        return {
            "total_jobs": len(jobs),
            "unique_companies": len({job.company for job in jobs}),
            "average_match_score": _mean(scores),
            "recent_jobs": sum(1 for job in jobs if job.analyzed_at >= week_ago),
        }


# ============================================================================
# Analysis results
# ============================================================================

class AnalysisRepository(BaseRepository[AnalysisResult]):
    model = AnalysisResult
    collection = "analysis_results"
    indexes = ("user_id", "job_id", "match_score", "created_at")

    async def get_by_user(self, user_id: str) -> List[AnalysisResult]:
        """A user's results, newest first."""
        stmt = (select(AnalysisResult)
                .where(AnalysisResult.user_id == user_id)
                .order_by(AnalysisResult.created_at.desc(), AnalysisResult.id.desc()))
        return await self._fetch(stmt, "get_by_user")

    async def get_by_job(self, job_id: str) -> List[AnalysisResult]:
        stmt = (select(AnalysisResult)
                .where(AnalysisResult.job_id == job_id)
                .order_by(AnalysisResult.created_at.desc(), AnalysisResult.id.desc()))
        return await self._fetch(stmt, "get_by_job")

    async def get_by_user_and_job(self, user_id: str, job_id: str) -> List[AnalysisResult]:
        return [r for r in await self.get_by_user(user_id) if r.job_id == job_id]

    async def get_recent(self, limit: int = 10) -> List[AnalysisResult]:
        return await self.query_by_index("created_at", limit=limit, order_direction="desc")

    async def get_by_date_range(self, start: float, end: float) -> List[AnalysisResult]:
        return await self.query_by_index("created_at", KeyRange.bound(start, end),
                                         order_direction="desc")

    async def get_by_score_range(self, min_score: float, max_score: float,
                                 limit: Optional[int] = None) -> List[AnalysisResult]:
        return await self.query_by_index("match_score", KeyRange.bound(min_score, max_score),
                                         limit=limit, order_direction="desc")

    async def get_high_scoring(self, min_score: float = 0.8) -> List[AnalysisResult]:
        return await self.query_by_index("match_score", KeyRange.lower_bound(min_score),
                                         order_direction="desc")

    async def get_low_scoring(self, max_score: float = 0.5) -> List[AnalysisResult]:
        return await self.query_by_index("match_score", KeyRange.upper_bound(max_score))

    async def get_latest_for_user_job(self, user_id: str, job_id: str) -> Optional[AnalysisResult]:
        results = await self.get_by_user_and_job(user_id, job_id)
        return results[0] if results else None

    async def get_user_statistics(self, user_id: str) -> Dict[str, Any]:
        results = await self.get_by_user(user_id)
        if not results:
            return {
                "total_analyses": 0,
                "average_score": 0.0,
                "highest_score": 0.0,
                "lowest_score": 0.0,
                "recent_analyses": 0,
                "improvement_trend": "stable",
            }

        scores = [r.match_score for r in results]
        week_ago = self._clock() - 7 * DAY_SECONDS

        # Compare the newest three results against the three before them
        trend = "stable"
        if len(scores) >= 6:
            recent_avg = _mean(scores[:3])
            previous_avg = _mean(scores[3:6])
            if recent_avg > previous_avg + 0.05:
                trend = "improving"
            elif recent_avg < previous_avg - 0.05:
                trend = "declining"

        return {
            "total_analyses": len(results),
            "average_score": _mean(scores),
            "highest_score": max(scores),
            "lowest_score": min(scores),
            "recent_analyses": sum(1 for r in results if r.created_at >= week_ago),
            "improvement_trend": trend,
        }

    async def get_global_statistics(self) -> Dict[str, Any]:
        results = await self.get_all()
        now = self._clock()
        return {
            "total_analyses": len(results),
            "unique_users": len({r.user_id for r in results}),
            "unique_jobs": len({r.job_id for r in results}),
            "average_score": _mean([r.match_score for r in results]),
            "analyses_this_week": sum(1 for r in results if r.created_at >= now - 7 * DAY_SECONDS),
            "analyses_this_month": sum(1 for r in results if r.created_at >= now - 30 * DAY_SECONDS),
        }

    async def delete_older_than(self, days: float) -> List[str]:
        """Delete results created before the retention window. Returns deleted ids."""
        cutoff = self._clock() - days * DAY_SECONDS
        old_results = await self.query_by_index("created_at", KeyRange.upper_bound(cutoff, open=True))

        deleted = []
        for result in old_results:
            if await self.delete(result.id):
                deleted.append(result.id)

        if deleted:
            logger.info("Old analysis results deleted", count=len(deleted), retention_days=days)
        return deleted

    async def get_performance_summary(self) -> Dict[str, float]:
        metrics = [r.performance_metrics or {} for r in await self.get_all()]
        fields = {
            "average_load_time": "load_time",
            "average_ai_processing_time": "ai_processing_time",
            "average_render_time": "render_time",
            "average_memory_usage": "memory_usage",
            "average_cache_hit_rate": "cache_hit_rate",
        }
        return {
            name: _mean([m.get(source, 0) for m in metrics])
            for name, source in fields.items()
        }


# ============================================================================
# Cached inference models
# ============================================================================

class ModelRepository(BaseRepository[CachedModel]):
    model = CachedModel
    collection = "cached_models"
    indexes = ("version", "size", "last_accessed", "access_count")

    async def get_by_version(self, version: str) -> Optional[CachedModel]:
        models = await self.query_by_index("version", version, limit=1)
        return models[0] if models else None

    async def get_by_last_accessed(self, limit: Optional[int] = None) -> List[CachedModel]:
        return await self.query_by_index("last_accessed", limit=limit, order_direction="desc")

    async def get_by_access_count(self, limit: Optional[int] = None) -> List[CachedModel]:
        return await self.query_by_index("access_count", limit=limit, order_direction="desc")

    async def get_by_size(self, min_size: int, max_size: int) -> List[CachedModel]:
        return await self.query_by_index("size", KeyRange.bound(min_size, max_size))

    async def get_least_recently_used(self, limit: int) -> List[CachedModel]:
        return await self.query_by_index("last_accessed", limit=limit)

    async def update_access(self, model_id: str) -> CachedModel:
        model = await self.get_by_id(model_id)
        if model is None:
            raise RecordNotFoundError(self.collection, model_id)
        model.last_accessed = self._clock()
        model.access_count += 1
        return await self.update(model)

    async def get_total_size(self) -> int:
        return sum(model.size for model in await self.get_all())

    async def get_statistics(self) -> Dict[str, Any]:
        models = await self.get_all()
        if not models:
            return {
                "total_models": 0,
                "total_size": 0,
                "average_size": 0.0,
                "most_accessed_model": None,
                "least_accessed_model": None,
                "oldest_model": None,
                "newest_model": None,
            }

        by_access = sorted(models, key=lambda m: m.access_count, reverse=True)
        by_date = sorted(models, key=lambda m: m.last_accessed)
        total_size = sum(m.size for m in models)
        return {
            "total_models": len(models),
            "total_size": total_size,
            "average_size": total_size / len(models),
            "most_accessed_model": by_access[0].id,
            "least_accessed_model": by_access[-1].id,
            "oldest_model": by_date[0].id,
            "newest_model": by_date[-1].id,
        }

    async def is_valid(self, model_id: str, expected_checksum: Optional[str] = None) -> bool:
        model = await self.get_by_id(model_id)
        if model is None:
            return False
        if expected_checksum and model.manifest.get("checksum") != expected_checksum:
            return False
        return True

    async def get_needing_update(self, current_versions: Dict[str, str]) -> List[CachedModel]:
        """Models whose stored version differs from `current_versions[name]`."""
        stale = []
        for model in await self.get_all():
            current = current_versions.get(model.manifest.get("name"))
            if current and model.version != current:
                stale.append(model)
        return stale

    async def cleanup_invalid(self) -> List[str]:
        """Delete models with an empty blob or a size that disagrees with it."""
        removed = []
        for model in await self.get_all():
            if not model.blob or model.size != len(model.blob):
                await self.delete(model.id)
                removed.append(model.id)

        if removed:
            logger.info("Invalid cached models removed", count=len(removed))
        return removed

    async def get_by_type(self, model_type: str) -> List[CachedModel]:
        return [m for m in await self.get_all() if m.manifest.get("type") == model_type]

    async def update_model_metadata(self, model_id: str, updates: Dict[str, Any]) -> CachedModel:
        model = await self.get_by_id(model_id)
        if model is None:
            raise RecordNotFoundError(self.collection, model_id)
        model.manifest = {**model.manifest, **updates}
        return await self.update(model)


# ============================================================================
# Performance metrics
# ============================================================================

class MetricsRepository(BaseRepository[PerformanceMetric]):
    model = PerformanceMetric
    collection = "performance_metrics"
    indexes = ("operation", "timestamp")

    async def get_recent(self, operation: Optional[str] = None, limit: int = 100) -> List[PerformanceMetric]:
        """Newest samples first, optionally for one operation."""
        stmt = select(PerformanceMetric)
        if operation:
            stmt = stmt.where(PerformanceMetric.operation == operation)
        stmt = stmt.order_by(PerformanceMetric.timestamp.desc(), PerformanceMetric.id.desc()).limit(limit)
        return await self._fetch(stmt, "get_recent")


# ============================================================================
# Engine-owned collections
# ============================================================================

class CacheMetadataRepository(BaseRepository[CacheMetadataEntry]):
    model = CacheMetadataEntry
    collection = "cache_metadata"
    key_field = "key"
    indexes = ("collection", "last_accessed", "priority", "expires_at")


class FailedSyncRepository(BaseRepository[FailedSyncItem]):
    model = FailedSyncItem
    collection = "sync_failed_items"
    indexes = ("entity", "enqueued_at")
