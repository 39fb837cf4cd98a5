"""Usage logging for upstream AI calls made by workers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo.database import Database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AIUsageLog:
    job_id: str
    user_id: str
    operation: str
    model: str
    status: str  # success|fail
    latency_ms: int
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    error_type: Optional[str] = None


class AIUsageService:
    @staticmethod
    def _now():
        return datetime.utcnow()

    @classmethod
    def log(cls, db: Database, entry: AIUsageLog, extra: Optional[Dict[str, Any]] = None) -> None:
        doc = {
            "job_id": entry.job_id,
            "user_id": entry.user_id,
            "operation": entry.operation,
            "model": entry.model,
            "status": entry.status,
            "latency_ms": int(entry.latency_ms),
            "tokens_in": entry.tokens_in,
            "tokens_out": entry.tokens_out,
            "error_type": entry.error_type,
            "created_at": cls._now(),
        }
        if extra:
            # No raw prompts or media; metadata only.
            doc["extra"] = extra
        try:
            db["ai_usage"].insert_one(doc)
        except Exception as e:
            # Usage logging must never fail a job.
            logger.warning(f"Failed to record AI usage for job {entry.job_id}: {e}")
