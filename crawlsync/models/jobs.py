from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .common import isoformat, new_id, utcnow


class JobKind(str, Enum):
    CRAWL_WEBSITE = "CrawlWebsite"
    EXTRACT_POSTS = "ExtractPosts"
    SYNC_POSTS = "SyncPosts"
    REGENERATE_POSTS = "RegeneratePosts"
    RUN_DISCOVERY = "RunDiscovery"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Completion of the key kind enqueues the value kind.
JOB_CHAIN: Dict[JobKind, JobKind] = {
    JobKind.CRAWL_WEBSITE: JobKind.EXTRACT_POSTS,
    JobKind.REGENERATE_POSTS: JobKind.EXTRACT_POSTS,
    JobKind.EXTRACT_POSTS: JobKind.SYNC_POSTS,
}


@dataclass
class Job:
    kind: JobKind
    source_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    status: JobStatus = JobStatus.PENDING
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    next_run_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    parent_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def lock_key(self) -> str:
        return f"{self.kind.value}:{self.source_key}"

    def status_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "source_key": self.source_key,
            "error": self.error,
            "error_kind": self.error_kind,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_run_at": isoformat(self.next_run_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "parent_id": self.parent_id,
            "result": self.result,
        }
