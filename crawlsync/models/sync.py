from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .common import new_id, utcnow


class ProposalKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    MERGE = "merge"
    REJECT = "reject"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_REVIEWED = "partially_reviewed"
    COMPLETED = "completed"
    EXPIRED = "expired"


class RecordStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    DELETED = "deleted"


# Fields a proposal payload may carry; anything else is ignored on apply.
RECORD_FIELDS = ("title", "summary", "description", "contact", "schedule", "tags", "source_page_ids")


@dataclass
class CanonicalRecord:
    source_id: str
    title: str
    summary: str = ""
    description: str = ""
    contact: Optional[Dict[str, Any]] = None
    schedule: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    source_page_ids: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    id: str = field(default_factory=new_id)
    status: RecordStatus = RecordStatus.ACTIVE
    deletion_reason: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in RECORD_FIELDS}

    def embedding_text(self) -> str:
        return f"{self.title}\n{self.summary}\n{(self.description or '')[:1000]}"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["updated_at"] = self.updated_at.isoformat()
        d.pop("embedding", None)
        return d


@dataclass
class SyncProposal:
    batch_id: str
    kind: ProposalKind
    payload: Dict[str, Any] = field(default_factory=dict)
    target_id: Optional[str] = None
    source_ids: List[str] = field(default_factory=list)
    merge_source_ids: List[str] = field(default_factory=list)
    reason: str = ""
    id: str = field(default_factory=new_id)
    status: ProposalStatus = ProposalStatus.PENDING
    reviewed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["status"] = self.status.value
        d["reviewed_at"] = self.reviewed_at.isoformat() if self.reviewed_at else None
        return d


@dataclass
class SyncBatch:
    source_id: str
    proposal_ids: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    status: BatchStatus = BatchStatus.PENDING
    kind: str = "sync"  # sync | cleanup
    created_at: datetime = field(default_factory=utcnow)
    summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "proposal_ids": list(self.proposal_ids),
            "kind": self.kind,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "summary": self.summary,
        }


def derive_batch_status(proposals: List[SyncProposal]) -> BatchStatus:
    """Aggregate status from member proposals (expiry is set explicitly, never derived)."""
    if not proposals:
        return BatchStatus.COMPLETED
    reviewed = sum(1 for p in proposals if p.status is not ProposalStatus.PENDING)
    if reviewed == 0:
        return BatchStatus.PENDING
    if reviewed == len(proposals):
        return BatchStatus.COMPLETED
    return BatchStatus.PARTIALLY_REVIEWED
