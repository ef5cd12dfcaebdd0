"""Type definitions and protocols for fax-dispatch.

This package provides:
- Data models (backend payloads, persisted records, partial updates, snapshots)
- Protocol definitions for the fax backend, the store and the clock
- Type aliases (PEP 695 syntax)
"""

from fax_dispatch.types.aliases import (
    BatchId,
    EventCallback,
    EventPayload,
    FaxHandle,
)
from fax_dispatch.types.models import (
    ActivityRecord,
    BatchDetails,
    BatchProgress,
    BatchRecord,
    BatchRequest,
    BatchUpdate,
    DocumentActivity,
    FaxDocument,
    JobStatus,
    MetricBucket,
    SendJobRequest,
    SessionInfo,
    SubmissionRecord,
    SubmissionUpdate,
)
from fax_dispatch.types.protocols import (
    Clock,
    FaxBackend,
    FaxStore,
)

__all__ = [
    # Type aliases
    "BatchId",
    "EventCallback",
    "EventPayload",
    "FaxHandle",
    # Data models
    "ActivityRecord",
    "BatchDetails",
    "BatchProgress",
    "BatchRecord",
    "BatchRequest",
    "BatchUpdate",
    "DocumentActivity",
    "FaxDocument",
    "JobStatus",
    "MetricBucket",
    "SendJobRequest",
    "SessionInfo",
    "SubmissionRecord",
    "SubmissionUpdate",
    # Protocols
    "Clock",
    "FaxBackend",
    "FaxStore",
]
