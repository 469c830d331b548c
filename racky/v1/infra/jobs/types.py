"""
Enumerations shared by the job store, publisher and consumers.
"""

from enum import Enum


class JobType(str, Enum):
    """Kinds of asynchronous work the platform runs."""

    MARKETPLACE_SYNC = "marketplace-sync"
    PRODUCT_BATCH = "product-batch"
    PRODUCT_INDIVIDUAL = "product-individual"
    AI_OPTIMIZATION_SCAN = "ai-optimization-scan"
    AI_DESCRIPTION_BATCH = "ai-description-batch"
    AI_DESCRIPTION_GENERATION = "ai-description-generation"
    MARKETPLACE_UPDATE_BATCH = "marketplace-update-batch"
    MARKETPLACE_UPDATE = "marketplace-update"


class JobStatus(str, Enum):
    """Job status enumeration."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class HistoryEvent(str, Enum):
    """Events written to the append-only job history."""

    CREATED = "created"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    BATCH_INITIATED = "batch_initiated"


class JobPriority(Enum):
    """Job priority.

    Each member carries both derivations: the lowercase routing-key suffix
    and the broker-native message priority (0-10 scale).
    """

    LOW = ("low", 2)
    NORMAL = ("normal", 5)
    HIGH = ("high", 8)
    CRITICAL = ("critical", 10)

    def __init__(self, routing_name: str, broker_priority: int):
        self.routing_name = routing_name
        self.broker_priority = broker_priority

    @classmethod
    def parse(cls, value: "JobPriority | str") -> "JobPriority":
        """Accept a member, its name (``HIGH``) or its routing name (``high``)."""
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(f"Unknown job priority: {value!r}") from None


# Value of a handler result's "status" field that defers completion
BATCH_PENDING_STATUS = "processing_batches"
