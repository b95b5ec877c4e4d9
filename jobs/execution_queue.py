"""
Execution Queue
Hand-off point between the orchestrator and the external workers that sign
and broadcast transactions

Job identity is ``<operation>-<tokenAddress>-<attempt>`` so a unit of work is
idempotent per attempt. Workers report back through the orchestrator's
callback methods; the queue never writes to the database itself.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from utils.exception_handler import DuplicateJobError

logger = logging.getLogger(__name__)


class QueueName(Enum):
    TOKEN_LAUNCH = "token_launch"
    DEV_SELL = "dev_sell"
    WALLET_SELL = "wallet_sell"


JOB_PREFIXES = {
    QueueName.TOKEN_LAUNCH: "launch",
    QueueName.DEV_SELL: "dev-sell",
    QueueName.WALLET_SELL: "wallet-sell",
}


def build_job_id(queue: QueueName, token_address: str, attempt: int) -> str:
    return f"{JOB_PREFIXES[queue]}-{token_address}-{attempt}"


@dataclass
class QueuedJob:
    queue: QueueName
    job_id: str
    payload: Dict[str, Any] = field(repr=False)
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ExecutionQueue(ABC):
    """Outbound work queue consumed by transaction workers"""

    @abstractmethod
    def enqueue(self, queue: QueueName, job_id: str, payload: Dict[str, Any]) -> str:
        """Queue a job; raises DuplicateJobError when ``job_id`` is already queued"""

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        """Withdraw a job that has not been picked up yet"""


class InMemoryExecutionQueue(ExecutionQueue):
    """Thread-safe in-process queue for single-process deployments and tests"""

    def __init__(self):
        self._jobs: Dict[str, QueuedJob] = {}
        self._lock = threading.Lock()

    def enqueue(self, queue: QueueName, job_id: str, payload: Dict[str, Any]) -> str:
        with self._lock:
            if job_id in self._jobs:
                raise DuplicateJobError(f"Job {job_id} is already queued")
            self._jobs[job_id] = QueuedJob(queue=queue, job_id=job_id, payload=dict(payload))
        logger.info(f"📤 Enqueued {queue.value} job {job_id}")
        return job_id

    def remove(self, job_id: str) -> bool:
        with self._lock:
            removed = self._jobs.pop(job_id, None) is not None
        if removed:
            logger.warning(f"↩️ Withdrew job {job_id}")
        return removed

    def get(self, job_id: str) -> Optional[QueuedJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self, queue: Optional[QueueName] = None) -> List[QueuedJob]:
        with self._lock:
            return [job for job in self._jobs.values() if queue is None or job.queue == queue]

    def pop_next(self, queue: QueueName) -> Optional[QueuedJob]:
        """Take the oldest job of a queue, as a worker would"""
        with self._lock:
            pending = [job for job in self._jobs.values() if job.queue == queue]
            if not pending:
                return None
            job = pending[0]
            del self._jobs[job.job_id]
            return job

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
