from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import requests

from .exceptions import FetchError

LOCATOR_HEADER = "Sforce-Locator"
DEFAULT_CHUNK_SIZE = 64 * 1024


class JobState(str, Enum):
    UPLOAD_COMPLETE = "UploadComplete"
    QUEUED = "Queued"
    PREPARING = "Preparing"
    IN_PROGRESS = "InProgress"
    JOB_COMPLETE = "JobComplete"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @classmethod
    def parse(cls, value: str | None) -> "JobState | None":
        """Map a reported state onto the enum, None for states this client does not know"""
        try:
            return cls(value)
        except ValueError:
            return None


FAILURE_STATES = frozenset({JobState.FAILED, JobState.ABORTED})


def operation_for(include_archived: bool) -> str:
    """queryAll also returns soft-deleted and archived records"""
    return "queryAll" if include_archived else "query"


@dataclass
class Job:
    """Bulk query job as reported by the jobs/query endpoint"""

    id: str
    state: str
    query: str | None = None
    include_archived: bool = False
    records_processed: int | None = None
    error_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_response(cls, data: dict[str, Any], query: str | None = None, include_archived: bool = False) -> "Job":
        operation = data.get("operation")
        if operation:
            include_archived = operation == "queryAll"
        return cls(
            id=data["id"],
            state=data.get("state", ""),
            query=data.get("query", query),
            include_archived=include_archived,
            records_processed=data.get("numberRecordsProcessed"),
            error_message=data.get("errorMessage"),
            raw=data,
        )

    def update(self, other: "Job"):
        """Take over the mutable fields of a newer status report of the same job"""
        if other.id != self.id:
            raise ValueError(f"Cannot update job {self.id} with status of job {other.id}")
        self.state = other.state
        self.records_processed = other.records_processed
        self.error_message = other.error_message
        self.raw = other.raw

    @property
    def job_state(self) -> JobState | None:
        return JobState.parse(self.state)


def parse_locator(value: str | None) -> str | None:
    """The platform sends the literal string "null" on the last page instead of omitting the header"""
    if not value or value.strip().lower() == "null":
        return None
    return value


@dataclass
class ResultPage:
    """
    One page of CSV results.

    The body is streamed from the response; iterate it once with iter_bytes() or
    load it whole with read(). The underlying response is released by close().
    """

    job_id: str
    locator: str | None
    next_locator: str | None
    max_records: int | None
    response: requests.Response = field(repr=False)
    chunk_size: int = DEFAULT_CHUNK_SIZE

    @property
    def is_last(self) -> bool:
        return self.next_locator is None

    def iter_bytes(self) -> Iterator[bytes]:
        try:
            for chunk in self.response.iter_content(chunk_size=self.chunk_size):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise FetchError(self.job_id, self.locator, f"Connection failed while reading results: {str(e)}")

    def read(self) -> bytes:
        try:
            return b"".join(self.iter_bytes())
        finally:
            self.close()

    def close(self):
        self.response.close()


@dataclass
class BulkQueryResult:
    """Result from a bulk query exported to a file"""

    job_id: str
    file_path: str
    page_count: int
    byte_count: int
    api_wait_time: float  # Time spent waiting for Salesforce to process the job
    download_time: float  # Time spent downloading and assembling the pages
