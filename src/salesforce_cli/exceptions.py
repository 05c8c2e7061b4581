from keboola.component.exceptions import UserException


class BulkApiError(UserException):
    """Base class for all Bulk API 2.0 query errors"""


class AuthError(BulkApiError):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SubmissionError(BulkApiError):
    def __init__(self, status_code: int | None, message: str = ""):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Failed to create bulk query job (status {status_code}): {message}")


class PollError(BulkApiError):
    def __init__(self, job_id: str, message: str, status_code: int | None = None):
        self.job_id = job_id
        self.status_code = status_code
        self.message = message
        super().__init__(f"Failed to get state of job {job_id} (status {status_code}): {message}")


class JobTerminatedError(PollError):
    def __init__(self, job_id: str, state: str, message: str | None = None):
        self.job_id = job_id
        self.state = state
        self.status_code = None
        self.message = message
        detail = f": {message}" if message else ""
        BulkApiError.__init__(self, f"Job {job_id} ended with state {state}{detail}")


class PollTimeoutError(PollError):
    def __init__(self, job_id: str, state: str | None, attempts: int, elapsed: float):
        self.job_id = job_id
        self.state = state
        self.attempts = attempts
        self.elapsed = elapsed
        self.status_code = None
        self.message = None
        BulkApiError.__init__(
            self,
            f"Job {job_id} did not complete after {attempts} polls in {elapsed:.0f}s (last state: {state})",
        )


class FetchError(BulkApiError):
    def __init__(self, job_id: str, locator: str | None, message: str, status_code: int | None = None):
        self.job_id = job_id
        self.locator = locator
        self.status_code = status_code
        self.message = message
        super().__init__(
            f"Failed to fetch results of job {job_id} (locator {locator}, status {status_code}): {message}"
        )


class SinkError(BulkApiError):
    def __init__(self, path: str, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write results to {path}: {cause}")


class BulkQueryCancelled(BulkApiError):
    def __init__(self, job_id: str | None = None):
        self.job_id = job_id
        target = f"job {job_id}" if job_id else "bulk query"
        super().__init__(f"Retrieval of {target} was cancelled")
