import logging
import threading
import time
from functools import wraps
from typing import Any
from urllib.parse import urlencode

import requests

from .auth import SalesforceAuthenticator
from .exceptions import (
    AuthError,
    BulkQueryCancelled,
    FetchError,
    JobTerminatedError,
    PollError,
    PollTimeoutError,
    SubmissionError,
)
from .models import (
    DEFAULT_CHUNK_SIZE,
    FAILURE_STATES,
    LOCATOR_HEADER,
    BulkQueryResult,
    Job,
    JobState,
    ResultPage,
    operation_for,
    parse_locator,
)
from .streaming import AssembledStream, StreamAssembler, read_stream_to_bytes, write_stream_to_file

DEFAULT_API_VERSION = "58.0"
DEFAULT_POLL_INTERVAL = 10.0  # seconds


def log_bulk_performance(func):
    """Decorator to log performance metrics for bulk query exports"""

    @wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(__name__)

        result = func(*args, **kwargs)

        if result:
            total_time = result.api_wait_time + result.download_time
            bytes_per_second = result.byte_count / result.download_time if result.download_time > 0 else 0
            logger.info(
                f"Bulk query job {result.job_id}: "
                f"API wait {result.api_wait_time:.2f}s, "
                f"download {result.download_time:.2f}s, "
                f"total {total_time:.2f}s "
                f"({result.page_count} pages, {result.byte_count} bytes, {bytes_per_second:.0f} bytes/s)"
            )

        return result

    return wrapper


def _error_message(response: requests.Response) -> str:
    """Pull the human readable part out of a Salesforce error response"""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason or ""
    if isinstance(body, list) and body:
        return "; ".join(f"{e.get('errorCode', '')}: {e.get('message', '')}" for e in body if isinstance(e, dict))
    if isinstance(body, dict):
        return body.get("message") or body.get("error_description") or str(body)
    return str(body)


class SalesforceBulkClient:
    """
    Salesforce Bulk API 2.0 client for query jobs
    """

    def __init__(
        self,
        authenticator: SalesforceAuthenticator,
        api_version: str = DEFAULT_API_VERSION,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = 300,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """
        Initialize Salesforce Bulk API client

        Args:
            authenticator: Supplies and refreshes the OAuth access token
            api_version: Salesforce API version (e.g. "58.0")
            poll_interval: Default number of seconds between job status polls
            timeout: Timeout of a single HTTP request in seconds
            chunk_size: Size of the chunks the results are streamed in
        """
        self.authenticator = authenticator
        self.api_version = api_version.lstrip("vV")
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.session = authenticator.session
        self.logger = logging.getLogger(__name__)

    @property
    def jobs_url(self) -> str:
        return f"{self.authenticator.instance_url}/services/data/v{self.api_version}/jobs/query"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Send an authenticated request.

        A 401 response triggers a single token refresh and one replay of the request,
        a second 401 raises AuthError.
        """
        headers = dict(kwargs.pop("headers", {}))
        kwargs.setdefault("timeout", self.timeout)

        authorization = self.authenticator.authorization_header()
        headers["Authorization"] = authorization
        self.logger.debug(f"{method} {url}")
        response = self.session.request(method, url, headers=headers, **kwargs)

        if response.status_code == 401:
            response.close()
            self.logger.warning("Access token rejected (401 Unauthorized). Retrying with a new token...")
            headers["Authorization"] = self.authenticator.refresh(rejected_header=authorization)
            response = self.session.request(method, url, headers=headers, **kwargs)
            if response.status_code == 401:
                message = _error_message(response)
                response.close()
                raise AuthError(f"Access token rejected after refresh: {message}", status_code=401)

        return response

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event | None, job_id: str | None = None):
        if cancel_event is not None and cancel_event.is_set():
            raise BulkQueryCancelled(job_id)

    def submit_query(
        self, query: str, include_archived: bool = False, cancel_event: threading.Event | None = None
    ) -> Job:
        """
        Create a bulk query job

        Args:
            query: SOQL query text
            include_archived: Also return soft-deleted and archived records (queryAll)
            cancel_event: Set to abort before the request is sent

        Returns:
            The created job
        """
        self._check_cancelled(cancel_event)
        operation = operation_for(include_archived)
        self.logger.info(f"Creating bulk query job (operation: {operation})")

        try:
            response = self._request(
                "POST",
                self.jobs_url,
                json={"operation": operation, "query": query},
                headers={"Accept": "application/json", "Content-Type": "application/json"},
            )
        except requests.RequestException as e:
            raise SubmissionError(None, str(e))

        if response.status_code != 200:
            message = _error_message(response)
            response.close()
            raise SubmissionError(response.status_code, message)

        try:
            job = Job.from_response(response.json(), query=query, include_archived=include_archived)
        except (ValueError, KeyError, TypeError):
            raise SubmissionError(response.status_code, f"Unexpected job creation response: {response.text[:200]}")
        self.logger.info(f"Bulk query job created: {job.id}")
        return job

    def get_job(self, job_id: str) -> Job:
        """Get the current state of a bulk query job"""
        try:
            response = self._request("GET", f"{self.jobs_url}/{job_id}", headers={"Accept": "application/json"})
        except requests.RequestException as e:
            raise PollError(job_id, str(e))

        if response.status_code != 200:
            message = _error_message(response)
            response.close()
            raise PollError(job_id, message, status_code=response.status_code)

        try:
            return Job.from_response(response.json())
        except (ValueError, KeyError, TypeError):
            raise PollError(job_id, f"Unexpected job status response: {response.text[:200]}", response.status_code)

    def poll_until_complete(
        self,
        job_id: str,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        max_attempts: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Job:
        """
        Poll the job until it reaches a terminal state

        Args:
            job_id: Bulk query job id
            poll_interval: Seconds between polls, defaults to the client's poll interval
            max_wait: Give up after this many seconds, None waits forever
            max_attempts: Give up after this many polls, None polls forever
            cancel_event: Set to stop waiting

        Returns:
            The completed job

        Raises:
            JobTerminatedError: The job failed or was aborted
            PollTimeoutError: max_wait or max_attempts was exceeded
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        poll_start = time.monotonic()
        attempts = 0

        while True:
            self._check_cancelled(cancel_event, job_id)
            job = self.get_job(job_id)
            attempts += 1
            self.logger.info(f"Bulk query job {job_id} state: {job.state}")

            state = job.job_state
            if state == JobState.JOB_COMPLETE:
                return job
            if state in FAILURE_STATES:
                raise JobTerminatedError(job_id, job.state, job.error_message)

            elapsed = time.monotonic() - poll_start
            if max_attempts is not None and attempts >= max_attempts:
                raise PollTimeoutError(job_id, job.state, attempts, elapsed)
            if max_wait is not None and elapsed + interval > max_wait:
                raise PollTimeoutError(job_id, job.state, attempts, elapsed)

            self._wait(interval, cancel_event, job_id)

    def _wait(self, seconds: float, cancel_event: threading.Event | None, job_id: str):
        if cancel_event is None:
            time.sleep(seconds)
        elif cancel_event.wait(seconds):
            raise BulkQueryCancelled(job_id)

    def results_url(self, job_id: str, locator: str | None = None, max_records: int | None = None) -> str:
        url = f"{self.jobs_url}/{job_id}/results"
        params = {}
        if locator:
            params["locator"] = locator
        if max_records:
            params["maxRecords"] = max_records
        if params:
            url += f"?{urlencode(params)}"
        return url

    def fetch_page(
        self,
        job_id: str,
        locator: str | None = None,
        max_records: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ResultPage:
        """
        Request one page of job results

        Args:
            job_id: Bulk query job id
            locator: Locator of the page, None for the first page
            max_records: Maximum number of records on the page (a hint for Salesforce)
            cancel_event: Set to abort before the request is sent

        Returns:
            ResultPage with a streamed CSV body and the locator of the next page
        """
        self._check_cancelled(cancel_event, job_id)
        url = self.results_url(job_id, locator, max_records)
        try:
            response = self._request(
                "GET", url, headers={"Accept": "text/csv", "Accept-Encoding": "gzip"}, stream=True
            )
        except requests.RequestException as e:
            raise FetchError(job_id, locator, str(e))

        if response.status_code != 200:
            message = _error_message(response)
            response.close()
            raise FetchError(job_id, locator, message, status_code=response.status_code)

        return ResultPage(
            job_id=job_id,
            locator=locator,
            next_locator=parse_locator(response.headers.get(LOCATOR_HEADER)),
            max_records=max_records,
            response=response,
            chunk_size=self.chunk_size,
        )

    def get_result_pages(self, job_id: str) -> dict[str, Any]:
        """Get the description of the result pages of a completed job"""
        try:
            response = self._request(
                "GET", f"{self.jobs_url}/{job_id}/resultPages", headers={"Accept": "application/json"}
            )
        except requests.RequestException as e:
            raise FetchError(job_id, None, str(e))

        if response.status_code != 200:
            message = _error_message(response)
            response.close()
            raise FetchError(job_id, None, message, status_code=response.status_code)

        return response.json()

    def download_page_to_file(
        self, job_id: str, file_path: str, locator: str | None = None, max_records: int | None = None
    ) -> str | None:
        """
        Save a single raw results page (header included) to a file

        Returns:
            Locator of the next page, None when this was the last one
        """
        page = self.fetch_page(job_id, locator=locator, max_records=max_records)
        try:
            write_stream_to_file(page.iter_bytes(), file_path)
        finally:
            page.close()
        return page.next_locator

    def stream_job_results(
        self, job_id: str, max_records: int | None = None, cancel_event: threading.Event | None = None
    ) -> AssembledStream:
        """
        Stream all result pages of a completed job as one CSV with a single header line

        Pages are fetched lazily while the returned stream is read.
        """
        assembler = StreamAssembler(self.fetch_page)
        return AssembledStream(assembler.assemble(job_id, max_records, cancel_event), job_id=job_id)

    def run_query(
        self,
        query: str,
        include_archived: bool = False,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        max_attempts: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Job:
        """Submit the query and wait for the job to complete"""
        job = self.submit_query(query, include_archived, cancel_event=cancel_event)
        completed = self.poll_until_complete(
            job.id,
            poll_interval=poll_interval,
            max_wait=max_wait,
            max_attempts=max_attempts,
            cancel_event=cancel_event,
        )
        job.update(completed)
        return job

    def bulk_query_stream(
        self,
        query: str,
        include_archived: bool = False,
        max_records: int | None = None,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        max_attempts: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> AssembledStream:
        """
        Run a bulk query and return its results as a live stream

        Args:
            query: SOQL query text
            include_archived: Also return soft-deleted and archived records (queryAll)
            max_records: Page size hint passed as maxRecords
            poll_interval: Seconds between job status polls
            max_wait: Maximum number of seconds to wait for the job
            max_attempts: Maximum number of status polls
            cancel_event: Set to abort the query at the next request or wait

        Returns:
            AssembledStream with one header line followed by the rows of all pages
        """
        job = self.run_query(query, include_archived, poll_interval, max_wait, max_attempts, cancel_event)
        return self.stream_job_results(job.id, max_records=max_records, cancel_event=cancel_event)

    @log_bulk_performance
    def bulk_query_to_file(
        self,
        query: str,
        file_path: str,
        include_archived: bool = False,
        max_records: int | None = None,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        max_attempts: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> BulkQueryResult:
        """
        Run a bulk query and write the results to a CSV file

        Args:
            query: SOQL query text
            file_path: Destination file, truncated if it exists
            include_archived: Also return soft-deleted and archived records (queryAll)
            max_records: Page size hint passed as maxRecords
            poll_interval: Seconds between job status polls
            max_wait: Maximum number of seconds to wait for the job
            max_attempts: Maximum number of status polls
            cancel_event: Set to abort the query at the next request or wait

        Returns:
            BulkQueryResult with file path and timing info
        """
        api_wait_start = time.time()
        job = self.run_query(query, include_archived, poll_interval, max_wait, max_attempts, cancel_event)
        api_wait_time = time.time() - api_wait_start

        download_start = time.time()
        assembler = StreamAssembler(self.fetch_page)
        stream = AssembledStream(assembler.assemble(job.id, max_records, cancel_event), job_id=job.id)
        with stream:
            byte_count = write_stream_to_file(stream, file_path)
        download_time = time.time() - download_start

        self.logger.info(f"Downloaded results of job {job.id} to {file_path}")

        return BulkQueryResult(
            job_id=job.id,
            file_path=file_path,
            page_count=assembler.page_count,
            byte_count=byte_count,
            api_wait_time=api_wait_time,
            download_time=download_time,
        )

    def bulk_query_as_data(
        self,
        query: str,
        include_archived: bool = False,
        max_records: int | None = None,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        max_attempts: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> bytes:
        """
        Run a bulk query and return all results in memory

        Meant for small result sets only, the whole CSV is held in one buffer.
        """
        stream = self.bulk_query_stream(
            query, include_archived, max_records, poll_interval, max_wait, max_attempts, cancel_event
        )
        with stream:
            return read_stream_to_bytes(stream)
