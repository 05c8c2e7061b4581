import io
import logging
import threading
from collections.abc import Callable, Iterable, Iterator

from .exceptions import BulkQueryCancelled, FetchError, SinkError
from .models import ResultPage

PageFetcher = Callable[..., ResultPage]


class HeaderStrippingFilter:
    """
    Drops the first line of a byte stream.

    Chunks are buffered until the first newline shows up, after that everything
    passes through untouched. Use one instance per page.
    """

    def __init__(self):
        self._header_skipped = False
        self._buffer = bytearray()

    @property
    def header_skipped(self) -> bool:
        return self._header_skipped

    def feed(self, chunk: bytes) -> bytes:
        if self._header_skipped:
            return chunk

        self._buffer += chunk
        newline_index = self._buffer.find(b"\n")
        if newline_index == -1:
            return b""

        remainder = bytes(self._buffer[newline_index + 1 :])
        self._buffer.clear()
        self._header_skipped = True
        return remainder

    def flush(self) -> bytes:
        # A page that ends inside its header line contributes nothing
        self._buffer.clear()
        return b""

    def filter(self, chunks: Iterable[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            data = self.feed(chunk)
            if data:
                yield data
        self.flush()


class StreamAssembler:
    """
    Concatenates all result pages of a job into one stream of bytes.

    The first page is passed through as is and provides the only header line of the
    output, the header of every following page is stripped. The next page is
    requested only after the consumer has drained the current one.
    """

    def __init__(self, fetch_page: PageFetcher):
        self.fetch_page = fetch_page
        self.page_count = 0
        self.byte_count = 0
        self.logger = logging.getLogger(__name__)

    def assemble(
        self,
        job_id: str,
        max_records: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[bytes]:
        locator = None
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise BulkQueryCancelled(job_id)

            page = self.fetch_page(job_id, locator=locator, max_records=max_records, cancel_event=cancel_event)
            try:
                chunks = page.iter_bytes()
                if self.page_count > 0:
                    chunks = HeaderStrippingFilter().filter(chunks)
                for chunk in chunks:
                    if cancel_event is not None and cancel_event.is_set():
                        raise BulkQueryCancelled(job_id)
                    self.byte_count += len(chunk)
                    yield chunk
            finally:
                page.close()

            self.page_count += 1
            self.logger.info(f"Retrieved results page {self.page_count} of job {job_id}")

            if page.next_locator is None:
                break
            if page.next_locator == locator:
                raise FetchError(job_id, locator, "Salesforce returned the locator of the page just fetched")
            locator = page.next_locator

        self.logger.info(f"All {self.page_count} results pages of job {job_id} retrieved ({self.byte_count} bytes)")


class AssembledStream(io.RawIOBase):
    """
    Read-only file-like view of the assembled results.

    Iterating yields the chunks as they arrive; read() and readinto() serve the same
    bytes for consumers expecting a file object. Closing the stream before the end
    stops the retrieval and releases the in-flight response.
    """

    def __init__(self, chunks: Iterator[bytes], job_id: str | None = None):
        super().__init__()
        self.job_id = job_id
        self._chunks = chunks
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed stream.")
        while not self._pending:
            self._pending = next(self._chunks, b"")
            if not self._pending:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size

    def __iter__(self):
        return self

    def __next__(self) -> bytes:
        if self.closed:
            raise ValueError("I/O operation on closed stream.")
        if self._pending:
            chunk, self._pending = self._pending, b""
            return chunk
        return next(self._chunks)

    def close(self):
        if not self.closed:
            close_chunks = getattr(self._chunks, "close", None)
            if close_chunks is not None:
                close_chunks()
        super().close()


def write_stream_to_file(stream: Iterable[bytes], file_path: str) -> int:
    """
    Write the stream to a file, truncating it first.

    Returns the number of bytes written. The source stream is closed when the
    destination fails so that no more pages are fetched.
    """
    written = 0
    try:
        f = open(file_path, "wb")
    except OSError as e:
        _close_source(stream)
        raise SinkError(file_path, e)

    with f:
        # Errors raised while pulling the stream belong to the source, not the destination
        for chunk in stream:
            try:
                f.write(chunk)
            except OSError as e:
                _close_source(stream)
                raise SinkError(file_path, e)
            written += len(chunk)
    return written


def _close_source(stream: Iterable[bytes]):
    close_stream = getattr(stream, "close", None)
    if close_stream is not None:
        close_stream()


def read_stream_to_bytes(stream: Iterable[bytes]) -> bytes:
    """Collect the whole stream in memory. Only meant for small result sets."""
    buffer = bytearray()
    for chunk in stream:
        buffer += chunk
    return bytes(buffer)
