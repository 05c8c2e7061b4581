import os
import tempfile
import threading
import unittest

import requests

from salesforce_cli.exceptions import BulkQueryCancelled, FetchError, SinkError
from salesforce_cli.streaming import (
    AssembledStream,
    HeaderStrippingFilter,
    StreamAssembler,
    read_stream_to_bytes,
    write_stream_to_file,
)


class FakePage:
    def __init__(self, chunks, next_locator):
        self.chunks = chunks
        self.next_locator = next_locator
        self.closed = False
        self.consumed = False

    def iter_bytes(self):
        for chunk in self.chunks:
            yield chunk
        self.consumed = True

    def close(self):
        self.closed = True


class FakeFetcher:
    """Serves pages keyed by the locator they are requested with"""

    def __init__(self, pages):
        self.pages = pages
        self.calls = []
        self.served = []

    def __call__(self, job_id, locator=None, max_records=None, cancel_event=None):
        self.calls.append((job_id, locator, max_records))
        page = self.pages[locator]
        self.served.append(page)
        return page


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class TestHeaderStrippingFilter(unittest.TestCase):
    def test_removes_first_line(self):
        result = b"".join(HeaderStrippingFilter().filter([b'"Id","Name"\n"1","A"\n"2","B"\n']))
        self.assertEqual(result, b'"1","A"\n"2","B"\n')

    def test_independent_of_chunk_boundaries(self):
        data = b'"Id","Name"\n"1","A"\n"2","B"\n'
        expected = b'"1","A"\n"2","B"\n'

        for split_at in range(len(data) + 1):
            with self.subTest(split_at=split_at):
                chunks = [data[:split_at], data[split_at:]]
                self.assertEqual(b"".join(HeaderStrippingFilter().filter(chunks)), expected)

        for size in (1, 2, 3, 7):
            with self.subTest(size=size):
                self.assertEqual(b"".join(HeaderStrippingFilter().filter(split_every(data, size))), expected)

    def test_header_spanning_chunks_emits_nothing_until_newline(self):
        header_filter = HeaderStrippingFilter()
        self.assertEqual(header_filter.feed(b'"Id",'), b"")
        self.assertEqual(header_filter.feed(b'"Na'), b"")
        self.assertFalse(header_filter.header_skipped)
        self.assertEqual(header_filter.feed(b'me"\n"1"'), b'"1"')
        self.assertTrue(header_filter.header_skipped)
        self.assertEqual(header_filter.feed(b',"A"\n'), b',"A"\n')

    def test_header_only_page_contributes_nothing(self):
        self.assertEqual(list(HeaderStrippingFilter().filter([b'"Id","Name"\n'])), [])
        self.assertEqual(list(HeaderStrippingFilter().filter([b'"Id",', b'"Name"'])), [])
        self.assertEqual(list(HeaderStrippingFilter().filter([])), [])

    def test_crlf_line_ending(self):
        result = b"".join(HeaderStrippingFilter().filter([b"Id\r", b"\n1\r\n2\r\n"]))
        self.assertEqual(result, b"1\r\n2\r\n")


class TestStreamAssembler(unittest.TestCase):
    def three_pages(self):
        return {
            None: FakePage([b"Id\n", b"001\n002\n"], "LOC1"),
            "LOC1": FakePage([b"I", b"d\n003\n004\n"], "LOC2"),
            "LOC2": FakePage([b"Id\n003", b"5\n006\n"], None),
        }

    def test_single_header_and_rows_in_fetch_order(self):
        fetcher = FakeFetcher(self.three_pages())
        assembler = StreamAssembler(fetcher)

        output = b"".join(assembler.assemble("750JOB", max_records=2))

        self.assertEqual(output, b"Id\n001\n002\n003\n004\n0035\n006\n")
        self.assertEqual(output.count(b"Id\n"), 1)
        self.assertEqual(fetcher.calls, [("750JOB", None, 2), ("750JOB", "LOC1", 2), ("750JOB", "LOC2", 2)])
        self.assertEqual(assembler.page_count, 3)
        self.assertEqual(assembler.byte_count, len(output))
        self.assertTrue(all(page.closed for page in fetcher.served))

    def test_rows_of_pages_match_output_rows(self):
        pages = {
            None: FakePage([b'"Id","Name"\n"1","a"\n'], "A"),
            "A": FakePage([b'"Id","Name"\n'], "B"),
            "B": FakePage([b'"Id","Name"\n"2","b"\n"3","c"\n'], None),
        }
        expected_rows = []
        for page in pages.values():
            expected_rows.extend(b"".join(page.chunks).splitlines()[1:])

        output = b"".join(StreamAssembler(FakeFetcher(pages)).assemble("750JOB"))
        lines = output.splitlines()

        self.assertEqual(lines[0], b'"Id","Name"')
        self.assertEqual(lines[1:], expected_rows)

    def test_next_page_fetched_only_after_current_is_drained(self):
        fetcher = FakeFetcher(self.three_pages())
        stream = StreamAssembler(fetcher).assemble("750JOB")

        self.assertEqual(next(stream), b"Id\n")
        self.assertEqual(len(fetcher.calls), 1)
        self.assertEqual(next(stream), b"001\n002\n")
        self.assertEqual(len(fetcher.calls), 1)

        next(stream)
        self.assertEqual(len(fetcher.calls), 2)
        self.assertTrue(fetcher.served[0].consumed)
        self.assertTrue(fetcher.served[0].closed)

    def test_single_page(self):
        fetcher = FakeFetcher({None: FakePage([b"Id\n001\n"], None)})
        self.assertEqual(b"".join(StreamAssembler(fetcher).assemble("750JOB")), b"Id\n001\n")
        self.assertEqual(len(fetcher.calls), 1)

    def test_closing_stream_releases_in_flight_page(self):
        fetcher = FakeFetcher(self.three_pages())
        stream = StreamAssembler(fetcher).assemble("750JOB")
        next(stream)
        stream.close()

        self.assertTrue(fetcher.served[0].closed)
        self.assertEqual(len(fetcher.calls), 1)

    def test_cancel_event_stops_retrieval(self):
        fetcher = FakeFetcher(self.three_pages())
        cancel_event = threading.Event()
        stream = StreamAssembler(fetcher).assemble("750JOB", cancel_event=cancel_event)
        next(stream)
        cancel_event.set()

        with self.assertRaises(BulkQueryCancelled) as ctx:
            next(stream)
        self.assertEqual(ctx.exception.job_id, "750JOB")
        self.assertTrue(fetcher.served[0].closed)
        self.assertEqual(len(fetcher.calls), 1)

    def test_repeated_locator_is_an_error(self):
        fetcher = FakeFetcher({None: FakePage([b"Id\n1\n"], "LOC1"), "LOC1": FakePage([b"Id\n2\n"], "LOC1")})
        with self.assertRaises(FetchError) as ctx:
            b"".join(StreamAssembler(fetcher).assemble("750JOB"))
        self.assertEqual(ctx.exception.locator, "LOC1")
        self.assertEqual(len(fetcher.calls), 2)


class TestAssembledStream(unittest.TestCase):
    def test_read_returns_all_bytes(self):
        stream = AssembledStream(iter([b"Id\n", b"001\n", b"002\n"]))
        self.assertEqual(stream.read(2), b"Id")
        self.assertEqual(stream.read(), b"\n001\n002\n")
        self.assertEqual(stream.read(), b"")

    def test_iteration_yields_chunks(self):
        stream = AssembledStream(iter([b"Id\n", b"001\n"]))
        self.assertEqual(list(stream), [b"Id\n", b"001\n"])

    def test_close_closes_source(self):
        fetcher = FakeFetcher({None: FakePage([b"Id\n", b"001\n"], "LOC1"), "LOC1": FakePage([b"Id\n2\n"], None)})
        stream = AssembledStream(StreamAssembler(fetcher).assemble("750JOB"), job_id="750JOB")
        next(stream)
        stream.close()

        self.assertTrue(stream.closed)
        self.assertTrue(fetcher.served[0].closed)
        with self.assertRaises(ValueError):
            stream.read()


class TestSinks(unittest.TestCase):
    def test_write_stream_to_file_truncates(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "results.csv")
            with open(path, "wb") as f:
                f.write(b"previous content that is longer\n")

            written = write_stream_to_file(iter([b"Id\n", b"001\n"]), path)

            self.assertEqual(written, 7)
            with open(path, "rb") as f:
                self.assertEqual(f.read(), b"Id\n001\n")

    def test_write_failure_raises_sink_error_and_closes_stream(self):
        fetcher = FakeFetcher({None: FakePage([b"Id\n"], None)})
        stream = AssembledStream(StreamAssembler(fetcher).assemble("750JOB"))
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(SinkError) as ctx:
                write_stream_to_file(stream, tmp)
            self.assertEqual(ctx.exception.path, tmp)
        self.assertTrue(stream.closed)

    def test_source_failure_is_not_reported_as_sink_error(self):
        def broken_source():
            yield b"Id\n001\n"
            raise requests.exceptions.ChunkedEncodingError("Connection broken: IncompleteRead")

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "results.csv")
            with self.assertRaises(requests.exceptions.ChunkedEncodingError):
                write_stream_to_file(broken_source(), path)
            with open(path, "rb") as f:
                self.assertEqual(f.read(), b"Id\n001\n")

    def test_read_stream_to_bytes(self):
        self.assertEqual(read_stream_to_bytes(iter([b"Id\n", b"1\n"])), b"Id\n1\n")
        self.assertEqual(read_stream_to_bytes(iter([])), b"")


if __name__ == "__main__":
    unittest.main()
