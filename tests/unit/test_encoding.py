"""Unit tests for netcat.encoding module."""

import socket
import ssl
import threading
from unittest.mock import Mock

import pytest

from relaycat.netcat import platforms
from relaycat.netcat.encoding import EncodingAdapter, transcode

GBK_TEXT = "你好, world"


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    b.settimeout(5.0)
    yield a, b
    a.close()
    b.close()


class TestPassThrough:
    """Test suite for the non-transcoding platform family."""

    def test_write_unchanged(self, pair):
        """Test legacy-encoded bytes are forwarded untouched."""
        a, b = pair
        payload = GBK_TEXT.encode("gbk")
        adapter = EncodingAdapter(a)

        assert adapter.write(payload) == len(payload)
        assert recv_exactly(b, len(payload)) == payload
        assert adapter.transcoding is False

    def test_for_profile_posix(self, pair):
        """Test POSIX profiles never transcode."""
        adapter = EncodingAdapter.for_profile(pair[0], platforms.resolve("linux"), "gbk")

        assert adapter.transcoding is False


class TestTranscoding:
    """Test suite for the transcoding platform family."""

    def test_write_transcodes_to_utf8(self, pair):
        """Test GBK output arrives as UTF-8."""
        a, b = pair
        payload = GBK_TEXT.encode("gbk")
        expected = GBK_TEXT.encode("utf-8")
        adapter = EncodingAdapter(a, legacy_encoding="gbk")

        adapter.write(payload)

        assert recv_exactly(b, len(expected)) == expected
        assert len(expected) != len(payload)

    def test_write_reports_input_length(self, pair):
        """Test the caller sees its own byte count, not the transcoded one."""
        a, b = pair
        payload = GBK_TEXT.encode("gbk")
        adapter = EncodingAdapter(a, legacy_encoding="gbk")

        assert adapter.write(payload) == len(payload)

    def test_split_multibyte_character(self, pair):
        """Test a character split across writes is reassembled."""
        a, b = pair
        payload = "你".encode("gbk")
        adapter = EncodingAdapter(a, legacy_encoding="gbk")

        assert adapter.write(payload[:1]) == 1
        assert adapter.write(payload[1:]) == 1
        assert recv_exactly(b, 3) == "你".encode("utf-8")

    def test_reads_not_transcoded(self, pair):
        """Test inbound bytes are returned as received."""
        a, b = pair
        payload = GBK_TEXT.encode("gbk")
        adapter = EncodingAdapter(a, legacy_encoding="gbk")

        b.sendall(payload)

        assert adapter.read(1024) == payload

    def test_for_profile_windows(self, pair):
        """Test the Windows profile transcodes from the configured encoding."""
        adapter = EncodingAdapter.for_profile(pair[0], platforms.resolve("win32"), "gbk")

        assert adapter.transcoding is True
        assert adapter.legacy_encoding == "gbk"

    def test_transcode_helper(self):
        """Test one-shot transcoding."""
        assert transcode(GBK_TEXT.encode("gbk"), "gbk") == GBK_TEXT.encode("utf-8")


class TestLifecycle:
    """Test suite for close and concurrency behavior."""

    def test_close_idempotent(self, pair):
        """Test closing twice closes the connection once."""
        a, _ = pair
        adapter = EncodingAdapter(a)

        adapter.close()
        adapter.close()

        assert adapter.closed is True
        assert a.fileno() == -1

    def test_read_after_close(self, pair):
        """Test reading a closed adapter returns end-of-stream."""
        adapter = EncodingAdapter(pair[0])
        adapter.close()

        assert adapter.read(10) == b""

    def test_write_after_close(self, pair):
        """Test writing a closed adapter raises an OSError."""
        adapter = EncodingAdapter(pair[0])
        adapter.close()

        with pytest.raises(OSError):
            adapter.write(b"data")

    def test_end_of_stream(self, pair):
        """Test a peer close is reported as an empty read."""
        a, b = pair
        adapter = EncodingAdapter(a)
        b.close()

        assert adapter.read(10) == b""

    def test_blocked_reader_does_not_block_writer(self, pair):
        """Test a reader waiting for data does not hold the lock."""
        a, b = pair
        adapter = EncodingAdapter(a, poll_interval=0.05)
        result = {}

        reader = threading.Thread(target=lambda: result.setdefault("data", adapter.read(10)))
        reader.start()

        assert adapter.write(b"x") == 1
        assert recv_exactly(b, 1) == b"x"

        b.sendall(b"y")
        reader.join(timeout=5.0)

        assert result["data"] == b"y"

    def test_concurrent_writes_not_interleaved(self, pair):
        """Test each write is delivered contiguously."""
        a, b = pair
        adapter = EncodingAdapter(a)
        chunk_a, chunk_b = b"A" * 100, b"B" * 100

        def writer(chunk):
            for _ in range(50):
                adapter.write(chunk)

        threads = [threading.Thread(target=writer, args=(c,)) for c in (chunk_a, chunk_b)]
        for t in threads:
            t.start()
        data = recv_exactly(b, 100 * 100)
        for t in threads:
            t.join()

        segments = [data[i:i + 100] for i in range(0, len(data), 100)]
        assert len(segments) == 100
        assert all(seg in (chunk_a, chunk_b) for seg in segments)

    def test_partial_tls_record_releases_lock(self):
        """Test a TLS read waiting on the rest of a record times out and retries."""
        conn = Mock(spec=ssl.SSLSocket)
        conn.pending.return_value = 1
        conn.recv.side_effect = [socket.timeout("The read operation timed out"), b"rest"]
        adapter = EncodingAdapter(conn, poll_interval=0.05)

        assert adapter.read(4096) == b"rest"

        assert conn.recv.call_count == 2
        conn.settimeout.assert_any_call(0.05)
        assert conn.settimeout.call_args_list[-1].args == (None,)
