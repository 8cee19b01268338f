"""Unit tests for netcat.shell module."""

import socket
import sys
import threading

import pytest

from relaycat.config import NetcatConfig
from relaycat.logging_config import get_error_stats
from relaycat.netcat import platforms
from relaycat.netcat.platforms import PlatformProfile
from relaycat.netcat.shell import ShellBridge, run_command

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")

POSIX = platforms.resolve("linux")


def read_until_eof(sock: socket.socket) -> bytes:
    data = b""
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return data
        data += chunk


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    b.settimeout(10.0)
    yield a, b
    a.close()
    b.close()


def run_bridge(bridge: ShellBridge, conn) -> tuple[threading.Thread, dict]:
    result = {}
    thread = threading.Thread(target=lambda: result.setdefault("code", bridge.run(conn)),
                              daemon=True)
    thread.start()
    return thread, result


class TestShellBridge:
    """Test suite for ShellBridge."""

    def test_command_output(self, pair):
        """Test commands from the peer run and their output comes back."""
        a, b = pair
        thread, result = run_bridge(ShellBridge(NetcatConfig(), POSIX), a)

        b.sendall(b"echo hello\nexit\n")
        output = read_until_eof(b)
        thread.join(timeout=10.0)

        assert output == b"hello\n"
        assert result["code"] == 0
        assert a.fileno() == -1

    def test_stderr_forwarded(self, pair):
        """Test stderr shares the connection with stdout."""
        a, b = pair
        thread, result = run_bridge(ShellBridge(NetcatConfig(), POSIX), a)

        b.sendall(b"echo oops 1>&2\nexit\n")
        output = read_until_eof(b)
        thread.join(timeout=10.0)

        assert output == b"oops\n"

    def test_non_zero_exit(self, pair):
        """Test a failing shell is reported and the connection still closed."""
        a, b = pair
        thread, result = run_bridge(ShellBridge(NetcatConfig(), POSIX), a)

        b.sendall(b"exit 3\n")
        assert read_until_eof(b) == b""
        thread.join(timeout=10.0)

        assert result["code"] == 3
        assert get_error_stats() == {"shell": 1}
        assert a.fileno() == -1

    def test_peer_close_ends_shell(self, pair):
        """Test end-of-stream from the peer closes the shell's stdin."""
        a, b = pair
        thread, result = run_bridge(ShellBridge(NetcatConfig(), POSIX), a)

        b.shutdown(socket.SHUT_WR)
        thread.join(timeout=10.0)

        assert not thread.is_alive()
        assert result["code"] == 0

    def test_session_timeout(self, pair):
        """Test an expired session timeout kills the shell."""
        a, b = pair
        bridge = ShellBridge(NetcatConfig(session_timeout=0.5), POSIX)
        thread, result = run_bridge(bridge, a)

        assert read_until_eof(b) == b""
        thread.join(timeout=10.0)

        assert result["code"] != 0
        assert bridge.process.returncode is not None

    def test_cancel(self, pair):
        """Test cancel() ends a running shell."""
        a, b = pair
        bridge = ShellBridge(NetcatConfig(), POSIX)
        thread, result = run_bridge(bridge, a)

        b.sendall(b"echo ready\n")
        assert b.recv(6) == b"ready\n"
        bridge.cancel()
        thread.join(timeout=10.0)

        assert not thread.is_alive()
        assert bridge.cancelled is True
        assert a.fileno() == -1

    def test_spawn_failure(self, pair):
        """Test a missing shell is logged and the connection closed."""
        a, b = pair
        profile = PlatformProfile(name="broken", shell="/nonexistent/shell")

        code = ShellBridge(NetcatConfig(), profile).run(a)

        assert code is None
        assert get_error_stats() == {"shell": 1}
        assert a.fileno() == -1
        assert read_until_eof(b) == b""

    def test_output_transcoded(self, pair):
        """Test legacy-encoded shell output reaches the peer as UTF-8."""
        a, b = pair
        profile = PlatformProfile(name="legacy", shell="/bin/sh", needs_transcoding=True)
        thread, _ = run_bridge(ShellBridge(NetcatConfig(console_encoding="gbk"), profile), a)

        # GBK encoding of U+4F60
        b.sendall(b"printf '\\304\\343'\nexit\n")
        output = read_until_eof(b)
        thread.join(timeout=10.0)

        assert output == "你".encode("utf-8")


class TestRunCommand:
    """Test suite for run_command."""

    def test_output(self):
        """Test stdout is returned."""
        assert run_command(POSIX, "echo ok") == b"ok\n"

    def test_combined_output_and_status(self):
        """Test stderr is merged and a failure status appended."""
        output = run_command(POSIX, "echo out; echo err 1>&2; exit 2")

        assert b"out\n" in output
        assert b"err\n" in output
        assert output.endswith(b"exit status 2")

    def test_timeout(self):
        """Test long-running commands are cut off."""
        output = run_command(POSIX, "sleep 2", timeout=0.2)

        assert output.endswith(b"command timed out after 0.2s")

    def test_spawn_failure(self):
        """Test a missing shell yields the error text."""
        profile = PlatformProfile(name="broken", shell="/nonexistent/shell")

        output = run_command(profile, "echo ok")

        assert b"/nonexistent/shell" in output
        assert get_error_stats() == {"shell": 1}
