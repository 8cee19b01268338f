"""
Shell bridging: wire a child shell's standard streams to a connection.
"""

import logging
import socket
import subprocess
import threading

from relaycat.config import NetcatConfig
from relaycat.errors import ShellExecutionError
from relaycat.logging_config import track_error
from relaycat.netcat.encoding import EncodingAdapter
from relaycat.netcat.platforms import PlatformProfile

logger = logging.getLogger(__name__)


class ShellBridge:
    """
    Runs one shell per connection with stdin, stdout and stderr bound
    to a single EncodingAdapter.

    The child runs until it exits, the session timeout expires, or
    cancel() is called. The connection is closed on every path.

    Usage:
        bridge = ShellBridge(config, platforms.resolve())
        exit_code = bridge.run(conn)
    """

    def __init__(self, config: NetcatConfig, profile: PlatformProfile):
        self.config = config
        self.profile = profile
        self.process: subprocess.Popen | None = None
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, conn: socket.socket) -> int | None:
        """
        Bridge conn to a new shell and wait for it.

        Returns:
            The shell's exit status, or None when it could not be spawned
        """
        adapter = EncodingAdapter.for_profile(conn, self.profile, self.config.console_encoding)
        try:
            return self._run(adapter)
        finally:
            adapter.close()

    def _run(self, adapter: EncodingAdapter) -> int | None:
        argv = self.profile.interactive_argv()
        try:
            self.process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as e:
            err = ShellExecutionError(f"Failed to start {argv[0]}: {e}")
            track_error("shell", str(err), e)
            return None

        logger.info(f"Started shell {argv[0]} (pid {self.process.pid})")
        if self._cancelled.is_set():
            self._terminate()

        threads = [
            threading.Thread(target=self._feed, args=(adapter,), name="shell-stdin", daemon=True),
            threading.Thread(target=self._drain, args=(self.process.stdout, adapter),
                             name="shell-stdout", daemon=True),
            threading.Thread(target=self._drain, args=(self.process.stderr, adapter),
                             name="shell-stderr", daemon=True),
        ]
        for thread in threads:
            thread.start()

        try:
            code = self.process.wait(timeout=self.config.session_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Shell session timed out after {self.config.session_timeout}s")
            self._terminate()
            code = self.process.wait()

        # Output pipes hit EOF once the child is gone
        for thread in threads[1:]:
            thread.join(timeout=1.0)

        if code != 0:
            err = ShellExecutionError(f"Shell exited with status {code}")
            track_error("shell", str(err))
        else:
            logger.info("Shell exited")
        return code

    def _feed(self, adapter: EncodingAdapter) -> None:
        """Peer -> shell stdin. Closing stdin lets the shell exit."""
        stdin = self.process.stdin
        try:
            while True:
                data = adapter.read(self.config.buffer_size)
                if not data:
                    break
                stdin.write(data)
                stdin.flush()
        except OSError as e:
            logger.debug(f"Shell input closed: {e}")
        finally:
            try:
                stdin.close()
            except OSError:
                pass

    def _drain(self, stream, adapter: EncodingAdapter) -> None:
        """Shell stdout/stderr -> peer. A dead peer ends the shell."""
        try:
            while True:
                data = stream.read(self.config.buffer_size)
                if not data:
                    break
                adapter.write(data)
        except OSError as e:
            logger.debug(f"Shell output stream failed: {e}")
            self._terminate()

    def cancel(self) -> None:
        """Forcibly end the shell (shutdown or external cancellation)."""
        self._cancelled.set()
        self._terminate()

    def _terminate(self) -> None:
        process = self.process
        if process is not None and process.poll() is None:
            logger.info(f"Killing shell (pid {process.pid})")
            try:
                process.kill()
            except OSError:
                pass


def run_command(
    profile: PlatformProfile,
    command: str,
    timeout: float | None = None,
) -> bytes:
    """
    Run one command through the platform shell.

    Returns:
        Combined stdout and stderr, followed by the failure description
        when the command could not run or exited non-zero
    """
    argv = profile.command_argv(command)
    try:
        result = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        return (e.output or b"") + f"command timed out after {timeout}s".encode()
    except OSError as e:
        track_error("shell", f"Failed to run {argv[0]}: {e}", e)
        return str(e).encode()

    output = result.stdout or b""
    if result.returncode != 0:
        logger.info(f"Command {command!r} exited with status {result.returncode}")
        output += f"exit status {result.returncode}".encode()
    return output
