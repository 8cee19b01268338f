"""Unit tests for netcat.platforms module."""

import pytest

from relaycat.netcat import platforms
from relaycat.netcat.platforms import PlatformProfile


class TestResolve:
    """Test suite for the platform capability table."""

    @pytest.mark.parametrize("platform,key", [
        ("linux", "posix"),
        ("darwin", "posix"),
        ("freebsd13", "freebsd"),
        ("win32", "windows"),
        ("sunos5", "posix"),
    ])
    def test_platform_key(self, platform, key):
        """Test sys.platform values map to table keys."""
        assert platforms.platform_key(platform) == key

    def test_posix_profile(self):
        """Test the default profile uses /bin/sh without transcoding."""
        profile = platforms.resolve("linux")

        assert profile.shell == "/bin/sh"
        assert profile.needs_transcoding is False
        assert profile.command_argv("echo ok") == ["/bin/sh", "-c", "echo ok"]

    def test_freebsd_profile(self):
        """Test FreeBSD uses csh."""
        assert platforms.resolve("freebsd14").shell == "/bin/csh"

    def test_windows_profile(self):
        """Test Windows uses cmd.exe and transcodes output."""
        profile = platforms.resolve("win32")

        assert profile.shell == "cmd.exe"
        assert profile.needs_transcoding is True
        assert profile.command_argv("dir") == ["cmd.exe", "/C", "dir"]

    def test_interactive_argv_includes_args(self):
        """Test default args are passed to the interactive shell."""
        profile = PlatformProfile(name="custom", shell="/bin/bash", args=("--norc",))

        assert profile.interactive_argv() == ["/bin/bash", "--norc"]
        assert profile.command_argv("true") == ["/bin/bash", "--norc", "-c", "true"]
