"""
Platform capability table.

Maps a platform family to the shell used for bridged sessions and to
whether shell output must be transcoded to UTF-8 before it is sent.
"""

import sys
from dataclasses import dataclass


@dataclass(frozen=True)
class PlatformProfile:
    """Shell and encoding behavior for one platform family."""
    name: str
    shell: str
    args: tuple[str, ...] = ()
    command_flag: str = "-c"         # Runs a single command string
    needs_transcoding: bool = False

    def interactive_argv(self) -> list[str]:
        return [self.shell, *self.args]

    def command_argv(self, command: str) -> list[str]:
        return [self.shell, *self.args, self.command_flag, command]


PROFILES: dict[str, PlatformProfile] = {
    "posix": PlatformProfile(name="posix", shell="/bin/sh"),
    "freebsd": PlatformProfile(name="freebsd", shell="/bin/csh"),
    "windows": PlatformProfile(
        name="windows",
        shell="cmd.exe",
        command_flag="/C",
        needs_transcoding=True,
    ),
}


def platform_key(platform: str | None = None) -> str:
    """Normalize a sys.platform value to a PROFILES key."""
    platform = (platform or sys.platform).lower()
    if platform.startswith("win"):
        return "windows"
    if platform.startswith("freebsd"):
        return "freebsd"
    return "posix"


def resolve(platform: str | None = None) -> PlatformProfile:
    """Resolve the profile for a platform (default: the running one)."""
    return PROFILES[platform_key(platform)]
