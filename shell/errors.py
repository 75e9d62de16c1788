class ShellError(Exception):
    """Base class for errors raised by the shell components."""


class UnsupportedPlatformError(ShellError):
    """No flashing tool is known for the requested (platform, architecture) pair."""

    def __init__(self, platform: str, arch: str) -> None:
        self.platform: str = platform
        self.arch: str = arch
        super().__init__(f"No flashing tool available for platform '{platform}' with architecture '{arch}'")


class PortBusyError(ShellError):
    """A flash job is already running on the requested port."""

    def __init__(self, port: str) -> None:
        self.port: str = port
        super().__init__(f"A flash operation is already in progress on {port}")


class DialogError(ShellError):
    """The native file dialog could not be shown."""
