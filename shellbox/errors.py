"""Error kinds raised by the sandbox layers.

Nothing here is caught inside the library: build, runtime and timeout failures
surface to whoever called run_commands() or restart_sandbox(). A shell command
that exits non-zero is not an error; its stderr is part of the captured output.
"""


class SandboxError(RuntimeError):
    """Base class for every sandbox failure."""


class BuildError(SandboxError):
    """The sandbox image failed to build."""

    def __init__(self, message, output=""):
        super().__init__(message)
        self.output = output


class RuntimeAPIError(SandboxError):
    """A docker CLI call failed (non-zero exit or docker missing)."""

    def __init__(self, args, returncode, stderr=""):
        self.cmd = list(args)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"`{' '.join(self.cmd)}` exited {returncode}{detail}")


class SandboxTimeout(SandboxError):
    """The completion token did not appear before the deadline."""

    def __init__(self, token, timeout):
        self.token = token
        self.timeout = timeout
        super().__init__(f"Command did not finish within {timeout}s (token {token})")


class CommandCancelled(SandboxError):
    """The caller cancelled while waiting for a command to finish."""

    def __init__(self, token):
        self.token = token
        super().__init__(f"Cancelled while waiting for token {token}")
