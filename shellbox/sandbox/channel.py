"""Delivering commands to the persistent session and detecting completion.

screen gives no signal when a stuffed command finishes, so every command is
followed by a fresh random token written to the history file. The poller
re-reads that file until the token shows up and returns what precedes it.

The command text itself never passes through screen's parser: it is written
to a script file over `docker exec -i` and the session sources it. The line
stuffed into screen contains only fixed paths and the token.
"""

import secrets
import shlex
import threading
import time

from shellbox.errors import CommandCancelled, SandboxTimeout


class CancelToken:
    """Cancellation flag for a caller waiting on a command.

        cancel = CancelToken()
        threading.Timer(30, cancel.cancel).start()
        run_command(sandbox, "make", cancel=cancel)
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    def wait(self, timeout):
        """Sleep up to timeout seconds, waking early on cancel. Returns cancelled."""
        return self._event.wait(timeout)


def new_token():
    return secrets.token_hex(8)


def escape_screen(text):
    """Escape characters screen's `-X stuff` argument parser would interpret."""
    return text.replace("\\", "\\\\").replace("$", "\\$").replace("^", "\\^")


def script_path(handle, token):
    return f"{handle.history_path}.{token}.sh"


def composite_line(handle, script, token):
    history = shlex.quote(handle.history_path)
    script = shlex.quote(script)
    return (
        f". {script} > {history} 2>&1"
        f" && echo {token} >> {history}"
        f" || echo {token} >> {history}"
        f"; rm -f {script}"
    )


def stuff(sandbox, text):
    """Type text into the persistent session as keystrokes, then Enter."""
    sandbox.exec(["screen", "-S", sandbox.handle.session, "-X", "stuff", escape_screen(text) + "\n"])


def send(sandbox, command, delay=1.0):
    """Start command in the persistent session. Returns its sentinel token."""
    token = new_token()
    script = script_path(sandbox.handle, token)
    sandbox.exec(["sh", "-c", f"cat > {shlex.quote(script)}"], input=command + "\n")
    stuff(sandbox, composite_line(sandbox.handle, script, token))
    time.sleep(delay)
    return token


def read_history(sandbox):
    return sandbox.exec(["cat", sandbox.handle.history_path])


def await_token(sandbox, token, timeout=600, poll_interval=1.0, cancel=None):
    """Poll the history file until token appears; return the output before it.

    timeout=None waits forever. Raises SandboxTimeout past the deadline and
    CommandCancelled once cancel fires.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        history = read_history(sandbox)
        if token in history:
            return history.split(token, 1)[0]
        if cancel is not None and cancel.cancelled:
            raise CommandCancelled(token)
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SandboxTimeout(token, timeout)
            wait = min(poll_interval, remaining)
        else:
            wait = poll_interval
        if cancel is not None:
            if cancel.wait(wait):
                raise CommandCancelled(token)
        else:
            time.sleep(wait)


def run_command(sandbox, command, delay=1.0, timeout=600, poll_interval=1.0, cancel=None):
    """send() then await_token(): the captured stdout+stderr of one command."""
    token = send(sandbox, command, delay=delay)
    return await_token(sandbox, token, timeout=timeout, poll_interval=poll_interval, cancel=cancel)
