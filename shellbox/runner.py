import shlex
import time

from shellbox.config import load_config
from shellbox.log import write_log
from shellbox.sandbox import create_sandbox
from shellbox.sandbox.channel import run_command


def format_block(command, output):
    return f"> {command}\n{output}\n\n"


class BatchSession:
    """Runs batches of commands against one sandbox, strictly one at a time.

    The sandbox container and its screen session outlive the BatchSession;
    a later session with the same config picks up the same shell state.
    """

    def __init__(self, config=None, sandbox=None, on_progress=None):
        self.config = config if config is not None else load_config()
        self.sandbox = sandbox or create_sandbox(self.config, on_progress=on_progress)

    def run(self, commands, workdir=None, cancel=None):
        """Run commands in order and return the transcript.

        Non-string entries are skipped. The session first cds into workdir,
        or the configured workdir when workdir is None; pass "" to skip the
        cd. Its output is discarded.
        """
        t0 = time.time()
        self.sandbox.ensure()

        if workdir is None:
            workdir = self.config.get("workdir")
        if workdir:
            self._run_one(f"cd {shlex.quote(str(workdir))}", cancel)

        transcript = ""
        count = 0
        for command in commands:
            if not isinstance(command, str):
                continue
            output = self._run_one(command, cancel)
            transcript += format_block(command, output)
            count += 1

        write_log({
            "event": "batch",
            "sandbox": self.sandbox.handle.name,
            "host_dir": self.sandbox.handle.host_dir,
            "commands": count,
            "fresh": self.sandbox.fresh,
            "elapsed_s": round(time.time() - t0, 2),
        })
        return transcript

    def restart(self):
        info = self.sandbox.restart()
        write_log({
            "event": "restart",
            "sandbox": self.sandbox.handle.name,
            "host_dir": self.sandbox.handle.host_dir,
            "container": info.id,
        })
        return info

    def _run_one(self, command, cancel):
        return run_command(
            self.sandbox,
            command,
            delay=self.config.get("command_delay", 1.0),
            timeout=self.config.get("timeout", 600),
            poll_interval=self.config.get("poll_interval", 1.0),
            cancel=cancel,
        )


def run_commands(commands, config=None, workdir=None, cancel=None):
    """Run commands in the sandbox (creating it if needed) and return the transcript.

    Example:
        run_commands(["cd /tmp", "pwd"])  # "> cd /tmp\n\n\n> pwd\n/tmp\n\n\n"
    """
    return BatchSession(config).run(commands, workdir=workdir, cancel=cancel)


def restart_sandbox(config=None):
    """Rebuild the image and replace the sandbox container. Returns ContainerInfo."""
    return BatchSession(config).restart()
