import json
import shlex
import subprocess
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from shellbox.errors import RuntimeAPIError, SandboxError
from shellbox.sandbox.base import ContainerInfo, Sandbox

try:
    import fcntl
    _FCNTL_AVAILABLE = True
except ImportError:
    _FCNTL_AVAILABLE = False  # Windows fallback: thread lock only

LOCK_DIR = Path.home() / ".shellbox" / "locks"

# Drops new outbound connections to web ports that don't open with a SYN.
# Best-effort only: this is not a content filter.
EGRESS_RULE = (
    "iptables -A OUTPUT -p tcp -m multiport --dports 80,443"
    " -m conntrack --ctstate NEW ! --syn"
    " -m comment --comment \"Block POST and PUT requests\" -j DROP"
)

# Errors from `docker rm` that mean the container is already gone (--rm raced us).
_ALREADY_GONE = ("No such container", "is already in progress")


def run_docker(args, input=None):
    """Run a docker CLI command and return its stdout. Raises RuntimeAPIError on failure."""
    cmd = ["docker", *args]
    try:
        result = subprocess.run(
            cmd,
            input=input,
            capture_output=True,
            encoding="utf-8",
            errors="replace",  # command output may be arbitrary bytes
        )
    except FileNotFoundError:
        raise RuntimeAPIError(cmd, 127, "docker not found. Install Docker and try again.")
    if result.returncode != 0:
        raise RuntimeAPIError(cmd, result.returncode, result.stderr)
    return result.stdout


def stream_docker(args, stdin=None, callback=None):
    """Run a docker CLI command, feeding each output line to callback.

    stderr is merged into stdout. Returns (exit_code, full_output).
    """
    cmd = ["docker", *args]
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError:
        raise RuntimeAPIError(cmd, 127, "docker not found. Install Docker and try again.")
    lines = []
    try:
        for line in proc.stdout:
            lines.append(line)
            if callback:
                callback(line.rstrip("\n"))
    except BaseException:
        proc.terminate()
        raise
    finally:
        proc.wait()
    return proc.returncode, "".join(lines)


def parse_json_lines(output):
    """Parse `--format '{{json .}}'` output: one JSON object per line."""
    return [json.loads(line) for line in output.splitlines() if line.strip()]


def bootstrap_command(handle):
    """Container entry command: install the egress rule, start the session, stay alive."""
    return (
        f"{EGRESS_RULE}"
        f" && screen -S {shlex.quote(handle.session)} -dm /bin/bash"
        " && sleep infinity"
    )


class DockerSandbox(Sandbox):
    """One named docker container hosting a persistent screen session.

    Lifecycle steps that check for a container and then create one run under a
    lock shared by every DockerSandbox with the same container name in this
    process, plus a file lock in ~/.shellbox/locks across processes.
    """

    _locks = {}
    _locks_guard = threading.Lock()

    def __init__(self, handle, settle_time=1.0, on_progress=None):
        self.handle = handle
        self.settle_time = settle_time
        self.on_progress = on_progress
        self.container_id = None
        self.fresh = False  # True if the last ensure()/restart() created the container

    def ensure(self):
        with self._boot_lock():
            existing = self._find()
            if existing and existing.running:
                self.container_id = existing.id
                self.fresh = False
                return existing
            if existing:
                run_docker(["rm", existing.id])
            return self._create_and_start()

    def restart(self):
        from shellbox.sandbox.image import build_image

        with self._boot_lock():
            build_image(self.handle, on_progress=self.on_progress)
            existing = self._find()
            if existing:
                run_docker(["stop", existing.id])
                self._force_remove(existing.id)
            return self._create_and_start()

    def status(self):
        return self._find()

    def exec(self, argv, input=None):
        if not self.container_id:
            raise SandboxError("Sandbox is not running. Call ensure() first.")
        flags = ["-i"] if input is not None else []
        return run_docker(["exec", *flags, self.container_id, *argv], input=input)

    def destroy(self):
        with self._boot_lock():
            existing = self._find()
            if existing:
                self._force_remove(existing.id)
        self.container_id = None

    def _find(self):
        """Look up the sandbox container by exact name, including stopped ones."""
        output = run_docker([
            "ps", "-a",
            "--filter", f"name=^{self.handle.name}$",
            "--format", "{{json .}}",
        ])
        for row in parse_json_lines(output):
            names = [n.strip().lstrip("/") for n in row.get("Names", "").split(",")]
            if self.handle.name in names:
                return ContainerInfo(id=row["ID"], name=self.handle.name, state=row.get("State", ""))
        return None

    def _create_and_start(self):
        from shellbox.sandbox.image import get_or_create_image

        get_or_create_image(self.handle, on_progress=self.on_progress)
        host_dir = self.handle.host_dir
        container_id = run_docker([
            "create",
            "--name", self.handle.name,
            "-t",
            "--privileged",  # iptables needs NET_ADMIN at startup
            "--rm",
            "-v", f"{host_dir}:{host_dir}",
            "-w", host_dir,
            self.handle.image_ref,
            "/bin/bash", "-c", bootstrap_command(self.handle),
        ]).strip()
        run_docker(["start", container_id])
        # Give screen a moment to create its session before anything is stuffed into it.
        time.sleep(self.settle_time)
        self.container_id = container_id
        self.fresh = True
        return ContainerInfo(id=container_id, name=self.handle.name, state="running")

    def _force_remove(self, container_id):
        try:
            run_docker(["rm", "-f", container_id])
        except RuntimeAPIError as e:
            if not any(marker in e.stderr for marker in _ALREADY_GONE):
                raise
        if self.container_id == container_id:
            self.container_id = None

    @contextmanager
    def _boot_lock(self):
        with DockerSandbox._locks_guard:
            lock = DockerSandbox._locks.setdefault(self.handle.name, threading.Lock())
        with lock:
            LOCK_DIR.mkdir(parents=True, exist_ok=True)
            lock_fd = open(LOCK_DIR / f"{self.handle.name}.lock", "w")
            try:
                if _FCNTL_AVAILABLE:
                    fcntl.flock(lock_fd, fcntl.LOCK_EX)
                yield
            finally:
                if _FCNTL_AVAILABLE:
                    fcntl.flock(lock_fd, fcntl.LOCK_UN)
                lock_fd.close()
