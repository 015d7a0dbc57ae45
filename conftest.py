"""Shared fixtures: a simulated docker CLI and an isolated ~/.shellbox."""

import io
import json
import re
import shlex
import subprocess
import tarfile

import pytest

from shellbox import cli as cli_mod
from shellbox import config as config_mod
from shellbox import log as log_mod
from shellbox.sandbox import channel as channel_mod
from shellbox.sandbox import docker as docker_mod

_PATH = r"(?:'[^']*'|\S+)"
_COMPOSITE = re.compile(
    rf"^\. (?P<script>{_PATH}) > (?P<history>{_PATH}) 2>&1"
    rf" && echo (?P<token>\w+) >> {_PATH} \|\| echo \w+ >> {_PATH}; rm -f {_PATH}\n$"
)
_VAR = re.compile(r"\$(\w+)")
HISTORY = "/tmp/shellbox-history"


class FakeShell:
    """Just enough of a shell to prove state carries across commands."""

    def __init__(self, cwd, responses):
        self.cwd = cwd
        self.env = {}
        self.responses = responses

    def run(self, script):
        out = []
        for line in script.splitlines():
            line = line.strip()
            if line:
                out.append(self._run_line(line))
        return "".join(out)

    def _run_line(self, line):
        if line in self.responses:
            return self.responses[line]
        argv = shlex.split(_VAR.sub(lambda m: self.env.get(m.group(1), ""), line))
        name, args = argv[0], argv[1:]
        if name == "cd":
            self.cwd = args[0] if args else "/root"
            return ""
        if name == "pwd":
            return self.cwd + "\n"
        if name == "export":
            for arg in args:
                key, _, value = arg.partition("=")
                self.env[key] = value
            return ""
        if name == "echo":
            return " ".join(args) + "\n"
        if name == "printf":
            return args[0] if args else ""
        return f"/bin/bash: line 1: {name}: command not found\n"


class FakeContainer:
    def __init__(self, cid, name, image, argv):
        self.id = cid
        self.name = name
        self.image = image
        self.argv = argv
        self.state = "created"
        self.files = {}
        self.shell = None
        self.pending = None  # (path, content, reads_left)
        self.keystrokes = []  # stuffed text that was not a sandbox command line


class FakeDocker:
    """Stands in for the docker CLI behind subprocess.run / subprocess.Popen."""

    def __init__(self):
        self.images = {}  # "repo:tag" -> image id
        self.containers = {}  # id -> FakeContainer
        self.calls = []
        self.builds = []  # (tag, {name: dockerfile text})
        self.build_fails = False
        self.build_output = [b"Step 1/5 : FROM ubuntu\n"]
        self.procs = []
        self.responses = {}  # exact command line -> output
        self.delay_reads = 0  # cat reads before a command's token appears
        self.failures = {}  # verb -> (exit code, stderr)
        self._next = 0

    # -- helpers for tests ---------------------------------------------------

    def add_image(self, ref):
        self._next += 1
        self.images[ref] = f"sha256:{self._next:064x}"

    def add_container(self, name, state="running", image="shellbox-sandbox:latest", cwd="/"):
        self._next += 1
        c = FakeContainer(f"{self._next:012x}", name, image, [])
        c.state = state
        c.shell = FakeShell(cwd, self.responses)
        c.files[HISTORY] = ""
        self.containers[c.id] = c
        return c

    def by_name(self, name):
        return [c for c in self.containers.values() if c.name == name]

    def count(self, verb):
        return sum(1 for call in self.calls if call[1:2] == [verb])

    # -- subprocess entry points ---------------------------------------------

    def run(self, cmd, input=None, capture_output=False, encoding=None, errors=None, **kwargs):
        self.calls.append(list(cmd))
        assert cmd[0] == "docker"
        verb, args = cmd[1], cmd[2:]
        if verb in self.failures:
            code, stderr = self.failures[verb]
            return subprocess.CompletedProcess(cmd, code, "", stderr)
        try:
            out = getattr(self, "_" + verb.replace("-", "_"))(args, input)
        except _Fail as e:
            return subprocess.CompletedProcess(cmd, e.code, "", e.stderr)
        if isinstance(out, bytes):
            # the real CLI hands back raw bytes for subprocess to decode
            out = out.decode(encoding or "utf-8", errors or "strict")
        return subprocess.CompletedProcess(cmd, 0, out, "")

    def popen(self, cmd, stdin=None, stdout=None, stderr=None, encoding=None, errors=None, **kwargs):
        decode = lambda raw: raw.decode(encoding or "utf-8", errors or "strict")
        self.calls.append(list(cmd))
        assert cmd[1] == "build"
        tag = cmd[cmd.index("-t") + 1]
        dockerfile = cmd[cmd.index("-f") + 1]
        with tarfile.open(fileobj=io.BytesIO(stdin.read())) as tar:
            files = {m.name: tar.extractfile(m).read().decode() for m in tar.getmembers()}
        self.builds.append((tag, files))
        assert dockerfile in files
        if self.build_fails:
            proc = _FakeProc(self.build_output + [b"E: Unable to locate package\n"], 1, decode)
        else:
            self.add_image(tag)
            proc = _FakeProc(self.build_output + [f"Successfully tagged {tag}\n".encode()], 0, decode)
        self.procs.append(proc)
        return proc

    # -- docker verbs --------------------------------------------------------

    def _images(self, args, input):
        rows = []
        for ref, image_id in self.images.items():
            repo, tag = ref.rsplit(":", 1)
            rows.append(json.dumps({"Repository": repo, "Tag": tag, "ID": image_id[7:19]}))
        return "\n".join(rows) + ("\n" if rows else "")

    def _image(self, args, input):
        assert args[0] == "inspect"
        ref = args[1]
        if ref not in self.images:
            raise _Fail(1, f"Error: No such image: {ref}")
        return json.dumps([{"Id": self.images[ref], "RepoTags": [ref], "Created": "2026-01-01T00:00:00Z"}])

    def _ps(self, args, input):
        pattern = args[args.index("--filter") + 1].split("=", 1)[1]
        rows = [
            json.dumps({"ID": c.id, "Names": c.name, "State": c.state, "Image": c.image})
            for c in self.containers.values()
            if re.search(pattern, c.name)
        ]
        return "\n".join(rows) + ("\n" if rows else "")

    def _create(self, args, input):
        name = args[args.index("--name") + 1]
        if self.by_name(name):
            raise _Fail(125, f'Conflict. The container name "/{name}" is already in use')
        image = args[args.index("/bin/bash") - 1]
        if image not in self.images:
            raise _Fail(125, f"Unable to find image '{image}' locally")
        self._next += 1
        c = FakeContainer(f"{self._next:012x}", name, image, args)
        self.containers[c.id] = c
        return c.id + "\n"

    def _start(self, args, input):
        c = self._get(args[0])
        c.state = "running"
        c.shell = FakeShell(c.argv[c.argv.index("-w") + 1], self.responses)
        c.files[HISTORY] = ""  # the image build touched it
        return c.id + "\n"

    def _stop(self, args, input):
        c = self._get(args[0])
        # --rm: the daemon removes it as soon as it stops
        del self.containers[c.id]
        return c.id + "\n"

    def _rm(self, args, input):
        force = "-f" in args
        cid = [a for a in args if a != "-f"][0]
        c = self._get(cid)
        if c.state == "running" and not force:
            raise _Fail(1, f"Error response from daemon: You cannot remove a running container {cid}")
        del self.containers[c.id]
        return cid + "\n"

    def _exec(self, args, input):
        if args[0] == "-i":
            args = args[1:]
        c = self._get(args[0])
        if c.state != "running":
            raise _Fail(1, f"Error response from daemon: Container {c.id} is not running")
        argv = args[1:]
        if argv[:2] == ["sh", "-c"] and argv[2].startswith("cat > "):
            c.files[shlex.split(argv[2])[2]] = input
            return ""
        if argv[0] == "screen":
            self._stuff(c, argv[-1])
            return ""
        if argv[0] == "cat":
            if c.pending:
                path, content, left = c.pending
                if left <= 0:
                    c.files[path] = content
                    c.pending = None
                else:
                    c.pending = (path, content, left - 1)
            path = argv[1]
            if path not in c.files:
                raise _Fail(1, f"cat: {path}: No such file or directory")
            return c.files[path]
        raise AssertionError(f"unexpected exec {argv}")

    def _stuff(self, c, line):
        line = re.sub(r"\\(.)", r"\1", line)  # undo screen escaping
        m = _COMPOSITE.match(line)
        if not m:
            c.keystrokes.append(line)
            return
        script = c.files.pop(shlex.split(m.group("script"))[0])
        history = shlex.split(m.group("history"))[0]
        output = c.shell.run(script)
        content = output + m.group("token") + "\n"
        if self.delay_reads:
            c.pending = (history, content, self.delay_reads)
        else:
            c.files[history] = content

    def _get(self, cid):
        if cid not in self.containers:
            raise _Fail(1, f"Error response from daemon: No such container: {cid}")
        return self.containers[cid]


class _Fail(Exception):
    def __init__(self, code, stderr):
        self.code = code
        self.stderr = stderr


class _FakeProc:
    def __init__(self, lines, returncode, decode):
        self.stdout = (decode(line) for line in lines)
        self.returncode = returncode
        self.terminated = False
        self.waited = False

    def wait(self):
        self.waited = True
        return self.returncode

    def terminate(self):
        self.terminated = True


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def monotonic(self):
        return self.now

    def time(self):
        return self.now


@pytest.fixture(autouse=True)
def shellbox_home(tmp_path, monkeypatch):
    """Keep logs, locks and global config out of the real home directory."""
    home = tmp_path / "home" / ".shellbox"
    monkeypatch.setattr(log_mod, "LOGS_FILE", home / "logs.jsonl")
    monkeypatch.setattr(cli_mod, "LOGS_FILE", home / "logs.jsonl")
    monkeypatch.setattr(docker_mod, "LOCK_DIR", home / "locks")
    monkeypatch.setattr(config_mod, "GLOBAL_CONFIG_FILE", home / "config.json")
    return home


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(channel_mod, "time", fake)
    monkeypatch.setattr(docker_mod, "time", fake)
    return fake


@pytest.fixture
def fake_docker(monkeypatch, clock):
    fake = FakeDocker()
    monkeypatch.setattr(docker_mod.subprocess, "run", fake.run)
    monkeypatch.setattr(docker_mod.subprocess, "Popen", fake.popen)
    return fake


@pytest.fixture
def project(tmp_path, monkeypatch):
    """A project directory with a base Dockerfile and .shellboxconfig, as cwd."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "Dockerfile").write_text("FROM ubuntu:22.04\nRUN apt-get update\n")
    (root / ".shellboxconfig").write_text(json.dumps({"sandbox_name": "test-sandbox", "image": "test-sandbox"}))
    monkeypatch.chdir(root)
    return root
