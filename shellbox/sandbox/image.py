"""Sandbox image: augmenting the project's Dockerfile and building it.

The base Dockerfile is never parsed, only appended to. The appended steps add
what every sandbox needs: the history file, iptables for the egress rule,
screen for the persistent session, and the legacy iptables backend (the nft
backend fails inside many privileged containers).
"""

import io
import json
import shlex
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from shellbox.errors import BuildError
from shellbox.sandbox.docker import parse_json_lines, run_docker, stream_docker


@dataclass(frozen=True)
class BuildSpec:
    base: str
    steps: tuple

    @classmethod
    def for_sandbox(cls, base, handle):
        return cls(base=base, steps=sandbox_steps(handle))

    def render(self):
        return "\n".join([self.base.rstrip("\n"), *self.steps]) + "\n"


@dataclass(frozen=True)
class ImageInfo:
    id: str
    repo_tags: tuple
    created: str = ""


def sandbox_steps(handle):
    return (
        f"RUN touch {shlex.quote(handle.history_path)}",
        "RUN apt-get update && apt-get install -y iptables screen",
        "RUN update-alternatives --set iptables /usr/sbin/iptables-legacy",
        "RUN update-alternatives --set ip6tables /usr/sbin/ip6tables-legacy",
    )


def _print_progress(line):
    line = line.strip()
    if line:
        Console().print(f"  {line}", style="dim", highlight=False, markup=False)


def write_build_spec(handle):
    """Write the augmented Dockerfile next to the base one. Returns its path."""
    base_path = Path(handle.dockerfile)
    try:
        base = base_path.read_text(encoding="utf-8")
    except OSError as e:
        raise BuildError(f"Cannot read base Dockerfile {base_path}: {e}")
    spec = BuildSpec.for_sandbox(base, handle)
    target = Path(handle.sandbox_dockerfile)
    target.write_text(spec.render(), encoding="utf-8")
    return target


def build_context(dockerfile_path):
    """Tar archive (bytes) whose only entry is the augmented Dockerfile."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        tar.add(str(dockerfile_path), arcname=Path(dockerfile_path).name)
    return buf.getvalue()


def build_image(handle, on_progress=None):
    """Build the sandbox image from the augmented Dockerfile. Returns ImageInfo.

    Progress lines go to on_progress (default: dim console output). A failed
    build raises BuildError and is not retried.
    """
    dockerfile_path = write_build_spec(handle)
    context = build_context(dockerfile_path)
    callback = on_progress or _print_progress

    with tempfile.TemporaryFile() as ctx_file:
        ctx_file.write(context)
        ctx_file.seek(0)
        returncode, output = stream_docker(
            ["build", "-t", handle.image_ref, "-f", dockerfile_path.name, "-"],
            stdin=ctx_file,
            callback=callback,
        )
    if returncode != 0:
        tail = "\n".join(output.strip().splitlines()[-20:])
        raise BuildError(f"Image build failed for {handle.image_ref} (exit {returncode})", tail)
    return inspect_image(handle)


def inspect_image(handle):
    raw = json.loads(run_docker(["image", "inspect", handle.image_ref]))
    info = raw[0] if isinstance(raw, list) else raw
    return ImageInfo(
        id=info.get("Id", ""),
        repo_tags=tuple(info.get("RepoTags") or ()),
        created=info.get("Created", ""),
    )


def list_image_tags():
    """Every `repository:tag` known to the local docker daemon."""
    output = run_docker(["images", "--format", "{{json .}}"])
    return {
        f"{row.get('Repository')}:{row.get('Tag')}"
        for row in parse_json_lines(output)
    }


def get_or_create_image(handle, on_progress=None):
    """Return the sandbox image, building it first if no image has exactly this tag."""
    if handle.image_ref not in list_image_tags():
        return build_image(handle, on_progress=on_progress)
    return inspect_image(handle)
