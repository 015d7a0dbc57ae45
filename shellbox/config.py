import json
from pathlib import Path

SHELLBOXCONFIG = ".shellboxconfig"
GLOBAL_CONFIG_FILE = Path.home() / ".shellbox" / "config.json"

DEFAULT_CONFIG = {
    "sandbox_name": "shellbox-sandbox",
    "image": "shellbox-sandbox",
    "tag": "latest",
    "session": "sandbox",
    "history_path": "/tmp/shellbox-history",
    "dockerfile": "Dockerfile",
    "sandbox_dockerfile": "Dockerfile-sandbox",
    "host_dir": None,  # defaults to the project root (or cwd)
    "workdir": None,  # directory to cd into before each batch
    "settle_time": 1.0,
    "command_delay": 1.0,
    "poll_interval": 1.0,
    "timeout": 600,
}

# Keys written by `shellbox init`; the rest stay at their defaults.
INIT_KEYS = ("sandbox_name", "image", "dockerfile", "workdir")

_PATH_KEYS = ("dockerfile", "sandbox_dockerfile", "host_dir")


def load_global_config():
    """Load ~/.shellbox/config.json, the user-wide defaults."""
    if GLOBAL_CONFIG_FILE.exists():
        try:
            return json.loads(GLOBAL_CONFIG_FILE.read_text())
        except (json.JSONDecodeError, OSError):
            pass
    return {}


def save_global_config(updates):
    """Merge updates into ~/.shellbox/config.json."""
    existing = load_global_config()
    existing.update(updates)
    GLOBAL_CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    GLOBAL_CONFIG_FILE.write_text(json.dumps(existing, indent=2) + "\n")


def find_config(start=None):
    """Walk up from start (default cwd) to find .shellboxconfig, like git finds .git."""
    current = Path(start) if start else Path.cwd()
    for parent in [current, *current.parents]:
        config_path = parent / SHELLBOXCONFIG
        if config_path.exists():
            return config_path
    return None


def load_config(start=None):
    # Merge order: defaults → global config → project .shellboxconfig
    config = {**DEFAULT_CONFIG, **load_global_config()}

    config_path = find_config(start)
    root = config_path.parent if config_path else Path(start) if start else Path.cwd()
    if config_path:
        try:
            raw = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_path}: {e}")
        if not isinstance(raw, dict):
            raise ValueError(f"{config_path} must contain a JSON object")
        config.update(raw)

    # Relative paths are relative to the project root, not wherever we were run from.
    for key in _PATH_KEYS:
        value = config.get(key)
        if value and not Path(value).is_absolute():
            config[key] = str((root / value).resolve())
    if not config.get("host_dir"):
        config["host_dir"] = str(root.resolve())

    return config


def init_config(path=None, **overrides):
    """Create a .shellboxconfig in the given directory."""
    target = Path(path) if path else Path.cwd()
    config_path = target / SHELLBOXCONFIG
    global_cfg = load_global_config()
    init = {}
    for key in INIT_KEYS:
        value = overrides.get(key) or global_cfg.get(key) or DEFAULT_CONFIG[key]
        if value is not None:
            init[key] = value
    config_path.write_text(json.dumps(init, indent=2) + "\n")
    return config_path
