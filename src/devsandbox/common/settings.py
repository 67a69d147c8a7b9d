import os
import pathlib
from dotenv import load_dotenv

load_dotenv()


def boolean_env(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


# Storage layout
DATA_DIR = pathlib.Path(os.getenv("DATA_DIR", "/data/devsandbox"))
WORKTREE_BASE = pathlib.Path(os.getenv("WORKTREE_BASE", "/data/worktrees"))
REPOS_DIR = pathlib.Path(os.getenv("REPOS_DIR", DATA_DIR / "repos"))
BUILD_DIR = pathlib.Path(os.getenv("BUILD_DIR", DATA_DIR / "builds"))

storage_dirs = [DATA_DIR, WORKTREE_BASE, REPOS_DIR, BUILD_DIR]


# Database settings
DB_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'devsandbox.db'}")


# Container engine settings
CONTAINER_RUNTIME = os.getenv("CONTAINER_RUNTIME", "docker").lower()  # docker or podman
if CONTAINER_RUNTIME == "podman":
    _default_socket = f"unix:///run/user/{os.getuid()}/podman/podman.sock"
else:
    _default_socket = "unix:///var/run/docker.sock"
DOCKER_HOST = os.getenv("DOCKER_HOST", _default_socket)

# Names are <prefix>-<short session id>[-<suffix>]; cleanup relies on this shape
CONTAINER_PREFIX = os.getenv("CONTAINER_PREFIX", "devsandbox")
IMAGE_PREFIX = os.getenv("IMAGE_PREFIX", "devsandbox")
NETWORK_SUFFIX = os.getenv("NETWORK_SUFFIX", "net")
SESSION_SHORT_ID_LENGTH = 8

CONTAINER_STOP_TIMEOUT = int(os.getenv("CONTAINER_STOP_TIMEOUT", 10))
SERVICE_READY_TIMEOUT = float(os.getenv("SERVICE_READY_TIMEOUT", 60))
SERVICE_READY_INTERVAL = float(os.getenv("SERVICE_READY_INTERVAL", 1))

# SELinux relabel flag appended to bind mounts ("", "z" or "Z")
MOUNT_LABEL = os.getenv("MOUNT_LABEL", "")

# Tmux session name used inside containers
# IMPORTANT: Must be alphanumeric/underscore/dash only - used in shell scripts
TMUX_SESSION_NAME = os.getenv("TMUX_SESSION_NAME", "sandbox")
TMUX_HISTORY_LIMIT = int(os.getenv("TMUX_HISTORY_LIMIT", 50000))
TERMINAL_SHELL = os.getenv("TERMINAL_SHELL", "/bin/bash")


# Image build proxy fallbacks (project config takes precedence)
HTTP_PROXY = os.getenv("HTTP_PROXY", os.getenv("http_proxy", ""))
HTTPS_PROXY = os.getenv("HTTPS_PROXY", os.getenv("https_proxy", ""))
NO_PROXY = os.getenv("NO_PROXY", os.getenv("no_proxy", ""))


# Proxy settings
# Long timeout so in-container build tools can finish slow first compiles
PROXY_TIMEOUT = float(os.getenv("PROXY_TIMEOUT", 600))
PROXY_CONNECT_TIMEOUT = float(os.getenv("PROXY_CONNECT_TIMEOUT", 10))


# API settings
SERVER_HOST = os.getenv("HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("PORT", 3001))
SERVER_URL = os.getenv("SERVER_URL", f"http://localhost:{SERVER_PORT}")
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

CONFIGURE_GIT_SAFE_DIRECTORY = boolean_env("CONFIGURE_GIT_SAFE_DIRECTORY", True)


# Git hosting credentials, exported to session containers as GH_TOKEN
if github_token_file := os.getenv("GITHUB_TOKEN_FILE"):
    GITHUB_TOKEN = pathlib.Path(github_token_file).read_text().strip()
else:
    GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
