"""Typed views over a project's JSON configuration columns."""

from typing import Any

from pydantic import BaseModel, Field

from devsandbox.sandbox.services import ServiceKind


class Runtimes(BaseModel):
    node: str | None = None
    python: str | None = None
    go: str | None = None
    java: str | None = None


class Tools(BaseModel):
    npm: list[str] = Field(default_factory=list)
    pip: list[str] = Field(default_factory=list)
    custom: list[str] = Field(default_factory=list)


class ProxyConfig(BaseModel):
    http: str | None = None
    https: str | None = None
    no_proxy: str | None = None


class ServiceConfig(BaseModel):
    """A sidecar service attached to every session of a project."""

    type: ServiceKind
    version: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    # Path relative to the worktree, executed against the service once it is ready
    init_file: str | None = None


class ProjectEnvironment(BaseModel):
    base_image: str
    runtimes: Runtimes | None = None
    packages: list[str] = Field(default_factory=list)
    tools: Tools | None = None
    proxy: ProxyConfig | None = None
    services: list[ServiceConfig] = Field(default_factory=list)
    setup: str | None = None
    ports: list[int] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class GitConfig(BaseModel):
    remote: str
    default_branch: str = "main"


class MountConfig(BaseModel):
    source: str
    target: str
    readonly: bool = False


class ClaudeConfig(BaseModel):
    """Files materialised into every worktree of the project."""

    claude_md: str | None = None
    mcp_servers: dict[str, Any] | None = None


class ProjectCreate(BaseModel):
    name: str
    description: str | None = None
    environment: ProjectEnvironment
    git: GitConfig
    mounts: list[MountConfig] = Field(default_factory=list)
    claude: ClaudeConfig | None = None


class ProjectUpdate(BaseModel):
    """Partial update. The name is fixed once created since it names the clone on disk."""

    description: str | None = None
    environment: ProjectEnvironment | None = None
    git: GitConfig | None = None
    mounts: list[MountConfig] | None = None
    claude: ClaudeConfig | None = None
