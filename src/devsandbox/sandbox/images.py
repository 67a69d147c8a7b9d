"""
Per-project image cache.

An image is keyed by the SHA256 of the project's environment spec (keys sorted
recursively), so any change to the spec yields a new tag and a new build while
an unchanged spec always resolves to the same, already built image.
"""

import hashlib
import json
import logging
import pathlib
import shutil
import threading
from collections import defaultdict
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel

from devsandbox.common import settings
from devsandbox.common.db.models import ImageStatus, Project, ProjectImage
from devsandbox.common.db.store import SandboxStore
from devsandbox.sandbox.containers import LABEL_PROJECT, ContainerRuntime
from devsandbox.sandbox.errors import BuildError
from devsandbox.sandbox.schemas import ProjectEnvironment

logger = logging.getLogger(__name__)

BASE_PACKAGES = ["curl", "git", "ca-certificates", "tmux", "sudo", "ripgrep"]
DEFAULT_NODE_VERSION = "20"
# Hostnames of sidecar services that must bypass the JVM proxy
SERVICE_HOSTS = ["postgres", "mysql", "redis", "mongodb", "rabbitmq", "elasticsearch"]
LABEL_CONFIG_HASH = "devsandbox.config-hash"


def config_hash(environment: dict[str, Any] | BaseModel) -> str:
    if isinstance(environment, BaseModel):
        environment = environment.model_dump(mode="json")
    canonical = json.dumps(environment, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def image_tag(project_name: str, hash_: str) -> str:
    return f"{settings.IMAGE_PREFIX}/{project_name}:{hash_[:12]}"


def _proxy_settings(env: ProjectEnvironment) -> tuple[str, str, str]:
    proxy = env.proxy
    http_proxy = (proxy and proxy.http) or settings.HTTP_PROXY
    https_proxy = (proxy and proxy.https) or settings.HTTPS_PROXY
    no_proxy = (proxy and proxy.no_proxy) or settings.NO_PROXY
    return http_proxy, https_proxy, no_proxy


def _maven_settings(host: str, port: str, non_proxy_hosts: str) -> str:
    proxies = "".join(
        f"    <proxy>\\n      <id>{scheme}-proxy</id>\\n      <active>true</active>\\n"
        f"      <protocol>{scheme}</protocol>\\n      <host>{host}</host>\\n      <port>{port}</port>\\n"
        f"      <nonProxyHosts>{non_proxy_hosts}</nonProxyHosts>\\n    </proxy>\\n"
        for scheme in ("http", "https")
    )
    return f'<?xml version="1.0" encoding="UTF-8"?>\\n<settings>\\n  <proxies>\\n{proxies}  </proxies>\\n</settings>'


def generate_dockerfile(env: ProjectEnvironment) -> str:
    """Render the Dockerfile for an environment spec. The setup script is not part of it."""
    lines = [f"FROM {env.base_image}", "", "ENV DEBIAN_FRONTEND=noninteractive", ""]

    http_proxy, https_proxy, no_proxy = _proxy_settings(env)
    has_proxy = bool(http_proxy or https_proxy)

    if has_proxy:
        lines.append("# Proxy settings")
        if http_proxy:
            lines += [f"ENV HTTP_PROXY={http_proxy}", f"ENV http_proxy={http_proxy}"]
        if https_proxy:
            lines += [f"ENV HTTPS_PROXY={https_proxy}", f"ENV https_proxy={https_proxy}"]
        if no_proxy:
            lines += [f"ENV NO_PROXY={no_proxy}", f"ENV no_proxy={no_proxy}"]
        lines.append("")

        apt_conf = []
        if http_proxy:
            apt_conf.append(f"echo 'Acquire::http::Proxy \"{http_proxy}\";'")
        if https_proxy:
            apt_conf.append(f"echo 'Acquire::https::Proxy \"{https_proxy}\";'")
        lines += [
            "# Configure apt proxy",
            "RUN mkdir -p /etc/apt/apt.conf.d && \\",
            f"    ({' && '.join(apt_conf)}) > /etc/apt/apt.conf.d/99proxy",
            "",
        ]

    packages = BASE_PACKAGES + list(env.packages)
    for service in env.services:
        client = service.type.spec.client_package
        if client and client not in packages:
            packages.append(client)
    lines.append("RUN apt-get update && apt-get install -y \\")
    lines += [f"    {package} \\" for package in packages]
    lines += ["    && rm -rf /var/lib/apt/lists/*", ""]

    lines += [
        "# Install GitHub CLI",
        "RUN curl -fsSL https://cli.github.com/packages/githubcli-archive-keyring.gpg"
        " | dd of=/usr/share/keyrings/githubcli-archive-keyring.gpg \\",
        "    && chmod go+r /usr/share/keyrings/githubcli-archive-keyring.gpg \\",
        '    && echo "deb [arch=$(dpkg --print-architecture) signed-by=/usr/share/keyrings/githubcli-archive-keyring.gpg]'
        ' https://cli.github.com/packages stable main" | tee /etc/apt/sources.list.d/github-cli.list > /dev/null \\',
        "    && apt-get update && apt-get install -y gh \\",
        "    && rm -rf /var/lib/apt/lists/*",
        "",
        "# Passwordless sudo for whichever uid the container runs as",
        'RUN echo "ALL ALL=(ALL) NOPASSWD: ALL" >> /etc/sudoers',
        "",
    ]

    runtimes = env.runtimes
    tools = env.tools
    needs_npm = bool(tools and (tools.npm or "claude-code" in tools.custom))
    needs_java = bool(runtimes and runtimes.java)

    if runtimes and runtimes.java:
        java = runtimes.java
        lines += [
            f"# Install Java {java}",
            f"RUN curl -fsSL https://download.oracle.com/java/{java}/latest/jdk-{java}_linux-x64_bin.tar.gz -o /tmp/jdk.tar.gz \\",
            "    && mkdir -p /usr/lib/jvm \\",
            "    && tar -xzf /tmp/jdk.tar.gz -C /usr/lib/jvm \\",
            "    && rm /tmp/jdk.tar.gz \\",
            f"    && ln -s /usr/lib/jvm/jdk-{java}* /usr/lib/jvm/java",
            "ENV JAVA_HOME=/usr/lib/jvm/java",
            'ENV PATH="$JAVA_HOME/bin:$PATH"',
            "",
        ]

    node = runtimes.node if runtimes else None
    if not node and needs_npm:
        node = DEFAULT_NODE_VERSION
    if node:
        lines += [
            f"# Install Node.js {node}",
            f"RUN curl -fsSL https://deb.nodesource.com/setup_{node}.x | bash - \\",
            "    && apt-get install -y nodejs \\",
            "    && rm -rf /var/lib/apt/lists/*",
            "",
        ]

    if runtimes and runtimes.python:
        python = runtimes.python
        lines += [
            f"# Install Python {python}",
            "RUN apt-get update && apt-get install -y \\",
            f"    python{python} python3-pip python3-venv \\",
            "    && rm -rf /var/lib/apt/lists/* \\",
            f"    && ln -sf /usr/bin/python{python} /usr/bin/python",
            "",
        ]

    if runtimes and runtimes.go:
        go = runtimes.go
        lines += [
            f"# Install Go {go}",
            f"RUN curl -fsSL https://go.dev/dl/go{go}.linux-amd64.tar.gz -o /tmp/go.tar.gz \\",
            "    && tar -C /usr/local -xzf /tmp/go.tar.gz \\",
            "    && rm /tmp/go.tar.gz",
            'ENV PATH="/usr/local/go/bin:$PATH"',
            "",
        ]

    if needs_npm and has_proxy:
        npm_proxy = []
        if http_proxy:
            npm_proxy.append(f"npm config set proxy {http_proxy}")
        if https_proxy:
            npm_proxy.append(f"npm config set https-proxy {https_proxy}")
        lines += ["# Configure npm proxy", f"RUN {' && '.join(npm_proxy)}", ""]

    if tools and tools.npm:
        lines += ["# Install global npm packages", f"RUN npm install -g {' '.join(tools.npm)}", ""]
    if tools and tools.pip:
        lines += ["# Install Python packages", f"RUN pip install {' '.join(tools.pip)}", ""]
    if tools and "claude-code" in tools.custom:
        lines += ["# Install Claude Code CLI", "RUN npm install -g @anthropic-ai/claude-code", ""]

    if needs_java and has_proxy:
        proxy_url = urlsplit(https_proxy or http_proxy)
        host = proxy_url.hostname or ""
        port = str(proxy_url.port or 8080)
        non_proxy = "|".join((no_proxy or "localhost,127.0.0.1").split(",") + SERVICE_HOSTS)
        lines += [
            "# Configure Maven proxy",
            "RUN mkdir -p /root/.m2 && \\",
            f"    echo '{_maven_settings(host, port, non_proxy)}' > /root/.m2/settings.xml",
            "",
            "# Configure JVM proxy for other Java tools",
            f'ENV JAVA_TOOL_OPTIONS="-Dhttp.proxyHost={host} -Dhttp.proxyPort={port} '
            f'-Dhttps.proxyHost={host} -Dhttps.proxyPort={port} -Dhttp.nonProxyHosts={non_proxy}"',
            "",
        ]

    if has_proxy:
        exports = []
        if http_proxy:
            exports += [f"export HTTP_PROXY={http_proxy}", f"export http_proxy={http_proxy}"]
        if https_proxy:
            exports += [f"export HTTPS_PROXY={https_proxy}", f"export https_proxy={https_proxy}"]
        if no_proxy:
            exports += [f"export NO_PROXY={no_proxy}", f"export no_proxy={no_proxy}"]
        joined = "\\n".join(exports)
        lines += ["# Proxy for interactive shells", f"RUN echo '{joined}' >> /etc/bash.bashrc", ""]

    lines += ["WORKDIR /workspace", "", 'CMD ["sleep", "infinity"]']
    return "\n".join(lines) + "\n"


class ImageCache:
    def __init__(
        self,
        store: SandboxStore,
        runtime: ContainerRuntime,
        build_dir: pathlib.Path | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.build_dir = pathlib.Path(build_dir or settings.BUILD_DIR)
        self._locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _project_lock(self, project_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[project_id]

    def resolve(self, project: Project) -> str:
        """Return the image tag for the project's current environment, building it if needed."""
        hash_ = config_hash(project.environment_config)
        tag = image_tag(project.name, hash_)

        with self._project_lock(project.id):
            record = self.store.find_image(project.id, hash_)
            if record and record.status == ImageStatus.READY.value:
                if self.runtime.image_exists(record.image_tag):
                    logger.info(f"Using cached image {record.image_tag} for project {project.name}")
                    return record.image_tag
                logger.warning(f"Cached image {record.image_tag} is gone from the engine, rebuilding")

            record = self.store.start_image_build(project.id, hash_, tag)
            try:
                self._build(project, tag, hash_)
            except Exception as e:
                self.store.finish_image_build(record.id, error=str(e))
                logger.error(f"Image build failed for project {project.name}: {e}")
                if isinstance(e, BuildError):
                    raise
                raise BuildError(str(e)) from e

            self.store.finish_image_build(record.id)
            for stale in self.store.delete_stale_images(project.id, hash_):
                logger.info(f"Dropped stale image record {stale.image_tag}")
            return tag

    def _build(self, project: Project, tag: str, hash_: str) -> None:
        context_dir = self.build_dir / project.id
        context_dir.mkdir(parents=True, exist_ok=True)
        try:
            dockerfile = generate_dockerfile(project.environment)
            (context_dir / "Dockerfile").write_text(dockerfile)
            logger.debug(f"Generated Dockerfile for {project.name}:\n{dockerfile}")
            self.runtime.build_image(context_dir, tag, labels={LABEL_PROJECT: project.id, LABEL_CONFIG_HASH: hash_})
        finally:
            shutil.rmtree(context_dir, ignore_errors=True)

    def rebuild(self, project: Project) -> str:
        """Drop every cached image of the project and build from scratch."""
        with self._project_lock(project.id):
            for record in self.store.list_images(project.id):
                self.store.delete_image(record.id)
                self.runtime.remove_image(record.image_tag)
        return self.resolve(project)

    def status(self, project_id: str) -> ProjectImage | None:
        """Most recent cache record for the project."""
        records = self.store.list_images(project_id)
        return records[-1] if records else None
