"""Sidecar service kinds.

Each supported kind carries everything the orchestrator needs to run it: the
image, default credentials, a readiness probe, the connection variables exposed
to the main container, the client package baked into project images and the
command used to load an initialization file.

Templates are formatted with the service's effective environment plus
``host``, ``port`` and ``path``.
"""

import enum
from dataclasses import dataclass, field


class ServiceKind(str, enum.Enum):
    POSTGRES = "postgres"
    MYSQL = "mysql"
    REDIS = "redis"
    MONGODB = "mongodb"

    @property
    def spec(self) -> "ServiceSpec":
        return SERVICE_SPECS[self]


@dataclass(frozen=True)
class ServiceSpec:
    image: str
    default_version: str
    port: int
    probe: tuple[str, ...]
    connection_env: dict[str, str]
    init_command: tuple[str, ...]
    default_env: dict[str, str] = field(default_factory=dict)
    client_package: str | None = None

    def image_ref(self, version: str | None = None) -> str:
        return f"{self.image}:{version or self.default_version}"

    def effective_env(self, overrides: dict[str, str] | None = None) -> dict[str, str]:
        return {**self.default_env, **(overrides or {})}

    def _values(self, env: dict[str, str], **extra: str | int) -> dict[str, str | int]:
        return {**self.effective_env(env), "port": self.port, **extra}

    def probe_command(self, env: dict[str, str] | None = None) -> list[str]:
        values = self._values(env or {})
        return [part.format(**values) for part in self.probe]

    def connection_variables(self, host: str, env: dict[str, str] | None = None) -> dict[str, str]:
        values = self._values(env or {}, host=host)
        return {key: template.format(**values) for key, template in self.connection_env.items()}

    def init_file_command(self, path: str, env: dict[str, str] | None = None) -> list[str]:
        values = self._values(env or {}, path=path)
        return [part.format(**values) for part in self.init_command]


SERVICE_SPECS: dict[ServiceKind, ServiceSpec] = {
    ServiceKind.POSTGRES: ServiceSpec(
        image="postgres",
        default_version="16",
        port=5432,
        default_env={
            "POSTGRES_USER": "dev",
            "POSTGRES_PASSWORD": "dev",
            "POSTGRES_DB": "dev",
        },
        probe=("pg_isready", "-U", "{POSTGRES_USER}", "-d", "{POSTGRES_DB}"),
        connection_env={
            "DATABASE_URL": "postgresql://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{host}:{port}/{POSTGRES_DB}",
            "POSTGRES_HOST": "{host}",
            "POSTGRES_PORT": "{port}",
            "POSTGRES_USER": "{POSTGRES_USER}",
            "POSTGRES_PASSWORD": "{POSTGRES_PASSWORD}",
            "POSTGRES_DB": "{POSTGRES_DB}",
        },
        init_command=("psql", "-U", "{POSTGRES_USER}", "-d", "{POSTGRES_DB}", "-f", "{path}"),
        client_package="postgresql-client",
    ),
    ServiceKind.MYSQL: ServiceSpec(
        image="mysql",
        default_version="8",
        port=3306,
        default_env={
            "MYSQL_ROOT_PASSWORD": "dev",
            "MYSQL_DATABASE": "dev",
            "MYSQL_USER": "dev",
            "MYSQL_PASSWORD": "dev",
        },
        probe=("mysqladmin", "ping", "-h", "127.0.0.1", "-uroot", "-p{MYSQL_ROOT_PASSWORD}"),
        connection_env={
            "DATABASE_URL": "mysql://{MYSQL_USER}:{MYSQL_PASSWORD}@{host}:{port}/{MYSQL_DATABASE}",
            "MYSQL_HOST": "{host}",
            "MYSQL_PORT": "{port}",
            "MYSQL_USER": "{MYSQL_USER}",
            "MYSQL_PASSWORD": "{MYSQL_PASSWORD}",
            "MYSQL_DATABASE": "{MYSQL_DATABASE}",
        },
        init_command=(
            "sh",
            "-c",
            "mysql -uroot -p{MYSQL_ROOT_PASSWORD} {MYSQL_DATABASE} < {path}",
        ),
        client_package="default-mysql-client",
    ),
    ServiceKind.REDIS: ServiceSpec(
        image="redis",
        default_version="7",
        port=6379,
        probe=("redis-cli", "ping"),
        connection_env={
            "REDIS_URL": "redis://{host}:{port}",
            "REDIS_HOST": "{host}",
            "REDIS_PORT": "{port}",
        },
        init_command=("sh", "-c", "redis-cli < {path}"),
        client_package="redis-tools",
    ),
    ServiceKind.MONGODB: ServiceSpec(
        image="mongo",
        default_version="7",
        port=27017,
        default_env={
            "MONGO_INITDB_ROOT_USERNAME": "dev",
            "MONGO_INITDB_ROOT_PASSWORD": "dev",
        },
        probe=("mongosh", "--quiet", "--eval", "db.adminCommand('ping')"),
        connection_env={
            "MONGODB_URL": "mongodb://{MONGO_INITDB_ROOT_USERNAME}:{MONGO_INITDB_ROOT_PASSWORD}@{host}:{port}",
            "MONGODB_HOST": "{host}",
            "MONGODB_PORT": "{port}",
        },
        init_command=(
            "mongosh",
            "-u",
            "{MONGO_INITDB_ROOT_USERNAME}",
            "-p",
            "{MONGO_INITDB_ROOT_PASSWORD}",
            "--authenticationDatabase",
            "admin",
            "{path}",
        ),
    ),
}

assert set(SERVICE_SPECS) == set(ServiceKind), "every ServiceKind needs a ServiceSpec"
