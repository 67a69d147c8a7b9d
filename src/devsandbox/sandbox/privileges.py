"""
Host/container UID bridging.

Containers may run as a different host user than the control plane. Rather
than changing ownership, access is granted through POSIX ACLs: a recursive
rwX entry for the target uid plus a default entry so files created later
inherit it. The control plane's own uid gets the same default entry so files
written from inside the container stay writable for it.
"""

import logging
import os
import pathlib
import pwd
import subprocess
from dataclasses import dataclass

from devsandbox.sandbox.errors import SandboxError

logger = logging.getLogger(__name__)


@dataclass
class HostUser:
    name: str
    uid: int
    gid: int
    home: pathlib.Path


def lookup_user(name: str) -> HostUser | None:
    try:
        entry = pwd.getpwnam(name)
    except KeyError:
        return None
    return HostUser(name=entry.pw_name, uid=entry.pw_uid, gid=entry.pw_gid, home=pathlib.Path(entry.pw_dir))


class PrivilegeBridge:
    """Grants a host uid access to host-owned paths."""

    def __init__(self, setfacl: str = "setfacl"):
        self.setfacl = setfacl

    def _run(self, *args: str) -> None:
        res = subprocess.run([self.setfacl, *args], capture_output=True, text=True)
        if res.returncode != 0:
            raise SandboxError(f"setfacl {' '.join(args)} failed: {res.stderr.strip()}")

    def grant_access(self, path: pathlib.Path | str, uid: int) -> None:
        path = pathlib.Path(path)
        if not path.exists():
            logger.debug(f"Skipping ACL grant on missing path {path}")
            return

        own_uid = os.getuid()
        self._run("-R", "-m", f"u:{uid}:rwX", str(path))
        self._run("-R", "-d", "-m", f"u:{uid}:rwX", str(path))
        if own_uid != uid:
            self._run("-R", "-d", "-m", f"u:{own_uid}:rwX", str(path))
        logger.info(f"Granted uid {uid} access to {path}")
