from __future__ import annotations

import json
import os
import socket
import time
from typing import Callable

from .errors import LockError


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


class DeploymentLock:
    """Advisory lock file guarding a deployment directory.

    The file holds ``{"pid", "host", "ts"}`` of the owner. A lock left by a
    dead process on this host, or older than ``stale_after_s``, is broken.
    """

    def __init__(
        self,
        path: str,
        stale_after_s: int = 3600,
        on_warning: Callable[[str], None] | None = None,
    ) -> None:
        self.path = path
        self.stale_after_s = stale_after_s
        self.on_warning = on_warning
        self._held = False

    def _owner(self) -> dict | None:
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Torn or foreign content; treat as stale.
            return {}

    def _is_stale(self, owner: dict) -> bool:
        try:
            pid = int(owner.get("pid", 0))
            ts = float(owner.get("ts", 0))
        except (TypeError, ValueError):
            return True
        if time.time() - ts > self.stale_after_s:
            return True
        if owner.get("host") == socket.gethostname() and not _pid_alive(pid):
            return True
        return False

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"pid": os.getpid(), "host": socket.gethostname(), "ts": time.time()}, f)
        return True

    def acquire(self) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        if self._try_create():
            self._held = True
            return
        owner = self._owner()
        if owner is not None and not self._is_stale(owner):
            raise LockError(
                f"Deployment directory is locked by pid {owner.get('pid')} on {owner.get('host')} ({self.path})."
            )
        if self.on_warning:
            self.on_warning(f"Breaking stale deployment lock {self.path} (owner: {owner}).")
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        if not self._try_create():
            raise LockError(f"Lost the race for deployment lock {self.path}.")
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        owner = self._owner() or {}
        if owner.get("pid") == os.getpid():
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> DeploymentLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
