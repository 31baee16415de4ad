"""
Locks serializing `run` invocations against one cluster.

Two backends share the same try-once interface: a lock file on the local disk,
or a KV entry in Consul when a Consul address is given. Both are recovered
when their owner dies: a lock file whose PID no longer exists is taken over,
and a Consul lock is bound to a TTL session that only its owner renews.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlparse

import requests

from .errors import LockError, LockHeldError

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 15
LOCK_DELAY_SECONDS = 15


class Lock(Protocol):
    def try_lock(self) -> None:
        """Acquire the lock or raise LockHeldError; never waits."""

    def unlock(self) -> None:
        """Release the lock or raise LockError if it is not held."""


# ─────────────────────────────────────────────────────────────────────────────
# FILE
# ─────────────────────────────────────────────────────────────────────────────

def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class FileLock:
    """Lock materialized by a file holding the owner's PID."""

    def __init__(self, path: str | Path):
        self.path = Path(path).absolute()

    def try_lock(self) -> None:
        try:
            self._create()
        except FileExistsError:
            owner = self.owner()
            if owner is None or pid_alive(owner):
                raise LockHeldError(f"Lock currently held at {self.path}")
            logger.warning("Removing stale lock %s left by dead process %d", self.path, owner)
            self.path.unlink(missing_ok=True)
            try:
                self._create()
            except FileExistsError:
                raise LockHeldError(f"Lock currently held at {self.path}")
        logger.debug("Acquired file lock %s", self.path)

    def _create(self) -> None:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o666)
        except FileExistsError:
            raise
        except OSError as e:
            raise LockError(f"Couldn't create lock file {self.path}: {e.strerror}") from e

        with os.fdopen(fd, "w") as fh:
            fh.write(f"{os.getpid()}\n")

    def owner(self) -> int | None:
        """PID recorded in the lock file; None when unreadable."""
        try:
            raw = self.path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LockError(f"Couldn't read lock file {self.path}: {e.strerror}") from e
        try:
            pid = int(raw)
        except ValueError:
            return None
        return pid if pid > 0 else None

    def unlock(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            raise LockError(f"Lock not held at {self.path}")
        logger.debug("Released file lock %s", self.path)


# ─────────────────────────────────────────────────────────────────────────────
# CONSUL
# ─────────────────────────────────────────────────────────────────────────────

class ConsulLock:
    """Lock materialized by a KV entry in Consul, bound to a Consul session.

    The session carries a TTL and is renewed from a background thread at half
    the TTL while the lock is held, so a killed owner loses the lock once the
    TTL runs out.
    """

    def __init__(
        self,
        address: str,
        key: str,
        http: requests.Session | None = None,
        timeout: int = 10,
        ttl: float = SESSION_TTL_SECONDS,
    ):
        if "://" not in address:
            address = f"http://{address}"
        scheme = urlparse(address).scheme
        if scheme not in ("http", "https"):
            raise LockError(f"Unknown protocol scheme: {scheme}")

        self.base_url = address.rstrip("/")
        self.key = key.lstrip("/")
        self.http = http or requests.Session()
        self.timeout = timeout
        self.ttl = ttl
        self.session_id: str | None = None
        self._stop = threading.Event()
        self._renewer: threading.Thread | None = None

    def _kv_url(self) -> str:
        return f"{self.base_url}/v1/kv/{quote(self.key)}"

    def try_lock(self) -> None:
        if self.session_id is not None:
            raise LockHeldError(f"Lock currently held at {self.key}")

        resp = self.http.put(
            f"{self.base_url}/v1/session/create",
            json={
                "Name": f"dataflow-runner-{self.key}",
                "Behavior": "release",
                "TTL": f"{self.ttl}s",
                "LockDelay": f"{LOCK_DELAY_SECONDS}s",
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        session_id = resp.json()["ID"]

        resp = self.http.put(self._kv_url(), params={"acquire": session_id}, timeout=self.timeout)
        resp.raise_for_status()
        if resp.json() is not True:
            self._destroy_session(session_id)
            raise LockHeldError(f"Lock currently held at {self.key}")

        self.session_id = session_id
        self._start_renewer()
        logger.debug("Acquired Consul lock %s with session %s", self.key, session_id)

    def unlock(self) -> None:
        if self.session_id is None:
            raise LockError("Lock not held")

        self._stop_renewer()
        resp = self.http.put(self._kv_url(), params={"release": self.session_id}, timeout=self.timeout)
        resp.raise_for_status()
        self._destroy_session(self.session_id)
        logger.debug("Released Consul lock %s", self.key)
        self.session_id = None

    def renew(self) -> bool:
        """Renew the held session; False once Consul no longer knows it."""
        resp = self.http.put(f"{self.base_url}/v1/session/renew/{self.session_id}", timeout=self.timeout)
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        return True

    def _start_renewer(self) -> None:
        self._stop.clear()
        self._renewer = threading.Thread(
            target=self._renew_periodically,
            name=f"consul-renew-{self.key}",
            daemon=True,
        )
        self._renewer.start()

    def _stop_renewer(self) -> None:
        self._stop.set()
        if self._renewer is not None:
            self._renewer.join(timeout=self.timeout)
            self._renewer = None

    def _renew_periodically(self) -> None:
        while not self._stop.wait(self.ttl / 2):
            try:
                if not self.renew():
                    logger.error("Consul session for lock %s expired", self.key)
                    return
            except requests.RequestException as e:
                logger.warning("Couldn't renew Consul session for lock %s: %s", self.key, e)

    def _destroy_session(self, session_id: str) -> None:
        resp = self.http.put(f"{self.base_url}/v1/session/destroy/{session_id}", timeout=self.timeout)
        resp.raise_for_status()


def get_lock(name: str, consul_address: str | None = None) -> Lock:
    """Consul-backed lock when an address is given, file-backed otherwise."""
    if consul_address:
        return ConsulLock(consul_address, name)
    return FileLock(name)
