# maintenance.py
"""
Maintenance mode state.

The state lives in a single JSON file. The file exists only while
maintenance mode is on; disabling deletes it. There is no locking: two
operators enabling/disabling at the same moment is last-writer-wins.
"""
from __future__ import annotations

import getpass
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

import ipmatch

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Site is currently under maintenance. Please check back soon."
DEFAULT_ALLOWED_IPS: tuple[str, ...] = ("127.0.0.1", "::1")
MAINTENANCE_FILENAME = ".maintenance.json"


class MaintenanceState(BaseModel):
    enabled: bool = True
    message: str = DEFAULT_MESSAGE
    allowed_ips: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_IPS))
    retry_after: Optional[int] = None
    enabled_by: Optional[str] = None
    enabled_at: str = ""


class MaintenanceStore:
    """Whole-record JSON persistence for MaintenanceState."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[MaintenanceState]:
        # Unreadable or corrupt state counts as "no state" (maintenance off).
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Maintenance state unreadable ({self.path}): {e}")
            return None
        try:
            return MaintenanceState.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Maintenance state corrupt ({self.path}), treating as disabled: {e.error_count()} error(s)")
            return None

    def write(self, state: MaintenanceState) -> bool:
        payload = state.model_dump_json(indent=4)
        tmp_name: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".maintenance-", suffix=".tmp", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, self.path)
            return True
        except OSError as e:
            logger.error(f"Failed to write maintenance state ({self.path}): {e}")
            if tmp_name and os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            return False

    def remove(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error(f"Failed to remove maintenance state ({self.path}): {e}")
            return False
        return True


def _current_os_user() -> Optional[str]:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


class MaintenanceManager:
    """Enable/disable/query maintenance mode backed by a MaintenanceStore."""

    def __init__(self, base_path: Path | str | None = None, store: Optional[MaintenanceStore] = None):
        if store is None:
            if base_path is None:
                raise ValueError("MaintenanceManager needs base_path or store")
            store = MaintenanceStore(Path(base_path) / MAINTENANCE_FILENAME)
        self.store = store

    @property
    def path(self) -> Path:
        return self.store.path

    def enable(
        self,
        message: str = DEFAULT_MESSAGE,
        allowed_ips: Optional[list[str]] = None,
        retry_after: Optional[int] = None,
        enabled_by: Optional[str] = None,
    ) -> bool:
        # None means "use defaults"; an explicit [] means nobody gets through.
        if allowed_ips is None:
            allowed_ips = list(DEFAULT_ALLOWED_IPS)

        state = MaintenanceState(
            enabled=True,
            message=message or DEFAULT_MESSAGE,
            allowed_ips=[ip.strip() for ip in allowed_ips if isinstance(ip, str) and ip.strip()],
            retry_after=retry_after,
            enabled_by=enabled_by or _current_os_user(),
            enabled_at=datetime.now().astimezone().isoformat(timespec="seconds"),
        )
        ok = self.store.write(state)
        if ok:
            logger.info(f"Maintenance mode enabled by {state.enabled_by or 'unknown'} (allowed_ips={state.allowed_ips})")
        return ok

    def disable(self) -> bool:
        was_enabled = self.store.exists()
        ok = self.store.remove()
        if ok and was_enabled:
            logger.info("Maintenance mode disabled")
        return ok

    def get_status(self) -> Optional[MaintenanceState]:
        state = self.store.read()
        if state is None or not state.enabled:
            return None
        return state

    def is_enabled(self) -> bool:
        return self.get_status() is not None

    def get_message(self) -> str:
        state = self.get_status()
        if state is None or not state.message:
            return DEFAULT_MESSAGE
        return state.message

    def get_retry_after(self) -> Optional[int]:
        state = self.get_status()
        return state.retry_after if state else None

    def is_ip_allowed(self, ip: str) -> bool:
        state = self.get_status()
        if state is None:
            return True
        return ipmatch.matches(ip, state.allowed_ips)
