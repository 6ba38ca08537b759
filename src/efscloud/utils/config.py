"""Client configuration and the cached login session.

Both live in one JSON file under the client home directory
(``$EFS_CLOUD_HOME`` or ``~/.efs-cloud``). The Session is an explicit value:
load it once at start-up, hand it to whatever needs it, save it when tokens
are refreshed and clear it on logout.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import os

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from efscloud.utils.helper import from_iso, repo_paths, to_iso

logger = logging.getLogger(__name__)

HOME_ENV = "EFS_CLOUD_HOME"


@dataclass
class Config:
    DEFAULTS = {
        "cloud_provider_address": "http://localhost:8000",
        "db_path": None,
        "files_root": None,
        "sync_page_size": 100,
        "request_timeout": 15.0,
        "sync_timeout": 60.0,
    }

    home: Path
    values: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Any:
        return self.values.get(key, self.DEFAULTS.get(key))

    @property
    def cloud_provider_address(self) -> str:
        return str(self.get("cloud_provider_address")).rstrip("/")

    @property
    def db_path(self) -> Path:
        return Path(self.get("db_path") or repo_paths(self.home)["db"])

    @property
    def files_root(self) -> Path:
        return Path(self.get("files_root") or repo_paths(self.home)["files"])


@dataclass
class TokenPair:
    access_token: str
    access_token_expiry: Optional[_dt.datetime]
    refresh_token: str
    refresh_token_expiry: Optional[_dt.datetime]


@dataclass
class Session:
    email: str = ""
    access_token: str = ""
    access_token_expiry: Optional[_dt.datetime] = None
    refresh_token: str = ""
    refresh_token_expiry: Optional[_dt.datetime] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.email and self.access_token)

    def apply_tokens(self, tokens: TokenPair) -> None:
        self.access_token = tokens.access_token
        self.access_token_expiry = tokens.access_token_expiry
        self.refresh_token = tokens.refresh_token or self.refresh_token
        self.refresh_token_expiry = tokens.refresh_token_expiry or self.refresh_token_expiry

    def clear(self) -> None:
        self.email = ""
        self.access_token = ""
        self.access_token_expiry = None
        self.refresh_token = ""
        self.refresh_token_expiry = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "access_token": self.access_token,
            "access_token_expiry": to_iso(self.access_token_expiry),
            "refresh_token": self.refresh_token,
            "refresh_token_expiry": to_iso(self.refresh_token_expiry),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any] | None) -> "Session":
        d = d or {}
        return Session(
            email=d.get("email", ""),
            access_token=d.get("access_token", ""),
            access_token_expiry=from_iso(d.get("access_token_expiry")),
            refresh_token=d.get("refresh_token", ""),
            refresh_token_expiry=from_iso(d.get("refresh_token_expiry")),
        )


def default_home() -> Path:
    return Path(os.environ.get(HOME_ENV) or Path.home() / ".efs-cloud")


class ConfigStore:
    """Reads and writes ``config.json`` holding {"config": {...}, "session": {...}}."""

    def __init__(self, home: Path | None = None):
        self.home = Path(home) if home else default_home()
        self.path = repo_paths(self.home)["config"]

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("ignoring unreadable config file %s", self.path)
            return {}

    def _write(self, doc: Dict[str, Any]) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(doc, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            pass

    def load(self) -> Tuple[Config, Session]:
        doc = self._read()
        return Config(home=self.home, values=doc.get("config") or {}), Session.from_dict(doc.get("session"))

    def save_config(self, config: Config) -> None:
        doc = self._read()
        doc["config"] = config.values
        self._write(doc)

    def save_session(self, session: Session) -> None:
        doc = self._read()
        doc["session"] = session.to_dict()
        self._write(doc)
        logger.debug("session saved for %s", session.email)

    def clear_session(self, session: Session) -> None:
        session.clear()
        self.save_session(session)
