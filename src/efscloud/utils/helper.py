import base64
import datetime as _dt
import re
import uuid

from pathlib import Path
from typing import Dict

from efscloud.utils.errors import InvalidIdentifier

_ZERO_UUID = uuid.UUID(int=0)
_FRACTION = re.compile(r"\.(\d+)")


def repo_paths(root: Path) -> Dict[str, Path]:
    return {
        "db": root / "efs.db",
        "config": root / "config.json",
        "files": root / "files",
    }


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc).replace(microsecond=0)


def to_iso(ts: _dt.datetime | None) -> str | None:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=_dt.timezone.utc)
    return ts.astimezone(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: str | None) -> _dt.datetime | None:
    if not value:
        return None
    # fromisoformat wants exactly 3 or 6 fractional digits before 3.11; RFC 3339 allows up to 9
    value = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], value.replace("Z", "+00:00"), count=1)
    ts = _dt.datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=_dt.timezone.utc)
    return ts


def rel_time_iso(ts: float | None) -> str:
    if ts is None:
        return to_iso(utcnow())
    return to_iso(_dt.datetime.fromtimestamp(ts, _dt.timezone.utc).replace(microsecond=0))


def new_id() -> str:
    return str(uuid.uuid4())


def validate_id(value: str | None, what: str = "id") -> str:
    """Return the canonical form of a UUID identifier or raise InvalidIdentifier."""
    if not value:
        raise InvalidIdentifier(f"{what} is required")
    try:
        parsed = uuid.UUID(str(value))
    except ValueError:
        raise InvalidIdentifier(f"{what} is not well-formed: {value!r}") from None
    if parsed == _ZERO_UUID:
        raise InvalidIdentifier(f"{what} must not be zero")
    return str(parsed)


def b64e(data: bytes | None) -> str:
    return base64.b64encode(data or b"").decode("ascii")


def b64d(data: str | None) -> bytes:
    """Decode standard or URL-safe base64, padded or not."""
    if not data:
        return b""
    padded = data + "=" * (-len(data) % 4)
    if "-" in data or "_" in data:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded)
