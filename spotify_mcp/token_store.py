import json
import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

# Tokens are treated as stale this long before Spotify would reject them
SAFETY_MARGIN_MS = 60_000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TokenRecord:
    """Access/refresh token pair; expires_at is epoch milliseconds."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: int = 0

    def is_fresh(self, now: int) -> bool:
        return bool(self.access_token) and now < self.expires_at - SAFETY_MARGIN_MS

    @property
    def is_empty(self) -> bool:
        return not self.access_token and not self.refresh_token

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        access = data.get("accessToken")
        refresh = data.get("refreshToken")
        expires_at = data.get("expiresAt", 0)
        if access is not None and not isinstance(access, str):
            raise ValueError("accessToken must be a string")
        if refresh is not None and not isinstance(refresh, str):
            raise ValueError("refreshToken must be a string")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            raise ValueError("expiresAt must be a number")
        if isinstance(expires_at, float) and not math.isfinite(expires_at):
            raise ValueError("expiresAt must be finite")
        return cls(access_token=access, refresh_token=refresh, expires_at=int(expires_at))

    def __repr__(self) -> str:
        # keep secrets out of logs and tracebacks
        return (
            f"TokenRecord(access_token={'***' if self.access_token else None}, "
            f"refresh_token={'***' if self.refresh_token else None}, "
            f"expires_at={self.expires_at})"
        )


class TokenStore:
    """
    JSON file shared by every server process of the local user.

    The file is the cross-process handoff point: whoever writes last wins and
    readers re-check expiry on their own. Anything that cannot be read back as
    a record (missing, empty, malformed) is reported as absent so the caller
    falls back to an interactive login instead of crashing.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[TokenRecord]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"Token file does not exist: {self.path}")
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read token file {self.path}: {e}")
            return None

        if not raw.strip():
            logger.debug(f"Token file is empty: {self.path}")
            return None

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            record = TokenRecord.from_dict(data)
        except ValueError as e:
            logger.warning(f"Ignoring unreadable token file {self.path}: {e}")
            return None

        if record.is_empty:
            return None
        logger.debug(f"Loaded tokens from {self.path} (expires at {record.expires_at})")
        return record

    def save(self, record: TokenRecord) -> bool:
        tmp_path = None
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            # one temp file per writer; other processes may be saving at the same time
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                if hasattr(os, "fchmod"):
                    os.fchmod(f.fileno(), 0o600)
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Error saving tokens to {self.path}: {e}")
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            return False
        logger.debug(f"Tokens saved to {self.path}")
        return True
