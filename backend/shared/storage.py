"""Storage for the local room association.

The association (room id, assigned slot, online flag) survives a local
process restart so a client can resume its room. The file is written with
owner-only permissions (0o600) inside an owner-only directory (0o700), via
temp-file-then-rename so a crash never leaves a half-written file behind.
"""

import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import BaseModel, ValidationError

logger = structlog.get_logger()

# Owner-only directory permissions for the association directory.
_ASSOCIATION_DIR_MODE = 0o700

# Owner-only file permissions for the association file.
_ASSOCIATION_FILE_MODE = 0o600


class LocalAssociation(BaseModel, frozen=True):
    """What the client remembers about its room across restarts."""

    room_id: str
    player_id: str
    player_number: int
    player1_name: str = ""
    player2_name: str = ""
    online_mode: bool = True


class AssociationStore(Protocol):
    """Protocol for persisting the local room association."""

    def load(self) -> LocalAssociation | None: ...

    def save(self, association: LocalAssociation) -> None: ...

    def clear(self) -> None: ...


class MemoryAssociationStore:
    """Keeps the association for the lifetime of the process only."""

    def __init__(self) -> None:
        self._association: LocalAssociation | None = None

    def load(self) -> LocalAssociation | None:
        return self._association

    def save(self, association: LocalAssociation) -> None:
        self._association = association

    def clear(self) -> None:
        self._association = None


class FileAssociationStore:
    """Writes the association as JSON to a single local file.

    A missing file means no association. An unreadable or invalid file is
    logged and treated as no association: the room it pointed at cannot be
    resumed anyway, and the next save replaces it.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).resolve()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> LocalAssociation | None:
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return LocalAssociation.model_validate(data)
        except (OSError, ValueError, ValidationError):
            logger.warning("ignoring unreadable room association", path=str(self._path))
            return None

    def save(self, association: LocalAssociation) -> None:
        """Atomically replace the association file with owner-only permissions."""
        directory = self._path.parent
        directory.mkdir(mode=_ASSOCIATION_DIR_MODE, parents=True, exist_ok=True)

        content = association.model_dump_json().encode("utf-8")

        fd, tmp_path = tempfile.mkstemp(dir=str(directory), suffix=".tmp", prefix=".association_")
        fd_owned = True
        try:
            with os.fdopen(fd, "wb") as f:
                fd_owned = False  # os.fdopen took ownership; it will close fd
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, _ASSOCIATION_FILE_MODE)  # noqa: PTH101
            Path(tmp_path).replace(self._path)
        except BaseException:
            if fd_owned:
                with contextlib.suppress(OSError):
                    os.close(fd)
            with contextlib.suppress(OSError):
                Path(tmp_path).unlink()
            raise
        logger.debug("saved room association", room_id=association.room_id, path=str(self._path))

    def clear(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._path.unlink()
