"""Write rendered snippets to disk with atomic replace, touching only managed files."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Iterable

from .errors import SyncError
from .models import Artifact

logger = logging.getLogger(__name__)


class SnippetDirectory:
    """A snippet directory owned (in part) by one proxy target.

    Files outside the ``{prefix}-{external|internal}-{app}.caddy`` convention
    are never read, rewritten or deleted (apart from our own leftover temp
    files); the directory may be shared.
    """

    def __init__(self, name: str, path: str, file_prefix: str = "docker"):
        self.name = name
        self.path = Path(path)
        self.file_prefix = file_prefix
        self._managed_re = re.compile(
            rf"^{re.escape(file_prefix)}-(external|internal)-[a-z0-9-]+\.caddy$"
        )

    def is_managed(self, filename: str) -> bool:
        return bool(self._managed_re.match(filename))

    def current(self) -> Dict[str, bytes]:
        """Managed files currently on disk, name -> content."""
        if not self.path.is_dir():
            raise SyncError(self.name, f"snippet directory {self.path} does not exist")
        try:
            return {
                entry.name: Path(entry.path).read_bytes()
                for entry in os.scandir(self.path)
                if entry.is_file() and self.is_managed(entry.name)
            }
        except OSError as e:
            raise SyncError(self.name, f"failed to read {self.path}: {e}") from e

    def is_leftover_temp(self, filename: str) -> bool:
        """Temp file from ``_write_atomic`` that a killed process never renamed."""
        if not filename.startswith(".") or not filename.endswith(".tmp"):
            return False
        parts = filename[1:].rsplit(".", 2)
        return len(parts) == 3 and self.is_managed(parts[0])

    def remove_leftover_temps(self) -> None:
        try:
            leftovers = [e.name for e in os.scandir(self.path) if self.is_leftover_temp(e.name)]
        except OSError as e:
            raise SyncError(self.name, f"failed to read {self.path}: {e}") from e
        for name in leftovers:
            try:
                (self.path / name).unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise SyncError(self.name, f"failed to delete {name}: {e}") from e
            logger.info(f"[{self.name}] Removed leftover temp file {name}")

    def sync(self, artifacts: Iterable[Artifact]) -> bool:
        """Make the managed files match ``artifacts``. Returns True iff anything changed.

        A pass where disk already matches performs no filesystem writes. On an
        I/O error the pass stops; files already renamed into place stay, and the
        next pass starts again from what is on disk.
        """
        desired: Dict[str, bytes] = {}
        for artifact in artifacts:
            if artifact.target != self.name:
                continue
            if not self.is_managed(artifact.name):
                raise SyncError(self.name, f"refusing to write unmanaged file name '{artifact.name}'")
            desired[artifact.name] = artifact.content

        existing = self.current()
        self.remove_leftover_temps()
        changed = False

        for name in sorted(desired):
            if existing.get(name) == desired[name]:
                continue
            self._write_atomic(name, desired[name])
            logger.info(f"[{self.name}] {'Updated' if name in existing else 'Created'} snippet {name}")
            changed = True

        for name in sorted(set(existing) - set(desired)):
            try:
                (self.path / name).unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise SyncError(self.name, f"failed to delete {name}: {e}") from e
            logger.info(f"[{self.name}] Deleted snippet {name}")
            changed = True

        return changed

    def _write_atomic(self, name: str, content: bytes) -> None:
        # Temp file lives in the same directory so os.replace never crosses filesystems.
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                dir=self.path, prefix=f".{name}.", suffix=".tmp", delete=False
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self.path / name)
            tmp_name = None
        except OSError as e:
            raise SyncError(self.name, f"failed to write {name}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    logger.warning(f"[{self.name}] Could not remove temp file {tmp_name}")
