"""TOML config file backing the recipient list.

The file is parsed with ``tomlkit`` so that a rewrite after a list mutation
keeps every other key, comment and ordering exactly as the operator wrote it.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import structlog
import tomlkit
from tomlkit.exceptions import TOMLKitError

from .errors import PersistenceError

logger = structlog.get_logger()

LIST_SECTION = "list"
RECIPIENTS_KEY = "recipients"


class ConfigFile:
    """A loaded TOML config document plus the path it was read from."""

    def __init__(self, path: Path, document: tomlkit.TOMLDocument) -> None:
        self._path = path
        self._document = document

    @classmethod
    def load(cls, path: str | Path) -> ConfigFile:
        path = Path(path)
        try:
            document = tomlkit.parse(path.read_text(encoding="utf-8"))
        except (OSError, TOMLKitError) as exc:
            raise PersistenceError(f"cannot read config file {path}: {exc}") from exc
        return cls(path, document)

    @property
    def path(self) -> Path:
        return self._path

    def section(self, name: str) -> dict[str, Any]:
        """Return a plain-Python copy of a top-level table (empty if absent)."""
        table = self._document.get(name)
        if table is None:
            return {}
        return table.unwrap()

    def save_recipients(self, recipients: Sequence[str]) -> None:
        """Replace ``list.recipients`` and rewrite the file atomically.

        The document is only updated in memory once the new file is in
        place; on any failure the previous value is restored and
        :class:`PersistenceError` is raised.
        """
        table = self._document.get(LIST_SECTION)
        if table is None:
            table = tomlkit.table()
            self._document[LIST_SECTION] = table
        previous = table.get(RECIPIENTS_KEY)

        array = tomlkit.array()
        array.extend(recipients)
        if len(recipients) > 1:
            array.multiline(True)
        table[RECIPIENTS_KEY] = array

        try:
            self._write(tomlkit.dumps(self._document))
        except OSError as exc:
            if previous is None:
                del table[RECIPIENTS_KEY]
            else:
                table[RECIPIENTS_KEY] = previous
            raise PersistenceError(f"cannot write config file {self._path}: {exc}") from exc

        logger.debug("config_file_saved", path=str(self._path), recipients=len(recipients))

    def _write(self, text: str) -> None:
        directory = self._path.parent
        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{self._path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
            if self._path.exists():
                os.chmod(tmp_name, self._path.stat().st_mode & 0o777)
            os.replace(tmp_name, self._path)
        except OSError:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
