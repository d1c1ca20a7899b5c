"""
Durable JSON backend for analysis records.

One file per (fingerprint, model_version):
``<directory>/<model_version>/<fingerprint>.json``. Files are written to a
temporary name and renamed into place, so readers never see a partial record.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, Optional, Tuple

from soundmatch.core.models import AnalysisRecord
from soundmatch.utils.errors import StoreError


class RecordBackend(ABC):
    """Persistence collaborator for the result store (Strategy Pattern)."""

    @abstractmethod
    def load(self, fingerprint: str, model_version: str) -> Optional[AnalysisRecord]:
        """Return the stored record or None."""

    @abstractmethod
    def save(self, record: AnalysisRecord) -> None:
        """Persist a record."""


class JSONRecordWriter(RecordBackend):
    """Stores each record as a pretty-printed JSON document."""

    def __init__(self, directory: Path, indent: int = 2):
        self.directory = Path(directory)
        self.indent = indent
        self.logger = logging.getLogger("record_writer")

    def path_for(self, fingerprint: str, model_version: str) -> Path:
        if not fingerprint or any(c in fingerprint for c in "/\\."):
            raise StoreError(
                f"Invalid fingerprint: {fingerprint!r}",
                operation="path",
                key=fingerprint
            )
        safe_version = model_version.replace("/", "_").replace("\\", "_")
        return self.directory / safe_version / f"{fingerprint}.json"

    def load(self, fingerprint: str, model_version: str) -> Optional[AnalysisRecord]:
        path = self.path_for(fingerprint, model_version)
        if not path.exists():
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                record = AnalysisRecord.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Ignoring unreadable record {path}: {e}")
            return None

        if record.key != (fingerprint, model_version):
            self.logger.warning(f"Ignoring mismatched record at {path}")
            return None
        return record

    def save(self, record: AnalysisRecord) -> None:
        path = self.path_for(record.fingerprint, record.model_version)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=".tmp-", suffix=".json"
            )
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    f.write(record.to_json(indent=self.indent))
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StoreError(
                f"Failed to persist record: {e}",
                operation="save",
                key=record.fingerprint
            ) from e

        self.logger.debug(f"Record written to: {path}")

    def iter_keys(self) -> Iterator[Tuple[str, str]]:
        """Yield (fingerprint, stored model_version directory) pairs."""
        if not self.directory.exists():
            return
        for path in sorted(self.directory.glob("*/*.json")):
            yield path.stem, path.parent.name
