"""
Storage collaborators: where received bytes go and where sent bytes come from.

Received files are written through sinks opened by an ordered list of sink
strategies. The first strategy that opens a sink wins; later ones are only
tried when an earlier one fails to open, before any body byte is consumed.
"""

import logging
import os
import tempfile

from pydantic import BaseModel

from transfer.codec import validate_file_name
from transfer.errors import MalformedFrame, SourceUnavailable, StorageFailure

logger = logging.getLogger(__name__)


class FileSink:
    """
    Writes into a hidden part file next to the destination.

    `finalize()` atomically renames the part file over the destination;
    `abort()` removes it, so a failed receive never leaves a partial file.
    """

    def __init__(self, directory: str, name: str) -> None:
        self.path = os.path.join(directory, name)
        try:
            fd, self._part_path = tempfile.mkstemp(
                prefix=f".{name}.", suffix=".part", dir=directory
            )
            self._file = os.fdopen(fd, "wb")
        except OSError as e:
            raise StorageFailure(f"Cannot create file in {directory}: {e}") from e

    def write(self, data: bytes) -> None:
        try:
            self._file.write(data)
        except OSError as e:
            raise StorageFailure(f"Write to {self.path} failed: {e}") from e

    def flush(self) -> None:
        try:
            self._file.flush()
        except OSError as e:
            raise StorageFailure(f"Flush of {self.path} failed: {e}") from e

    def finalize(self) -> str:
        try:
            self._file.close()
            os.replace(self._part_path, self.path)
        except OSError as e:
            self.abort()
            raise StorageFailure(f"Could not finalize {self.path}: {e}") from e
        return self.path

    def abort(self) -> None:
        try:
            self._file.close()
        except OSError:
            pass
        try:
            os.unlink(self._part_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial file {self._part_path}: {e}")


class DirectorySinkStrategy:
    """Opens sinks inside a directory, creating it when needed."""

    def __init__(self, directory: str) -> None:
        self.directory = directory

    def open_sink(self, name: str, declared_size: int) -> FileSink:
        try:
            os.makedirs(self.directory, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Cannot create {self.directory}: {e}") from e
        return FileSink(self.directory, name)

    def __repr__(self) -> str:
        return f"DirectorySinkStrategy({self.directory!r})"


def open_first_sink(strategies, name: str, declared_size: int):
    """Try each sink strategy in order; raise StorageFailure if all fail."""
    if not strategies:
        raise StorageFailure("No storage configured")

    last_error: StorageFailure | None = None
    for strategy in strategies:
        try:
            return strategy.open_sink(name, declared_size)
        except StorageFailure as e:
            logger.warning(f"Sink {strategy!r} unavailable for '{name}': {e}")
            last_error = e
    raise StorageFailure(f"All storage paths failed for '{name}': {last_error}")


# --- Outgoing files ---

class ResolvedFile(BaseModel):
    """A local file ready to be sent."""
    name: str
    size: int
    path: str

    def open(self):
        try:
            return open(self.path, "rb")
        except OSError as e:
            raise SourceUnavailable(f"Cannot open {self.path}: {e}") from e


class LocalFileSource:
    """Resolves local filesystem paths into sendable files."""

    def resolve(self, file_ref: str) -> ResolvedFile:
        if not os.path.isfile(file_ref):
            raise SourceUnavailable(f"Not a file: {file_ref}")
        try:
            size = os.path.getsize(file_ref)
        except OSError as e:
            raise SourceUnavailable(f"Cannot stat {file_ref}: {e}") from e
        name = os.path.basename(file_ref)
        try:
            validate_file_name(name)
        except MalformedFrame as e:
            raise SourceUnavailable(f"Cannot send {file_ref}: {e}") from e
        return ResolvedFile(
            name=name,
            size=size,
            path=file_ref,
        )
