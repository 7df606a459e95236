"""
Liveness signal store.

One file per armed watchdog, named after the resource it protects:

    <record_dir>/<resource_id>

The file content is the pid of the owning watchdog process. The file's
modification time is the liveness clock: touching the file is a reset.
The file's existence is the armed flag: deleting it disarms the watchdog.

All mutations use primitives the filesystem performs atomically (link,
utime, unlink), so concurrent writers never need a lock. Writers only
ever advance the clock or delete the record.
"""

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union
import structlog

from deadman.errors import InvalidRecordError

logger = structlog.get_logger(__name__)

# Record keys are plain file names inside the record directory
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class WatchdogRecord:
    """Snapshot of one record as read from the store."""

    resource_id: str
    owner_pid: int
    last_reset_time: float

    def seconds_since_reset(self, now: float) -> float:
        return now - self.last_reset_time


class RecordStore:
    """
    Directory-backed store of watchdog records.

    Key naming convention:
    - The record key IS the resource id (e.g. an EC2 instance id)
    - Temporary files used during creation start with "." and are ignored
    """

    def __init__(self, record_dir: Union[str, Path]):
        self.record_dir = Path(record_dir).expanduser()

    def ensure_dir(self) -> None:
        self.record_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, resource_id: str) -> Path:
        """Path of the record file for a resource id."""
        if not is_valid_key(resource_id):
            raise InvalidRecordError(f"'{resource_id}' is not a valid record key")
        return self.record_dir / resource_id

    # ==========================================================================
    # LIFECYCLE
    # ==========================================================================

    def create(self, resource_id: str, owner_pid: int) -> WatchdogRecord:
        """
        Create a record owned by owner_pid.

        The content is written to a temporary file first and then hard-linked
        into place, so the record appears complete or not at all, and the
        link fails instead of overwriting a record that already exists.

        Raises:
            FileExistsError: A record for resource_id already exists
        """
        path = self.path_for(resource_id)
        self.ensure_dir()

        fd, tmp_name = tempfile.mkstemp(prefix=f".{resource_id}.", dir=self.record_dir)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{owner_pid}\n")
            os.link(tmp_name, path)
        finally:
            os.unlink(tmp_name)

        logger.info("record_created", resource_id=resource_id, owner_pid=owner_pid)
        return self.read(resource_id)

    def touch(self, resource_id: str) -> bool:
        """
        Advance the record's last reset time to now.

        Returns False (and does nothing) if the record does not exist, so
        resets racing an arm never fail.
        """
        try:
            os.utime(self.path_for(resource_id))
        except FileNotFoundError:
            logger.debug("reset_without_record", resource_id=resource_id)
            return False
        return True

    def backdate(self, resource_id: str, timestamp: float = 0.0) -> None:
        """
        Move the record's last reset time into the past.

        The default (the epoch) lies beyond any reset timeout.

        Raises:
            FileNotFoundError: The record does not exist
        """
        os.utime(self.path_for(resource_id), (timestamp, timestamp))
        logger.info("record_backdated", resource_id=resource_id, timestamp=timestamp)

    def delete(self, resource_id: str) -> bool:
        """Delete the record. Returns False if it was already gone."""
        try:
            self.path_for(resource_id).unlink()
        except FileNotFoundError:
            return False
        logger.info("record_deleted", resource_id=resource_id)
        return True

    def release(self, resource_id: str, owner_pid: int) -> bool:
        """
        Delete the record only if owner_pid still owns it.

        Returns True if a record was deleted.
        """
        try:
            record = self.read(resource_id)
        except InvalidRecordError:
            record = None
            logger.warning("releasing_unreadable_record", resource_id=resource_id)
        else:
            if record is None:
                return False
            if record.owner_pid != owner_pid:
                logger.warning(
                    "record_owned_by_other_process",
                    resource_id=resource_id,
                    owner_pid=record.owner_pid,
                    pid=owner_pid,
                )
                return False
        return self.delete(resource_id)

    # ==========================================================================
    # QUERIES
    # ==========================================================================

    def exists(self, resource_id: str) -> bool:
        return self.path_for(resource_id).exists()

    def read(self, resource_id: str) -> Optional[WatchdogRecord]:
        """
        Read a record.

        Returns:
            The record, or None if it does not exist

        Raises:
            InvalidRecordError: The file exists but does not hold a pid
        """
        path = self.path_for(resource_id)
        try:
            # stat first: a reset between the two calls only moves time forward
            mtime = path.stat().st_mtime
            content = path.read_text().strip()
        except FileNotFoundError:
            return None
        except IsADirectoryError:
            raise InvalidRecordError(f"'{path}' is a directory, not a watchdog record")

        try:
            owner_pid = int(content)
        except ValueError:
            raise InvalidRecordError(
                f"'{path}' does not look like a watchdog record (content: {content[:20]!r})"
            )
        if owner_pid <= 0:
            raise InvalidRecordError(f"'{path}' holds an invalid pid: {owner_pid}")

        return WatchdogRecord(
            resource_id=resource_id,
            owner_pid=owner_pid,
            last_reset_time=mtime,
        )

    def require(self, resource_id: str) -> WatchdogRecord:
        """Read a record that must exist."""
        record = self.read(resource_id)
        if record is None:
            raise InvalidRecordError(f"No watchdog record for '{resource_id}'")
        return record

    def iter_records(self) -> Iterator[WatchdogRecord]:
        """Iterate over all readable records, skipping anything else."""
        if not self.record_dir.is_dir():
            return
        for path in sorted(self.record_dir.iterdir()):
            if not is_valid_key(path.name):
                continue
            try:
                record = self.read(path.name)
            except InvalidRecordError as e:
                logger.debug("skipping_invalid_record", path=str(path), error=str(e))
                continue
            if record is not None:
                yield record


def is_valid_key(resource_id: str) -> bool:
    return bool(resource_id) and _KEY_PATTERN.match(resource_id) is not None
