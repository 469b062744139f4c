"""File-backed pending-payment queue.

One JSON file per tx_ref under ``pending_dir``. Acknowledged records are
archived into ``processed_dir`` rather than deleted. Writes go through a temp
file and ``os.replace`` so readers never observe a partial record, and
``put``/``ack`` for the same key hold an exclusive ``flock`` on the key's lock
stripe, which serializes them across threads and worker processes alike.
Keys hash onto a fixed set of LOCK_STRIPES lock files, so the lock directory
does not grow with the number of payments.
"""

import fcntl
import hashlib
import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from relay.errors import QueueError, QueueNotFoundError
from relay.schemas import PendingPaymentRecord

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")
LOCK_DIR_NAME = ".locks"
LOCK_STRIPES = 256


def key_filename(tx_ref: str) -> str:
    """Map a tx_ref to a file name that cannot escape the queue directory."""
    if _SAFE_KEY.fullmatch(tx_ref) and ".." not in tx_ref:
        return f"{tx_ref}.json"
    digest = hashlib.sha256(tx_ref.encode()).hexdigest()
    return f"h-{digest}.json"


def lock_filename(tx_ref: str) -> str:
    """Lock stripe for tx_ref. Equal keys always share a stripe."""
    stripe = int.from_bytes(hashlib.sha256(tx_ref.encode()).digest()[:4], "big") % LOCK_STRIPES
    return f"{stripe:03d}.lock"


class PendingQueueStore:
    def __init__(
        self,
        pending_dir: Path,
        processed_dir: Path,
        clock: Callable[[], float] = time.time,
    ):
        self.pending_dir = Path(pending_dir)
        self.processed_dir = Path(processed_dir)
        self.clock = clock
        for directory in (self.pending_dir, self.processed_dir, self.pending_dir / LOCK_DIR_NAME):
            directory.mkdir(parents=True, exist_ok=True)

    # ── Public API ─────────────────────────────────────────────────────────────

    def put(self, tx_ref: str, record: PendingPaymentRecord) -> bool:
        """Insert or overwrite the pending record for tx_ref.

        Returns False without writing when tx_ref was already acknowledged,
        so a write racing an ``ack`` cannot re-queue a handled payment.
        """
        if record.tx_ref != tx_ref:
            raise ValueError(f"record.tx_ref {record.tx_ref!r} does not match key {tx_ref!r}")
        with self._key_lock(tx_ref):
            if self._processed_path(tx_ref).exists():
                logger.info("Not re-queueing acknowledged payment: %s", tx_ref)
                return False
            self._write(self._pending_path(tx_ref), record)
        logger.info("Stored pending payment: %s", tx_ref)
        return True

    def get(self, tx_ref: str) -> PendingPaymentRecord | None:
        return self._read(self._pending_path(tx_ref))

    def list(self, unprocessed_only: bool = True) -> list[PendingPaymentRecord]:
        """Return records in no particular order.

        With ``unprocessed_only=False`` archived records are included as well.
        """
        records = list(self._iter_dir(self.pending_dir))
        if unprocessed_only:
            return [r for r in records if not r.processed]
        return records + list(self._iter_dir(self.processed_dir))

    def ack(self, tx_ref: str) -> PendingPaymentRecord:
        """Mark tx_ref processed and move it to the archive.

        Raises:
            QueueNotFoundError: No pending record exists for tx_ref.
        """
        with self._key_lock(tx_ref):
            pending_path = self._pending_path(tx_ref)
            record = self._read(pending_path)
            if record is None:
                if pending_path.exists():
                    raise QueueError(f"Pending record for {tx_ref!r} is unreadable")
                raise QueueNotFoundError(tx_ref)

            archived = record.model_copy(
                update={"processed": True, "processed_at": int(self.clock())}
            )
            self._write(self._processed_path(tx_ref), archived)
            pending_path.unlink()

        logger.info("Marked processed: %s", tx_ref)
        return archived

    def is_archived(self, tx_ref: str) -> bool:
        return self._processed_path(tx_ref).exists()

    # ── Internals ──────────────────────────────────────────────────────────────

    def _pending_path(self, tx_ref: str) -> Path:
        return self.pending_dir / key_filename(tx_ref)

    def _processed_path(self, tx_ref: str) -> Path:
        return self.processed_dir / key_filename(tx_ref)

    @contextmanager
    def _key_lock(self, tx_ref: str) -> Iterator[None]:
        lock_path = self.pending_dir / LOCK_DIR_NAME / lock_filename(tx_ref)
        with open(lock_path, "a") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    @staticmethod
    def _write(path: Path, record: PendingPaymentRecord) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record.model_dump(), fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @staticmethod
    def _read(path: Path) -> PendingPaymentRecord | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (UnicodeDecodeError, OSError) as exc:
            logger.warning("Skipping unreadable queue record %s: %s", path.name, exc)
            return None
        try:
            return PendingPaymentRecord.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Skipping unreadable queue record %s: %s", path.name, exc)
            return None

    def _iter_dir(self, directory: Path) -> Iterator[PendingPaymentRecord]:
        for path in directory.glob("*.json"):
            record = self._read(path)
            if record is not None:
                yield record
