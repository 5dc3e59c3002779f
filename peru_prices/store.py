"""Directory-based CSV store for price records.

Layout::

    <out_path>/<target_id>/<YYYY-MM-DD>.csv
    <out_path>/runs/<started_at>_<run_id>.json

Each CSV holds one target's observations for one date, header first, rows
sorted by (item_id, scraped_at) and ``\\n`` line endings, so re-running a
scrape only touches the lines whose prices changed and the output can be
committed and diffed.

Writes are read-merge-replace: the existing file is read, merged with the
new records under the store's merge policy, written to a temp file in the
same directory, fsynced and moved into place with os.replace. A per-file
asyncio.Lock serializes writers of the same (target, date) file.
"""

from __future__ import annotations

import asyncio
import csv
import logging
import os
import uuid
from collections import defaultdict
from collections.abc import Iterator, Sequence
from datetime import date, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError
from typing_extensions import assert_never

from peru_prices.common.exceptions import WriteError, WriteErrorKind
from peru_prices.data_types import (
    RECORD_FIELDS,
    MergePolicy,
    PriceRecord,
    WriteResult,
)

if TYPE_CHECKING:
    from peru_prices.report import RunReport

logger = logging.getLogger(__name__)

RUNS_DIR = "runs"


def _sort_key(record: PriceRecord) -> tuple[str, str]:
    return (record.item_id, record.scraped_at.isoformat())


def fsync_dir(path: Path) -> None:
    """Flush a directory's entries so a rename into it survives a crash."""
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_text(path: Path, write) -> None:
    """Write a file via a same-directory temp file and os.replace.

    The file, its directory entry and a newly created parent directory are
    all fsynced before returning.

    Args:
        path: Destination path; parent directories are created.
        write: Callable receiving the open text file.
    """
    created_parent = not path.parent.exists()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8", newline="") as f:
            write(f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        fsync_dir(path.parent)
        if created_parent:
            fsync_dir(path.parent.parent)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def merge_records(
    existing: list[PriceRecord],
    incoming: Sequence[PriceRecord],
    policy: MergePolicy,
) -> tuple[list[PriceRecord], WriteResult]:
    """Merge incoming records into the rows of one file.

    Args:
        existing: Rows already stored for one (target, date).
        incoming: New records for the same (target, date).
        policy: How an existing key is treated.

    Returns:
        The merged rows and the counts describing what changed.
    """
    result = WriteResult()
    rows = list(existing)

    match policy:
        case MergePolicy.REJECT | MergePolicy.OVERWRITE:
            index: dict[str, int] = {}
            for i, row in enumerate(rows):
                index[row.item_id] = i
            for record in incoming:
                i = index.get(record.item_id)
                if i is None:
                    index[record.item_id] = len(rows)
                    rows.append(record)
                    result.written += 1
                elif rows[i].same_observation(record):
                    result.unchanged += 1
                elif policy is MergePolicy.OVERWRITE:
                    rows[i] = record
                    result.superseded += 1
                else:
                    result.conflicts.append(
                        (
                            record.target_id,
                            record.item_id,
                            record.observed_on.isoformat(),
                        )
                    )
        case MergePolicy.APPEND_VERSIONED:
            versions: dict[tuple[str, datetime], PriceRecord] = {
                (row.item_id, row.scraped_at): row for row in rows
            }
            for record in incoming:
                tag = (record.item_id, record.scraped_at)
                stored = versions.get(tag)
                if stored is None:
                    versions[tag] = record
                    rows.append(record)
                    result.written += 1
                elif stored.same_observation(record):
                    result.unchanged += 1
                else:
                    # A version is identified by its scrape time.
                    result.conflicts.append(
                        (
                            record.target_id,
                            record.item_id,
                            record.observed_on.isoformat(),
                        )
                    )
        case _:
            assert_never(policy)

    rows.sort(key=_sort_key)
    return rows, result


class CsvStore:
    """Diffable CSV output store.

    Args:
        out_path: Root directory of the store.
        merge_policy: Policy applied to every write of this store.
    """

    def __init__(
        self,
        out_path: Path | str,
        merge_policy: MergePolicy = MergePolicy.REJECT,
    ) -> None:
        self.out_path = Path(out_path)
        self.merge_policy = merge_policy
        self._locks: defaultdict[Path, asyncio.Lock] = defaultdict(
            asyncio.Lock
        )

    def path_for(self, target_id: str, observed_on: date) -> Path:
        return self.out_path / target_id / f"{observed_on.isoformat()}.csv"

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def _read_file(self, target_id: str, path: Path) -> list[PriceRecord]:
        if not path.exists():
            return []
        with path.open(encoding="utf-8", newline="") as f:
            try:
                return [
                    PriceRecord.from_row(target_id, row)
                    for row in csv.DictReader(f)
                ]
            except ValidationError as e:
                raise WriteError(
                    WriteErrorKind.STORAGE_UNAVAILABLE,
                    f"Stored file {path} is unreadable: {e}",
                    target_id,
                    {"path": str(path)},
                ) from e

    def read(self, target_id: str, observed_on: date) -> list[PriceRecord]:
        """Return the stored rows for one target and date."""
        path = self.path_for(target_id, observed_on)
        return self._read_file(target_id, path)

    def keys(self) -> Iterator[tuple[str, str, date]]:
        """Yield (target_id, item_id, observed_on) for every stored row."""
        if not self.out_path.exists():
            return
        for target_dir in sorted(self.out_path.iterdir()):
            if not target_dir.is_dir() or target_dir.name == RUNS_DIR:
                continue
            for path in sorted(target_dir.glob("*.csv")):
                for record in self._read_file(target_dir.name, path):
                    yield record.key

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    def _commit(
        self, path: Path, records: Sequence[PriceRecord]
    ) -> WriteResult:
        target_id = records[0].target_id
        try:
            existing = self._read_file(target_id, path)
            rows, result = merge_records(existing, records, self.merge_policy)
            if result.written or result.superseded:

                def write(f) -> None:
                    writer = csv.DictWriter(
                        f, fieldnames=RECORD_FIELDS, lineterminator="\n"
                    )
                    writer.writeheader()
                    for row in rows:
                        writer.writerow(row.to_row())

                atomic_write_text(path, write)
        except OSError as e:
            raise WriteError(
                WriteErrorKind.STORAGE_UNAVAILABLE,
                f"Could not write {path}: {e}",
                target_id,
                {"path": str(path)},
            ) from e
        return result

    async def write(self, records: Sequence[PriceRecord]) -> WriteResult:
        """Merge records into the store durably.

        Records are grouped by (target, observation date); each group is
        committed under that file's lock before this coroutine returns.

        Returns:
            Aggregate WriteResult. Key conflicts under the reject policy
            are reported here, not raised.

        Raises:
            WriteError: STORAGE_UNAVAILABLE if the store cannot be written.
        """
        groups: dict[Path, list[PriceRecord]] = {}
        for record in records:
            path = self.path_for(record.target_id, record.observed_on)
            groups.setdefault(path, []).append(record)

        result = WriteResult()
        for path in sorted(groups):
            async with self._locks[path]:
                partial = await asyncio.to_thread(
                    self._commit, path, groups[path]
                )
            result.merge(partial)

        if result.conflicts:
            logger.warning(
                f"{len(result.conflicts)} key conflicts left unchanged",
                extra={"conflicts": len(result.conflicts)},
            )
        return result

    def report_path(self, report: RunReport) -> Path:
        stamp = report.started_at.strftime("%Y%m%dT%H%M%SZ")
        return self.out_path / RUNS_DIR / f"{stamp}_{report.run_id}.json"

    async def write_report(self, report: RunReport) -> Path:
        """Persist a run report as JSON under ``runs/``.

        Raises:
            WriteError: STORAGE_UNAVAILABLE if the file cannot be written.
        """
        path = self.report_path(report)
        payload = report.to_json()

        def write(f) -> None:
            f.write(payload)
            f.write("\n")

        try:
            await asyncio.to_thread(atomic_write_text, path, write)
        except OSError as e:
            raise WriteError(
                WriteErrorKind.STORAGE_UNAVAILABLE,
                f"Could not write run report {path}: {e}",
                context={"path": str(path)},
            ) from e
        return path
