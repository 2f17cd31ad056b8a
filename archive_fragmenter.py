"""
Fragment task kind: split one raw daily archive into one compressed column file
per asset.

Each column artifact is a zip holding `<date>.csv` with a `TIME,<ASSET>` header
followed by `(time, value)` rows in the order they appear in the raw file. The
unit is all-or-nothing: on any failure every intermediate file and every column
artifact created for the unit is removed.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
import zipfile
import zlib
from typing import Dict, Iterator, List, Optional, Sequence

import pandas as pd

from archive_catalog import (
    ArchiveType,
    HeaderIndex,
    build_column_artifact_path,
    build_local_zip_path,
    column_artifacts_exist,
    format_value,
    resolve_column,
    tree_for,
)
from archive_downloader import ARG_SET_ID, download_task_id, same_unit, unit_args, unit_key
from archiver_errors import ColumnNotFound, Interrupted, InvalidArchive, InvalidValue, MalformedArchive, SourceMissing
from archiver_settings import FRAGMENT_FLUSH_ROWS, LOGGER_NAME, PROGRESS_LOG_INTERVAL_SEC, archives_dir
from archiver_utils import accurate_humanize, remove_quietly, unzip_to, zip_file_atomic
from status_client import SetDescriptor
from task_engine import Engine, Task, TaskState

HEADER_MARKERS = ("time", "date", "id")

STAT_ROWS = "rows"


def fragment_task_id(set_id: str, date: str, archive_type) -> str:
    return f"fg-{unit_key(set_id, date, archive_type)}"


def is_header_row(row: Sequence[str]) -> bool:
    for field in row:
        low = str(field).lower()
        if any(marker in low for marker in HEADER_MARKERS):
            return True
    return False


def count_lines(path: str) -> int:
    n = 0
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1 << 20), b""):
            n += block.count(b"\n")
    return n


def first_row_width(path: str) -> int:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            if line.strip():
                return line.count(",") + 1
    return 0


def iter_row_chunks(path: str, chunk_rows: int) -> Iterator[List[tuple]]:
    """Rows of a headerless-or-not delimited file, as tuples of strings, in batches.

    The first row fixes the width: fields past it on a wider row are dropped,
    a narrower row is returned short.
    """
    width = first_row_width(path)
    try:
        with pd.read_csv(
            path,
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            chunksize=chunk_rows,
            engine="python",
            on_bad_lines=lambda fields: fields[:width],
        ) as reader:
            for chunk in reader:
                # short rows are padded with NaN by pandas; drop the padding
                yield [tuple(v for v in row if isinstance(v, str)) for row in chunk.itertuples(index=False, name=None)]
    except pd.errors.EmptyDataError:
        return
    except pd.errors.ParserError as exc:
        raise MalformedArchive(f"Cannot parse {os.path.basename(path)}: {exc}") from exc


def _fragment_status_line(task: Task) -> str:
    current, total = task.size
    pct = (current / total * 100) if total else 0.0
    return f"{task.id} | {task.current_step() or '-'} | {pct:.1f}% of {total} rows | elapsed={accurate_humanize(task.elapsed())}"


class ArchiveFragmenter:
    def __init__(
        self,
        engine: Engine,
        logger: Optional[logging.Logger] = None,
        flush_rows: int = FRAGMENT_FLUSH_ROWS,
        progress_interval: float = PROGRESS_LOG_INTERVAL_SEC,
    ):
        self.engine = engine
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.flush_rows = flush_rows
        self.progress_interval = progress_interval

    def task(self, archive_type, date: str, set_descriptor: SetDescriptor) -> Task:
        archive_type = ArchiveType(archive_type)
        t = Task(fragment_task_id(set_descriptor.set_id, date, archive_type), unit_args(set_descriptor, date, archive_type))
        t.add_running_filter(same_unit)
        pending_download = download_task_id(set_descriptor.set_id, date, archive_type)
        t.add_running_filter(lambda task, running: not self._is_queued(pending_download))
        t.add_process(lambda task: self.run(task, archive_type, date, task.args[ARG_SET_ID]))
        t.status_formatter = _fragment_status_line
        return t

    def _is_queued(self, task_id: str) -> bool:
        other = self.engine.find(task_id)
        return other is not None and other.state == TaskState.QUEUED

    # --------------------------
    # Task body
    # --------------------------

    def run(self, task: Task, archive_type: ArchiveType, date: str, set_id: str) -> Dict[str, int]:
        source = build_local_zip_path(archive_type, date, set_id)
        if not os.path.exists(source):
            task.disable_retry()
            raise SourceMissing(f"No raw archive at {source}")
        if column_artifacts_exist(archive_type, date, set_id):
            task.add_step("cached")
            return {}

        scratch_root = os.path.join(archives_dir(), set_id.upper(), "__scratch")
        os.makedirs(scratch_root, exist_ok=True)
        scratch = tempfile.mkdtemp(prefix=f"{archive_type.value}-{date}-", dir=scratch_root)
        try:
            task.add_step("extract")
            data_file = self._extract(task, source, scratch)
            task.add_step("fragment")
            written = self.fragment_file(task, data_file, archive_type, date, set_id, scratch)
        except (ColumnNotFound, InvalidValue, MalformedArchive):
            # the same raw file fails the same way on every attempt
            task.disable_retry()
            raise
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

        task.add_step("done")
        summary = ", ".join(f"{asset}={n}" for asset, n in written.items())
        self.logger.info(
            f"Fragmented {archive_type.value} {set_id} {date} in {accurate_humanize(task.elapsed())} ({summary}) rid={task.id}"
        )
        return written

    def _extract(self, task: Task, source: str, scratch: str) -> str:
        if not source.endswith(".zip"):
            return source
        try:
            files = unzip_to(source, scratch)
        except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
            remove_quietly(source)
            raise InvalidArchive(f"{source} is not a valid zip archive, removed it: {exc}") from exc
        if len(files) != 1:
            task.disable_retry()
            raise MalformedArchive(f"{source} holds {len(files)} files, expected exactly one")
        return files[0]

    def fragment_file(
        self,
        task: Task,
        data_path: str,
        archive_type: ArchiveType,
        date: str,
        set_id: str,
        work_dir: str,
    ) -> Dict[str, int]:
        """Write every column artifact of a unit from one extracted data file."""
        tree = tree_for(archive_type)
        task.set_size(current=0, max=count_lines(data_path))
        intermediates = {col.asset: os.path.join(work_dir, f"{col.asset}.csv") for col in tree.columns}
        written = {col.asset: 0 for col in tree.columns}
        created: List[str] = []
        handles = {}
        try:
            for asset, path in intermediates.items():
                handles[asset] = open(path, "w", encoding="utf-8", newline="")
                created.append(path)
                handles[asset].write(f"TIME,{asset}\n")

            header: HeaderIndex = None
            first_chunk = True
            last_log = time.time()
            for rows in iter_row_chunks(data_path, self.flush_rows):
                if task.must_interrupt():
                    raise Interrupted(f"Fragmentation interrupted rid={task.id}")
                seen = len(rows)
                if first_chunk:
                    first_chunk = False
                    if rows and is_header_row(rows[0]):
                        header = {str(title).strip().lower(): i for i, title in enumerate(rows[0])}
                        rows = rows[1:]

                times = []
                for row in rows:
                    t = resolve_column(tree.time_column, row, header).strip()
                    if not t:
                        raise ColumnNotFound(f"Empty time column in row {row!r}")
                    times.append(t)

                for col in tree.columns:
                    lines = []
                    for t, row in zip(times, rows):
                        value = resolve_column(col, row, header).strip()
                        if not value:
                            continue
                        lines.append(f"{t},{format_value(value, col.decimals)}\n")
                    handles[col.asset].writelines(lines)
                    handles[col.asset].flush()
                    written[col.asset] += len(lines)

                task.increment_size(seen)
                task.increment_stat_value(STAT_ROWS, len(rows))
                if time.time() - last_log >= self.progress_interval:
                    last_log = time.time()
                    self.logger.info(f"Fragmenting {_fragment_status_line(task)}")

            for fh in handles.values():
                fh.close()
            for asset, path in intermediates.items():
                artifact = build_column_artifact_path(set_id, asset, date)
                created.append(artifact)
                zip_file_atomic(path, artifact, arcname=f"{date}.csv")
                remove_quietly(path)
        except BaseException:
            for fh in handles.values():
                fh.close()
            for path in created:
                remove_quietly(path)
            raise
        return written
