"""
Download task kind: fetch one (set, archive type, date) raw archive.

The body is streamed to its final path in 32 KiB chunks. Remote answers are
classified into the archiver error taxonomy; rate limits and transient failures
pause the whole engine before the task goes back to the queue. A partial file is
never left behind.
"""
from __future__ import annotations

import logging
import os
import shutil
import threading
from typing import Optional

import requests

from archive_catalog import (
    ArchiveType,
    build_local_zip_path,
    build_remote_url,
    build_seeded_archive_path,
    column_artifacts_exist,
    targeted_assets,
    tree_for,
)
from archiver_errors import (
    DownloadStalled,
    Interrupted,
    InvalidFileSize,
    RateLimited,
    RemoteMissing,
    TransientRemoteError,
    UnsupportedInstrument,
)
from archiver_settings import (
    HTTP_CONNECT_TIMEOUT_SEC,
    HTTP_READ_TIMEOUT_SEC,
    LOGGER_NAME,
    PROGRESS_LOG_INTERVAL_SEC,
    RATE_LIMIT_PAUSE_SEC,
    TRANSIENT_ERROR_PAUSE_SEC,
)
from archiver_utils import (
    accurate_humanize,
    build_date_str,
    large_bytes_to_short_string,
    ms_to_date_str,
    remove_quietly,
    zip_file_atomic,
)
from status_client import SetDescriptor
from task_engine import Engine, Task, conflicts_on

BUFFER_SIZE = 32 * 1024
MIN_BYTES_PER_SECOND = 10 * 1024
STALL_GRACE_SEC = 3

ARG_SET_ID = "set_id"
ARG_DATE = "date"
ARG_ARCHIVE_TYPE = "archive_type"
ARG_SET = "set"

STAT_BYTES = "bytes"

same_unit = conflicts_on(ARG_SET_ID, ARG_DATE, ARG_ARCHIVE_TYPE)


def unit_key(set_id: str, date: str, archive_type) -> str:
    return f"{set_id.upper()}-{date}-{ArchiveType(archive_type).value}"


def download_task_id(set_id: str, date: str, archive_type) -> str:
    return f"dl-{unit_key(set_id, date, archive_type)}"


def unit_args(set_descriptor: SetDescriptor, date: str, archive_type) -> dict:
    return {
        ARG_SET_ID: set_descriptor.set_id,
        ARG_DATE: date,
        ARG_ARCHIVE_TYPE: ArchiveType(archive_type),
        ARG_SET: set_descriptor,
    }


def max_download_seconds(size: int) -> float:
    """Longest a transfer of `size` bytes may take before it counts as stalled."""
    return size / MIN_BYTES_PER_SECOND + STALL_GRACE_SEC


def build_http_session() -> requests.Session:
    s = requests.Session()
    s.headers.update({"User-Agent": "binance-archiver/0.1"})
    return s


def reference_date_for(set_descriptor: SetDescriptor, archive_type, timeframe: Optional[int] = None) -> Optional[str]:
    """Earliest consistent date of the set for an asset produced by `archive_type`."""
    assets = set(targeted_assets(archive_type))
    for asset in set_descriptor.assets:
        if asset.asset_id not in assets:
            continue
        window = asset.find_consistency(timeframe)
        if window and window[0] > 0:
            return ms_to_date_str(window[0])
    return None


def write_empty_archive(output_path: str, arcname: str) -> None:
    """Compressed archive holding one empty data file."""
    scratch = output_path[: -len(".zip")] + ".csv" if output_path.endswith(".zip") else output_path + ".csv"
    try:
        with open(scratch, "w", encoding="utf-8"):
            pass
        zip_file_atomic(scratch, output_path, arcname=arcname)
    finally:
        remove_quietly(scratch)


def _download_status_line(task: Task) -> str:
    current, total = task.size
    elapsed = max(task.elapsed(), 1e-6)
    speed = current / elapsed
    pct = (current / total * 100) if total else 0.0
    eta = (total - current) / speed if speed > 0 and total else 0.0
    return (
        f"{task.id} | {task.current_step() or '-'} | {pct:.1f}% of {large_bytes_to_short_string(total)} "
        f"| speed={large_bytes_to_short_string(speed)}/s | eta={accurate_humanize(eta)}"
    )


class ArchiveDownloader:
    def __init__(
        self,
        engine: Engine,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
        fragmenter=None,
        progress_interval: float = PROGRESS_LOG_INTERVAL_SEC,
    ):
        self.engine = engine
        self.session = session or build_http_session()
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.fragmenter = fragmenter
        self.progress_interval = progress_interval
        self.min_timeframe: Optional[int] = None
        self.timeout = (HTTP_CONNECT_TIMEOUT_SEC, HTTP_READ_TIMEOUT_SEC)

    def task(self, archive_type, date: str, set_descriptor: SetDescriptor) -> Task:
        archive_type = ArchiveType(archive_type)
        t = Task(download_task_id(set_descriptor.set_id, date, archive_type), unit_args(set_descriptor, date, archive_type))
        t.add_running_filter(same_unit)
        t.add_process(lambda task: self.run(task, archive_type, date, set_descriptor))
        t.status_formatter = _download_status_line
        if self.fragmenter is not None:
            t.on_success(lambda _task: self.engine.submit(self.fragmenter.task(archive_type, date, set_descriptor)))
        return t

    # --------------------------
    # Task body
    # --------------------------

    def run(self, task: Task, archive_type: ArchiveType, date: str, set_descriptor: SetDescriptor) -> None:
        set_id = set_descriptor.set_id
        output = build_local_zip_path(archive_type, date, set_id)
        if os.path.exists(output):
            task.add_step("cached")
            return
        if column_artifacts_exist(archive_type, date, set_id):
            task.add_step("fragmented")
            return
        os.makedirs(os.path.dirname(output), exist_ok=True)

        seeded = build_seeded_archive_path(archive_type, date, set_descriptor.pair)
        if os.path.exists(seeded):
            shutil.move(seeded, output)
            task.add_step("seeded")
            self.logger.info(f"Imported seeded archive {seeded} rid={task.id}")
            return

        try:
            url = build_remote_url(archive_type, date, set_descriptor.pair)
        except UnsupportedInstrument:
            task.disable_retry()
            raise

        task.add_step("request")
        try:
            size = self.fetch(url, output, task)
        except RateLimited:
            self.engine.pause(RATE_LIMIT_PAUSE_SEC)
            raise
        except RemoteMissing as exc:
            self._handle_remote_missing(task, exc, archive_type, date, set_descriptor, output)
            return
        except TransientRemoteError:
            self.engine.pause(TRANSIENT_ERROR_PAUSE_SEC)
            raise
        task.add_step("done")
        self.logger.info(
            f"Successfully downloaded {archive_type.value} {set_id} {date} "
            f"({large_bytes_to_short_string(size)} in {accurate_humanize(task.elapsed())}) rid={task.id}"
        )

    def _handle_remote_missing(
        self,
        task: Task,
        exc: RemoteMissing,
        archive_type: ArchiveType,
        date: str,
        set_descriptor: SetDescriptor,
        output: str,
    ) -> None:
        boundary = build_date_str(tree_for(archive_type).consistency_lookback_days)
        if date < boundary:
            task.disable_retry()
            raise RemoteMissing(
                f"{archive_type.value} {set_descriptor.set_id} {date} is not published and older than {boundary}",
                permanent=True,
                status_code=404,
            ) from exc

        reference = reference_date_for(set_descriptor, archive_type, self.min_timeframe)
        if reference is None:
            raise exc
        reference_url = build_remote_url(archive_type, reference, set_descriptor.pair)
        if not self.probe(reference_url):
            self.logger.warning(f"Reference archive {reference_url} unreachable, keeping {date} retryable rid={task.id}")
            raise exc

        write_empty_archive(output, arcname=f"{date}.csv")
        task.add_step("empty")
        self.logger.info(f"No {archive_type.value} archive for {set_descriptor.set_id} on {date}, stored an empty day rid={task.id}")

    # --------------------------
    # HTTP
    # --------------------------

    def probe(self, url: str) -> bool:
        try:
            resp = self.session.head(url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            self.logger.warning(f"HEAD {url} failed: {e}")
            return False
        try:
            return resp.status_code == 200
        finally:
            resp.close()

    def fetch(self, url: str, output_path: str, task: Task) -> int:
        """Stream `url` into `output_path`. Returns the number of bytes written."""
        try:
            resp = self.session.get(url, stream=True, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransientRemoteError(f"GET {url} failed: {exc}") from exc

        try:
            if resp.status_code == 429:
                raise RateLimited(f"Too many requests on {url}", status_code=429)
            if resp.status_code == 404:
                raise RemoteMissing(f"No archive at {url}", status_code=404)
            if resp.status_code != 200:
                raise TransientRemoteError(f"Unexpected status {resp.status_code} on {url}", status_code=resp.status_code)

            try:
                size = int(resp.headers.get("Content-Length") or 0)
            except ValueError:
                size = 0
            if size <= 0:
                raise InvalidFileSize(f"Invalid content length {resp.headers.get('Content-Length')!r} on {url}")

            task.set_size(current=0, max=size)
            task.add_step("stream")
            return self._stream(resp, output_path, size, task)
        finally:
            resp.close()

    def _stream(self, resp, output_path: str, size: int, task: Task) -> int:
        stalled = threading.Event()
        done = threading.Event()
        watchdog = threading.Timer(max_download_seconds(size), stalled.set)
        watchdog.daemon = True
        reporter = threading.Thread(target=self._report_progress, args=(task, done), daemon=True)
        watchdog.start()
        reporter.start()
        written = 0
        try:
            with open(output_path, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=BUFFER_SIZE):
                    if task.must_interrupt():
                        raise Interrupted(f"Download interrupted rid={task.id}")
                    if stalled.is_set():
                        raise DownloadStalled(
                            f"Download slower than {large_bytes_to_short_string(MIN_BYTES_PER_SECOND)}/s "
                            f"({large_bytes_to_short_string(written)} of {large_bytes_to_short_string(size)})"
                        )
                    if not chunk:
                        continue
                    fh.write(chunk)
                    written += len(chunk)
                    task.increment_size(len(chunk))
                    task.increment_stat_value(STAT_BYTES, len(chunk))
            if written < size:
                raise InvalidFileSize(f"Stream ended after {written} of {size} bytes")
        except requests.RequestException as exc:
            remove_quietly(output_path)
            raise TransientRemoteError(f"Stream interrupted: {exc}") from exc
        except BaseException:
            remove_quietly(output_path)
            raise
        finally:
            watchdog.cancel()
            done.set()
        return written

    def _report_progress(self, task: Task, done: threading.Event) -> None:
        while not done.wait(self.progress_interval):
            self.logger.info(f"Downloading {_download_status_line(task)}")
