import os
import zipfile
from datetime import datetime, timezone, timedelta, date as date_cls
from typing import List, Optional, Union

from dateutil import parser as dateparser

DATE_FORMAT = "%Y-%m-%d"


# --------------------------
# Time helpers
# --------------------------

def utc_today() -> date_cls:
    return datetime.now(timezone.utc).date()


def iso_to_ms(iso_str: str) -> int:
    dt = dateparser.isoparse(iso_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def ms_to_date_str(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime(DATE_FORMAT)


def build_date_str(days_ago: int, today: Optional[date_cls] = None) -> str:
    """Calendar date (UTC) `days_ago` days before today, as YYYY-MM-DD."""
    base = today or utc_today()
    return (base - timedelta(days=days_ago)).strftime(DATE_FORMAT)


def parse_date_str(value: str) -> date_cls:
    """Parse a YYYY-MM-DD (or any ISO-8601 date/time) string into a date."""
    return dateparser.isoparse(value).date()


def date_range(start: str, end_exclusive: str) -> List[str]:
    """Every YYYY-MM-DD date from start (inclusive) to end_exclusive."""
    out: List[str] = []
    current = parse_date_str(start)
    stop = parse_date_str(end_exclusive)
    while current < stop:
        out.append(current.strftime(DATE_FORMAT))
        current += timedelta(days=1)
    return out


def datetime_str_to_ms(value: str) -> int:
    """Convert a naive 'YYYY-MM-DD HH:MM:SS' UTC string (or ISO variant) to epoch ms."""
    dt = dateparser.isoparse(value.strip().replace(" ", "T", 1))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


# --------------------------
# Human formatting
# --------------------------

def large_bytes_to_short_string(num_bytes: Union[int, float]) -> str:
    size = float(num_bytes)
    for unit in ("B", "kB", "MB", "GB"):
        if abs(size) < 1000:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1000
    return f"{size:.1f} TB"


def accurate_humanize(seconds: float) -> str:
    total = int(max(0, round(seconds)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


# --------------------------
# File helpers
# --------------------------

def remove_quietly(path: str) -> bool:
    """Delete a file if present. Returns True when something was removed."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False


def zip_file_atomic(source_path: str, dest_path: str, arcname: Optional[str] = None) -> None:
    """Compress one file into a zip archive at dest_path.

    The archive is written next to its destination with a .tmp suffix and
    renamed into place, so readers never observe a half-written archive.
    """
    os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)
    tmp_path = dest_path + ".tmp"
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.write(source_path, arcname=arcname or os.path.basename(source_path))
        os.replace(tmp_path, dest_path)
    except BaseException:
        remove_quietly(tmp_path)
        raise


def unzip_to(source_path: str, dest_dir: str) -> List[str]:
    """Extract every regular file of a zip archive. Returns the extracted paths.

    Raises zipfile.BadZipFile when the source is not a zip archive.
    """
    os.makedirs(dest_dir, exist_ok=True)
    extracted: List[str] = []
    with zipfile.ZipFile(source_path) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            extracted.append(zf.extract(info, dest_dir))
    return extracted
