"""
Helper commands for running single archive units by hand (inside the container or
locally), without the status service.

Global options (apply to all commands):
- --pair PAIR (examples: BTC/USDT, ETH/USDC; BTCUSDT is not accepted, the quote must be explicit)

Usage (examples):
- python -m container_tools --pair BTC/USDT download --type binance_spot_trades --date 2024-01-01 --date 2024-01-02
- python -m container_tools --pair BTC/USDT download --type binance_metrics --date 2024-01-01 --fragment
- python -m container_tools --pair BTC/USDT fragment --type binance_spot_trades --date 2024-01-01
- python -m container_tools --pair BTC/USDT inspect --date 2024-01-01
"""
from __future__ import annotations
import argparse
import json
import os
import sys
from typing import Optional

from archive_catalog import ArchiveType, build_column_artifact_path, build_local_zip_path, targeted_assets
from archive_downloader import ArchiveDownloader
from archive_fragmenter import ArchiveFragmenter
from archiver_settings import setup_logging
from archiver_utils import iso_to_ms, parse_date_str
from status_client import AssetDescriptor, SetDescriptor
from task_engine import Engine, EngineOptions


def _set_from_args(pair: str, archive_type: Optional[ArchiveType] = None, reference_date: Optional[str] = None) -> SetDescriptor:
    parts = [p for p in pair.replace(" ", "").replace("-", "/").upper().split("/") if p]
    assets = []
    if archive_type is not None and reference_date:
        ref_ms = iso_to_ms(reference_date)
        assets = [
            AssetDescriptor(asset_id=asset, consistency_range=(ref_ms, ref_ms))
            for asset in targeted_assets(archive_type)
        ]
    return SetDescriptor(id=parts, assets=assets)


def _run_engine(engine: Engine, tasks, timeout: Optional[float]) -> int:
    engine.start()
    for t in tasks:
        engine.submit(t)
    finished = engine.wait_until_idle(timeout)
    engine.quit(timeout=30)
    counts = engine.counts()
    if not finished or counts["failed"] or counts["interrupted"]:
        return 1
    return 0


def _private_engine(logger) -> Engine:
    return Engine(EngineOptions(name="Tools", should_run_again=None), logger=logger)


def cmd_download(args: argparse.Namespace) -> int:
    logger = setup_logging()
    archive_type = ArchiveType(args.type)
    set_descriptor = _set_from_args(args.pair, archive_type, args.reference_date)
    engine = _private_engine(logger)
    fragmenter = ArchiveFragmenter(engine, logger=logger) if args.fragment else None
    downloader = ArchiveDownloader(engine, logger=logger, fragmenter=fragmenter)
    tasks = [downloader.task(archive_type, d, set_descriptor) for d in args.date]
    return _run_engine(engine, tasks, args.timeout)


def cmd_fragment(args: argparse.Namespace) -> int:
    logger = setup_logging()
    archive_type = ArchiveType(args.type)
    set_descriptor = _set_from_args(args.pair)
    engine = _private_engine(logger)
    fragmenter = ArchiveFragmenter(engine, logger=logger)
    tasks = [fragmenter.task(archive_type, d, set_descriptor) for d in args.date]
    return _run_engine(engine, tasks, args.timeout)


def cmd_inspect(args: argparse.Namespace) -> int:
    set_descriptor = _set_from_args(args.pair)
    types = [ArchiveType(args.type)] if args.type else list(ArchiveType)
    report = []
    for archive_type in types:
        raw = build_local_zip_path(archive_type, args.date, set_descriptor.set_id)
        columns = {}
        for asset in targeted_assets(archive_type):
            path = build_column_artifact_path(set_descriptor.set_id, asset, args.date)
            columns[asset] = os.path.getsize(path) if os.path.exists(path) else None
        report.append({
            "archive_type": archive_type.value,
            "raw": os.path.getsize(raw) if os.path.exists(raw) else None,
            "columns": columns,
        })
    print(json.dumps({"set_id": set_descriptor.set_id, "date": args.date, "archives": report}, indent=2))
    return 0


def _date_arg(value: str) -> str:
    try:
        return parse_date_str(value).strftime("%Y-%m-%d")
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Manual helpers for single Binance archive units")
    p.add_argument("--pair", default="BTC/USDT", help="Pair as BASE/QUOTE, e.g. BTC/USDT")
    sub = p.add_subparsers(dest="cmd", required=True)
    types = [t.value for t in ArchiveType]

    p_dl = sub.add_parser("download", help="Download raw archives for one or more dates")
    p_dl.add_argument("--type", required=True, choices=types)
    p_dl.add_argument("--date", required=True, action="append", type=_date_arg, help="YYYY-MM-DD, repeatable")
    p_dl.add_argument("--reference-date", default=None, help="Known published date used to confirm empty days")
    p_dl.add_argument("--fragment", action="store_true", help="Fragment each archive once downloaded")
    p_dl.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds")
    p_dl.set_defaults(func=cmd_download)

    p_fg = sub.add_parser("fragment", help="Fragment already downloaded raw archives")
    p_fg.add_argument("--type", required=True, choices=types)
    p_fg.add_argument("--date", required=True, action="append", type=_date_arg, help="YYYY-MM-DD, repeatable")
    p_fg.add_argument("--timeout", type=float, default=None)
    p_fg.set_defaults(func=cmd_fragment)

    p_in = sub.add_parser("inspect", help="Show raw and column artifacts present for a date")
    p_in.add_argument("--date", required=True, type=_date_arg)
    p_in.add_argument("--type", choices=types, default=None)
    p_in.set_defaults(func=cmd_inspect)

    return p


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
