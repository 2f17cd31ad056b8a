"""
Binance daily-archive ingestion daemon.

Every RECONCILE_INTERVAL_SEC the archiver asks the status service which sets are
tracked and how far each asset is already consistent, works out which
(archive type, date) units are still missing, and queues a download followed by a
fragmentation for each of them on the task engine.

Usage:
  python binance_archiver.py run [--interval 60] [--api-port 8090]
  python binance_archiver.py plan
  python binance_archiver.py status
"""
import os
import sys
import json
import time
import signal
import logging
import threading
from datetime import date as date_cls
from typing import Dict, List, Optional, Tuple

from archive_catalog import (
    ArchiveType,
    build_remote_url,
    column_artifacts_exist,
    required_archive_type,
    tree_for,
)
from archive_downloader import ArchiveDownloader
from archive_fragmenter import ArchiveFragmenter
from archiver_errors import NotFound, StatusServiceError, UnsupportedInstrument
from archiver_settings import (
    API_HOST,
    API_PORT,
    RECONCILE_INTERVAL_SEC,
    VERIFY_PAIRS_ON_EXCHANGE,
    setup_logging,
    shutdown_logging,
)
from archiver_utils import build_date_str, date_range, ms_to_date_str
from exchange_markets import ExchangeListings
from status_client import SetDescriptor, StatusClient
from task_engine import Engine, EngineOptions

Unit = Tuple[ArchiveType, str]


# --------------------------
# Outstanding work
# --------------------------

def compute_missing_units(
    set_descriptor: SetDescriptor,
    min_timeframe: Optional[int],
    today: Optional[date_cls] = None,
    logger: Optional[logging.Logger] = None,
) -> List[Unit]:
    """(archive type, date) units still to ingest for a set, oldest first.

    For each asset the dates run from the day of its consistency maximum up to,
    but excluding, today minus its lookback. Assets sharing a raw archive share
    its units.
    """
    seen = set()
    units: List[Unit] = []
    for asset in set_descriptor.assets:
        try:
            archive_type = required_archive_type(asset.asset_id)
        except NotFound:
            if logger:
                logger.debug(f"Asset {asset.asset_id} of {set_descriptor.set_id} is not produced from archives")
            continue
        window = asset.find_consistency(min_timeframe)
        if window is None:
            continue
        lo, hi = window
        start_ms = hi if hi > 0 else lo
        if start_ms <= 0:
            continue
        lookback = asset.consistency_max_lookback_days
        if lookback is None:
            lookback = tree_for(archive_type).consistency_lookback_days
        for d in date_range(ms_to_date_str(start_ms), build_date_str(lookback, today)):
            if (archive_type, d) not in seen:
                seen.add((archive_type, d))
                units.append((archive_type, d))
    units.sort(key=lambda u: (u[1], u[0].value))
    return units


# --------------------------
# Driver
# --------------------------

class Archiver:
    def __init__(
        self,
        engine: Engine,
        client: StatusClient,
        downloader: ArchiveDownloader,
        fragmenter: ArchiveFragmenter,
        logger: logging.Logger,
        listings: Optional[ExchangeListings] = None,
    ):
        self.engine = engine
        self.client = client
        self.downloader = downloader
        self.fragmenter = fragmenter
        self.logger = logger
        self.listings = listings
        self.min_timeframe: Optional[int] = None
        self.last_reconcile_at: Optional[float] = None
        self._sets: Dict[str, SetDescriptor] = {}
        self._sets_lock = threading.Lock()
        self._reconcile_lock = threading.Lock()
        self._stop = threading.Event()

    def sets(self) -> Dict[str, SetDescriptor]:
        with self._sets_lock:
            return self._sets

    def find_set(self, set_id: str) -> Optional[SetDescriptor]:
        return self.sets().get(set_id.upper())

    def refresh_status(self) -> None:
        status = self.client.fetch_status()
        self.min_timeframe = status.min_timeframe
        self.downloader.min_timeframe = status.min_timeframe

    def refresh_sets(self) -> Dict[str, SetDescriptor]:
        fetched = {s.set_id: s for s in self.client.fetch_available_sets()}
        current = self.sets()
        for set_id in current.keys() - fetched.keys():
            canceled = self.cancel_set(set_id)
            self.logger.info(f"Set {set_id} is no longer tracked, canceled {canceled} task(s)")
        for set_id in fetched.keys() - current.keys():
            self.logger.info(f"Tracking set {set_id} ({len(fetched[set_id].assets)} assets)")
        # readers keep the previous mapping; the new one is swapped in whole
        with self._sets_lock:
            self._sets = fetched
        return fetched

    def cancel_set(self, set_id: str) -> int:
        set_id = set_id.upper()
        return self.engine.cancel_by_prefix(f"dl-{set_id}-", f"fg-{set_id}-")

    def plan(self, today: Optional[date_cls] = None) -> List[Tuple[str, ArchiveType, str]]:
        out = []
        for set_id, set_descriptor in self.sets().items():
            for archive_type, d in compute_missing_units(set_descriptor, self.min_timeframe, today, self.logger):
                out.append((set_id, archive_type, d))
        return out

    def _archive_type_allowed(self, set_descriptor: SetDescriptor, archive_type: ArchiveType, sample_date: str) -> bool:
        try:
            build_remote_url(archive_type, sample_date, set_descriptor.pair)
        except UnsupportedInstrument as e:
            self.logger.error(f"Skipping {archive_type.value} for {set_descriptor.set_id}: {e}")
            return False
        if self.listings is not None:
            listed = self.listings.is_listed(set_descriptor.pair, tree_for(archive_type).market)
            if listed is False:
                self.logger.error(
                    f"Skipping {archive_type.value} for {set_descriptor.set_id}: "
                    f"{'/'.join(set_descriptor.pair)} is not listed on the {tree_for(archive_type).market.value} market"
                )
                return False
        return True

    def handle_set(self, set_descriptor: SetDescriptor, today: Optional[date_cls] = None) -> int:
        """Queue a download then a fragmentation for every missing unit. Returns downloads queued."""
        units = compute_missing_units(set_descriptor, self.min_timeframe, today, self.logger)
        allowed: Dict[ArchiveType, bool] = {}
        submitted = 0
        for archive_type, d in units:
            if archive_type not in allowed:
                allowed[archive_type] = self._archive_type_allowed(set_descriptor, archive_type, d)
            if not allowed[archive_type]:
                continue
            if column_artifacts_exist(archive_type, d, set_descriptor.set_id):
                continue
            if self.engine.submit(self.downloader.task(archive_type, d, set_descriptor)):
                submitted += 1
            self.engine.submit(self.fragmenter.task(archive_type, d, set_descriptor))
        return submitted

    def reconcile(self, today: Optional[date_cls] = None) -> int:
        with self._reconcile_lock:
            self.refresh_status()
            sets = self.refresh_sets()
            submitted = 0
            for set_descriptor in sets.values():
                submitted += self.handle_set(set_descriptor, today)
            self.last_reconcile_at = time.time()
        if submitted:
            self.logger.info(f"Reconciliation queued {submitted} download(s) across {len(sets)} set(s)")
        return submitted

    # --------------------------
    # Process lifecycle
    # --------------------------

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self, interval: float = RECONCILE_INTERVAL_SEC) -> None:
        self.engine.start()
        while not self._stop.is_set():
            started = time.time()
            try:
                self.reconcile()
            except StatusServiceError as e:
                self.logger.exception(f"Status service unavailable: {e}")
            except Exception as e:
                self.logger.exception(f"Reconciliation error: {e}")
            self._stop.wait(max(1.0, interval - (time.time() - started)))

    def shutdown(self, timeout: Optional[float] = 60) -> None:
        self.stop()
        if not self.engine.quit(timeout=timeout):
            self.logger.warning("Some tasks did not stop in time")
        self.client.close()


def build_archiver(logger: logging.Logger, verify_pairs: bool = VERIFY_PAIRS_ON_EXCHANGE) -> Archiver:
    engine = Engine(EngineOptions(), logger=logger)
    fragmenter = ArchiveFragmenter(engine, logger=logger)
    downloader = ArchiveDownloader(engine, logger=logger, fragmenter=fragmenter)
    listings = ExchangeListings(logger) if verify_pairs else None
    return Archiver(engine, StatusClient(logger=logger), downloader, fragmenter, logger, listings=listings)


def serve_api(archiver: Archiver, host: str, port: int, logger: logging.Logger):
    import uvicorn
    from api import create_app

    config = uvicorn.Config(create_app(archiver), host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, name="archiver-api", daemon=True)
    thread.start()
    logger.info(f"Status API listening on http://{host}:{port}")
    return server


# --------------------------
# CLI
# --------------------------

def _parse_args(argv: List[str]):
    import argparse
    p = argparse.ArgumentParser(description="Binance daily archive downloader and fragmenter")
    p.add_argument("--quiet", action="store_true", help="Reduce console logging")
    p.add_argument("--no-verify-pairs", action="store_true", help="Do not check tracked pairs against exchange listings")
    sub = p.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Run the reconciliation loop until SIGINT/SIGTERM (default)")
    p_run.add_argument("--interval", type=float, default=RECONCILE_INTERVAL_SEC, help="Seconds between reconciliation passes")
    p_run.add_argument("--api-port", type=int, default=API_PORT, help="Serve the status API on this port")
    p_run.add_argument("--api-host", default=API_HOST)

    sub.add_parser("plan", help="Print outstanding (set, archive type, date) units as JSON without queuing them")
    sub.add_parser("status", help="Print the status service view of tracked sets as JSON")

    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logger = setup_logging(verbose=not args.quiet)
    archiver = build_archiver(logger, verify_pairs=VERIFY_PAIRS_ON_EXCHANGE and not args.no_verify_pairs)

    if args.cmd in ("plan", "status"):
        try:
            archiver.refresh_status()
            sets = archiver.refresh_sets()
        except StatusServiceError as e:
            logger.error(f"Status service unavailable: {e}")
            return 1
        finally:
            archiver.client.close()
        if args.cmd == "plan":
            out = [{"set_id": s, "archive_type": t.value, "date": d} for s, t, d in archiver.plan()]
        else:
            out = {
                "min_timeframe": archiver.min_timeframe,
                "sets": [s.model_dump(by_alias=True) for s in sets.values()],
            }
        print(json.dumps(out, indent=2))
        return 0

    def _on_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down...")
        archiver.stop()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    api_server = None
    api_port = getattr(args, "api_port", API_PORT)
    if api_port:
        api_server = serve_api(archiver, getattr(args, "api_host", API_HOST), api_port, logger)

    logger.info(f"Archiver starting (pid={os.getpid()})")
    archiver.run_forever(getattr(args, "interval", RECONCILE_INTERVAL_SEC))
    archiver.shutdown()
    if api_server is not None:
        api_server.should_exit = True
    logger.info("Exiting...")
    shutdown_logging()
    return 0


if __name__ == "__main__":
    sys.exit(main())
