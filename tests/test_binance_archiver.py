import logging
import os
import shutil
import tempfile
import unittest
from datetime import date

from archive_catalog import ArchiveType, build_column_artifact_path, targeted_assets
from archive_downloader import ArchiveDownloader, download_task_id
from archive_fragmenter import ArchiveFragmenter, fragment_task_id
from archiver_errors import StatusServiceError
from archiver_utils import iso_to_ms
from binance_archiver import Archiver, compute_missing_units
from exchange_markets import ExchangeListings
from status_client import AssetDescriptor, ConsistencyRange, ServerStatus, SetDescriptor
from task_engine import Engine, EngineOptions

LOGGER = logging.getLogger("archiver.tests")
TODAY = date(2024, 1, 10)
SPOT = ArchiveType.BINANCE_SPOT_TRADES
FUTURES = ArchiveType.BINANCE_FUTURES_TRADES


def asset(asset_id, lo="2023-12-01", hi=None, lookback=None, timeframe=1000):
    lo_ms = iso_to_ms(lo) if lo else 0
    hi_ms = iso_to_ms(hi) if hi else 0
    return AssetDescriptor(
        asset_id=asset_id,
        consistencies=[ConsistencyRange(timeframe=timeframe, range=(lo_ms, hi_ms))],
        consistency_max_lookback_days=lookback,
    )


class FakeStatusClient:
    def __init__(self, sets, min_timeframe=1000):
        self.sets = list(sets)
        self.min_timeframe = min_timeframe
        self.closed = False

    def fetch_status(self):
        return ServerStatus(min_timeframe=self.min_timeframe)

    def fetch_available_sets(self):
        return list(self.sets)

    def close(self):
        self.closed = True


class ComputeMissingUnitsTest(unittest.TestCase):
    def test_lookback_window(self):
        s = SetDescriptor(id=["BTC", "USDT"], assets=[asset("SPOT_PRICE", hi="2024-01-07", lookback=2)])
        self.assertEqual(compute_missing_units(s, 1000, TODAY), [(SPOT, "2024-01-07")])

    def test_tree_lookback_applies_by_default(self):
        s = SetDescriptor(id=["BTC", "USDT"], assets=[asset("SPOT_PRICE", hi="2024-01-07")])
        self.assertEqual(compute_missing_units(s, 1000, TODAY), [])
        s = SetDescriptor(id=["BTC", "USDT"], assets=[asset("SPOT_PRICE", hi="2024-01-04")])
        self.assertEqual(compute_missing_units(s, 1000, TODAY), [(SPOT, "2024-01-04"), (SPOT, "2024-01-05")])

    def test_assets_sharing_an_archive_share_units(self):
        s = SetDescriptor(
            id=["BTC", "USDT"],
            assets=[
                asset("SPOT_PRICE", hi="2024-01-04"),
                asset("SPOT_VOLUME", hi="2024-01-04"),
                asset("FUTURES_PRICE", hi="2024-01-05"),
            ],
        )
        self.assertEqual(
            compute_missing_units(s, 1000, TODAY),
            [(SPOT, "2024-01-04"), (FUTURES, "2024-01-05"), (SPOT, "2024-01-05")],
        )

    def test_minimum_used_when_nothing_consistent_yet(self):
        s = SetDescriptor(id=["BTC", "USDT"], assets=[asset("SPOT_PRICE", lo="2024-01-04", hi=None)])
        self.assertEqual(compute_missing_units(s, 1000, TODAY), [(SPOT, "2024-01-04"), (SPOT, "2024-01-05")])

    def test_unknown_or_empty_assets_are_skipped(self):
        s = SetDescriptor(
            id=["BTC", "USDT"],
            assets=[asset("RSI_14", hi="2024-01-01"), asset("SPOT_PRICE", lo=None, hi=None)],
        )
        self.assertEqual(compute_missing_units(s, 1000, TODAY), [])

    def test_consistency_is_read_at_min_timeframe(self):
        a = AssetDescriptor(
            asset_id="SPOT_PRICE",
            consistencies=[
                ConsistencyRange(timeframe=1000, range=(0, iso_to_ms("2024-01-01"))),
                ConsistencyRange(timeframe=60000, range=(0, iso_to_ms("2024-01-05"))),
            ],
        )
        s = SetDescriptor(id=["BTC", "USDT"], assets=[a])
        self.assertEqual(compute_missing_units(s, 60000, TODAY), [(SPOT, "2024-01-05")])


class ArchiverTest(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix="archiver_sched_test_")
        self._prev_dir = os.environ.get("ARCHIVES_DIR")
        os.environ["ARCHIVES_DIR"] = self.tempdir
        # never started: submitted tasks stay queued
        self.engine = Engine(EngineOptions(name="Test", should_run_again=None, status_log_interval=0), logger=LOGGER)
        self.fragmenter = ArchiveFragmenter(self.engine, logger=LOGGER)
        self.downloader = ArchiveDownloader(self.engine, session=object(), logger=LOGGER, fragmenter=self.fragmenter)

    def tearDown(self):
        self.engine.quit(timeout=5)
        if self._prev_dir is None:
            os.environ.pop("ARCHIVES_DIR", None)
        else:
            os.environ["ARCHIVES_DIR"] = self._prev_dir
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def make_archiver(self, sets, listings=None):
        client = FakeStatusClient(sets)
        return Archiver(self.engine, client, self.downloader, self.fragmenter, LOGGER, listings=listings)

    def btc_set(self, hi="2024-01-05"):
        return SetDescriptor(id=["BTC", "USDT"], assets=[asset("SPOT_PRICE", hi=hi)])

    def test_handle_set_queues_download_then_fragment(self):
        archiver = self.make_archiver([])
        self.assertEqual(archiver.handle_set(self.btc_set(), TODAY), 1)
        ids = [t["id"] for t in self.engine.snapshot()]
        self.assertEqual(
            ids,
            [download_task_id("BTCUSDT", "2024-01-05", SPOT), fragment_task_id("BTCUSDT", "2024-01-05", SPOT)],
        )
        # second pass finds everything already queued
        self.assertEqual(archiver.handle_set(self.btc_set(), TODAY), 0)
        self.assertEqual(self.engine.count_queued(), 2)

    def test_fragmented_units_are_skipped(self):
        for a in targeted_assets(SPOT):
            path = build_column_artifact_path("BTCUSDT", a, "2024-01-05")
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(b"done")
        archiver = self.make_archiver([])
        self.assertEqual(archiver.handle_set(self.btc_set(), TODAY), 0)
        self.assertEqual(self.engine.count_queued(), 0)

    def test_unsupported_pair_is_skipped(self):
        archiver = self.make_archiver([])
        s = SetDescriptor(id=["BTC", "EUR"], assets=[asset("SPOT_PRICE", hi="2024-01-05")])
        self.assertEqual(archiver.handle_set(s, TODAY), 0)
        self.assertEqual(self.engine.count_queued(), 0)

    def test_unlisted_pair_is_skipped(self):
        listings = ExchangeListings(LOGGER, loader=lambda market, logger: {"ETH/USDT"})
        archiver = self.make_archiver([], listings=listings)
        self.assertEqual(archiver.handle_set(self.btc_set(), TODAY), 0)
        eth = SetDescriptor(id=["ETH", "USDT"], assets=[asset("SPOT_PRICE", hi="2024-01-05")])
        self.assertEqual(archiver.handle_set(eth, TODAY), 1)

    def test_unknown_listing_does_not_block(self):
        def failing_loader(market, logger):
            raise ConnectionError("exchange unreachable")

        archiver = self.make_archiver([], listings=ExchangeListings(LOGGER, loader=failing_loader))
        self.assertEqual(archiver.handle_set(self.btc_set(), TODAY), 1)

    def test_reconcile_tracks_and_drops_sets(self):
        eth = SetDescriptor(id=["ETH", "USDT"], assets=[asset("SPOT_PRICE", hi="2024-01-05")])
        archiver = self.make_archiver([self.btc_set(), eth])
        self.assertEqual(archiver.reconcile(TODAY), 2)
        self.assertEqual(archiver.min_timeframe, 1000)
        self.assertEqual(self.downloader.min_timeframe, 1000)
        self.assertEqual(sorted(archiver.sets()), ["BTCUSDT", "ETHUSDT"])
        self.assertIsNotNone(archiver.last_reconcile_at)
        self.assertEqual(self.engine.count_queued(), 4)

        archiver.client.sets = [self.btc_set()]
        archiver.reconcile(TODAY)
        self.assertEqual(sorted(archiver.sets()), ["BTCUSDT"])
        self.assertIsNone(archiver.find_set("ethusdt"))
        queued = [t["id"] for t in self.engine.snapshot() if t["state"] == "queued"]
        self.assertEqual(len(queued), 2)
        self.assertTrue(all("BTCUSDT" in task_id for task_id in queued))

    def test_plan_lists_outstanding_units(self):
        archiver = self.make_archiver([self.btc_set(hi="2024-01-04")])
        archiver.refresh_status()
        archiver.refresh_sets()
        self.assertEqual(
            archiver.plan(TODAY),
            [("BTCUSDT", SPOT, "2024-01-04"), ("BTCUSDT", SPOT, "2024-01-05")],
        )
        self.assertEqual(self.engine.count_queued(), 0)

    def test_status_outage_is_logged_with_traceback(self):
        archiver = self.make_archiver([])

        def unavailable():
            archiver.stop()
            raise StatusServiceError("connection refused")

        archiver.client.fetch_status = unavailable
        with self.assertLogs(LOGGER, level="ERROR") as logs:
            archiver.run_forever(interval=0)
        record = logs.records[0]
        self.assertIn("Status service unavailable", record.getMessage())
        self.assertIsNotNone(record.exc_info)

    def test_shutdown_closes_client(self):
        archiver = self.make_archiver([])
        archiver.shutdown(timeout=5)
        self.assertTrue(archiver.client.closed)
        self.assertTrue(self.engine.is_quitting())


if __name__ == "__main__":
    unittest.main(verbosity=2)
