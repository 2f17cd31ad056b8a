"""
Static description of the daily archives published on data.binance.vision.

Every archive type maps to an ArchiveDataTree: where its time column lives, which
asset each other column produces, and how a raw field is turned into the stored
value. Transforms are plain data (a TransformKind plus parameters) interpreted by
a dispatch table, so the whole catalog can be printed, compared and tested.

Column resolution order for a row:
  1. by header title, when the file carries a header and the title is present in it
  2. by fixed position otherwise
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_EVEN
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from archiver_errors import ColumnNotFound, InvalidValue, NotFound, UnsupportedInstrument
from archiver_settings import archives_dir, seeded_archives_dir
from archiver_utils import datetime_str_to_ms

BINANCE_DATA_URL = "https://data.binance.vision/data"

SPOT_QUOTES = ("USDT", "USDC", "BUSD", "FDUSD")
FUTURES_QUOTES = ("USDT", "USDC")

HeaderIndex = Optional[Dict[str, int]]


class ArchiveType(str, Enum):
    BINANCE_SPOT_TRADES = "binance_spot_trades"
    BINANCE_FUTURES_TRADES = "binance_futures_trades"
    BINANCE_BOOK_DEPTH = "binance_book_depth"
    BINANCE_METRICS = "binance_metrics"


class Market(str, Enum):
    SPOT = "spot"
    FUTURES = "futures"


class TransformKind(str, Enum):
    IDENTITY = "identity"
    NEGATE_UNLESS_FLAG = "negate_unless_flag"
    SCALE = "scale"
    MATCH_FIELD = "match_field"
    DATETIME_TO_MILLIS = "datetime_to_millis"
    EPOCH_MILLIS = "epoch_millis"


@dataclass(frozen=True)
class FieldRef:
    title: str
    index: int


@dataclass(frozen=True)
class Transform:
    kind: TransformKind = TransformKind.IDENTITY
    field: Optional[FieldRef] = None
    factor: Optional[str] = None
    expected: Optional[str] = None


@dataclass(frozen=True)
class ColumnSpec:
    origin_title: str
    origin_index: int
    asset: Optional[str] = None
    transform: Optional[Transform] = None
    decimals: Optional[int] = None


@dataclass(frozen=True)
class ArchiveDataTree:
    consistency_lookback_days: int
    time_column: ColumnSpec
    columns: Tuple[ColumnSpec, ...]
    market: Market
    remote_kind: str  # path segment and file infix on the remote source
    seed_dir: str     # sub-directory used for manually placed archives
    quotes: Tuple[str, ...] = SPOT_QUOTES


# --------------------------
# Value transforms
# --------------------------

_TRUE_VALUES = ("1", "t", "T", "true", "TRUE", "True")
_FALSE_VALUES = ("0", "f", "F", "false", "FALSE", "False")


def parse_bool(value: str) -> bool:
    v = value.strip()
    if v in _TRUE_VALUES:
        return True
    if v in _FALSE_VALUES:
        return False
    raise InvalidValue(f"Cannot interpret {value!r} as a boolean")


def negate(value: str) -> str:
    v = value.strip()
    if not v:
        return v
    if v.startswith("-"):
        return v[1:]
    if v.startswith("+"):
        return "-" + v[1:]
    return "-" + v


def _to_decimal(value: str) -> Optional[Decimal]:
    try:
        d = Decimal(value.strip())
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def _transform_identity(t: Transform, raw: str, row: Sequence[str], header: HeaderIndex) -> str:
    return raw


def _transform_negate_unless_flag(t: Transform, raw: str, row: Sequence[str], header: HeaderIndex) -> str:
    flag = parse_bool(resolve_field(row, header, t.field.title, t.field.index))
    return raw if flag else negate(raw)


def _transform_scale(t: Transform, raw: str, row: Sequence[str], header: HeaderIndex) -> str:
    d = _to_decimal(raw)
    if d is None:
        return raw
    return format(d * Decimal(t.factor), "f")


def _transform_match_field(t: Transform, raw: str, row: Sequence[str], header: HeaderIndex) -> str:
    other = resolve_field(row, header, t.field.title, t.field.index).strip()
    a, b = _to_decimal(other), _to_decimal(t.expected)
    if a is not None and b is not None:
        return raw if a == b else ""
    return raw if other == t.expected else ""


def _epoch_to_millis(value: str) -> str:
    v = int(value)
    # microsecond and nanosecond stamps are brought back to milliseconds
    while abs(v) >= 10 ** 14:
        v //= 1000
    return str(v)


def _transform_epoch_millis(t: Transform, raw: str, row: Sequence[str], header: HeaderIndex) -> str:
    v = raw.strip()
    if not v:
        return v
    try:
        return _epoch_to_millis(v)
    except ValueError as exc:
        raise InvalidValue(f"Cannot interpret {raw!r} as an epoch timestamp") from exc


def _transform_datetime_to_millis(t: Transform, raw: str, row: Sequence[str], header: HeaderIndex) -> str:
    v = raw.strip()
    if not v:
        return v
    if v.lstrip("-").isdigit():
        return _epoch_to_millis(v)
    try:
        return str(datetime_str_to_ms(v))
    except (ValueError, OverflowError) as exc:
        raise InvalidValue(f"Cannot interpret {raw!r} as a date time") from exc


TRANSFORMS: Dict[TransformKind, Callable[[Transform, str, Sequence[str], HeaderIndex], str]] = {
    TransformKind.IDENTITY: _transform_identity,
    TransformKind.NEGATE_UNLESS_FLAG: _transform_negate_unless_flag,
    TransformKind.SCALE: _transform_scale,
    TransformKind.MATCH_FIELD: _transform_match_field,
    TransformKind.DATETIME_TO_MILLIS: _transform_datetime_to_millis,
    TransformKind.EPOCH_MILLIS: _transform_epoch_millis,
}


def apply_transform(transform: Optional[Transform], raw: str, row: Sequence[str], header: HeaderIndex) -> str:
    if transform is None:
        return raw
    return TRANSFORMS[transform.kind](transform, raw, row, header)


def resolve_field(row: Sequence[str], header: HeaderIndex, title: str, index: int) -> str:
    if header is not None and title:
        pos = header.get(title.strip().lower())
        if pos is not None and pos < len(row):
            return row[pos]
    if 0 <= index < len(row):
        return row[index]
    raise ColumnNotFound(f"Column {title!r} (index {index}) not found in row of {len(row)} fields")


def resolve_column(spec: ColumnSpec, row: Sequence[str], header: HeaderIndex) -> str:
    """Locate a column in a row and apply its transform."""
    raw = resolve_field(row, header, spec.origin_title, spec.origin_index)
    return apply_transform(spec.transform, raw, row, header)


def format_value(value: str, decimals: Optional[int]) -> str:
    """Round a numeric value to `decimals` places (half-even) and drop trailing zeros.

    Non-numeric values are returned untouched.
    """
    if decimals is None:
        return value
    d = _to_decimal(value)
    if d is None:
        return value
    q = d.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_EVEN, context=Context(prec=80))
    text = format(q, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    return text


# --------------------------
# Trees
# --------------------------

def _book_depth_column(percentage: int) -> ColumnSpec:
    label = f"P{percentage}" if percentage > 0 else f"M{-percentage}"
    return ColumnSpec(
        origin_title="depth",
        origin_index=2,
        asset=f"BOOK_DEPTH_{label}",
        transform=Transform(TransformKind.MATCH_FIELD, field=FieldRef("percentage", 1), expected=str(percentage)),
        decimals=4,
    )


BINANCE_SPOT_TRADES_TREE = ArchiveDataTree(
    consistency_lookback_days=4,
    time_column=ColumnSpec("timestamp", 4, transform=Transform(TransformKind.EPOCH_MILLIS)),
    columns=(
        ColumnSpec("price", 1, asset="SPOT_PRICE", decimals=8),
        ColumnSpec(
            "quantity", 2, asset="SPOT_VOLUME", decimals=8,
            transform=Transform(TransformKind.NEGATE_UNLESS_FLAG, field=FieldRef("isBuyerMaker", 5)),
        ),
    ),
    market=Market.SPOT,
    remote_kind="trades",
    seed_dir="_spot",
    quotes=SPOT_QUOTES,
)

BINANCE_FUTURES_TRADES_TREE = ArchiveDataTree(
    consistency_lookback_days=4,
    time_column=ColumnSpec("time", 4, transform=Transform(TransformKind.EPOCH_MILLIS)),
    columns=(
        ColumnSpec("price", 1, asset="FUTURES_PRICE", decimals=8),
        ColumnSpec(
            "qty", 2, asset="FUTURES_VOLUME", decimals=8,
            transform=Transform(TransformKind.NEGATE_UNLESS_FLAG, field=FieldRef("is_buyer_maker", 5)),
        ),
    ),
    market=Market.FUTURES,
    remote_kind="trades",
    seed_dir="_futures",
    quotes=FUTURES_QUOTES,
)

BINANCE_BOOK_DEPTH_TREE = ArchiveDataTree(
    consistency_lookback_days=4,
    time_column=ColumnSpec("timestamp", 0, transform=Transform(TransformKind.DATETIME_TO_MILLIS)),
    columns=tuple(_book_depth_column(p) for p in (-5, -4, -3, -2, -1, 1, 2, 3, 4, 5)),
    market=Market.FUTURES,
    remote_kind="bookDepth",
    seed_dir="book_depth",
    quotes=FUTURES_QUOTES,
)

BINANCE_METRICS_TREE = ArchiveDataTree(
    consistency_lookback_days=4,
    time_column=ColumnSpec("create_time", 0, transform=Transform(TransformKind.DATETIME_TO_MILLIS)),
    columns=(
        ColumnSpec("sum_open_interest", 2, asset="METRICS_OPEN_INTEREST", decimals=4),
        ColumnSpec("sum_open_interest_value", 3, asset="METRICS_OPEN_INTEREST_VALUE", decimals=2),
        ColumnSpec("count_toptrader_long_short_ratio", 4, asset="METRICS_TOP_TRADER_ACCOUNT_RATIO", decimals=6),
        ColumnSpec("sum_toptrader_long_short_ratio", 5, asset="METRICS_TOP_TRADER_POSITION_RATIO", decimals=6),
        ColumnSpec("count_long_short_ratio", 6, asset="METRICS_LONG_SHORT_RATIO", decimals=6),
        ColumnSpec("sum_taker_long_short_vol_ratio", 7, asset="METRICS_TAKER_VOLUME_RATIO", decimals=6),
    ),
    market=Market.FUTURES,
    remote_kind="metrics",
    seed_dir="metrics",
    quotes=FUTURES_QUOTES,
)

ARCHIVES_INDEX: Dict[ArchiveType, ArchiveDataTree] = {
    ArchiveType.BINANCE_SPOT_TRADES: BINANCE_SPOT_TRADES_TREE,
    ArchiveType.BINANCE_FUTURES_TRADES: BINANCE_FUTURES_TRADES_TREE,
    ArchiveType.BINANCE_BOOK_DEPTH: BINANCE_BOOK_DEPTH_TREE,
    ArchiveType.BINANCE_METRICS: BINANCE_METRICS_TREE,
}


def _build_asset_index(index: Dict[ArchiveType, ArchiveDataTree]) -> Dict[str, ArchiveType]:
    """Reverse lookup asset -> archive type. Fails on any catalog misconfiguration."""
    out: Dict[str, ArchiveType] = {}
    for archive_type, tree in index.items():
        if not tree.columns:
            raise ValueError(f"Archive tree {archive_type.value} declares no columns")
        for col in tree.columns:
            if not col.asset:
                raise ValueError(f"Archive tree {archive_type.value} has a column without asset")
            if col.asset in out:
                raise ValueError(f"Asset {col.asset} is produced by both {out[col.asset].value} and {archive_type.value}")
            if col.transform is not None and col.transform.kind not in TRANSFORMS:
                raise ValueError(f"Unknown transform {col.transform.kind} in {archive_type.value}")
            out[col.asset] = archive_type
    return out


_ASSET_INDEX = _build_asset_index(ARCHIVES_INDEX)


# --------------------------
# Lookups
# --------------------------

def tree_for(archive_type) -> ArchiveDataTree:
    try:
        return ARCHIVES_INDEX[ArchiveType(archive_type)]
    except (KeyError, ValueError) as exc:
        raise NotFound(f"No archive tree registered for {archive_type!r}") from exc


def targeted_assets(archive_type) -> List[str]:
    return [col.asset for col in tree_for(archive_type).columns]


def required_archive_type(asset: str) -> ArchiveType:
    try:
        return _ASSET_INDEX[asset]
    except KeyError as exc:
        raise NotFound(f"No archive type produces asset {asset!r}") from exc


def asset_decimals(asset: str) -> Optional[int]:
    for col in tree_for(required_archive_type(asset)).columns:
        if col.asset == asset:
            return col.decimals
    return None


# --------------------------
# Pairs, URLs and paths
# --------------------------

def pair_symbol(pair: Sequence[str]) -> str:
    return "".join(p.strip() for p in pair).upper()


def check_pair_supported(archive_type, pair: Sequence[str]) -> None:
    tree = tree_for(archive_type)
    if len(pair) != 2:
        raise UnsupportedInstrument(f"Expected a [base, quote] pair, got {list(pair)!r}")
    base, quote = (p.strip().upper() for p in pair)
    if not base.isalnum() or not quote.isalnum():
        raise UnsupportedInstrument(f"Pair {list(pair)!r} is not made of alphanumeric symbols")
    if quote not in tree.quotes:
        raise UnsupportedInstrument(
            f"Quote {quote} is not served for {ArchiveType(archive_type).value} (supported: {', '.join(tree.quotes)})"
        )


def remote_file_name(archive_type, date: str, pair: Sequence[str]) -> str:
    tree = tree_for(archive_type)
    return f"{pair_symbol(pair)}-{tree.remote_kind}-{date}.zip"


def build_remote_url(archive_type, date: str, pair: Sequence[str]) -> str:
    check_pair_supported(archive_type, pair)
    tree = tree_for(archive_type)
    market_path = "spot" if tree.market == Market.SPOT else "futures/um"
    symbol = pair_symbol(pair)
    return f"{BINANCE_DATA_URL}/{market_path}/daily/{tree.remote_kind}/{symbol}/{remote_file_name(archive_type, date, pair)}"


def build_local_zip_path(archive_type, date: str, set_id: str) -> str:
    return os.path.join(archives_dir(), set_id.upper(), "__archives", ArchiveType(archive_type).value, f"{date}.zip")


def build_column_artifact_path(set_id: str, asset: str, date: str) -> str:
    return os.path.join(archives_dir(), set_id.upper(), asset, f"{date}.zip")


def build_seeded_archive_path(archive_type, date: str, pair: Sequence[str]) -> str:
    tree = tree_for(archive_type)
    return os.path.join(seeded_archives_dir(), pair_symbol(pair), tree.seed_dir, remote_file_name(archive_type, date, pair))


def column_artifacts_exist(archive_type, date: str, set_id: str) -> bool:
    return all(
        os.path.exists(build_column_artifact_path(set_id, asset, date))
        for asset in targeted_assets(archive_type)
    )
