"""
Binary Market Order Book Derivation
===================================

The market channel publishes a book for the YES token of each binary market
only. Because the two outcome prices of a binary market sum to 1, the NO book
is fully determined by the YES book:

    NO bids = 1 - YES asks   (same sizes)
    NO asks = 1 - YES bids   (same sizes)

Every inbound update is self-contained, so no book state is kept in memory:
each update produces two immutable snapshots that are logged and dropped.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple


PRICE_QUANTUM = Decimal("0.0001")
ONE = Decimal(1)


class BookDerivationError(ValueError):
    """Raised when an inbound level cannot be turned into a complement level"""


class BookSide(Enum):
    """Which outcome token a snapshot describes; the value is the log file tag"""
    PRIMARY = "YES"
    COMPLEMENT = "NO"


@dataclass(frozen=True)
class PriceLevel:
    """Individual price level, kept as the decimal strings the feed sends"""
    price: str
    size: str

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "PriceLevel":
        try:
            return cls(price=str(raw["price"]), size=str(raw["size"]))
        except (KeyError, TypeError) as e:
            raise BookDerivationError(f"Malformed price level {raw!r}: {e}") from e


@dataclass(frozen=True)
class BookSnapshot:
    """One side of a binary market at one instant"""
    instrument_id: str
    market_name: str
    side: BookSide
    timestamp: str
    bids: Tuple[PriceLevel, ...]
    asks: Tuple[PriceLevel, ...]

    def ranked_bids(self) -> List[Tuple[int, PriceLevel]]:
        """Bids with their 1-based rank"""
        return list(enumerate(self.bids, start=1))

    def ranked_asks(self) -> List[Tuple[int, PriceLevel]]:
        """Asks with their 1-based rank"""
        return list(enumerate(self.asks, start=1))

    def best_bid(self) -> Optional[PriceLevel]:
        return self.bids[0] if self.bids else None

    def best_ask(self) -> Optional[PriceLevel]:
        return self.asks[0] if self.asks else None

    def is_empty(self) -> bool:
        return not self.bids and not self.asks


def complement_price(price: str) -> str:
    """
    Price of the opposite outcome, ``1 - price``, fixed to 4 decimals

    >>> complement_price("0.45")
    '0.5500'
    """
    try:
        value = ONE - Decimal(price)
        if not value.is_finite():
            raise BookDerivationError(f"Invalid price {price!r}")
        # quantize fails when the result needs more digits than the context precision
        return str(value.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP))
    except (InvalidOperation, TypeError) as e:
        raise BookDerivationError(f"Invalid price {price!r}") from e


def complement_levels(levels: Iterable[PriceLevel]) -> Tuple[PriceLevel, ...]:
    """Mirror levels through ``1 - price`` and order them best (highest) price first"""
    mirrored = [PriceLevel(price=complement_price(level.price), size=level.size) for level in levels]
    mirrored.sort(key=lambda level: Decimal(level.price), reverse=True)
    return tuple(mirrored)


def _parse_levels(raw_levels: Optional[Sequence[Dict[str, Any]]]) -> Tuple[PriceLevel, ...]:
    return tuple(PriceLevel.from_raw(raw) for raw in (raw_levels or []))


def derive_books(update: Dict[str, Any], market_name: str) -> Tuple[BookSnapshot, BookSnapshot]:
    """
    Build the YES and NO snapshots for one ``book`` event

    The YES snapshot keeps the levels exactly as received (rank follows the
    received order). The NO snapshot swaps sides through the price complement
    and sorts each side by price, descending.

    Args:
        update: Raw event with ``asset_id``, ``timestamp``, ``bids`` and ``asks``
        market_name: Configured name of the market the asset belongs to

    Returns:
        (primary snapshot, complement snapshot)
    """
    instrument_id = str(update.get("asset_id", ""))
    timestamp = str(update.get("timestamp", ""))
    bids = _parse_levels(update.get("bids"))
    asks = _parse_levels(update.get("asks"))

    primary = BookSnapshot(
        instrument_id=instrument_id,
        market_name=market_name,
        side=BookSide.PRIMARY,
        timestamp=timestamp,
        bids=bids,
        asks=asks
    )

    complement = BookSnapshot(
        instrument_id=instrument_id,
        market_name=market_name,
        side=BookSide.COMPLEMENT,
        timestamp=timestamp,
        bids=complement_levels(asks),
        asks=complement_levels(bids)
    )

    return primary, complement
