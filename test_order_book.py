"""
Book Derivation Tests
=====================

YES snapshots pass through untouched; NO snapshots mirror prices through
1 - price, swap sides and sort best price first.
"""

import pytest

from polybook.data_ingestion import (
    BookDerivationError,
    BookSide,
    PriceLevel,
    complement_price,
    derive_books
)


def _levels(*pairs):
    return [{"price": price, "size": size} for price, size in pairs]


def test_complement_price_is_fixed_to_four_decimals():
    assert complement_price("0.45") == "0.5500"
    assert complement_price("0.4") == "0.6000"
    assert complement_price("0.001") == "0.9990"
    assert complement_price("1") == "0.0000"


def test_complement_price_rounds_half_up():
    assert complement_price("0.12345") == "0.8766"
    assert complement_price("0.99995") == "0.0001"


def test_complement_price_rejects_garbage():
    with pytest.raises(BookDerivationError):
        complement_price("abc")
    with pytest.raises(BookDerivationError):
        complement_price("NaN")


def test_single_level_scenario():
    update = {
        "asset_id": "A",
        "timestamp": 1000,
        "bids": _levels(("0.40", "100")),
        "asks": _levels(("0.45", "50")),
    }

    primary, complement = derive_books(update, "M")

    assert primary.side is BookSide.PRIMARY
    assert primary.timestamp == "1000"
    assert primary.bids == (PriceLevel("0.40", "100"),)
    assert primary.asks == (PriceLevel("0.45", "50"),)

    assert complement.side is BookSide.COMPLEMENT
    assert complement.instrument_id == "A"
    assert complement.market_name == "M"
    assert complement.bids == (PriceLevel("0.5500", "50"),)
    assert complement.asks == (PriceLevel("0.6000", "100"),)


def test_complement_sides_sorted_descending_regardless_of_input_order():
    update = {
        "asset_id": "A",
        "timestamp": "1",
        "bids": _levels(("0.30", "1"), ("0.41", "2"), ("0.35", "3")),
        "asks": _levels(("0.60", "4"), ("0.45", "5"), ("0.52", "6")),
    }

    _, complement = derive_books(update, "M")

    assert [level.price for level in complement.bids] == ["0.5500", "0.4800", "0.4000"]
    assert [level.size for level in complement.bids] == ["5", "6", "4"]
    assert [level.price for level in complement.asks] == ["0.7000", "0.6500", "0.5900"]
    assert [level.size for level in complement.asks] == ["1", "3", "2"]


def test_primary_rank_follows_received_order():
    update = {
        "asset_id": "A",
        "timestamp": "1",
        "bids": _levels(("0.30", "1"), ("0.41", "2")),
        "asks": [],
    }

    primary, _ = derive_books(update, "M")

    assert primary.ranked_bids() == [(1, PriceLevel("0.30", "1")), (2, PriceLevel("0.41", "2"))]


def test_empty_side_gives_empty_complement_side():
    update = {"asset_id": "A", "timestamp": "1", "bids": _levels(("0.40", "10")), "asks": []}

    primary, complement = derive_books(update, "M")

    assert primary.asks == ()
    assert complement.bids == ()
    assert complement.asks == (PriceLevel("0.6000", "10"),)


def test_missing_sides_are_treated_as_empty():
    primary, complement = derive_books({"asset_id": "A", "timestamp": "1"}, "M")

    assert primary.is_empty()
    assert complement.is_empty()
    assert complement.best_bid() is None


def test_malformed_level_raises():
    with pytest.raises(BookDerivationError):
        derive_books({"asset_id": "A", "timestamp": "1", "bids": [["0.4", "1"]]}, "M")


def test_complement_price_beyond_decimal_precision_raises_derivation_error():
    with pytest.raises(BookDerivationError):
        complement_price("1e30")
