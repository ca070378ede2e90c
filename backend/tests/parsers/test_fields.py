from datetime import datetime, timezone

import pytest

from backend.carbitrage.parsers._fields import (
    canonical_make,
    derive_variant_family,
    extract_km,
    extract_location,
    extract_make_model,
    extract_price,
    extract_year,
    normalize_drivetrain,
    normalize_location,
    normalize_status,
    normalize_transmission,
    validate_candidate,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Build Date: 03/2018 Toyota Hilux", 2018),
        ("2019 Mazda BT-50 XT", 2019),
        ("Hilux SR5, year 2021, 60,000 km", 2021),
        ("Ford Ranger 1975 edition", None),
    ],
)
def test_extract_year(text, expected):
    assert extract_year(text) == expected


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Odometer: 123,456", 123456),
        ("Travelled 85,000 km", 85000),
        ("only 48k kms", 48000),
        ("12 km delivery", None),
    ],
)
def test_extract_km(text, expected):
    assert extract_km(text) == expected


def test_extract_price_prefers_labelled_amount():
    assert extract_price("Reserve: $32,000 (was $35,000)") == 32000
    assert extract_price('{"price": "27990"}') == 27990
    assert extract_price("Only $45,990 drive away") == 45990
    assert extract_price("Deposit $50") is None


def test_make_model_from_title():
    assert extract_make_model("2019 Toyota Hilux SR5 (4x4)") == ("Toyota", "Hilux")
    assert extract_make_model("2020 VW Amarok TDI580") == ("Volkswagen", "Amarok")
    assert extract_make_model("2018 Mazda BT-50 XTR") == ("Mazda", "BT-50")
    assert extract_make_model("Box trailer 7x4") == (None, None)
    assert canonical_make("mercedes-benz") == "Mercedes-Benz"
    assert canonical_make("land_rover") == "Land Rover"


def test_normalizers():
    assert normalize_transmission("6 SP AUTOMATIC") == "Auto"
    assert normalize_transmission("CVT auto") == "CVT"
    assert normalize_drivetrain("4x4 Dual Range") == "4WD"
    assert normalize_status("Passed In") == "passed_in"
    assert normalize_status("SOLD") == "sold"
    assert normalize_status(None) == "listed"
    assert derive_variant_family("SR5 Hi-Rider Double Cab") == "SR5"
    assert derive_variant_family("Wildtrak 3.2 (4x4)") == "WILDTRAK"
    assert derive_variant_family("Base") is None


def test_location_helpers():
    assert extract_location("Pickup from Yatala QLD") == "Yatala, QLD"
    assert normalize_location(None, "Parramatta", "nsw", "2150") == "Parramatta, NSW, 2150"
    assert normalize_location("  Dandenong VIC ") == "Dandenong VIC"


def test_validate_candidate_nulls_implausible_numbers():
    candidate = {"make": "Ford", "model": "Ranger", "year": "2020", "km": 5, "reserve": 3_500_000, "asking_price": 38000}
    assert validate_candidate(candidate, NOW) is None
    assert candidate["year"] == 2020
    assert candidate["km"] is None
    assert candidate["reserve"] is None
    assert candidate["asking_price"] == 38000


@pytest.mark.parametrize(
    "candidate, reason",
    [
        ({"model": "Ranger", "year": 2020}, "missing_make"),
        ({"make": "Ford", "year": 2020}, "missing_model"),
        ({"make": "Ford", "model": "Ranger", "year": 1979}, "invalid_year"),
        ({"make": "Ford", "model": "Ranger", "year": 2028}, "invalid_year"),
    ],
)
def test_validate_candidate_drop_reasons(candidate, reason):
    assert validate_candidate(candidate, NOW) == reason
