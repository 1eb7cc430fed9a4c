import pytest

from quakeapi.bmkg import (
    FEEDS, FeedError, NormalizationError, extract_entries, make_quake_id,
    normalize_entries, normalize_entry,
)
from quake_samples import ENTRY, make_entry


def test_normalize_full_entry():
    q = normalize_entry(ENTRY, now_ms=42)
    assert q.id == "2024-01-15T03_20_30+00_00_-6.12_105.33"
    assert q.datetime == "15 Jan 2024 10:20:30 WIB"
    assert q.timestamp == 1705288830000
    assert q.magnitude == 5.2
    assert q.depth == 10.0
    assert (q.latitude, q.longitude) == (-6.12, 105.33)
    assert q.region == ENTRY["Wilayah"]
    assert q.tsunami_potential == "Tidak berpotensi tsunami"
    assert q.felt_status == "III Pandeglang"
    assert q.shakemap_url == "https://data.bmkg.go.id/20240115032030.mmi.jpg"
    assert q.created_at == 42


def test_id_is_deterministic_and_ignores_non_key_fields():
    a = normalize_entry(ENTRY)
    b = normalize_entry(ENTRY)
    c = normalize_entry(make_entry(Wilayah="Somewhere else", Magnitude="5.4"))
    assert a.id == b.id == c.id


def test_id_has_no_colons_or_whitespace():
    qid = make_quake_id("2024-01-15 03:20:30", -6.0, 110.0)
    assert qid == "2024-01-15_03_20_30_-6_110"
    assert ":" not in qid and " " not in qid


def test_optional_fields_absent():
    entry = {k: v for k, v in ENTRY.items() if k not in ("Potensi", "Dirasakan", "Shakemap")}
    q = normalize_entry(entry)
    assert q.tsunami_potential is None
    assert q.felt_status is None
    assert q.shakemap_url is None


def test_naive_datetime_is_read_as_utc():
    q = normalize_entry(make_entry(DateTime="2024-01-15T03:20:30"))
    assert q.timestamp == 1705288830000


@pytest.mark.parametrize("overrides", [
    {"Coordinates": "-6.12"},
    {"Coordinates": "-6.12,105.33,7"},
    {"Coordinates": "abc,105.33"},
    {"Magnitude": "M5.2"},
    {"Magnitude": "nan"},
    {"Magnitude": "-1"},
    {"Kedalaman": "deep"},
    {"DateTime": "yesterday"},
])
def test_malformed_fields_reject_entry(overrides):
    with pytest.raises(NormalizationError):
        normalize_entry(make_entry(**overrides))


def test_missing_field_rejects_entry():
    entry = dict(ENTRY)
    del entry["Magnitude"]
    with pytest.raises(NormalizationError):
        normalize_entry(entry)


def test_one_bad_magnitude_drops_only_that_entry():
    entries = [
        make_entry(DateTime=f"2024-01-15T0{i}:00:00+00:00") for i in range(4)
    ] + [make_entry(Magnitude="five")]
    records, rejected = normalize_entries(entries)
    assert len(records) == 4
    assert rejected == 1


def test_extract_entries_shapes():
    assert extract_entries({"Infogempa": {"gempa": ENTRY}}, FEEDS["latest"]) == [ENTRY]
    assert extract_entries({"Infogempa": {"gempa": [ENTRY, ENTRY]}}, FEEDS["m5"]) == [ENTRY, ENTRY]
    assert extract_entries({"Infogempa": {"gempa": [ENTRY, ENTRY]}}, FEEDS["latest"]) == [ENTRY]
    with pytest.raises(FeedError):
        extract_entries({"something": "else"}, FEEDS["felt"])


@pytest.mark.parametrize("lat, lon, suffix", [
    (-0.0, 0.00005, "_0_0.00005"),
    (0.0, -0.0, "_0_0"),
    (1e16, 5e-08, "_10000000000000000_5e-8"),
    (-6.12, 105.33, "_-6.12_105.33"),
])
def test_id_number_rendering(lat, lon, suffix):
    assert make_quake_id("2024-01-15T03:20:30+00:00", lat, lon) == "2024-01-15T03_20_30+00_00" + suffix
