import json
import os
import sys
from pathlib import Path
from unittest.mock import patch

from PIL import Image
from PIL.ExifTags import GPS, Base as ExifBase

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from legacy import load_legacy_ids
from photo_source import FolderPhotoSource, _dms_to_decimal, _exif_date_to_ms, _parse_gps_ifd


def _make_photo(path: Path, date: str | None = None) -> Path:
    img = Image.new("RGB", (32, 32), color=(200, 100, 50))
    if date:
        exif = Image.Exif()
        exif[ExifBase.DateTime] = date
        img.save(path, exif=exif)
    else:
        img.save(path)
    return path


# -- EXIF helpers --


def test_dms_to_decimal():
    assert abs(_dms_to_decimal((40, 26, 46.0), "N") - 40.446111) < 1e-5
    assert _dms_to_decimal((10, 30, 0), "W") == -10.5


def test_parse_gps_ifd_rejects_null_island():
    gps = {
        GPS.GPSLatitude: (0, 0, 0), GPS.GPSLatitudeRef: "N",
        GPS.GPSLongitude: (0, 0, 0), GPS.GPSLongitudeRef: "E",
    }
    assert _parse_gps_ifd(gps) is None
    assert _parse_gps_ifd({}) is None


def test_exif_date_to_ms():
    assert _exif_date_to_ms("1970:01:02 00:00:00") == 86_400_000
    assert _exif_date_to_ms("not a date") is None


# -- FolderPhotoSource --


def test_lists_supported_files_sorted(tmp_path):
    (tmp_path / "sub").mkdir()
    _make_photo(tmp_path / "b.jpg")
    _make_photo(tmp_path / "a.png")
    _make_photo(tmp_path / "sub" / "c.jpg")
    (tmp_path / "notes.txt").write_text("ignore me")

    records = FolderPhotoSource([tmp_path]).list_all()

    assert [Path(r.id).name for r in records] == ["a.png", "b.jpg", "c.jpg"]
    assert all(r.id == r.uri for r in records)


def test_listing_uses_mtime_and_capture_time_reads_exif(tmp_path):
    dated = _make_photo(tmp_path / "dated.jpg", date="2021:06:01 12:00:00")
    plain = _make_photo(tmp_path / "plain.png")
    os.utime(dated, (1_500_000_000, 1_500_000_000))
    os.utime(plain, (1_600_000_000, 1_600_000_000))
    source = FolderPhotoSource([tmp_path])

    with patch("photo_source.read_capture_time") as read_exif:
        records = {Path(r.id).name: r for r in source.list_all()}
    read_exif.assert_not_called()

    assert records["dated.jpg"].created_at == 1_500_000_000_000
    assert records["plain.png"].created_at == 1_600_000_000_000
    assert source.get_capture_time(records["dated.jpg"].id) == _exif_date_to_ms("2021:06:01 12:00:00")
    assert source.get_capture_time(records["plain.png"].id) is None


def test_limit_and_missing_folder(tmp_path):
    for i in range(4):
        _make_photo(tmp_path / f"p{i}.jpg")
    source = FolderPhotoSource([tmp_path / "missing", tmp_path], limit=2)
    assert len(source.list_all()) == 2


def test_asset_location_without_gps(tmp_path):
    photo = _make_photo(tmp_path / "p.jpg")
    assert FolderPhotoSource([tmp_path]).get_asset_location(str(photo)) is None


# -- legacy cache --


def test_legacy_ids(tmp_path):
    path = tmp_path / "photos.json"
    path.write_text(json.dumps([
        {"id": "a", "imageEmbedding": [0.1]},
        {"id": "b", "imageEmbedding": []},
        "junk",
    ]))
    assert load_legacy_ids(path) == {"a"}


def test_legacy_missing_or_corrupt(tmp_path):
    assert load_legacy_ids(None) == set()
    assert load_legacy_ids(tmp_path / "nope.json") == set()
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    assert load_legacy_ids(bad) == set()
