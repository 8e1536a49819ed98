"""Photo enumeration from folders on disk, with EXIF capture date and GPS."""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from PIL import Image
from PIL.ExifTags import GPS, IFD, Base as ExifBase

from config import SUPPORTED_EXTENSIONS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhotoRecord:
    id: str
    uri: str
    created_at: int  # epoch milliseconds, file mtime until EXIF is read


class PhotoSource(Protocol):
    def list_all(self) -> list[PhotoRecord]: ...

    def get_asset_location(self, photo_id: str) -> tuple[float, float] | None: ...

    def get_capture_time(self, photo_id: str) -> int | None: ...


# ---------------------------------------------------------------------------
# EXIF helpers
# ---------------------------------------------------------------------------


def _dms_to_decimal(dms: tuple, ref: str) -> float:
    """Convert EXIF GPS degrees/minutes/seconds to decimal degrees."""
    degrees = float(dms[0])
    minutes = float(dms[1])
    seconds = float(dms[2])
    decimal = degrees + minutes / 60.0 + seconds / 3600.0
    if ref in ("S", "W"):
        decimal = -decimal
    return decimal


def _parse_gps_ifd(gps_ifd: dict) -> tuple[float, float] | None:
    """Extract (lat, lon) from a GPS EXIF IFD dict. Returns None if missing/invalid."""
    lat_dms = gps_ifd.get(GPS.GPSLatitude)
    lat_ref = gps_ifd.get(GPS.GPSLatitudeRef)
    lon_dms = gps_ifd.get(GPS.GPSLongitude)
    lon_ref = gps_ifd.get(GPS.GPSLongitudeRef)

    if not (lat_dms and lat_ref and lon_dms and lon_ref):
        return None

    try:
        lat = _dms_to_decimal(lat_dms, lat_ref)
        lon = _dms_to_decimal(lon_dms, lon_ref)
    except (TypeError, ValueError, IndexError):
        return None

    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None

    # Cameras sometimes write (0, 0) as a default
    if lat == 0.0 and lon == 0.0:
        return None

    return (lat, lon)


def _exif_date_to_ms(date_str: str) -> int | None:
    """Parse an EXIF date like '2023:07:15 14:30:00' as UTC epoch milliseconds."""
    try:
        dt = datetime.strptime(date_str.strip()[:19], "%Y:%m:%d %H:%M:%S")
    except (ValueError, TypeError):
        return None
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)


def read_capture_time(path: Path) -> int | None:
    try:
        with Image.open(path) as img:
            exif = img.getexif()
            if not exif:
                return None
            exif_ifd = exif.get_ifd(IFD.Exif)
            date_val = exif_ifd.get(ExifBase.DateTimeOriginal) or exif.get(ExifBase.DateTime)
    except Exception:
        logger.debug("EXIF date extraction failed for %s", path, exc_info=True)
        return None
    return _exif_date_to_ms(str(date_val)) if date_val else None


def read_gps(path: Path) -> tuple[float, float] | None:
    try:
        with Image.open(path) as img:
            gps_ifd = img.getexif().get_ifd(IFD.GPSInfo)
    except Exception:
        logger.debug("EXIF GPS extraction failed for %s", path, exc_info=True)
        return None
    return _parse_gps_ifd(gps_ifd) if gps_ifd else None


# ---------------------------------------------------------------------------
# FolderPhotoSource
# ---------------------------------------------------------------------------


class FolderPhotoSource:
    """Photos found by walking configured folders. Ids are resolved paths.

    Listing only stats files. EXIF capture time and GPS are read per photo
    through get_capture_time and get_asset_location.
    """

    def __init__(self, folders: list[str | Path], limit: int | None = None):
        self._folders = [Path(f).resolve() for f in folders]
        self._limit = limit

    def list_all(self) -> list[PhotoRecord]:
        records: list[PhotoRecord] = []
        for folder in self._folders:
            if not folder.is_dir():
                logger.warning("Folder not accessible (skipping): %s", folder)
                continue
            for dirpath, dirnames, filenames in os.walk(folder):
                dirnames.sort()
                for fname in sorted(filenames):
                    p = Path(dirpath) / fname
                    if p.suffix.lower() not in SUPPORTED_EXTENSIONS:
                        continue
                    records.append(self._record(p))
                    if self._limit is not None and len(records) >= self._limit:
                        return records
        return records

    def _record(self, path: Path) -> PhotoRecord:
        resolved = str(path.resolve())
        return PhotoRecord(id=resolved, uri=resolved, created_at=int(os.path.getmtime(path) * 1000))

    def get_asset_location(self, photo_id: str) -> tuple[float, float] | None:
        return read_gps(Path(photo_id))

    def get_capture_time(self, photo_id: str) -> int | None:
        return read_capture_time(Path(photo_id))
