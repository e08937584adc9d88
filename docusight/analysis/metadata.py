"""
Container and format metadata extraction.

Images are decoded with Pillow for dimensions, EXIF capture time, camera and
GPS data. Video, audio and documents are not decoded here; their metadata
comes from what the uploader declared alongside the byte stream.
"""

import io
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from PIL import Image, ExifTags, UnidentifiedImageError

from ..errors import CorruptInput, UnsupportedFormat
from ..models.media import (
    CameraInfo, GeoLocation, MediaKind, MediaMetadata, parse_datetime,
)

logger = logging.getLogger(__name__)

EXIF_DATE_FORMAT = '%Y:%m:%d %H:%M:%S'

_DOCUMENT_MIMES = {'application/pdf', 'text/plain', 'text/markdown', 'text/csv'}


@dataclass(frozen=True)
class ExtractedMetadata:
    metadata: MediaMetadata
    captured_at: Optional[datetime] = None


def guess_mime(filename: str) -> Optional[str]:
    mime, _ = mimetypes.guess_type(filename)
    return mime


def kind_for_mime(mime_type: Optional[str],
                  supported: Iterable[str] = ('image/', 'video/', 'audio/',
                                              'application/pdf', 'text/')) -> MediaKind:
    """
    Map a MIME type to a media kind.

    Raises:
        UnsupportedFormat: MIME type missing or outside the supported families
    """
    if not mime_type:
        raise UnsupportedFormat("Unknown MIME type")
    mime_type = mime_type.lower()
    if not any(mime_type.startswith(prefix) for prefix in supported):
        raise UnsupportedFormat(f"Unsupported format: {mime_type}")
    if mime_type.startswith('image/'):
        return MediaKind.IMAGE
    if mime_type.startswith('video/'):
        return MediaKind.VIDEO
    if mime_type.startswith('audio/'):
        return MediaKind.AUDIO
    if mime_type in _DOCUMENT_MIMES or mime_type.startswith('text/'):
        return MediaKind.DOCUMENT
    raise UnsupportedFormat(f"Unsupported format: {mime_type}")


def _rational(value: Any) -> float:
    """EXIF rationals arrive as IFDRational or (num, den) tuples."""
    if isinstance(value, tuple) and len(value) == 2:
        return float(value[0]) / float(value[1]) if value[1] else 0.0
    return float(value)


def _declared_number(declared: Dict[str, Any], key: str, cast):
    """Declared numbers arrive as JSON; anything non-numeric raises ValueError."""
    value = declared.get(key)
    if value is None:
        return None
    number = cast(value)
    if number != number or number < 0:
        raise ValueError(f"{key} must be a non-negative number, got {value!r}")
    return number


def _gps_to_degrees(values: Any, ref: Optional[str]) -> Optional[float]:
    try:
        degrees, minutes, seconds = (_rational(v) for v in values)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    result = degrees + minutes / 60.0 + seconds / 3600.0
    if ref in ('S', 'W'):
        result = -result
    return result


class MetadataExtractor:
    """Extracts MediaMetadata and capture time from a file's bytes."""

    def extract(self, data: bytes, kind: MediaKind, mime_type: Optional[str] = None,
                declared: Optional[Dict[str, Any]] = None) -> ExtractedMetadata:
        """
        Extract metadata for one file.

        Args:
            data: Raw file bytes
            kind: Media kind
            mime_type: Declared MIME type
            declared: Metadata supplied by the uploader (width, height,
                duration, frame_rate, location, captured_at, camera)

        Returns:
            ExtractedMetadata

        Raises:
            CorruptInput: Empty stream or undecodable image
        """
        declared = declared or {}
        if not data:
            raise CorruptInput("Empty byte stream")

        if kind is MediaKind.IMAGE:
            extracted = self._extract_image(data, mime_type)
        else:
            extracted = ExtractedMetadata(metadata=MediaMetadata(format=mime_type))

        try:
            return self._apply_declared(extracted, kind, len(data), declared)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CorruptInput(f"Invalid declared metadata: {e}") from e

    def _extract_image(self, data: bytes, mime_type: Optional[str]) -> ExtractedMetadata:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                width, height = image.size
                image_format = Image.MIME.get(image.format, mime_type)
                exif = image.getexif()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise CorruptInput(f"Cannot decode image: {e}") from e

        captured_at = None
        camera = None
        location = None
        if exif:
            base = {ExifTags.TAGS.get(tag_id, tag_id): value for tag_id, value in exif.items()}
            details = {ExifTags.TAGS.get(tag_id, tag_id): value
                       for tag_id, value in exif.get_ifd(ExifTags.IFD.Exif).items()}
            captured_at = self._exif_date(details, base)
            camera = self._exif_camera(base, details)
            location = self._exif_location(exif.get_ifd(ExifTags.IFD.GPSInfo))

        return ExtractedMetadata(
            metadata=MediaMetadata(
                format=image_format,
                width=width,
                height=height,
                color_space='sRGB',
                location=location,
                camera=camera,
            ),
            captured_at=captured_at,
        )

    def _exif_date(self, *sources: Dict[str, Any]) -> Optional[datetime]:
        for source in sources:
            for field_name in ('DateTimeOriginal', 'DateTimeDigitized', 'DateTime'):
                if field_name in source:
                    try:
                        return datetime.strptime(str(source[field_name]).strip(), EXIF_DATE_FORMAT)
                    except ValueError:
                        continue
        return None

    def _exif_camera(self, base: Dict[str, Any], details: Dict[str, Any]) -> Optional[CameraInfo]:
        make = str(base['Make']).strip() if 'Make' in base else None
        model = str(base['Model']).strip() if 'Model' in base else None
        if not make and not model:
            return None
        iso = details.get('ISOSpeedRatings')
        f_number = details.get('FNumber')
        exposure = details.get('ExposureTime')
        focal = details.get('FocalLength')
        return CameraInfo(
            make=make,
            model=model,
            lens=str(details['LensModel']).strip() if 'LensModel' in details else None,
            iso=int(iso) if isinstance(iso, (int, float)) else None,
            aperture=f"f/{_rational(f_number):.1f}" if f_number else None,
            shutter_speed=f"{_rational(exposure):g}s" if exposure else None,
            focal_length=f"{_rational(focal):g}mm" if focal else None,
        )

    def _exif_location(self, gps_ifd: Dict[int, Any]) -> Optional[GeoLocation]:
        if not gps_ifd:
            return None
        gps = {ExifTags.GPSTAGS.get(tag_id, tag_id): value for tag_id, value in gps_ifd.items()}
        if 'GPSLatitude' not in gps or 'GPSLongitude' not in gps:
            return None
        latitude = _gps_to_degrees(gps['GPSLatitude'], gps.get('GPSLatitudeRef'))
        longitude = _gps_to_degrees(gps['GPSLongitude'], gps.get('GPSLongitudeRef'))
        if latitude is None or longitude is None:
            return None
        altitude = gps.get('GPSAltitude')
        return GeoLocation(latitude=latitude, longitude=longitude,
                           altitude=_rational(altitude) if altitude is not None else None)

    def _apply_declared(self, extracted: ExtractedMetadata, kind: MediaKind, size: int,
                        declared: Dict[str, Any]) -> ExtractedMetadata:
        """Fill gaps with uploader-declared values; decoded values win."""
        metadata = extracted.metadata
        duration = metadata.duration or _declared_number(declared, 'duration', float)
        bit_rate = metadata.bit_rate or _declared_number(declared, 'bit_rate', int)
        if bit_rate is None and duration and kind in (MediaKind.VIDEO, MediaKind.AUDIO):
            bit_rate = int(size * 8 / float(duration))

        location = metadata.location
        declared_location = GeoLocation.from_dict(declared.get('location'))
        if declared_location is not None:
            if location is None:
                location = declared_location
            else:
                # Keep decoded coordinates, take resolved place names from the declaration
                location = GeoLocation(
                    latitude=location.latitude,
                    longitude=location.longitude,
                    altitude=location.altitude,
                    address=declared_location.address,
                    city=declared_location.city,
                    country=declared_location.country,
                )

        merged = MediaMetadata(
            format=metadata.format or declared.get('format'),
            width=metadata.width or _declared_number(declared, 'width', int),
            height=metadata.height or _declared_number(declared, 'height', int),
            duration=duration,
            frame_rate=metadata.frame_rate or _declared_number(declared, 'frame_rate', float),
            bit_rate=bit_rate,
            color_space=metadata.color_space or declared.get('color_space'),
            location=location,
            camera=metadata.camera or CameraInfo.from_dict(declared.get('camera')),
        )
        captured_at = extracted.captured_at or parse_datetime(declared.get('captured_at'))
        return ExtractedMetadata(metadata=merged, captured_at=captured_at)
