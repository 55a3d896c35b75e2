import logging
import subprocess
import json
from pathlib import Path
from datetime import datetime
from typing import Optional, Dict, Any, List

import exifread
from PIL import Image

from .. import config
from ..exceptions import MetadataExtractionFailed
from ..models import ExtractedMetadata
from ..scanning.filetype import category_for_extension

# Type hint 'Any' lets the None fallback coexist with the real class
MediaInfo: Any = None
try:
    from pymediainfo import MediaInfo
except ImportError:
    MediaInfo = None


def _ratio(value) -> Optional[float]:
    """exifread Ratio / int tag value -> float."""
    try:
        v = value.values[0] if hasattr(value, 'values') else value
        return float(v)
    except (TypeError, ValueError, ZeroDivisionError, IndexError):
        return None


def _gps_coord(tags, key: str, ref_key: str) -> Optional[float]:
    if key not in tags:
        return None
    try:
        d, m, s = (float(v) for v in tags[key].values[:3])
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    coord = d + m / 60.0 + s / 3600.0
    ref = str(tags.get(ref_key, '')).strip().upper()
    if ref in ('S', 'W'):
        coord = -coord
    return round(coord, 7)


class MetadataExtractor:
    """
    Unified interface for extracting metadata from media files.

    Strategies:
      - Images: 'exifread' for EXIF, Pillow for pixel dimensions.
      - Video/Audio: 'pymediainfo' -> falls back to 'exiftool' when not quick.

    extract() never fails the caller for a sub-extractor problem: each
    failure lands in ExtractedMetadata.errors and the rest is kept.
    """

    def extract(self, path: Path, quick: bool = False, include_device_info: bool = False) -> ExtractedMetadata:
        path = Path(path)
        result = ExtractedMetadata()
        category = category_for_extension(path.suffix)

        steps = []
        if category == 'image':
            steps.append(('exifread', lambda: self._image_exif(path, result.photo, quick, include_device_info)))
            steps.append(('pillow', lambda: self._image_dimensions(path, result.photo)))
        elif category in ('video', 'audio'):
            block = result.video if category == 'video' else result.audio
            steps.append(('mediainfo', lambda: self._media_tracks(path, block, category, include_device_info)))
            if not quick:
                steps.append(('exiftool', lambda: self._exiftool(path, block, include_device_info)))
        elif category == 'document':
            steps.append(('document', lambda: self._document(path, result.document)))

        for source, step in steps:
            try:
                if step():
                    result.sources.append(source)
            except MetadataExtractionFailed as e:
                logging.debug(f"{source} failed for {path}: {e}")
                result.errors.append(f"{source}: {e}")

        return result

    # --- Images ---

    def _image_exif(self, path: Path, photo: Dict[str, Any], quick: bool, include_device_info: bool) -> bool:
        try:
            with path.open('rb') as f:
                # details=False skips the maker note, which holds the body serial
                tags = exifread.process_file(f, details=include_device_info)
        except Exception as e:
            raise MetadataExtractionFailed(str(e)) from e

        if not tags:
            return False

        dt = self._parse_exif_date(tags)
        if dt:
            photo['date_taken'] = dt.isoformat()
        for key, tag in (('camera_make', 'Image Make'), ('camera_model', 'Image Model'),
                         ('lens_model', 'EXIF LensModel'), ('software', 'Image Software')):
            if tag in tags:
                photo[key] = str(tags[tag]).strip()

        for key, tag in (('width', 'EXIF ExifImageWidth'), ('height', 'EXIF ExifImageLength'),
                         ('iso', 'EXIF ISOSpeedRatings')):
            if tag in tags:
                v = _ratio(tags[tag])
                if v is not None:
                    photo[key] = int(v)
        if 'Image Orientation' in tags:
            photo['orientation'] = str(tags['Image Orientation'])
        for key, tag in (('aperture', 'EXIF FNumber'), ('focal_length', 'EXIF FocalLength')):
            if tag in tags:
                v = _ratio(tags[tag])
                if v is not None:
                    photo[key] = round(v, 2)
        if 'EXIF ExposureTime' in tags:
            photo['shutter_speed'] = str(tags['EXIF ExposureTime'])

        if not quick:
            lat = _gps_coord(tags, 'GPS GPSLatitude', 'GPS GPSLatitudeRef')
            lon = _gps_coord(tags, 'GPS GPSLongitude', 'GPS GPSLongitudeRef')
            if lat is not None and lon is not None:
                photo['gps_latitude'] = lat
                photo['gps_longitude'] = lon

        if include_device_info:
            for tag in ('EXIF BodySerialNumber', 'MakerNote SerialNumber', 'MakerNote InternalSerialNumber'):
                if tag in tags and str(tags[tag]).strip():
                    photo['camera_serial'] = str(tags[tag]).strip()
                    break
        return True

    def _image_dimensions(self, path: Path, photo: Dict[str, Any]) -> bool:
        if 'width' in photo and 'height' in photo:
            return False
        try:
            with Image.open(path) as im:
                photo['width'], photo['height'] = im.size
                photo.setdefault('format', im.format)
        except OSError as e:
            # RAW and HEIC need decoders Pillow does not ship
            if path.suffix.lower() in config.RAW_EXTS | config.HEIC_EXTS:
                return False
            raise MetadataExtractionFailed(str(e)) from e
        return True

    # --- Video / Audio ---

    def _media_tracks(self, path: Path, block: Dict[str, Any], category: str, include_device_info: bool) -> bool:
        if MediaInfo is None:
            raise MetadataExtractionFailed("pymediainfo not installed")
        try:
            mi = MediaInfo.parse(str(path))
        except Exception as e:
            raise MetadataExtractionFailed(str(e)) from e

        for track in mi.tracks:
            if track.track_type == "General":
                if getattr(track, "duration", None):
                    # MediaInfo duration is in milliseconds
                    block['duration'] = float(track.duration) / 1000.0
                if getattr(track, "overall_bit_rate", None):
                    block['bitrate'] = int(float(track.overall_bit_rate))
                for field in ("recorded_date", "encoded_date", "tagged_date"):
                    val = getattr(track, field, None)
                    dt = self._parse_flexible_date(val) if val else None
                    if dt:
                        block['date_taken'] = dt.isoformat()
                        break
                if include_device_info:
                    make = getattr(track, "make", None) or getattr(track, "com_apple_quicktime_make", None)
                    model = getattr(track, "model", None) or getattr(track, "com_apple_quicktime_model", None)
                    if make:
                        block['camera_make'] = str(make)
                    if model:
                        block['camera_model'] = str(model)
                for key in ("title", "album", "performer"):
                    val = getattr(track, key, None)
                    if val and category == 'audio':
                        block['artist' if key == 'performer' else key] = str(val)

            elif track.track_type == "Video" and category == 'video':
                if track.width:
                    block['width'] = int(track.width)
                if track.height:
                    block['height'] = int(track.height)
                if getattr(track, "frame_rate", None):
                    block['frame_rate'] = float(track.frame_rate)
                block.setdefault('codec', track.format)

            elif track.track_type == "Audio":
                if category == 'audio':
                    block.setdefault('codec', track.format)
                if getattr(track, "sampling_rate", None):
                    block.setdefault('sample_rate', int(float(track.sampling_rate)))
                if getattr(track, "channel_s", None):
                    block.setdefault('channels', int(track.channel_s))

        return bool(block)

    def _exiftool(self, path: Path, block: Dict[str, Any], include_device_info: bool) -> bool:
        """
        Wraps the 'exiftool' command line utility for fields MediaInfo missed.
        """
        if block.get('duration') and block.get('date_taken'):
            return False
        # -j = JSON output, -n = numeric values
        cmd = ["exiftool", "-j", "-n", str(path)]
        try:
            out = subprocess.check_output(cmd, stderr=subprocess.DEVNULL, text=True,
                                          timeout=config.DEVICE_PROBE_TIMEOUT_SEC)
            data_list = json.loads(out)
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            raise MetadataExtractionFailed(f"exiftool: {e}") from e

        if not data_list:
            return False
        tags = data_list[0]

        if not block.get('date_taken'):
            for field in ("CreateDate", "CreationDate", "DateTimeOriginal", "MediaCreateDate"):
                dt = self._parse_flexible_date(str(tags[field])) if tags.get(field) else None
                if dt:
                    block['date_taken'] = dt.isoformat()
                    break
        if not block.get('duration') and tags.get("Duration"):
            try:
                block['duration'] = float(tags["Duration"])
            except (TypeError, ValueError):
                pass
        if include_device_info:
            for key, field in (('camera_make', 'Make'), ('camera_model', 'Model'), ('camera_serial', 'SerialNumber')):
                if tags.get(field) and key not in block:
                    block[key] = str(tags[field])
        return True

    # --- Documents ---

    def _document(self, path: Path, document: Dict[str, Any]) -> bool:
        if path.suffix.lower() != '.pdf':
            return False
        try:
            with path.open('rb') as f:
                head = f.read(1024 * 1024)
        except OSError as e:
            raise MetadataExtractionFailed(str(e)) from e
        if head.startswith(b'%PDF-'):
            document['pdf_version'] = head[5:8].decode('ascii', 'replace')
        pages = head.count(b'/Type /Page') - head.count(b'/Type /Pages')
        if pages > 0:
            document['page_count'] = pages
        return bool(document)

    # --- Date helpers ---

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        """Parses standard EXIF date strings from exifread."""
        for tag in config.DATE_TAGS:
            if tag in tags:
                try:
                    # EXIF format is usually "YYYY:MM:DD HH:MM:SS"
                    dt_str = str(tags[tag]).replace(':', '-', 2)
                    return datetime.strptime(dt_str, "%Y-%m-%d %H:%M:%S")
                except ValueError:
                    continue
        return None

    def _parse_flexible_date(self, dt_str: str) -> Optional[datetime]:
        """
        Handles ISO, UTC-suffixed and EXIF-style dates.
        Returns a naive datetime object.
        """
        if not dt_str:
            return None

        clean = str(dt_str).replace("UTC", "").strip()

        try:
            return datetime.fromisoformat(clean)
        except ValueError:
            pass

        try:
            clean_exif = clean.replace(":", "-", 2)
            if "." in clean_exif:
                clean_exif = clean_exif.split(".")[0]
            return datetime.strptime(clean_exif, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            pass

        return None


def camera_serial(metadata: Optional[ExtractedMetadata]) -> Optional[str]:
    if metadata is None:
        return None
    return metadata.photo.get('camera_serial') or metadata.video.get('camera_serial')


def extraction_warnings(metadata: ExtractedMetadata) -> List[str]:
    return [f"metadata: {e}" for e in metadata.errors]
