"""
File type detection: category and MIME by extension, refined by a magic-byte sniff.
"""
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Set, Tuple

from .. import config

_TIFF_FAMILY = {'.tif', '.tiff'} | config.RAW_EXTS
_ISO_VIDEO = {'.mp4', '.m4v', '.mov', '.3gp', '.m4a'}
_ZIP_FAMILY = {'.zip', '.docx', '.xlsx', '.pptx', '.odt'}

# Extension -> MIME for types the mimetypes module does not know
_EXTRA_MIME = {
    '.heic': 'image/heic', '.heif': 'image/heif', '.hif': 'image/heif',
    '.dng': 'image/x-adobe-dng', '.cr2': 'image/x-canon-cr2', '.cr3': 'image/x-canon-cr3',
    '.nef': 'image/x-nikon-nef', '.arw': 'image/x-sony-arw', '.raf': 'image/x-fujifilm-raf',
    '.orf': 'image/x-olympus-orf', '.rw2': 'image/x-panasonic-rw2', '.pef': 'image/x-pentax-pef',
    '.srw': 'image/x-samsung-srw', '.x3f': 'image/x-sigma-x3f', '.raw': 'image/x-raw',
    '.mts': 'video/mp2t', '.m2ts': 'video/mp2t', '.mxf': 'application/mxf',
    '.mkv': 'video/x-matroska', '.webm': 'video/webm',
    '.flac': 'audio/flac', '.m4a': 'audio/mp4', '.opus': 'audio/opus',
    '.xmp': 'application/rdf+xml', '.srt': 'application/x-subrip',
    '.psd': 'image/vnd.adobe.photoshop',
}

_HEIF_BRANDS = {b'heic', b'heix', b'hevc', b'hevx', b'mif1', b'msf1', b'heim', b'heis'}


@dataclass
class FileTypeInfo:
    category: str
    mime_type: str
    extension: str
    detected_mime: Optional[str] = None
    extension_mismatch: bool = False


def mime_for_extension(ext: str) -> str:
    ext = ext.lower()
    if ext in _EXTRA_MIME:
        return _EXTRA_MIME[ext]
    guessed, _ = mimetypes.guess_type(f"file{ext}")
    return guessed or 'application/octet-stream'


def category_for_extension(ext: str) -> str:
    return config.EXT_TO_CATEGORY.get(ext.lower(), 'other')


def sniff(header: bytes) -> Optional[Tuple[str, str, Set[str]]]:
    """
    Magic-byte match on the first bytes of a file.
    Returns (mime, category, extensions that legitimately carry it) or None.
    """
    if header.startswith(b'\xff\xd8\xff'):
        return 'image/jpeg', 'image', config.JPEG_EXTS | {'.thm'}
    if header.startswith(b'\x89PNG\r\n\x1a\n'):
        return 'image/png', 'image', {'.png'}
    if header[:6] in (b'GIF87a', b'GIF89a'):
        return 'image/gif', 'image', {'.gif'}
    if header.startswith(b'FUJIFILMCCD-RAW'):
        return 'image/x-fujifilm-raf', 'image', {'.raf'}
    if header[:4] in (b'IIRO', b'IIRS', b'IIU\x00'):
        return 'image/x-raw', 'image', config.RAW_EXTS
    if header[:4] in (b'II*\x00', b'MM\x00*'):
        return 'image/tiff', 'image', _TIFF_FAMILY
    if header.startswith(b'8BPS'):
        return 'image/vnd.adobe.photoshop', 'image', {'.psd', '.psb'}
    if header[:4] == b'RIFF' and len(header) >= 12:
        kind = header[8:12]
        if kind == b'WEBP':
            return 'image/webp', 'image', {'.webp'}
        if kind == b'WAVE':
            return 'audio/wav', 'audio', {'.wav'}
        if kind == b'AVI ':
            return 'video/x-msvideo', 'video', {'.avi'}
    if len(header) >= 12 and header[4:8] == b'ftyp':
        brand = header[8:12]
        if brand in _HEIF_BRANDS:
            return 'image/heic', 'image', config.HEIC_EXTS
        if brand == b'crx ':
            return 'image/x-canon-cr3', 'image', {'.cr3'}
        if brand == b'qt  ':
            return 'video/quicktime', 'video', _ISO_VIDEO
        if brand.startswith(b'M4A'):
            return 'audio/mp4', 'audio', {'.m4a', '.mp4'}
        return 'video/mp4', 'video', _ISO_VIDEO
    if header.startswith(b'\x1a\x45\xdf\xa3'):
        return 'video/x-matroska', 'video', {'.mkv', '.webm'}
    if header.startswith(b'%PDF'):
        return 'application/pdf', 'document', {'.pdf'}
    if header.startswith(b'fLaC'):
        return 'audio/flac', 'audio', {'.flac'}
    if header.startswith(b'OggS'):
        return 'audio/ogg', 'audio', {'.ogg', '.opus'}
    if header.startswith(b'ID3'):
        return 'audio/mpeg', 'audio', {'.mp3'}
    if header.startswith(b'PK\x03\x04'):
        return 'application/zip', 'archive', _ZIP_FAMILY
    if header.startswith(b'7z\xbc\xaf\x27\x1c'):
        return 'application/x-7z-compressed', 'archive', {'.7z'}
    if header.startswith(b'\x1f\x8b'):
        return 'application/gzip', 'archive', {'.gz', '.tgz'}
    return None


def detect_file_type(path: Path) -> FileTypeInfo:
    """
    Extension decides the category; a recognised signature that no file with
    this extension would carry sets extension_mismatch.
    """
    path = Path(path)
    ext = path.suffix.lower()
    info = FileTypeInfo(
        category=category_for_extension(ext),
        mime_type=mime_for_extension(ext),
        extension=ext,
    )

    try:
        with open(path, 'rb') as f:
            header = f.read(32)
    except OSError as e:
        logging.debug(f"Cannot sniff {path}: {e}")
        return info

    hit = sniff(header)
    if hit is None:
        return info

    mime, category, allowed = hit
    info.detected_mime = mime
    if ext not in allowed:
        info.extension_mismatch = True
        if info.category == 'other':
            info.category = category
            info.mime_type = mime
    elif not info.mime_type or info.mime_type == 'application/octet-stream':
        info.mime_type = mime
    return info
