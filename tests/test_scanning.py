import os

import pytest

from media_ingest.scanning.filesystem import SourceScanner, load_ignore_patterns
from media_ingest.scanning.filetype import category_for_extension, detect_file_type, mime_for_extension, sniff


def _touch(path, data=b"x"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def _rel(result, root):
    return [p.relative_to(root).as_posix() for p in result.files]


def test_scan_skips_junk_and_dotfiles(card):
    _touch(card / ".DS_Store")
    _touch(card / "DCIM" / "100CANON" / "._IMG_0001.JPG")
    _touch(card / "Thumbs.db")
    _touch(card / ".hidden" / "secret.jpg")

    result = SourceScanner().scan(card)

    assert _rel(result, card) == [
        "DCIM/100CANON/IMG_0001.CR2",
        "DCIM/100CANON/IMG_0001.JPG",
        "DCIM/100CANON/IMG_0002.JPG",
        "DCIM/100CANON/MVI_0003.MP4",
    ]
    assert result.total_bytes == sum(p.stat().st_size for p in result.files)
    assert result.skipped == 4


def test_include_hidden(card):
    _touch(card / ".hidden" / "secret.jpg")
    result = SourceScanner(include_hidden=True).scan(card)
    assert ".hidden/secret.jpg" in _rel(result, card)


def test_ingestignore_and_explicit_excludes(card):
    (card / ".ingestignore").write_text("# previews\n*.MP4\n\nMISC/\n")
    _touch(card / "MISC" / "note.txt")

    assert load_ignore_patterns(card) == ["*.MP4", "MISC/"]
    assert _rel(SourceScanner().scan(card), card) == [
        "DCIM/100CANON/IMG_0001.CR2",
        "DCIM/100CANON/IMG_0001.JPG",
        "DCIM/100CANON/IMG_0002.JPG",
    ]

    # explicit patterns replace the ignore file
    rels = _rel(SourceScanner(exclude_patterns=["*.CR2"]).scan(card), card)
    assert "DCIM/100CANON/MVI_0003.MP4" in rels
    assert "MISC/note.txt" in rels
    assert "DCIM/100CANON/IMG_0001.CR2" not in rels


def test_symlinks_not_followed(card, tmp_path):
    outside = _touch(tmp_path / "outside" / "elsewhere.jpg")
    os.symlink(outside, card / "link.jpg")
    os.symlink(tmp_path / "outside", card / "linkdir")

    rels = _rel(SourceScanner().scan(card), card)
    assert "link.jpg" not in rels
    assert not any(r.startswith("linkdir") for r in rels)


def test_destination_inside_source_is_skipped(card):
    dest = card / "imported"
    _touch(dest / "old.jpg")
    rels = _rel(SourceScanner(skip_dirs={dest}).scan(card), card)
    assert not any(r.startswith("imported/") for r in rels)


def test_extension_tables():
    assert category_for_extension(".CR3") == "image"
    assert category_for_extension(".mxf") == "video"
    assert category_for_extension(".xmp") == "sidecar"
    assert category_for_extension(".xyz") == "other"
    assert mime_for_extension(".heic") == "image/heic"
    assert mime_for_extension(".jpg") == "image/jpeg"
    assert mime_for_extension(".xyz") == "application/octet-stream"


@pytest.mark.parametrize("header,mime", [
    (b"\xff\xd8\xff\xe1", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\x00\x00\x00\x18ftypheic", "image/heic"),
    (b"\x00\x00\x00\x14ftypqt  ", "video/quicktime"),
    (b"RIFF\x00\x00\x00\x00WAVE", "audio/wav"),
    (b"%PDF-1.7", "application/pdf"),
])
def test_sniff(header, mime):
    assert sniff(header)[0] == mime


def test_detect_file_type(card, tmp_path):
    cr2 = detect_file_type(card / "DCIM" / "100CANON" / "IMG_0001.CR2")
    assert cr2.category == "image"
    assert not cr2.extension_mismatch

    mp4 = detect_file_type(card / "DCIM" / "100CANON" / "MVI_0003.MP4")
    assert mp4.category == "video"
    assert mp4.detected_mime == "video/mp4"
    assert not mp4.extension_mismatch

    renamed = _touch(tmp_path / "actually_png.jpg", b"\x89PNG\r\n\x1a\n" + b"\x00" * 20)
    info = detect_file_type(renamed)
    assert info.extension_mismatch
    assert info.category == "image"

    unknown = _touch(tmp_path / "blob.bin", b"\x89PNG\r\n\x1a\n")
    info = detect_file_type(unknown)
    assert info.category == "image"
    assert info.mime_type == "image/png"
