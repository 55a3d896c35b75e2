from PIL import Image

from media_ingest.metadata.extract import MetadataExtractor, camera_serial, extraction_warnings
from media_ingest.models import ExtractedMetadata


def _jpeg_with_exif(path, make="Canon", model="Canon EOS R5"):
    exif = Image.Exif()
    exif[0x010F] = make
    exif[0x0110] = model
    Image.new("RGB", (64, 48), (200, 10, 10)).save(path, "JPEG", exif=exif)
    return path


def test_jpeg_exif_and_dimensions(tmp_path):
    path = _jpeg_with_exif(tmp_path / "IMG_0001.JPG")
    meta = MetadataExtractor().extract(path)

    assert meta.photo["camera_make"] == "Canon"
    assert meta.photo["camera_model"] == "Canon EOS R5"
    assert (meta.photo["width"], meta.photo["height"]) == (64, 48)
    assert "exifread" in meta.sources
    assert meta.errors == []


def test_corrupt_image_reports_error_without_raising(tmp_path):
    path = tmp_path / "broken.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 10)

    meta = MetadataExtractor().extract(path)
    assert any(e.startswith("pillow:") for e in meta.errors)
    assert any(w.startswith("metadata: pillow:") for w in extraction_warnings(meta))


def test_raw_without_decoder_is_not_an_error(tmp_path):
    path = tmp_path / "IMG_0001.CR3"
    path.write_bytes(b"\x00\x00\x00\x18ftypcrx " + b"\x00" * 64)
    meta = MetadataExtractor().extract(path)
    assert not any(e.startswith("pillow:") for e in meta.errors)


def test_document_and_other_categories(tmp_path):
    other = tmp_path / "notes.bin"
    other.write_bytes(b"\x00\x01")
    meta = MetadataExtractor().extract(other)
    assert meta.sources == [] and meta.errors == []


def test_camera_serial_lookup():
    assert camera_serial(None) is None
    assert camera_serial(ExtractedMetadata(photo={"camera_serial": "0320"})) == "0320"
    assert camera_serial(ExtractedMetadata(video={"camera_serial": "GP-77"})) == "GP-77"
    assert camera_serial(ExtractedMetadata()) is None
