from pathlib import Path

from media_ingest.metadata.related import RelatedFileDetector, find_companions
from media_ingest.models import RelationType

D = Path("/card/DCIM/100APPLE")


def test_raw_jpeg_pair_primary_is_raw():
    det = RelatedFileDetector()
    files = [D / "IMG_0001.CR2", D / "IMG_0001.JPG", D / "IMG_0002.JPG"]
    [group] = det.find_groups(files)

    assert group.type == RelationType.RAW_JPEG_PAIR
    assert group.primary_file == D / "IMG_0001.CR2"
    assert det.is_primary(D / "IMG_0001.CR2")
    assert not det.is_primary(D / "IMG_0001.JPG")
    assert det.is_primary(D / "IMG_0002.JPG")
    assert not det.should_hide(D / "IMG_0001.JPG")


def test_live_photo_video_hidden():
    det = RelatedFileDetector()
    [group] = det.find_groups([D / "IMG_4000.HEIC", D / "IMG_4000.MOV"])

    assert group.type == RelationType.LIVE_PHOTO
    assert group.primary_file == D / "IMG_4000.HEIC"
    assert det.should_hide(D / "IMG_4000.MOV")
    assert det.primary_for(D / "IMG_4000.MOV") == D / "IMG_4000.HEIC"


def test_raw_sidecar_group():
    det = RelatedFileDetector()
    [group] = det.find_groups([D / "DSC_1000.NEF", D / "DSC_1000.xmp"])
    assert group.type == RelationType.RAW_SIDECAR
    assert group.related_files == [D / "DSC_1000.xmp"]


def test_burst_needs_three_close_frames():
    det = RelatedFileDetector()
    burst = [D / f"BURST20240101_{i}.JPG" for i in (1, 2, 4)]
    loose = [D / "PXL_1.JPG", D / "PXL_9.JPG", D / "PXL_20.JPG"]
    groups = det.find_groups(burst + loose)

    assert len(groups) == 1
    assert groups[0].type == RelationType.BURST_SEQUENCE
    assert groups[0].primary_file == burst[0]
    assert groups[0].related_files == burst[1:]


def test_sdr_copy_hidden():
    det = RelatedFileDetector()
    [group] = det.find_groups([D / "IMG_5000.HEIC", D / "IMG_5000_SDR.HEIC"])
    assert group.type == RelationType.SDR_HDR_PAIR
    assert group.primary_file == D / "IMG_5000.HEIC"
    assert det.should_hide(D / "IMG_5000_SDR.HEIC")


def test_file_belongs_to_one_group():
    det = RelatedFileDetector()
    files = [D / "IMG_0001.CR2", D / "IMG_0001.JPG", D / "IMG_0001.xmp"]
    groups = det.find_groups(files)
    seen = [f for g in groups for f in g.all_files]
    assert len(seen) == len(set(seen))


def test_companions_attach_to_raw():
    files = [D / "IMG_0001.CR2", D / "IMG_0001.JPG", D / "IMG_0001.XMP", D / "C0001.MP4",
             D / "C0001.LRF", D / "orphan.thm"]
    companions = find_companions(files)
    assert companions == {
        D / "IMG_0001.CR2": [D / "IMG_0001.XMP"],
        D / "C0001.MP4": [D / "C0001.LRF"],
    }
