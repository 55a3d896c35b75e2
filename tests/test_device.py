import threading

import pytest

from media_ingest.device.classifier import (
    SourceClassifier, assemble_chain, create_device_fingerprint, get_source_type,
    infer_media_type, normalize_serial,
)
from media_ingest.device.linux import LinuxDeviceProbe, parse_udev_properties
from media_ingest.device.vendors import matches_vendor, vendor_name
from media_ingest.exceptions import DeviceDetectionFailed
from media_ingest.models import MediaType, MountedVolume, PhysicalMedia, SourceType, UsbDevice

GB = 1024 ** 3


def _volume(**kw):
    defaults = dict(mount_point="/media/EOS_DIGITAL", device="sdb1", device_path="/dev/sdb1",
                    volume_name="EOS_DIGITAL", is_removable=True, is_external=True)
    defaults.update(kw)
    return MountedVolume(**defaults)


class FakeProbe:
    def __init__(self, volume, usb=None, media=None):
        self.volume, self.usb, self.media = volume, usb, media
        self.calls = 0
        self._lock = threading.Lock()

    def volume_info(self, mount_point):
        with self._lock:
            self.calls += 1
        return self.volume

    def usb_device_for(self, volume):
        return self.usb

    def media_info(self, volume):
        return self.media


def test_normalize_serial_drops_placeholders():
    assert normalize_serial(None) is None
    assert normalize_serial("  ") is None
    assert normalize_serial("000000000000") is None
    assert normalize_serial("N/A") is None
    assert normalize_serial(" 0x1234ABCD ") == "0x1234ABCD"


def test_infer_media_type():
    assert infer_media_type(0, "Samsung 980 NVMe") == MediaType.NVME
    assert infer_media_type(0, "CFexpress Type B") == MediaType.CFEXPRESS
    assert infer_media_type(64 * GB, "SanDisk CF card") == MediaType.CF
    assert infer_media_type(64 * GB) == MediaType.SD
    assert infer_media_type(1000 * GB) == MediaType.SSD
    assert infer_media_type(8000 * GB) == MediaType.HDD


def test_vendor_lookup():
    assert vendor_name("04a9") == "Canon"
    assert vendor_name("0x04A9") == "Canon"
    assert vendor_name("04a9", "Canon Inc.") == "Canon Inc."
    assert matches_vendor("SanDisk Corp.", {"SanDisk"})
    assert not matches_vendor("SanDiskette", {"SanDisk"})


def test_card_reader_chain_is_memory_card():
    usb = UsbDevice(vendor_id="0x0781", product_id="0xb2b3", serial="READER01",
                    device_name="SD Card Reader", manufacturer="SanDisk")
    media = PhysicalMedia(type=MediaType.SD, capacity=64 * GB, serial="9f3e2a10")
    chain = assemble_chain(_volume(), usb, media)

    assert chain.card_reader is not None
    assert chain.card_reader.serial == "READER01"
    assert chain.is_memory_card
    assert chain.connection_type == "usb"
    assert get_source_type(chain) == SourceType.MEMORY_CARD
    assert create_device_fingerprint(chain) == \
        "usb:0x0781:0xb2b3|usb-sn:READER01|reader-sn:READER01|media-sn:9f3e2a10"


def test_source_type_precedence():
    camera = UsbDevice(vendor_id="0x04a9", product_id="0x32d2", device_name="Canon Digital Camera",
                       manufacturer="Canon")
    phone = UsbDevice(vendor_id="0x05ac", product_id="0x12a8", device_name="iPhone", manufacturer="Apple")

    assert get_source_type(None) == SourceType.UNKNOWN
    assert get_source_type(assemble_chain(_volume(), camera)) == SourceType.CAMERA_DIRECT
    assert get_source_type(assemble_chain(_volume(), phone)) == SourceType.PHONE_DIRECT
    # network beats everything else
    assert get_source_type(assemble_chain(_volume(is_network=True), camera)) == SourceType.NETWORK_SHARE
    assert get_source_type(assemble_chain(_volume(mount_point="/media/Dropbox", is_removable=False)
                                          )) == SourceType.CLOUD_SYNC
    assert get_source_type(assemble_chain(_volume(mount_point="/", is_removable=False, is_external=False))
                           ) == SourceType.LOCAL_DISK


def test_fingerprint_includes_camera_serial_and_unknown():
    chain = assemble_chain(_volume(), camera_body_serial="032021001234")
    assert create_device_fingerprint(chain) == "camera:032021001234"
    assert create_device_fingerprint(assemble_chain(_volume())) == "unknown"
    assert create_device_fingerprint(None) == "unknown"


def test_classifier_probes_each_mount_once(tmp_path):
    probe = FakeProbe(_volume(mount_point=str(tmp_path)),
                      media=PhysicalMedia(type=MediaType.SD, capacity=32 * GB))
    classifier = SourceClassifier(probe)
    files = [tmp_path / f"IMG_{i:04d}.JPG" for i in range(8)]

    threads = [threading.Thread(target=classifier.describe, args=(f,)) for f in files]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    info = classifier.describe(files[0])

    assert probe.calls == 1
    assert info.source_type == SourceType.MEMORY_CARD
    assert info.chain is classifier.classify(files[1])


def test_classifier_failure_modes(tmp_path):
    assert SourceClassifier(FakeProbe(None)).classify(tmp_path / "a.jpg") is None
    with pytest.raises(DeviceDetectionFailed):
        SourceClassifier(FakeProbe(None)).detect(tmp_path / "a.jpg")

    info = SourceClassifier(FakeProbe(None)).describe(tmp_path / "a.jpg")
    assert info.source_type == SourceType.UNKNOWN
    assert info.fingerprint == "unknown"


UDEV_OUTPUT = """P: /devices/pci0000:00/usb2/2-1/2-1:1.0/host6/target6:0:0/6:0:0:0/block/sdb/sdb1
N: sdb1
E: ID_VENDOR=SanDisk
E: ID_VENDOR_ID=0781
E: ID_MODEL=SD_Card_Reader
E: ID_MODEL_ID=b2b3
E: ID_SERIAL_SHORT=000000000000
E: ID_PATH=pci-0000:00:14.0-usb-0:1:1.0-scsi-0:0:0:0
"""


def test_parse_udev_properties():
    props = parse_udev_properties(UDEV_OUTPUT)
    assert props["ID_VENDOR_ID"] == "0781"
    assert props["ID_MODEL"] == "SD_Card_Reader"
    assert "N" not in props


def test_linux_probe_with_fake_tools(tmp_path):
    sys_root = tmp_path / "sys"
    (sys_root / "block" / "sdb" / "device").mkdir(parents=True)
    (sys_root / "block" / "sdb" / "removable").write_text("1\n")
    (sys_root / "block" / "sdb" / "device" / "cid").write_text("035344534436344780" + "9f3e2a10" + "0134d5\n")
    (sys_root / "block" / "sdb" / "device" / "model").write_text("SD64G\n")

    outputs = {
        "findmnt": "/dev/sdb1 exfat\n",
        "udevadm": UDEV_OUTPUT,
    }

    def run(cmd):
        if cmd[0] == "blkid":
            return "EOS_DIGITAL\n" if "LABEL" in cmd else "3A61-1D05\n"
        return outputs.get(cmd[0])

    probe = LinuxDeviceProbe(run=run, sys_root=sys_root)
    volume = probe.volume_info("/media/user/EOS_DIGITAL")
    assert volume.device == "sdb1"
    assert volume.volume_name == "EOS_DIGITAL"
    assert volume.volume_uuid == "3A61-1D05"
    assert volume.filesystem_type == "exfat"
    assert volume.is_removable and not volume.is_network

    usb = probe.usb_device_for(volume)
    assert usb.vendor_id == "0x0781"
    assert usb.manufacturer == "SanDisk"
    assert usb.device_name == "SD Card Reader"
    assert usb.serial is None

    media = probe.media_info(volume)
    assert media.serial == "9f3e2a10"
    assert media.model == "SD64G"

    chain = assemble_chain(volume, usb, media)
    assert get_source_type(chain) == SourceType.MEMORY_CARD


def test_linux_probe_network_mount(tmp_path):
    probe = LinuxDeviceProbe(run=lambda cmd: "//nas/photos cifs\n" if cmd[0] == "findmnt" else None,
                             sys_root=tmp_path)
    volume = probe.volume_info("/mnt/photos")
    assert volume.is_network
    assert probe.usb_device_for(volume) is None
    assert probe.media_info(volume) is None
    assert get_source_type(assemble_chain(volume)) == SourceType.NETWORK_SHARE


def test_mac_probe_with_fake_tools():
    import plistlib
    from media_ingest.device.macos import MacDeviceProbe

    volume_plist = plistlib.dumps({
        "MountPoint": "/Volumes/EOS_DIGITAL", "DeviceIdentifier": "disk4s1", "DeviceNode": "/dev/disk4s1",
        "VolumeName": "EOS_DIGITAL", "VolumeUUID": "3A61-1D05", "FilesystemType": "exfat",
        "RemovableMedia": True, "Internal": False, "TotalSize": 64 * GB, "FreeSpace": GB,
    }).decode()
    media_plist = plistlib.dumps({"MediaName": "SanDisk Extreme Pro"}).decode()
    ioreg = '''
      "idVendor" = 1193
      "idProduct" = 12994
      "USB Product Name" = "Canon Digital Camera"
      "USB Vendor Name" = "Canon"
      "USB Serial Number" = "1A2B3C"
    '''

    def run(cmd):
        if cmd[0] == "diskutil":
            return media_plist if cmd[-1] == "disk4s1" else volume_plist
        if cmd[0] == "ioreg":
            return ioreg
        return None

    probe = MacDeviceProbe(run=run)
    volume = probe.volume_info("/Volumes/EOS_DIGITAL")
    assert volume.is_removable and volume.is_external
    assert not volume.is_network

    usb = probe.usb_device_for(volume)
    assert usb.vendor_id == "0x04a9"
    assert usb.manufacturer == "Canon"

    media = probe.media_info(volume)
    assert media.type == MediaType.SD
    assert media.manufacturer == "SanDisk"

    assert get_source_type(assemble_chain(volume, usb, media)) == SourceType.CAMERA_DIRECT
    assert MacDeviceProbe(run=lambda cmd: None).volume_info("/Volumes/X") is None
