"""
Source device classification.

A DeviceProbe answers platform questions (which mount point, which USB
device, which media); SourceClassifier turns those answers into a cached
DeviceChain, a SourceType and a fingerprint.
"""
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from .. import config
from ..exceptions import DeviceDetectionFailed
from ..models import (
    CardReader, DeviceChain, MediaType, MountedVolume, PhysicalMedia,
    SourceInfo, SourceType, UsbDevice,
)
from . import vendors

_PLACEHOLDER_SERIALS = {'0', '000000000000', 'na', 'n/a', 'none', 'unknown'}
_GB = 1024 * 1024 * 1024


class DeviceProbe(Protocol):
    def volume_info(self, mount_point: str) -> Optional[MountedVolume]: ...

    def usb_device_for(self, volume: MountedVolume) -> Optional[UsbDevice]: ...

    def media_info(self, volume: MountedVolume) -> Optional[PhysicalMedia]: ...


def normalize_serial(serial: Optional[str]) -> Optional[str]:
    if not serial:
        return None
    s = serial.strip()
    if not s or s.lower() in _PLACEHOLDER_SERIALS:
        return None
    return s


def infer_media_type(capacity: int, device_name: Optional[str] = None) -> MediaType:
    """Name keywords win; otherwise guess from capacity."""
    name = f" {(device_name or '').lower()} "
    if 'nvme' in name or 'pcie' in name:
        return MediaType.NVME
    if 'ssd' in name or 'solid state' in name:
        return MediaType.SSD
    if 'hdd' in name or 'hard drive' in name:
        return MediaType.HDD
    if 'cfexpress' in name or 'cfx' in name:
        return MediaType.CFEXPRESS
    if 'compactflash' in name or ' cf ' in name:
        return MediaType.CF

    gb = capacity / _GB
    if gb <= 512:
        return MediaType.SD
    if gb <= 4096:
        return MediaType.SSD
    return MediaType.HDD


def find_mount_point(path: Path) -> str:
    """Nearest ancestor (or self) that is a mount point."""
    p = os.path.realpath(str(path))
    while not os.path.ismount(p):
        parent = os.path.dirname(p)
        if parent == p:
            break
        p = parent
    return p


def assemble_chain(volume: MountedVolume,
                   usb: Optional[UsbDevice] = None,
                   media: Optional[PhysicalMedia] = None,
                   camera_body_serial: Optional[str] = None) -> DeviceChain:
    """Derives card-reader / camera / phone flags from the USB identity."""
    card_reader = None
    is_camera = is_phone = False
    connection = "network" if volume.is_network else None

    if usb is not None:
        connection = "usb"
        manufacturer = usb.manufacturer or ''
        name = (usb.device_name or '').lower()

        if vendors.matches_vendor(manufacturer, vendors.CARD_READER_VENDORS) or \
                any(k in name for k in vendors.CARD_READER_KEYWORDS):
            card_reader = CardReader(
                vendor=manufacturer or 'Unknown',
                model=usb.device_name,
                serial=normalize_serial(usb.serial),
                port=usb.bus_location or '',
            )

        is_camera = vendors.matches_vendor(manufacturer, vendors.CAMERA_MANUFACTURERS) and \
            any(k in name for k in vendors.CAMERA_KEYWORDS)
        is_phone = vendors.matches_vendor(manufacturer, vendors.PHONE_MANUFACTURERS) or \
            any(k in name for k in vendors.PHONE_KEYWORDS)

    is_memory_card = card_reader is not None or (
        media is not None and media.type in (MediaType.SD, MediaType.CF, MediaType.CFEXPRESS)
        and volume.is_removable
    )

    return DeviceChain(
        volume=volume,
        usb=usb,
        card_reader=card_reader,
        media=media,
        is_memory_card=is_memory_card,
        is_camera_direct=is_camera,
        is_phone_direct=is_phone,
        connection_type=connection,
        camera_body_serial=normalize_serial(camera_body_serial),
    )


def get_source_type(chain: Optional[DeviceChain]) -> SourceType:
    """
    Precedence: network > camera > phone > memory card > cloud-sync folder
    name > local disk. Cloud-sync detection is a folder-name heuristic only.
    """
    if chain is None:
        return SourceType.UNKNOWN
    if chain.volume.is_network:
        return SourceType.NETWORK_SHARE
    if chain.is_camera_direct:
        return SourceType.CAMERA_DIRECT
    if chain.is_phone_direct:
        return SourceType.PHONE_DIRECT
    if chain.is_memory_card:
        return SourceType.MEMORY_CARD
    if chain.volume.is_removable or chain.volume.is_external:
        mount = chain.volume.mount_point.lower()
        if any(marker in mount for marker in config.CLOUD_SYNC_MARKERS):
            return SourceType.CLOUD_SYNC
        return SourceType.LOCAL_DISK
    return SourceType.LOCAL_DISK


def create_device_fingerprint(chain: Optional[DeviceChain]) -> str:
    """
    Joins the identifiers that are present, in a fixed order. Fingerprints
    built from different identifier subsets are a grouping key only, not
    proof of the same device.
    """
    if chain is None:
        return "unknown"
    parts = []
    if chain.usb and chain.usb.vendor_id and chain.usb.product_id:
        parts.append(f"usb:{chain.usb.vendor_id}:{chain.usb.product_id}")
    if chain.usb and chain.usb.serial:
        parts.append(f"usb-sn:{chain.usb.serial}")
    if chain.card_reader and chain.card_reader.serial:
        parts.append(f"reader-sn:{chain.card_reader.serial}")
    if chain.media and chain.media.serial:
        parts.append(f"media-sn:{chain.media.serial}")
    if chain.camera_body_serial:
        parts.append(f"camera:{chain.camera_body_serial}")
    return "|".join(parts) or "unknown"


def default_probe() -> Optional[DeviceProbe]:
    if sys.platform.startswith("linux"):
        from .linux import LinuxDeviceProbe
        return LinuxDeviceProbe()
    if sys.platform == "darwin":
        from .macos import MacDeviceProbe
        return MacDeviceProbe()
    return None


class SourceClassifier:
    """
    Resolves the device chain behind a path. One probe per mount point per
    classifier instance; concurrent callers share the cached result.
    """

    def __init__(self, probe: Optional[DeviceProbe] = None):
        self.probe = probe if probe is not None else default_probe()
        self._chains: Dict[str, Optional[DeviceChain]] = {}
        self._mounts: Dict[str, str] = {}
        self._lock = threading.Lock()

    def classify(self, file_path: Path) -> Optional[DeviceChain]:
        """Returns None when the device cannot be determined."""
        try:
            return self.detect(file_path)
        except DeviceDetectionFailed as e:
            logging.warning(f"Device detection failed for {file_path}: {e}")
            return None

    def detect(self, file_path: Path) -> DeviceChain:
        """Like classify() but raises DeviceDetectionFailed."""
        if self.probe is None:
            raise DeviceDetectionFailed(f"No device probe for platform {sys.platform}")

        mount = self._mount_for(Path(file_path))
        with self._lock:
            if mount not in self._chains:
                self._chains[mount] = self._probe_chain(mount)
            chain = self._chains[mount]

        if chain is None:
            raise DeviceDetectionFailed(f"Could not detect device chain for {mount}")
        return chain

    def describe(self, file_path: Path) -> SourceInfo:
        chain = self.classify(file_path)
        return SourceInfo(
            source_type=get_source_type(chain),
            fingerprint=create_device_fingerprint(chain),
            chain=chain,
        )

    def clear_cache(self) -> None:
        with self._lock:
            self._chains.clear()
            self._mounts.clear()

    def _mount_for(self, path: Path) -> str:
        key = str(path.parent)
        with self._lock:
            cached = self._mounts.get(key)
        if cached is not None:
            return cached
        mount = find_mount_point(path)
        with self._lock:
            self._mounts[key] = mount
        return mount

    def _probe_chain(self, mount: str) -> Optional[DeviceChain]:
        try:
            volume = self.probe.volume_info(mount)
            if volume is None:
                return None
            usb = self.probe.usb_device_for(volume)
            media = self.probe.media_info(volume)
        except OSError as e:
            logging.warning(f"Device probe error on {mount}: {e}")
            return None
        chain = assemble_chain(volume, usb, media)
        logging.debug(f"Device chain for {mount}: {get_source_type(chain).value} {create_device_fingerprint(chain)}")
        return chain
