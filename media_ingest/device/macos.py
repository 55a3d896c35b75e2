"""
macOS device probing via diskutil and ioreg.
"""
import plistlib
import re
from typing import Any, Dict, Optional

from ..models import MountedVolume, PhysicalMedia, UsbDevice
from .classifier import infer_media_type, normalize_serial
from .linux import Runner, run_command
from .vendors import vendor_name

_NETWORK_PROTOCOLS = {'AFP', 'SMB', 'NFS'}


def _ioreg_value(output: str, key: str) -> Optional[str]:
    m = re.search(rf'"{re.escape(key)}"\s*=\s*"?([^"\n]+)"?', output)
    return m.group(1).strip() if m else None


def _hex_id(value: str) -> str:
    try:
        return f"0x{int(value):04x}"
    except ValueError:
        return value if value.startswith("0x") else f"0x{value}"


class MacDeviceProbe:
    def __init__(self, run: Runner = run_command):
        self.run = run

    def _diskutil(self, target: str) -> Dict[str, Any]:
        out = self.run(["diskutil", "info", "-plist", target])
        if not out:
            return {}
        try:
            return plistlib.loads(out.encode("utf-8"))
        except (plistlib.InvalidFileException, ValueError):
            return {}

    def volume_info(self, mount_point: str) -> Optional[MountedVolume]:
        info = self._diskutil(mount_point)
        if not info.get("MountPoint"):
            return None
        return MountedVolume(
            mount_point=info["MountPoint"],
            device=info.get("DeviceIdentifier", ""),
            device_path=info.get("DeviceNode", ""),
            volume_name=info.get("VolumeName") or mount_point.rstrip("/").split("/")[-1],
            volume_uuid=info.get("VolumeUUID"),
            filesystem_type=info.get("FilesystemType", "unknown"),
            is_removable=bool(info.get("RemovableMedia") or info.get("RemovableMediaOrExternalDevice")),
            is_external=info.get("Internal") is False,
            is_network=info.get("Protocol") in _NETWORK_PROTOCOLS,
            total_size=int(info.get("TotalSize") or 0),
            free_space=int(info.get("FreeSpace") or 0),
        )

    def usb_device_for(self, volume: MountedVolume) -> Optional[UsbDevice]:
        if not volume.device:
            return None
        base = re.sub(r's\d+$', '', volume.device)
        out = self.run(["ioreg", "-r", "-c", "IOMedia", "-n", base, "-d", "10"])
        if not out:
            return None
        vid = _ioreg_value(out, "idVendor")
        pid = _ioreg_value(out, "idProduct")
        if not vid or not pid:
            return None
        vendor_id = _hex_id(vid)
        return UsbDevice(
            vendor_id=vendor_id,
            product_id=_hex_id(pid),
            serial=normalize_serial(_ioreg_value(out, "USB Serial Number") or _ioreg_value(out, "kUSBSerialNumberString")),
            device_path=volume.device_path,
            device_name=_ioreg_value(out, "USB Product Name") or _ioreg_value(out, "Product Name") or "Unknown USB Device",
            bus_location=_ioreg_value(out, "locationID"),
            manufacturer=vendor_name(vendor_id, _ioreg_value(out, "USB Vendor Name")) or None,
        )

    def media_info(self, volume: MountedVolume) -> Optional[PhysicalMedia]:
        if volume.is_network or not volume.device:
            return None
        info = self._diskutil(volume.device)
        media_name = info.get("MediaName")
        return PhysicalMedia(
            type=infer_media_type(volume.total_size, media_name),
            capacity=volume.total_size,
            manufacturer=media_name.split(" ")[0] if media_name else None,
            model=media_name,
            volume_name=volume.volume_name,
            volume_uuid=volume.volume_uuid,
            filesystem_type=volume.filesystem_type,
        )
