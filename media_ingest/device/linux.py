"""
Linux device probing via findmnt, blkid, udevadm and /sys.
"""
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .. import config
from ..models import MountedVolume, PhysicalMedia, UsbDevice
from .classifier import infer_media_type, normalize_serial
from .vendors import vendor_name

Runner = Callable[[List[str]], Optional[str]]


def run_command(cmd: List[str]) -> Optional[str]:
    """stdout of a successful command, None when the tool is missing or fails."""
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True,
                              timeout=config.DEVICE_PROBE_TIMEOUT_SEC, check=True)
    except (OSError, subprocess.SubprocessError) as e:
        logging.debug(f"{cmd[0]} failed: {e}")
        return None
    return proc.stdout


def parse_udev_properties(output: str) -> Dict[str, str]:
    props = {}
    for line in output.splitlines():
        if line.startswith("E: ") and "=" in line:
            key, _, value = line[3:].partition("=")
            props[key.strip()] = value.strip()
    return props


class LinuxDeviceProbe:
    def __init__(self, run: Runner = run_command, sys_root: Path = Path("/sys")):
        self.run = run
        self.sys_root = sys_root

    def volume_info(self, mount_point: str) -> Optional[MountedVolume]:
        out = self.run(["findmnt", "-n", "-o", "SOURCE,FSTYPE", mount_point])
        if not out or not out.strip():
            return None
        fields = out.strip().splitlines()[0].split()
        source = fields[0]
        fstype = fields[1] if len(fields) > 1 else "unknown"

        total = free = 0
        try:
            st = os.statvfs(mount_point)
            total = st.f_frsize * st.f_blocks
            free = st.f_frsize * st.f_bfree
        except OSError as e:
            logging.debug(f"statvfs failed for {mount_point}: {e}")

        device = os.path.basename(source.replace("/dev/", "")) if source.startswith("/dev/") else source
        is_network = fstype in config.NETWORK_FSTYPES or source.startswith("//")
        is_removable = self._is_removable(device) if not is_network else False

        volume_name = os.path.basename(mount_point.rstrip("/")) or mount_point
        volume_uuid = None
        if source.startswith("/dev/"):
            label = self.run(["blkid", "-o", "value", "-s", "LABEL", source])
            if label and label.strip():
                volume_name = label.strip()
            uuid = self.run(["blkid", "-o", "value", "-s", "UUID", source])
            if uuid and uuid.strip():
                volume_uuid = uuid.strip()

        return MountedVolume(
            mount_point=mount_point,
            device=device,
            device_path=source,
            volume_name=volume_name,
            volume_uuid=volume_uuid,
            filesystem_type=fstype,
            is_removable=is_removable,
            is_external=is_removable,
            is_network=is_network,
            total_size=total,
            free_space=free,
        )

    def _is_removable(self, device: str) -> bool:
        candidates = [device]
        m = re.match(r'^(mmcblk\d+|nvme\d+n\d+|[a-z]+)', device)
        if m and m.group(1) != device:
            candidates.append(m.group(1))
        for name in candidates:
            flag = self._read_sys(f"block/{name}/removable")
            if flag is not None:
                return flag == "1"
        return False

    def _read_sys(self, rel: str) -> Optional[str]:
        try:
            return (self.sys_root / rel).read_text(encoding="utf-8").strip()
        except OSError:
            return None

    def usb_device_for(self, volume: MountedVolume) -> Optional[UsbDevice]:
        if not volume.device_path.startswith("/dev/"):
            return None
        out = self.run(["udevadm", "info", "--query=all", f"--name={volume.device_path}"])
        if not out:
            return None
        props = parse_udev_properties(out)
        vid = props.get("ID_VENDOR_ID")
        pid = props.get("ID_MODEL_ID")
        if not vid or not pid:
            return None
        manufacturer = props.get("ID_VENDOR") or props.get("ID_VENDOR_FROM_DATABASE")
        return UsbDevice(
            vendor_id=f"0x{vid}",
            product_id=f"0x{pid}",
            serial=normalize_serial(props.get("ID_SERIAL_SHORT")),
            device_path=volume.device_path,
            device_name=(props.get("ID_MODEL") or props.get("ID_MODEL_FROM_DATABASE") or "Unknown").replace("_", " "),
            bus_location=props.get("ID_PATH"),
            manufacturer=vendor_name(vid, manufacturer.replace("_", " ") if manufacturer else None) or None,
        )

    def media_info(self, volume: MountedVolume) -> Optional[PhysicalMedia]:
        if volume.is_network:
            return None
        base = re.sub(r'p?\d+$', '', volume.device) if volume.device.startswith(("mmcblk", "nvme")) \
            else re.sub(r'\d+$', '', volume.device)

        serial = None
        cid = self._read_sys(f"block/{base}/device/cid")
        # SD CID register: product serial number sits at hex chars 18..26
        if cid and len(cid) >= 26:
            serial = cid[18:26]
        manufacturer = self._read_sys(f"block/{base}/device/vendor")
        model = self._read_sys(f"block/{base}/device/model") or self._read_sys(f"block/{base}/device/name")

        return PhysicalMedia(
            type=infer_media_type(volume.total_size, model or volume.volume_name),
            capacity=volume.total_size,
            serial=normalize_serial(serial),
            manufacturer=manufacturer or None,
            model=model or None,
            volume_name=volume.volume_name,
            volume_uuid=volume.volume_uuid,
            filesystem_type=volume.filesystem_type,
        )
