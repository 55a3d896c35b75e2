"""
Vendor tables used to recognise card readers, cameras and phones.
"""

CARD_READER_VENDORS = {
    'SanDisk', 'Kingston', 'Lexar', 'Transcend', 'Sony', 'ProGrade', 'Delkin',
    'Sabrent', 'Anker', 'UGREEN', 'Cable Matters', 'Unitek', 'Verbatim', 'Hama',
    'Hoodman', 'Blackmagic', 'Atomos',
}

CAMERA_MANUFACTURERS = {
    'Canon', 'Nikon', 'Sony', 'Fujifilm', 'Panasonic', 'Olympus', 'Pentax',
    'Leica', 'Hasselblad', 'Phase One', 'GoPro', 'DJI', 'Blackmagic', 'RED', 'ARRI',
}

PHONE_MANUFACTURERS = {
    'Apple', 'Samsung', 'Google', 'OnePlus', 'Xiaomi', 'Huawei', 'OPPO', 'Vivo',
    'Motorola', 'LG', 'Sony', 'Nokia', 'Pixel',
}

CARD_READER_KEYWORDS = ('card reader', 'sd reader', 'multi-card', 'cardreader')
CAMERA_KEYWORDS = ('camera', 'dslr', 'ptp', 'mtp')
PHONE_KEYWORDS = ('iphone', 'ipad', 'android', 'pixel')

# USB vendor id (lowercase hex, no prefix) -> company
USB_VENDORS = {
    '04a9': 'Canon',
    '054c': 'Sony',
    '04da': 'Panasonic',
    '04b0': 'Nikon',
    '04cb': 'Fujifilm',
    '07b4': 'Olympus',
    '0a17': 'Pentax',
    '1a98': 'Leica',
    '2672': 'GoPro',
    '2ca3': 'DJI',
    '05ac': 'Apple',
    '18d1': 'Google',
    '04e8': 'Samsung',
    '2a70': 'OnePlus',
    '0781': 'SanDisk',
    '05dc': 'Lexar',
    '0951': 'Kingston',
    '8564': 'Transcend',
    '2537': 'ProGrade',
}


def vendor_name(vendor_id: str, reported: str = None) -> str:
    """Prefer the name the device reports; fall back to the id table."""
    if reported:
        return reported
    key = (vendor_id or '').lower().replace('0x', '').zfill(4)
    return USB_VENDORS.get(key, '')


def matches_vendor(name: str, vendors: set) -> bool:
    """Case-insensitive prefix match, e.g. 'SanDisk Corp.' matches 'SanDisk'."""
    n = (name or '').strip().lower()
    return any(n == v.lower() or n.startswith(v.lower() + ' ') for v in vendors)
