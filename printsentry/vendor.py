from __future__ import annotations

import re
from typing import Dict, Optional

# Keyword (matched case-insensitively against sysDescr / model text) -> vendor
KNOWN_MANUFACTURERS = (
    ("hewlett-packard", "HP"),
    ("hp", "HP"),
    ("laserjet", "HP"),
    ("officejet", "HP"),
    ("canon", "Canon"),
    ("xerox", "Xerox"),
    ("kyocera", "Kyocera"),
    ("ecosys", "Kyocera"),
    ("brother", "Brother"),
    ("epson", "Epson"),
    ("lexmark", "Lexmark"),
    ("ricoh", "Ricoh"),
    ("konica", "Konica Minolta"),
    ("bizhub", "Konica Minolta"),
    ("sharp", "Sharp"),
    ("samsung", "Samsung"),
    ("oki", "OKI"),
    ("toshiba", "Toshiba"),
    ("zebra", "Zebra"),
)

_WORD = re.compile(r"[a-z0-9-]+")


def _normalize(prefix: str) -> str:
    return prefix.replace("-", "").replace(":", "").replace(".", "").upper()


def load_oui_map(path: Optional[str]) -> Dict[str, str]:
    """Read ``PREFIX,Vendor`` lines (IEEE OUI export or hand-written)."""
    if not path:
        return {}
    oui_map: Dict[str, str] = {}
    with open(path, "r", encoding="utf-8", errors="ignore") as handle:
        for line in handle:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = [part.strip() for part in line.split(",", 1)]
            if len(parts) != 2 or not parts[1]:
                continue
            prefix = _normalize(parts[0])
            if len(prefix) < 6:
                continue
            oui_map[prefix[:6]] = parts[1]
    return oui_map


def lookup_vendor(mac: Optional[str], oui_map: Dict[str, str]) -> Optional[str]:
    if not mac or not oui_map:
        return None
    return oui_map.get(_normalize(mac)[:6])


def manufacturer_from_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    words = set(_WORD.findall(text.lower()))
    for keyword, vendor in KNOWN_MANUFACTURERS:
        if keyword in words:
            return vendor
    return None


def identify_manufacturer(
    mac: Optional[str],
    description: Optional[str],
    oui_map: Dict[str, str],
) -> Optional[str]:
    """MAC prefix wins; otherwise guess from the device's own description."""
    return lookup_vendor(mac, oui_map) or manufacturer_from_text(description)
