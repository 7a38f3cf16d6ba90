# foodrelay/services/units.py
import re
from typing import Optional, Tuple

_QTY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([a-zA-Z]*)")

_UNIT_ALIASES = {
    "kg": "kg", "kgs": "kg", "kilo": "kg", "kilos": "kg", "kilogram": "kg", "kilograms": "kg",
    "g": "g", "gram": "g", "grams": "g",
    "lb": "lb", "lbs": "lb", "pound": "lb", "pounds": "lb",
    "l": "l", "liter": "l", "liters": "l", "litre": "l", "litres": "l",
}

def normalize_unit(unit: Optional[str]) -> str:
    u = (unit or "").strip().lower()
    return _UNIT_ALIASES.get(u, u or "units")

def parse_quantity(text: str) -> Tuple[float, str]:
    """
    '50kg' -> (50.0, 'kg'); '12 boxes' -> (12.0, 'boxes'); no number -> (0.0, 'units').
    """
    m = _QTY_RE.search(text or "")
    if not m:
        return 0.0, "units"
    return float(m.group(1)), normalize_unit(m.group(2))
