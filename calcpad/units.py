import re
import math
import logging
from collections import namedtuple, OrderedDict
from typing import Optional, List, Dict, Tuple

from pint import UnitRegistry

from calcpad.errors import ParseFailure, UnknownUnit, CrossCategoryUnits

logger = logging.getLogger(__name__)


UnitDefinition = namedtuple(
    "UnitDefinition", ["canonical", "to_base", "from_base", "is_offset", "offset"]
)

ConversionRequest = namedtuple(
    "ConversionRequest", ["amount", "from_unit", "to_unit", "valid"]
)

TEMPERATURE = "temperature"

# category -> (pint base unit, [(canonical name, pint expression, aliases)])
# Factors are taken from pint so every category shares one exact base unit.
UNIT_TABLE = OrderedDict(
    [
        (
            "length",
            (
                "meter",
                [
                    ("millimeter", "millimeter", ["mm", "millimeter", "millimeters"]),
                    ("centimeter", "centimeter", ["cm", "centimeter", "centimeters"]),
                    ("meter", "meter", ["m", "meter", "meters", "metre", "metres"]),
                    ("kilometer", "kilometer", ["km", "kilometer", "kilometers"]),
                    ("inch", "inch", ["in", "inch", "inches"]),
                    ("foot", "foot", ["ft", "foot", "feet"]),
                    ("yard", "yard", ["yd", "yard", "yards"]),
                    ("mile", "mile", ["mi", "mile", "miles"]),
                    ("nautical mile", "nautical_mile", ["nm", "nauticalmile", "nautical mile"]),
                ],
            ),
        ),
        (
            "mass",
            (
                "kilogram",
                [
                    ("milligram", "milligram", ["mg", "milligram", "milligrams"]),
                    ("gram", "gram", ["g", "gram", "grams"]),
                    ("kilogram", "kilogram", ["kg", "kilogram", "kilograms"]),
                    ("metric ton", "metric_ton", ["ton", "tons", "tonne", "tonnes"]),
                    ("ounce", "ounce", ["oz", "ounce", "ounces"]),
                    ("pound", "pound", ["lb", "lbs", "pound", "pounds"]),
                    ("stone", "stone", ["stone", "stones"]),
                ],
            ),
        ),
        (
            "storage",
            (
                "byte",
                [
                    ("bit", "bit", ["bit", "bits"]),
                    ("byte", "byte", ["b", "byte", "bytes"]),
                    ("kilobyte", "kibibyte", ["kb", "kilobyte", "kilobytes"]),
                    ("megabyte", "mebibyte", ["mb", "megabyte", "megabytes"]),
                    ("gigabyte", "gibibyte", ["gb", "gigabyte", "gigabytes"]),
                    ("terabyte", "tebibyte", ["tb", "terabyte", "terabytes"]),
                    ("petabyte", "pebibyte", ["pb", "petabyte", "petabytes"]),
                ],
            ),
        ),
        (
            "volume",
            (
                "liter",
                [
                    ("milliliter", "milliliter", ["ml", "milliliter", "milliliters"]),
                    ("liter", "liter", ["l", "liter", "liters", "litre", "litres"]),
                    ("gallon", "gallon", ["gal", "gallon", "gallons"]),
                    ("cup", "cup", ["cup", "cups"]),
                    ("pint", "pint", ["pt", "pint", "pints"]),
                    ("fluid ounce", "fluid_ounce", ["floz", "fl oz"]),
                ],
            ),
        ),
        (
            "area",
            (
                "meter ** 2",
                [
                    ("square meter", "meter ** 2", ["sqm", "m2", "m²"]),
                    ("square kilometer", "kilometer ** 2", ["sqkm", "km2", "km²"]),
                    ("square foot", "foot ** 2", ["sqft", "ft2", "ft²"]),
                    ("acre", "acre", ["acre", "acres"]),
                    ("hectare", "hectare", ["ha", "hectare", "hectares"]),
                ],
            ),
        ),
        (
            "speed",
            (
                "meter / second",
                [
                    ("meters per second", "meter / second", ["m/s", "mps"]),
                    ("kilometers per hour", "kilometer / hour", ["km/h", "kmh", "kph"]),
                    ("miles per hour", "mile / hour", ["mph"]),
                    ("knot", "knot", ["knot", "knots"]),
                    ("mach", "343 * meter / second", ["mach"]),
                ],
            ),
        ),
        (
            "time",
            (
                "second",
                [
                    ("millisecond", "millisecond", ["ms", "millisecond", "milliseconds"]),
                    ("second", "second", ["s", "sec", "second", "seconds"]),
                    ("minute", "minute", ["min", "minute", "minutes"]),
                    ("hour", "hour", ["hr", "hour", "hours"]),
                    ("day", "day", ["day", "days"]),
                    ("week", "week", ["week", "weeks"]),
                    # Gregorian averages
                    ("month", "30.436875 * day", ["month", "months"]),
                    ("year", "365.2425 * day", ["yr", "year", "years"]),
                ],
            ),
        ),
    ]
)

# Temperature goes through Kelvin with explicit formulas, not factors
TEMPERATURE_UNITS = [
    (UnitDefinition("celsius", 0.0, 0.0, True, 273.15), ["c", "celsius", "°c"]),
    (UnitDefinition("fahrenheit", 0.0, 0.0, True, 0.0), ["f", "fahrenheit", "°f"]),
    (UnitDefinition("kelvin", 1.0, 1.0, False, 0.0), ["k", "kelvin"]),
]

# <amount> <unit> (to|in|as) <unit>; units may hold one internal space ("fl oz")
_UNIT_TOKEN = r"[a-zA-Z°²/0-9]+(?:\s[a-zA-Z°²/0-9]+)?"
CONVERSION_PATTERN = re.compile(
    r"^\s*(-?[\d.,]+)\s*(" + _UNIT_TOKEN + r")\s+(?:to|in|as)\s+(" + _UNIT_TOKEN + r")\s*$",
    re.IGNORECASE,
)


def format_number(value: float) -> str:
    """Formats a conversion result for display.

    Very large or very small magnitudes use 6 significant digits, whole
    numbers print without a decimal point, everything else gets at most
    4 decimals with trailing zeros removed.
    """
    magnitude = abs(value)
    if magnitude >= 1000000 or (0 < magnitude < 0.001):
        return f"{value:.6g}"
    if value == math.floor(value):
        return str(int(value))
    return f"{value:.4f}".rstrip("0").rstrip(".")


def celsius_to_kelvin(c: float) -> float:
    return c + 273.15


def kelvin_to_celsius(k: float) -> float:
    return k - 273.15


def fahrenheit_to_kelvin(f: float) -> float:
    return (f - 32.0) * 5.0 / 9.0 + 273.15


def kelvin_to_fahrenheit(k: float) -> float:
    return (k - 273.15) * 9.0 / 5.0 + 32.0


class UnitCatalog:
    """Static table of unit categories built once from a pint registry."""

    def __init__(self, ureg: Optional[UnitRegistry] = None):
        self.ureg = ureg or UnitRegistry()
        # category -> alias -> UnitDefinition
        self._units: Dict[str, Dict[str, UnitDefinition]] = OrderedDict()
        # alias -> category
        self._alias_index: Dict[str, str] = {}
        self._build()

    def _build(self):
        for category, (base, units) in UNIT_TABLE.items():
            entries: Dict[str, UnitDefinition] = OrderedDict()
            for canonical, expression, aliases in units:
                to_base = float(self.ureg(expression).to(base).magnitude)
                definition = UnitDefinition(canonical, to_base, 1.0 / to_base, False, 0.0)
                for alias in aliases:
                    entries[alias.lower()] = definition
            self._units[category] = entries

        temperature: Dict[str, UnitDefinition] = OrderedDict()
        for definition, aliases in TEMPERATURE_UNITS:
            for alias in aliases:
                temperature[alias.lower()] = definition
        self._units[TEMPERATURE] = temperature

        for category, entries in self._units.items():
            for alias in entries:
                self._alias_index[alias] = category

        logger.debug(
            f"Unit catalog ready: {len(self._units)} categories, {len(self._alias_index)} aliases"
        )

    def category_of(self, alias: str) -> Optional[str]:
        return self._alias_index.get(alias.lower())

    def lookup(self, alias: str) -> Tuple[str, UnitDefinition]:
        category = self.category_of(alias)
        if category is None:
            raise UnknownUnit(alias)
        return category, self._units[category][alias.lower()]

    def categories(self) -> List[str]:
        return list(self._units.keys())

    def units_in_category(self, category: str) -> List[str]:
        return list(self._units.get(category.lower(), {}).keys())


class UnitConverter:
    """Resolves '<amount> <unit> to <unit>' lines against a UnitCatalog."""

    def __init__(self, catalog: Optional[UnitCatalog] = None):
        self.catalog = catalog or UnitCatalog()

    def parse(self, line: str) -> Optional[ConversionRequest]:
        """Returns a valid ConversionRequest, or None if the line does not convert."""
        try:
            return self.parse_request(line)
        except (ParseFailure, UnknownUnit, CrossCategoryUnits) as e:
            logger.debug(f"Not a unit conversion '{line}': {e}")
            return None

    def parse_request(self, line: str) -> ConversionRequest:
        match = CONVERSION_PATTERN.match(line.strip())
        if not match:
            raise ParseFailure(f"'{line}' is not a unit conversion")

        value_str = match.group(1).replace(",", ".")
        try:
            amount = float(value_str)
        except ValueError:
            raise ParseFailure(f"Invalid number '{match.group(1)}'")

        from_unit = match.group(2).lower()
        to_unit = match.group(3).lower()

        from_category, _ = self.catalog.lookup(from_unit)
        to_category, _ = self.catalog.lookup(to_unit)
        if from_category != to_category:
            raise CrossCategoryUnits(from_unit, to_unit)

        return ConversionRequest(amount, from_unit, to_unit, True)

    def is_conversion(self, line: str) -> bool:
        return self.parse(line) is not None

    def convert_value(self, amount: float, from_unit: str, to_unit: str) -> Tuple[float, str]:
        """Converts amount and returns (value, canonical target unit name)."""
        from_category, from_def = self.catalog.lookup(from_unit)
        to_category, to_def = self.catalog.lookup(to_unit)
        if from_category != to_category:
            raise CrossCategoryUnits(from_unit, to_unit)

        if from_category == TEMPERATURE:
            if from_def.canonical == "celsius":
                kelvin = celsius_to_kelvin(amount)
            elif from_def.canonical == "fahrenheit":
                kelvin = fahrenheit_to_kelvin(amount)
            else:
                kelvin = amount

            if to_def.canonical == "celsius":
                result = kelvin_to_celsius(kelvin)
            elif to_def.canonical == "fahrenheit":
                result = kelvin_to_fahrenheit(kelvin)
            else:
                result = kelvin
        else:
            base_value = amount * from_def.to_base
            result = base_value * to_def.from_base

        return result, to_def.canonical

    def convert(self, line: str) -> Optional[str]:
        """Converts a line like '10 km to miles', returning e.g. '6.2137 mile'."""
        request = self.parse(line)
        if request is None:
            return None
        result, canonical = self.convert_value(
            request.amount, request.from_unit, request.to_unit
        )
        return f"{format_number(result)} {canonical}"

    def categories(self) -> List[str]:
        return self.catalog.categories()

    def units_in_category(self, category: str) -> List[str]:
        return self.catalog.units_in_category(category)
