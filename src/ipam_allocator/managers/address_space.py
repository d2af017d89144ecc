"""
Static partition of the 10.0.0.0/8 space into continents and countries.

Each country owns an inclusive range of X octets; every /24 (10.X.Y.0/24) with X in
that range belongs to the country. The table is loaded once and never mutated; an
alternative table can be supplied as a JSON list via IPAM_COUNTRY_MAPPINGS_FILE.
"""

from dataclasses import asdict, dataclass
import json
from typing import Dict, Iterable, List, Optional, Tuple

from ipam_allocator.config import settings
from ipam_allocator.managers.ipam_exceptions import CountryNotFound, ValidationError
from ipam_allocator.managers.logging_manager import get_logger

logger = get_logger(prefix="[AddressSpace]")

OCTET_MIN = 0
OCTET_MAX = 255
Y_SLOTS_PER_X = 256
HOST_SLOTS_PER_REGION = 254

# Continent -> Country mapping (fixed)
DEFAULT_COUNTRY_MAPPINGS = [
    # Asia
    {"continent": "Asia", "country": "India", "x_start": 0, "x_end": 29},
    {"continent": "Asia", "country": "UAE", "x_start": 30, "x_end": 37},
    {"continent": "Asia", "country": "Singapore", "x_start": 38, "x_end": 45},
    {"continent": "Asia", "country": "Japan", "x_start": 46, "x_end": 53},
    {"continent": "Asia", "country": "South Korea", "x_start": 54, "x_end": 61},
    {"continent": "Asia", "country": "Indonesia", "x_start": 62, "x_end": 69},
    {"continent": "Asia", "country": "Taiwan", "x_start": 70, "x_end": 77},
    # Africa
    {"continent": "Africa", "country": "South Africa", "x_start": 78, "x_end": 97},
    # Europe
    {"continent": "Europe", "country": "Finland", "x_start": 98, "x_end": 107},
    {"continent": "Europe", "country": "Sweden", "x_start": 108, "x_end": 117},
    {"continent": "Europe", "country": "Poland", "x_start": 118, "x_end": 127},
    {"continent": "Europe", "country": "Spain", "x_start": 128, "x_end": 137},
    # North America
    {"continent": "North America", "country": "Canada", "x_start": 138, "x_end": 152},
    {"continent": "North America", "country": "United States", "x_start": 153, "x_end": 167},
    # South America
    {"continent": "South America", "country": "Brazil", "x_start": 168, "x_end": 177},
    {"continent": "South America", "country": "Chile", "x_start": 178, "x_end": 187},
    # Australia
    {"continent": "Australia", "country": "Australia", "x_start": 188, "x_end": 207},
    # Reserved
    {"continent": "Reserved", "country": "Future Use", "x_start": 208, "x_end": 255, "is_reserved": True},
]


@dataclass(frozen=True)
class Country:
    name: str
    continent: str
    x_start: int
    x_end: int
    is_reserved: bool = False

    @property
    def x_count(self) -> int:
        return self.x_end - self.x_start + 1

    @property
    def total_region_slots(self) -> int:
        return self.x_count * Y_SLOTS_PER_X

    def contains(self, x_octet: int) -> bool:
        return self.x_start <= x_octet <= self.x_end

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["country"] = data.pop("name")
        data["total_blocks"] = self.x_count
        data["total_region_slots"] = 0 if self.is_reserved else self.total_region_slots
        return data


def load_country_mappings(path: str) -> List[Dict]:
    """Read a country table from a JSON file holding a list of mapping objects."""
    with open(path, "r", encoding="utf-8") as f:
        mappings = json.load(f)
    if not isinstance(mappings, list):
        raise ValidationError("Country mapping file must contain a JSON list", "IPAM_COUNTRY_MAPPINGS_FILE", path)
    return mappings


class AddressSpace:
    """
    Read-only lookup over the continent/country/X-range table.

    Raises ValidationError at construction when ranges fall outside 0..255, are inverted,
    overlap, or repeat a country name. Gaps are permitted and logged.
    """

    def __init__(self, mappings: Optional[Iterable[Dict]] = None) -> None:
        if mappings is None:
            if settings.IPAM_COUNTRY_MAPPINGS_FILE:
                mappings = load_country_mappings(settings.IPAM_COUNTRY_MAPPINGS_FILE)
            else:
                mappings = DEFAULT_COUNTRY_MAPPINGS

        countries = [self._build_country(m) for m in mappings]
        countries.sort(key=lambda c: c.x_start)
        self._validate(countries)

        self._countries: Tuple[Country, ...] = tuple(countries)
        self._by_name: Dict[str, Country] = {c.name.lower(): c for c in countries}
        self._by_x: Dict[int, Country] = {x: c for c in countries for x in range(c.x_start, c.x_end + 1)}
        logger.debug("Loaded %d countries covering %d X octets", len(countries), len(self._by_x))

    @staticmethod
    def _build_country(mapping: Dict) -> Country:
        try:
            return Country(
                name=str(mapping["country"]).strip(),
                continent=str(mapping["continent"]).strip(),
                x_start=int(mapping["x_start"]),
                x_end=int(mapping["x_end"]),
                is_reserved=bool(mapping.get("is_reserved", False)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid country mapping {mapping!r}: {e}", "country_mapping", mapping) from e

    @staticmethod
    def _validate(countries: List[Country]) -> None:
        seen = set()
        previous: Optional[Country] = None
        for country in countries:
            if not country.name:
                raise ValidationError("Country name must not be empty", "country", country.name)
            if country.name.lower() in seen:
                raise ValidationError(f"Duplicate country {country.name}", "country", country.name)
            seen.add(country.name.lower())
            if not (OCTET_MIN <= country.x_start <= country.x_end <= OCTET_MAX):
                raise ValidationError(
                    f"Country {country.name} has invalid X range {country.x_start}-{country.x_end}",
                    "x_range",
                    f"{country.x_start}-{country.x_end}",
                )
            if previous is not None:
                if country.x_start <= previous.x_end:
                    raise ValidationError(
                        f"Country {country.name} overlaps {previous.name} at X={country.x_start}",
                        "x_range",
                        f"{country.x_start}-{country.x_end}",
                    )
                if country.x_start > previous.x_end + 1:
                    logger.warning(
                        "Unassigned X octets %d-%d between %s and %s",
                        previous.x_end + 1,
                        country.x_start - 1,
                        previous.name,
                        country.name,
                    )
            previous = country

    def resolve_country(self, x_octet: int) -> Country:
        """Return the country owning X, or raise CountryNotFound."""
        country = self._by_x.get(x_octet) if isinstance(x_octet, int) else None
        if country is None:
            raise CountryNotFound(f"No country owns X octet {x_octet}", x_octet)
        return country

    def get_country(self, name: str) -> Country:
        country = self._by_name.get(str(name).strip().lower()) if name is not None else None
        if country is None:
            raise CountryNotFound(f"Country '{name}' not found", name)
        return country

    def range_for(self, name: str) -> Tuple[int, int]:
        country = self.get_country(name)
        return country.x_start, country.x_end

    def is_reserved(self, name: str) -> bool:
        return self.get_country(name).is_reserved

    def region_slot_capacity(self, name: str) -> int:
        country = self.get_country(name)
        return 0 if country.is_reserved else country.total_region_slots

    def list_countries(self, continent: Optional[str] = None, include_reserved: bool = True) -> List[Country]:
        result = []
        for country in self._countries:
            if continent and country.continent.lower() != continent.strip().lower():
                continue
            if country.is_reserved and not include_reserved:
                continue
            result.append(country)
        return result

    def list_continents(self) -> List[str]:
        continents: List[str] = []
        for country in self._countries:
            if country.continent not in continents:
                continents.append(country.continent)
        return continents
