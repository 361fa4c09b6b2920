"""
Dimension Loading Module

Maintains the city dimension with SCD Type 2 history.

A new version of a city is only created on a significant change: a new
slug or name, a population move of more than 5% or a GDP per capita move of more
than 10%. The old version is closed the day before the new one opens so
versions never overlap.

Derived attributes:
- Size category from population
- GDP tier from GDP per capita
- Region from the country name
"""

from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import structlog

from cityatlas_etl.records import FOREVER, City, CitySizeCategory, DimCity, GdpTier, utcnow

logger = structlog.get_logger(__name__)

POPULATION_CHANGE_THRESHOLD = 0.05
GDP_CHANGE_THRESHOLD = 0.10

COUNTRY_REGIONS: Mapping[str, str] = MappingProxyType({
    # North America
    "united states": "North America",
    "usa": "North America",
    "canada": "North America",
    "mexico": "North America",
    # Western Europe
    "united kingdom": "Western Europe",
    "uk": "Western Europe",
    "germany": "Western Europe",
    "france": "Western Europe",
    "netherlands": "Western Europe",
    "belgium": "Western Europe",
    "switzerland": "Western Europe",
    "austria": "Western Europe",
    "ireland": "Western Europe",
    "spain": "Western Europe",
    "portugal": "Western Europe",
    "italy": "Western Europe",
    # Eastern Europe
    "poland": "Eastern Europe",
    "czech republic": "Eastern Europe",
    "hungary": "Eastern Europe",
    "romania": "Eastern Europe",
    "ukraine": "Eastern Europe",
    "russia": "Eastern Europe",
    # East Asia
    "japan": "East Asia",
    "china": "East Asia",
    "south korea": "East Asia",
    "taiwan": "East Asia",
    "hong kong": "East Asia",
    "singapore": "East Asia",
    # South Asia
    "india": "South Asia",
    "pakistan": "South Asia",
    "bangladesh": "South Asia",
    "sri lanka": "South Asia",
    # Oceania
    "australia": "Oceania",
    "new zealand": "Oceania",
    # South America
    "brazil": "South America",
    "argentina": "South America",
    "chile": "South America",
    "colombia": "South America",
    "peru": "South America",
    # Africa
    "south africa": "Africa",
    "nigeria": "Africa",
    "egypt": "Africa",
    "kenya": "Africa",
    "morocco": "Africa",
    # Middle East
    "united arab emirates": "Middle East",
    "uae": "Middle East",
    "saudi arabia": "Middle East",
    "israel": "Middle East",
    "turkey": "Middle East",
    "qatar": "Middle East",
})


def classify_city_size(population: Optional[int]) -> CitySizeCategory:
    if population is None or population <= 0 or population < 100_000:
        return CitySizeCategory.SMALL
    if population < 1_000_000:
        return CitySizeCategory.MEDIUM
    if population < 10_000_000:
        return CitySizeCategory.LARGE
    return CitySizeCategory.MEGA


def classify_gdp_tier(gdp_per_capita: Optional[float]) -> GdpTier:
    if gdp_per_capita is None or gdp_per_capita <= 0 or gdp_per_capita < 20_000:
        return GdpTier.LOW
    if gdp_per_capita < 50_000:
        return GdpTier.MEDIUM
    return GdpTier.HIGH


def map_region(country: Optional[str], regions: Mapping[str, str] = COUNTRY_REGIONS) -> str:
    if country is None:
        return "Unknown"
    return regions.get(country.strip().lower(), "Other")


def _relative_change(old: Optional[float], new: Optional[float]) -> Optional[float]:
    """|new - old| / |old|; None when either side is unknown"""
    if old is None or new is None:
        return None
    if old == 0:
        return 0.0 if new == 0 else float("inf")
    return abs(new - old) / abs(old)


@dataclass
class DimensionChangeSet:
    """
    Staged SCD2 changes, to be applied in a single transaction.

    Expirations must be applied before inserts so that a slug never has
    two current rows. Updates are same-day corrections of a row that only
    became current today and are applied in place.
    """
    inserts: List[DimCity] = field(default_factory=list)
    expirations: List[DimCity] = field(default_factory=list)
    updates: List[DimCity] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return len(self.inserts) + len(self.expirations) + len(self.updates)

    @property
    def has_changes(self) -> bool:
        return self.total_changes > 0


class DimensionLoader:
    """
    SCD Type 2 loader for dim_city.

    Example:
        loader = DimensionLoader()
        initial_rows = loader.build_initial_dim_city_load(cities)
        changes = loader.detect_changes(current_rows, cities)
    """

    def __init__(
        self,
        regions: Mapping[str, str] = COUNTRY_REGIONS,
        today: Callable[[], date] = lambda: utcnow().date(),
    ):
        self.regions = regions
        self._today = today

    def to_dimension_row(self, city: City, valid_from: date) -> DimCity:
        """Transform a source city into a current dimension row"""
        return DimCity(
            city_slug=city.slug,
            city_name=city.name,
            valid_from=valid_from,
            valid_to=FOREVER,
            is_current=True,
            source_city_id=city.id,
            state=city.state,
            country=city.country,
            population=city.population,
            gdp_per_capita=city.gdp_per_capita,
            latitude=city.latitude,
            longitude=city.longitude,
            city_size_category=classify_city_size(city.population),
            region=map_region(city.country, self.regions),
            gdp_tier=classify_gdp_tier(city.gdp_per_capita),
        )

    def build_initial_dim_city_load(self, cities: Sequence[City], today: Optional[date] = None) -> List[DimCity]:
        today = today or self._today()
        rows = [self.to_dimension_row(city, today) for city in cities]
        logger.info("Built initial city dimension load", rows=len(rows), valid_from=today.isoformat())
        return rows

    @staticmethod
    def significant_change(current: DimCity, city: City) -> Optional[str]:
        """Reason string when the source city differs enough for a new version"""
        if current.city_slug != city.slug:
            return f"slug changed from {current.city_slug!r} to {city.slug!r}"
        if current.city_name != city.name:
            return f"name changed from {current.city_name!r} to {city.name!r}"

        population_change = _relative_change(current.population, city.population)
        if population_change is not None and population_change > POPULATION_CHANGE_THRESHOLD:
            return f"population changed by {population_change:.1%}"

        gdp_change = _relative_change(current.gdp_per_capita, city.gdp_per_capita)
        if gdp_change is not None and gdp_change > GDP_CHANGE_THRESHOLD:
            return f"gdp per capita changed by {gdp_change:.1%}"

        return None

    def _stage_version(
        self,
        changes: DimensionChangeSet,
        current: DimCity,
        city: City,
        today: date,
        reason: str,
    ) -> None:
        """Close ``current`` and open a row for ``city``, or correct it in place when opened today"""
        new_row = self.to_dimension_row(city, today)
        if current.valid_from >= today:
            changes.updates.append(replace(new_row, id=current.id, valid_from=current.valid_from))
            logger.info("Same-day dimension correction staged", city=city.slug, reason=reason)
        else:
            changes.expirations.append(replace(current, valid_to=today - timedelta(days=1), is_current=False))
            changes.inserts.append(new_row)
            logger.info("New dimension version staged", city=city.slug, reason=reason)

    def detect_changes(
        self,
        current_rows: Sequence[DimCity],
        cities: Sequence[City],
        today: Optional[date] = None,
    ) -> DimensionChangeSet:
        """
        Diff source cities against the current dimension rows.

        Current rows are matched by source city id, or by slug for rows
        without one. A slug held by a row of another source city is handed
        over: the old row is closed unless that city is still in the source
        under a new slug, in which case its own version change frees the slug.
        Two source cities claiming one slug is a conflict and the newcomer is
        skipped.
        """
        today = today or self._today()
        changes = DimensionChangeSet()

        by_source_id: Dict[int, DimCity] = {}
        by_slug: Dict[str, DimCity] = {}
        for row in current_rows:
            if not row.is_current:
                continue
            if row.source_city_id is not None:
                by_source_id[row.source_city_id] = row
            by_slug[row.city_slug] = row

        source_cities = {city.id: city for city in cities if city.id is not None}

        for city in cities:
            current = by_source_id.get(city.id) if city.id is not None else None
            if current is None:
                current = by_slug.get(city.slug)
                if current is not None and current.source_city_id not in (None, city.id):
                    owner = source_cities.get(current.source_city_id)
                    if owner is not None and owner.slug == city.slug:
                        logger.warning(
                            "City slug claimed by two source cities, skipping",
                            city=city.slug,
                            source_city_id=city.id,
                            owner_source_city_id=owner.id,
                        )
                        continue
                    if owner is None:
                        self._stage_version(
                            changes, current, city, today,
                            reason=f"slug reassigned from source city {current.source_city_id} to {city.id}",
                        )
                    else:
                        changes.inserts.append(self.to_dimension_row(city, today))
                        logger.info("City slug taken over", city=city.slug, previous_owner=owner.slug)
                    continue

            if current is None:
                changes.inserts.append(self.to_dimension_row(city, today))
                logger.debug("New city staged for insert", city=city.slug)
                continue

            reason = self.significant_change(current, city)
            if reason is None:
                continue
            self._stage_version(changes, current, city, today, reason)

        logger.info(
            "Dimension change detection complete",
            inserts=len(changes.inserts),
            expirations=len(changes.expirations),
            updates=len(changes.updates),
        )
        return changes
