"""Load the canonical council hierarchy from a YAML document."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from registry_app.models import Council, CouncilAlias, District, Region, db, normalize_label


class HierarchyLoadError(RuntimeError):
    """Raised when a hierarchy document cannot be loaded or validated."""


@dataclass(frozen=True)
class CouncilSeed:
    name: str
    code: str | None = None
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class DistrictSeed:
    name: str
    code: str | None = None
    councils: tuple[CouncilSeed, ...] = ()


@dataclass(frozen=True)
class RegionSeed:
    name: str
    code: str | None = None
    districts: tuple[DistrictSeed, ...] = ()


@dataclass
class SeedSummary:
    regions_created: int = 0
    districts_created: int = 0
    councils_created: int = 0
    aliases_created: int = 0
    aliases_skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "regions_created": self.regions_created,
            "districts_created": self.districts_created,
            "councils_created": self.councils_created,
            "aliases_created": self.aliases_created,
            "aliases_skipped": self.aliases_skipped,
        }


def _require_name(entry: Any, kind: str) -> str:
    if not isinstance(entry, Mapping):
        raise HierarchyLoadError(f"{kind} definition must be a mapping, got {entry!r}")
    name = str(entry.get("name") or "").strip()
    if not name:
        raise HierarchyLoadError(f"{kind} definition is missing a name: {entry!r}")
    return name


def _optional_code(entry: Mapping[str, Any]) -> str | None:
    code = entry.get("code")
    return str(code).strip() or None if code is not None else None


def _as_list(value: Any, kind: str) -> Sequence[Any]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise HierarchyLoadError(f"'{kind}' must be a list, got {type(value).__name__}")
    return value


def parse_hierarchy(raw: Any) -> tuple[RegionSeed, ...]:
    """
    Validate a decoded document of the form::

        regions:
          - name: Northern
            districts:
              - name: Koinadugu
                councils:
                  - name: Koinadugu District Council
                    aliases: [KDC]
    """
    if not isinstance(raw, Mapping) or "regions" not in raw:
        raise HierarchyLoadError("Hierarchy document must contain a top-level 'regions' list.")

    regions: list[RegionSeed] = []
    for region_entry in _as_list(raw["regions"], "regions"):
        region_name = _require_name(region_entry, "Region")
        districts: list[DistrictSeed] = []
        for district_entry in _as_list(region_entry.get("districts"), "districts"):
            district_name = _require_name(district_entry, "District")
            councils: list[CouncilSeed] = []
            for council_entry in _as_list(district_entry.get("councils"), "councils"):
                council_name = _require_name(council_entry, "Council")
                aliases = tuple(
                    str(alias).strip()
                    for alias in _as_list(council_entry.get("aliases"), "aliases")
                    if str(alias).strip()
                )
                councils.append(CouncilSeed(council_name, _optional_code(council_entry), aliases))
            districts.append(DistrictSeed(district_name, _optional_code(district_entry), tuple(councils)))
        regions.append(RegionSeed(region_name, _optional_code(region_entry), tuple(districts)))
    return tuple(regions)


def load_hierarchy_file(path: str | Path) -> tuple[RegionSeed, ...]:
    path = Path(path)
    if not path.exists():
        raise HierarchyLoadError(f"Hierarchy file not found at {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise HierarchyLoadError(f"Failed to parse hierarchy YAML at {path}: {exc}") from exc
    return parse_hierarchy(raw)


def seed_hierarchy(regions: Sequence[RegionSeed], *, session=None) -> SeedSummary:
    """
    Insert missing regions, districts, councils and aliases.

    Existing nodes are matched by name within their parent and left as they
    are, so seeding the same document twice is a no-op. An alias already
    owned by a different council is skipped rather than reassigned.
    """
    session = session or db.session
    summary = SeedSummary()

    for region_seed in regions:
        region = session.query(Region).filter_by(name=region_seed.name).one_or_none()
        if region is None:
            region = Region(name=region_seed.name, code=region_seed.code)
            session.add(region)
            session.flush()
            summary.regions_created += 1

        for district_seed in region_seed.districts:
            district = (
                session.query(District).filter_by(region_id=region.id, name=district_seed.name).one_or_none()
            )
            if district is None:
                district = District(region_id=region.id, name=district_seed.name, code=district_seed.code)
                session.add(district)
                session.flush()
                summary.districts_created += 1

            for council_seed in district_seed.councils:
                council = (
                    session.query(Council).filter_by(district_id=district.id, name=council_seed.name).one_or_none()
                )
                if council is None:
                    council = Council(district_id=district.id, name=council_seed.name, code=council_seed.code)
                    session.add(council)
                    session.flush()
                    summary.councils_created += 1

                for alias in council_seed.aliases:
                    normalized = normalize_label(alias)
                    existing = session.query(CouncilAlias).filter_by(normalized_alias=normalized).one_or_none()
                    if existing is not None:
                        if existing.council_id != council.id:
                            summary.aliases_skipped += 1
                        continue
                    session.add(CouncilAlias(council_id=council.id, alias=alias, normalized_alias=normalized))
                    session.flush()
                    summary.aliases_created += 1

    session.commit()
    return summary
