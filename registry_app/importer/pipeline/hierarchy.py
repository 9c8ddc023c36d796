"""
Read-only snapshot of the council hierarchy used during matching.

Nodes are stored in flat arenas keyed by id. Lookups by normalized name or
alias go through separate indexes so worker threads can match rows without
touching the ORM session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from sqlalchemy.orm import selectinload

from registry_app.models import Council, District, Region, db, normalize_label


@dataclass(frozen=True, slots=True)
class RegionNode:
    id: int
    name: str


@dataclass(frozen=True, slots=True)
class DistrictNode:
    id: int
    region_id: int
    name: str


@dataclass(frozen=True, slots=True)
class CouncilNode:
    id: int
    district_id: int
    name: str
    code: str | None = None
    aliases: tuple[str, ...] = ()

    @property
    def labels(self) -> tuple[str, ...]:
        return (self.name, *self.aliases)


@dataclass(frozen=True, slots=True)
class AliasRef:
    council_id: int
    alias_id: int
    alias: str


@dataclass(frozen=True)
class CouncilHierarchyIndex:
    regions: Mapping[int, RegionNode]
    districts: Mapping[int, DistrictNode]
    councils: Mapping[int, CouncilNode]
    region_ids_by_name: Mapping[str, tuple[int, ...]]
    district_ids_by_name: Mapping[str, tuple[int, ...]]
    council_ids_by_name: Mapping[str, tuple[int, ...]]
    alias_index: Mapping[str, AliasRef]
    council_ids_by_district: Mapping[int, tuple[int, ...]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        regions: list[RegionNode],
        districts: list[DistrictNode],
        councils: list[CouncilNode],
        aliases: list[AliasRef],
    ) -> "CouncilHierarchyIndex":
        def _group(items, key) -> dict[str, tuple[int, ...]]:
            grouped: dict[str, list[int]] = {}
            for item in items:
                grouped.setdefault(key(item), []).append(item.id)
            return {name: tuple(sorted(ids)) for name, ids in grouped.items()}

        by_district: dict[int, list[int]] = {}
        for council in councils:
            by_district.setdefault(council.district_id, []).append(council.id)

        return cls(
            regions=MappingProxyType({node.id: node for node in regions}),
            districts=MappingProxyType({node.id: node for node in districts}),
            councils=MappingProxyType({node.id: node for node in councils}),
            region_ids_by_name=MappingProxyType(_group(regions, lambda node: normalize_label(node.name))),
            district_ids_by_name=MappingProxyType(_group(districts, lambda node: normalize_label(node.name))),
            council_ids_by_name=MappingProxyType(_group(councils, lambda node: normalize_label(node.name))),
            alias_index=MappingProxyType({normalize_label(ref.alias): ref for ref in aliases}),
            council_ids_by_district=MappingProxyType(
                {district_id: tuple(sorted(ids)) for district_id, ids in by_district.items()}
            ),
        )

    def resolve_region(self, text: str | None) -> int | None:
        ids = self.region_ids_by_name.get(normalize_label(text), ())
        return ids[0] if len(ids) == 1 else None

    def resolve_district(self, text: str | None, *, region_text: str | None = None) -> int | None:
        """Return the district id only when the hint names exactly one district."""

        ids = self.district_ids_by_name.get(normalize_label(text), ())
        region_id = self.resolve_region(region_text)
        if region_id is not None:
            ids = tuple(district_id for district_id in ids if self.districts[district_id].region_id == region_id)
        return ids[0] if len(ids) == 1 else None

    def councils_in_scope(self, district_id: int | None) -> tuple[CouncilNode, ...]:
        if district_id is None:
            return tuple(self.councils[council_id] for council_id in sorted(self.councils))
        return tuple(self.councils[council_id] for council_id in self.council_ids_by_district.get(district_id, ()))

    def describe(self, council_id: int) -> dict[str, object]:
        council = self.councils[council_id]
        district = self.districts.get(council.district_id)
        region = self.regions.get(district.region_id) if district else None
        return {
            "councilId": council.id,
            "name": council.name,
            "district": district.name if district else None,
            "region": region.name if region else None,
        }


def load_hierarchy_index(session=None) -> CouncilHierarchyIndex:
    """Snapshot active councils and their aliases from the database."""

    session = session or db.session
    regions = session.query(Region).filter(Region.is_active.is_(True)).all()
    districts = session.query(District).filter(District.is_active.is_(True)).all()
    councils = (
        session.query(Council)
        .options(selectinload(Council.aliases))
        .filter(Council.is_active.is_(True))
        .all()
    )
    aliases = [
        AliasRef(council_id=alias.council_id, alias_id=alias.id, alias=alias.alias)
        for council in councils
        for alias in sorted(council.aliases, key=lambda item: item.id)
    ]
    return CouncilHierarchyIndex.build(
        [RegionNode(id=region.id, name=region.name) for region in regions],
        [DistrictNode(id=district.id, region_id=district.region_id, name=district.name) for district in districts],
        [
            CouncilNode(
                id=council.id,
                district_id=council.district_id,
                name=council.name,
                code=council.code,
                aliases=tuple(alias.alias for alias in sorted(council.aliases, key=lambda item: item.id)),
            )
            for council in councils
        ],
        aliases,
    )


__all__ = [
    "AliasRef",
    "CouncilHierarchyIndex",
    "CouncilNode",
    "DistrictNode",
    "RegionNode",
    "load_hierarchy_index",
]
