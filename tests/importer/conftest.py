from __future__ import annotations

import csv
from dataclasses import replace
from pathlib import Path

import pytest

from registry_app.importer import init_importer
from registry_app.importer.pipeline import ProcessingSettings, create_run, process_run
from registry_app.importer.seed import parse_hierarchy, seed_hierarchy
from registry_app.models import Council, db

CANONICAL_HEADERS = (
    "School Name",
    "EMIS Code",
    "Region",
    "District",
    "Council",
    "School Type",
    "Chiefdom",
    "Section",
    "Town",
    "Latitude",
    "Longitude",
    "Altitude",
)

HIERARCHY = {
    "regions": [
        {
            "name": "Western Area",
            "districts": [
                {
                    "name": "Western Area Urban",
                    "councils": [{"name": "Freetown City Council", "aliases": ["FCC"]}],
                }
            ],
        },
        {
            "name": "Northern",
            "districts": [{"name": "Koinadugu", "councils": [{"name": "Koinadugu District Council"}]}],
        },
        {
            "name": "Eastern",
            "districts": [
                {"name": "Kono", "councils": [{"name": "Kono District Council"}]},
                {
                    "name": "Kenema",
                    "councils": [{"name": "Kenema City Council"}, {"name": "Kenema District Council"}],
                },
            ],
        },
        {
            "name": "Southern",
            "districts": [{"name": "Bo", "councils": [{"name": "Bo City Council"}]}],
        },
    ]
}


def school_row(emis_code: str, **overrides) -> dict[str, object]:
    """A spreadsheet row that validates cleanly and matches Bo City Council exactly."""
    row: dict[str, object] = {
        "School Name": f"School {emis_code}",
        "EMIS Code": emis_code,
        "Region": "Southern",
        "District": "Bo",
        "Council": "Bo City Council",
        "School Type": "Primary",
        "Chiefdom": "Kakua",
        "Section": "Nduvuibu",
        "Town": "Bo",
        "Latitude": "7.9647",
        "Longitude": "-11.7383",
        "Altitude": "80",
    }
    row.update(overrides)
    return row


@pytest.fixture
def importer_app(app):
    app.config.update(
        {
            "IMPORTER_ENABLED": True,
            "IMPORTER_FORMATS": ("csv", "xlsx", "xls"),
            "IMPORTER_BATCH_SIZE": 500,
            "IMPORTER_WORKER_POOL_SIZE": 2,
        }
    )
    init_importer(app)
    yield app


@pytest.fixture
def hierarchy(app) -> dict[str, int]:
    """Seed the council hierarchy and return council ids keyed by name."""
    seed_hierarchy(parse_hierarchy(HIERARCHY))
    return {council.name: council.id for council in db.session.query(Council).all()}


@pytest.fixture
def write_csv(tmp_path):
    def _write(rows, *, name: str = "schools.csv", headers=CANONICAL_HEADERS) -> Path:
        path = tmp_path / name
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=list(headers), extrasaction="ignore")
            writer.writeheader()
            for row in rows:
                writer.writerow(row)
        return path

    return _write


@pytest.fixture
def processed_run(importer_app, hierarchy, write_csv):
    """Create and synchronously process a run for the given rows."""

    def _factory(rows, *, dry_run: bool = False, authoritative: bool = False, name: str = "schools.csv", **settings):
        path = write_csv(rows, name=name)
        run = create_run(
            file_name=path.name,
            file_size=path.stat().st_size,
            file_path=str(path),
            dry_run=dry_run,
            authoritative=authoritative,
        )
        return process_run(run.id, settings=replace(ProcessingSettings.from_config(importer_app.config), **settings))

    return _factory


@pytest.fixture
def admin_client(importer_app, admin_user):
    return importer_app.test_client(user=admin_user)


@pytest.fixture
def manager_client(importer_app, data_manager):
    return importer_app.test_client(user=data_manager)


@pytest.fixture
def viewer_client(importer_app, viewer_user):
    return importer_app.test_client(user=viewer_user)


@pytest.fixture
def make_row():
    """Factory for clean spreadsheet rows keyed by canonical header labels."""
    return school_row


@pytest.fixture
def canonical_headers():
    return CANONICAL_HEADERS
