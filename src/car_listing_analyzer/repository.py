"""SQLite storage for vehicle listings."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path

from car_listing_analyzer.errors import DuplicateVehicleError, RepositoryError, VehicleNotFoundError
from car_listing_analyzer.items import AI_FIELDS, VehicleStatus
from car_listing_analyzer.market_value import extract_make_model

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS vehicles (
    id TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    source_id TEXT,
    source_url TEXT NOT NULL UNIQUE,
    source_created_at TEXT,
    source_title TEXT,
    source_description_html TEXT,
    source_parameters TEXT DEFAULT '{}',
    source_equipment TEXT DEFAULT '{}',
    source_photos TEXT DEFAULT '[]',
    title TEXT,
    description TEXT,
    features TEXT DEFAULT '[]',
    price_pln REAL,
    price_eur REAL,
    year INTEGER,
    mileage INTEGER,
    seller_info TEXT,
    photos TEXT DEFAULT '[]',
    personal_fit_score REAL,
    market_value_score TEXT,
    ai_priority_rating REAL,
    ai_priority_summary TEXT,
    ai_mechanic_report TEXT,
    ai_data_sanity_check TEXT,
    status TEXT NOT NULL DEFAULT 'new'
        CHECK (status IN ('new', 'to_contact', 'contacted', 'to_visit',
                          'visited', 'not_interested', 'deleted')),
    personal_notes TEXT,
    scraped_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_vehicles_source_year ON vehicles (source, year);
CREATE INDEX IF NOT EXISTS idx_vehicles_status ON vehicles (status);
"""

COLUMNS = (
    "id", "source", "source_id", "source_url", "source_created_at",
    "source_title", "source_description_html", "source_parameters",
    "source_equipment", "source_photos",
    "title", "description", "features", "price_pln", "price_eur",
    "year", "mileage", "seller_info", "photos",
    *AI_FIELDS,
    "status", "personal_notes",
    "scraped_at", "created_at", "updated_at",
)

JSON_COLUMNS = frozenset({
    "source_parameters", "source_equipment", "source_photos",
    "features", "seller_info", "photos",
})
DATETIME_COLUMNS = frozenset({"source_created_at", "scraped_at", "created_at", "updated_at"})

# Fields the analysis pipeline may write (translation output included).
ANALYSIS_FIELDS = frozenset(AI_FIELDS) | {"description", "features"}
# Fields editable through the review workflow.
UPDATABLE_FIELDS = ANALYSIS_FIELDS | {"status", "personal_notes", "title"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(column: str, value):
    if value is None:
        return None
    if column in JSON_COLUMNS:
        return json.dumps(value, ensure_ascii=False, default=str)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, VehicleStatus):
        return value.value
    return value


def _from_db(row: sqlite3.Row) -> dict:
    record = dict(row)
    for column in JSON_COLUMNS:
        raw = record.get(column)
        if isinstance(raw, str):
            try:
                record[column] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Vehicle %s: column %s is not valid JSON", record.get("id"), column)
    for column in DATETIME_COLUMNS:
        raw = record.get(column)
        if isinstance(raw, str):
            try:
                record[column] = datetime.fromisoformat(raw)
            except ValueError:
                pass
    return record


class VehicleRepository:
    """Vehicle listings stored in a single SQLite table.

    ``source_url`` is the deduplication key; inserting a second record
    with the same URL raises :class:`DuplicateVehicleError`.
    """

    def __init__(self, db_path: str | Path = "vehicles.db"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(SCHEMA)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_vehicle(self, record) -> str:
        """Insert *record* and return its id."""
        now = _utcnow()
        values = {column: record.get(column) for column in COLUMNS}
        values["id"] = values["id"] or str(uuid.uuid4())
        values["status"] = values["status"] or VehicleStatus.NEW.value
        values["created_at"] = values["created_at"] or now
        values["updated_at"] = values["updated_at"] or now
        if not values["source"] or not values["source_url"]:
            raise RepositoryError("Vehicle records need a source and a source_url")

        placeholders = ", ".join("?" for _ in COLUMNS)
        try:
            with self.conn:
                self.conn.execute(
                    f"INSERT INTO vehicles ({', '.join(COLUMNS)}) VALUES ({placeholders})",
                    [_to_db(column, values[column]) for column in COLUMNS],
                )
        except sqlite3.IntegrityError as exc:
            if "source_url" in str(exc):
                raise DuplicateVehicleError(f"Vehicle already stored: {values['source_url']}") from exc
            raise RepositoryError(f"Vehicle insertion failed: {exc}") from exc

        logger.debug("Inserted vehicle %s (%s)", values["id"], values["source_url"])
        return values["id"]

    def _update(self, vehicle_id: str, updates: dict, allowed: frozenset) -> None:
        unknown = sorted(set(updates) - allowed)
        if unknown:
            raise RepositoryError(f"Fields cannot be updated: {', '.join(unknown)}")
        if not updates:
            logger.warning("No updates provided for vehicle %s", vehicle_id)
            return

        fields = dict(updates)
        fields["updated_at"] = _utcnow()
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self.conn:
            cursor = self.conn.execute(
                f"UPDATE vehicles SET {assignments} WHERE id = ?",
                [_to_db(column, value) for column, value in fields.items()] + [vehicle_id],
            )
        if cursor.rowcount == 0:
            raise VehicleNotFoundError(f"Vehicle with ID {vehicle_id} not found")

    def update_vehicle(self, vehicle_id: str, updates: dict) -> None:
        """Update workflow, translation, or analysis fields of a vehicle."""
        self._update(vehicle_id, updates, UPDATABLE_FIELDS)

    def update_vehicle_analysis(self, vehicle_id: str, updates: dict) -> None:
        """Persist the fields produced by one analysis pass in a single write."""
        self._update(vehicle_id, updates, ANALYSIS_FIELDS)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_vehicle_by_url(self, source_url: str) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM vehicles WHERE source_url = ?", (source_url,)
        ).fetchone()
        return _from_db(row) if row else None

    def find_vehicle_by_id(self, vehicle_id: str) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM vehicles WHERE id = ?", (vehicle_id,)
        ).fetchone()
        return _from_db(row) if row else None

    def get_all_vehicles(self) -> list[dict]:
        rows = self.conn.execute("SELECT * FROM vehicles ORDER BY created_at DESC").fetchall()
        return [_from_db(r) for r in rows]

    def find_vehicles_needing_analysis(self) -> list[dict]:
        """Non-deleted vehicles missing the translation or any AI field."""
        missing = " OR ".join(f"{column} IS NULL" for column in ("description", *AI_FIELDS))
        # An empty market value score counts as missing, like None.
        missing += " OR market_value_score = ''"
        rows = self.conn.execute(
            f"SELECT * FROM vehicles WHERE status != 'deleted' AND ({missing}) "
            "ORDER BY created_at ASC"
        ).fetchall()
        return [_from_db(r) for r in rows]

    def find_vehicles_needing_translation(self, force: bool = False) -> list[dict]:
        query = "SELECT * FROM vehicles WHERE status != 'deleted'"
        if not force:
            query += " AND description IS NULL"
        rows = self.conn.execute(query + " ORDER BY created_at ASC").fetchall()
        return [_from_db(r) for r in rows]

    def find_comparable_vehicles(
        self,
        source: str,
        make: str,
        model: str,
        year: int,
        mileage: int,
        exclude_id: str | None = None,
        year_range: int = 3,
        mileage_range: int = 50_000,
    ) -> list[dict]:
        """Vehicles of the same make/model within the year and mileage windows.

        Make and model are matched case-insensitively against the known
        parameter-name variants.  Soft-deleted vehicles and *exclude_id*
        are never returned.
        """
        rows = self.conn.execute(
            "SELECT * FROM vehicles "
            "WHERE source = ? AND status != 'deleted' AND id != ? "
            "AND price_eur IS NOT NULL "
            "AND year BETWEEN ? AND ? AND mileage BETWEEN ? AND ?",
            (
                source,
                exclude_id or "",
                year - year_range, year + year_range,
                mileage - mileage_range, mileage + mileage_range,
            ),
        ).fetchall()

        make_l, model_l = make.lower(), model.lower()
        comparables = []
        for row in rows:
            record = _from_db(row)
            params = record.get("source_parameters")
            row_make, row_model = extract_make_model(params if isinstance(params, dict) else {})
            if (
                row_make and row_model
                and str(row_make).lower() == make_l
                and str(row_model).lower() == model_l
            ):
                comparables.append(record)
        return comparables
