"""
Record tables and the upsert-by-natural-key persistence contract.

Each schema type owns one table with a unique constraint on its natural key.
The writer talks to ``RecordRepository`` only; ``SqlRecordRepository`` is the
SQLAlchemy Core implementation used in production (PostgreSQL) and in tests
(SQLite).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    and_,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DataError, IntegrityError, InterfaceError, OperationalError

from app.domain.imports.errors import StorageUnavailable
from app.domain.imports.records import TypedRecord
from app.domain.imports.schema_mapper import SCHEMAS, SchemaType

logger = logging.getLogger(__name__)

metadata = MetaData()

NaturalKey = Tuple[Any, ...]


def _audit_columns() -> List[Column]:
    return [
        Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
        Column("updated_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    ]


pricelist_items = Table(
    "pricelist_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("item_code", String(50), nullable=False),
    Column("normal_price", Numeric(15, 2), nullable=False),
    Column("special_price", Numeric(15, 2)),
    Column("sn", String(100)),
    Column("kelompok", String(50)),
    Column("family", String(50)),
    Column("kode_material", String(255)),
    Column("kode_motif", String(50)),
    Column("nama_motif", String(255)),
    *_audit_columns(),
    UniqueConstraint("item_code", name="uq_pricelist_items_item_code"),
)

transfer_items = Table(
    "transfer_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("to_number", String(50), nullable=False),
    Column("sn", String(100), nullable=False),
    Column("item_code", String(50), nullable=False),
    Column("line_no", Integer),
    Column("item_name", String(255)),
    Column("qty", Integer, nullable=False, server_default="1"),
    *_audit_columns(),
    UniqueConstraint("to_number", "sn", name="uq_transfer_items_to_number_sn"),
)

staff = Table(
    "staff",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("nik", String(50), nullable=False),
    Column("email", String(255), nullable=False),
    Column("full_name", String(255), nullable=False),
    Column("city", String(100)),
    Column("address", String(255)),
    Column("phone", String(20)),
    Column("birth_place", String(100)),
    Column("birth_date", Date),
    Column("joined_date", Date),
    Column("position", String(100)),
    *_audit_columns(),
    UniqueConstraint("nik", name="uq_staff_nik"),
    UniqueConstraint("email", name="uq_staff_email"),
)

stores = Table(
    "stores",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("store_code", String(50), nullable=False),
    Column("store_name", String(255), nullable=False),
    Column("store_type", String(50)),
    *_audit_columns(),
    UniqueConstraint("store_code", name="uq_stores_store_code"),
)

reference_sheet = Table(
    "reference_sheet",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("item_code", String(50), nullable=False),
    Column("item_name", String(255)),
    Column("kelompok", String(100)),
    Column("family", String(100)),
    Column("original_code", String(150)),
    Column("color", String(100)),
    Column("kode_material", String(100)),
    Column("deskripsi_material", String(500)),
    Column("kode_motif", String(100)),
    Column("deskripsi_motif", String(500)),
    *_audit_columns(),
    UniqueConstraint("item_code", name="uq_reference_sheet_item_code"),
)

RECORD_TABLES: Dict[SchemaType, Table] = {
    SchemaType.PRICELIST: pricelist_items,
    SchemaType.TRANSFER_ITEMS: transfer_items,
    SchemaType.STAFF: staff,
    SchemaType.STORES: stores,
    SchemaType.REFERENCE_SHEET: reference_sheet,
}


def ensure_record_tables(engine: Engine) -> None:
    """Create the record tables on startup if they do not exist."""
    metadata.create_all(engine, checkfirst=True)


@dataclass
class UpsertResult:
    created_keys: List[NaturalKey] = field(default_factory=list)
    updated_keys: List[NaturalKey] = field(default_factory=list)
    # natural key -> human readable constraint failure
    failures: Dict[NaturalKey, str] = field(default_factory=dict)


class RecordRepository(Protocol):
    def upsert(self, schema_type: SchemaType, records: Sequence[TypedRecord]) -> UpsertResult:
        ...

    def fetch(self, schema_type: SchemaType, key: NaturalKey) -> Optional[Dict[str, Any]]:
        ...

    def count(self, schema_type: SchemaType) -> int:
        ...


def _describe_constraint_error(error: Exception) -> str:
    origin = getattr(error, "orig", None) or error
    message = str(origin).strip().splitlines()[0] if str(origin).strip() else type(origin).__name__
    return f"Database rejected row: {message}"


class SqlRecordRepository:
    """
    Upsert records with one transaction per batch.

    The fast path is a single ``INSERT ... ON CONFLICT (natural key) DO
    UPDATE``. If the batch trips any other constraint, it is replayed row by
    row inside SAVEPOINTs so only the offending rows are reported as failures.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        dialect = engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise ValueError(f"Unsupported database dialect for upserts: {dialect}")
        self._insert = insert

    def _key_columns(self, schema_type: SchemaType, table: Table) -> List[Column]:
        return [table.c[name] for name in SCHEMAS[schema_type].natural_key]

    def _upsert_statement(self, schema_type: SchemaType, table: Table):
        key_names = SCHEMAS[schema_type].natural_key
        stmt = self._insert(table)
        update_columns = {
            column.name: stmt.excluded[column.name]
            for column in table.columns
            if column.name not in key_names and column.name not in ("id", "created_at", "updated_at")
        }
        update_columns["updated_at"] = func.now()
        return stmt.on_conflict_do_update(index_elements=list(key_names), set_=update_columns)

    def _existing_keys(self, conn: Connection, schema_type: SchemaType, keys: Sequence[NaturalKey]) -> set:
        table = RECORD_TABLES[schema_type]
        key_columns = self._key_columns(schema_type, table)
        if len(key_columns) == 1:
            condition = key_columns[0].in_([key[0] for key in keys])
        else:
            condition = or_(*[
                and_(*[column == value for column, value in zip(key_columns, key)])
                for key in keys
            ])
        rows = conn.execute(select(*key_columns).where(condition))
        return {tuple(row) for row in rows}

    def upsert(self, schema_type: SchemaType, records: Sequence[TypedRecord]) -> UpsertResult:
        if not records:
            return UpsertResult()
        try:
            try:
                return self._upsert_batch(schema_type, records)
            except (IntegrityError, DataError) as exc:
                logger.warning(
                    "Batch upsert into %s hit a constraint (%s); retrying %d rows individually",
                    RECORD_TABLES[schema_type].name, _describe_constraint_error(exc), len(records),
                )
                return self._upsert_row_by_row(schema_type, records)
        except (OperationalError, InterfaceError) as exc:
            logger.error("Database unavailable during upsert into %s: %s", schema_type.value, exc)
            raise StorageUnavailable(f"Database unavailable: {getattr(exc, 'orig', None) or exc}") from exc

    def _upsert_batch(self, schema_type: SchemaType, records: Sequence[TypedRecord]) -> UpsertResult:
        table = RECORD_TABLES[schema_type]
        keys = [record.natural_key() for record in records]
        with self._engine.begin() as conn:
            existing = self._existing_keys(conn, schema_type, keys)
            conn.execute(self._upsert_statement(schema_type, table), [record.to_row() for record in records])
        result = UpsertResult()
        for key in keys:
            (result.updated_keys if key in existing else result.created_keys).append(key)
        return result

    def _upsert_row_by_row(self, schema_type: SchemaType, records: Sequence[TypedRecord]) -> UpsertResult:
        table = RECORD_TABLES[schema_type]
        statement = self._upsert_statement(schema_type, table)
        result = UpsertResult()
        with self._engine.begin() as conn:
            for record in records:
                key = record.natural_key()
                try:
                    with conn.begin_nested():
                        existed = bool(self._existing_keys(conn, schema_type, [key]))
                        conn.execute(statement, [record.to_row()])
                except (IntegrityError, DataError) as exc:
                    result.failures[key] = _describe_constraint_error(exc)
                    logger.debug("Row %s rejected by %s: %s", key, table.name, exc)
                    continue
                (result.updated_keys if existed else result.created_keys).append(key)
        return result

    def fetch(self, schema_type: SchemaType, key: NaturalKey) -> Optional[Dict[str, Any]]:
        table = RECORD_TABLES[schema_type]
        key_columns = self._key_columns(schema_type, table)
        condition = and_(*[column == value for column, value in zip(key_columns, key)])
        with self._engine.connect() as conn:
            row = conn.execute(select(table).where(condition)).mappings().first()
        return dict(row) if row else None

    def count(self, schema_type: SchemaType) -> int:
        table = RECORD_TABLES[schema_type]
        with self._engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar_one()
