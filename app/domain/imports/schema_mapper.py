"""
Schema mapping for bulk imports.

Each schema type declares its canonical fields, the header aliases accepted
for every field, and which fields are required. Source headers are matched
after normalization, so "Kode Item", "kode_item" and "KODE-ITEM" all resolve
to the same canonical field.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional, Sequence, Tuple
import re
import logging

from app.core.config import settings
from app.domain.imports.errors import InvalidSchemaType

logger = logging.getLogger(__name__)


class SchemaType(str, Enum):
    PRICELIST = "pricelist"
    TRANSFER_ITEMS = "transfer_items"
    STAFF = "staff"
    STORES = "stores"
    REFERENCE_SHEET = "reference_sheet"


class FieldKind(str, Enum):
    STRING = "string"
    CODE = "code"
    DECIMAL = "decimal"
    INTEGER = "integer"
    DATE = "date"
    EMAIL = "email"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    aliases: Tuple[str, ...] = ()
    required: bool = False
    kind: FieldKind = FieldKind.STRING
    default: Optional[str] = None
    max_length: Optional[int] = None


@dataclass(frozen=True)
class SchemaDefinition:
    schema_type: SchemaType
    fields: Tuple[FieldSpec, ...]
    natural_key: Tuple[str, ...]
    # Regexes applied to rows above the header; group 1 becomes a field default.
    preamble_patterns: Dict[str, str] = field(default_factory=dict)

    @property
    def field_names(self) -> List[str]:
        return [spec.name for spec in self.fields]

    @property
    def required_fields(self) -> List[str]:
        return [spec.name for spec in self.fields if spec.required]

    def get_field(self, name: str) -> FieldSpec:
        for spec in self.fields:
            if spec.name == name:
                return spec
        raise KeyError(name)


@dataclass
class HeaderMapping:
    """Resolved mapping from source column positions to canonical fields."""

    headers: List[str]
    columns: Dict[int, str]
    unmapped: List[str]

    @property
    def mapped_fields(self) -> List[str]:
        return list(self.columns.values())


def normalize_column_name(name: Any) -> str:
    """
    Normalize a column name for comparison.

    - Convert to lowercase
    - Remove spaces, hyphens, underscores and punctuation

    Examples:
        "Kode Item" -> "kodeitem"
        "kode_item" -> "kodeitem"
        "No. Baris" -> "nobaris"
    """
    if name is None:
        return ""
    normalized = str(name).lower().strip()
    normalized = re.sub(r'[\s\-_]+', '', normalized)
    normalized = re.sub(r'[^a-z0-9]', '', normalized)
    return normalized


SCHEMAS: Dict[SchemaType, SchemaDefinition] = {
    SchemaType.PRICELIST: SchemaDefinition(
        schema_type=SchemaType.PRICELIST,
        natural_key=("item_code",),
        fields=(
            FieldSpec("item_code", ("kode item", "kode_item", "sku", "itemcode"), required=True,
                      kind=FieldKind.CODE, max_length=50),
            FieldSpec("normal_price", ("normal price", "harga normal", "harga_normal", "price", "harga"),
                      required=True, kind=FieldKind.DECIMAL),
            FieldSpec("special_price", ("sp", "special price", "harga khusus", "harga_khusus"),
                      kind=FieldKind.DECIMAL),
            FieldSpec("sn", ("serial_number", "serial no", "serial"), kind=FieldKind.CODE, max_length=100),
            FieldSpec("kelompok", ("kelompol", "group", "category_group"), max_length=50),
            FieldSpec("family", ("famili", "familia"), max_length=50),
            FieldSpec("kode_material", ("kode material", "material_code", "deskripsi material"), max_length=255),
            FieldSpec("kode_motif", ("kode motif", "motif_code", "pattern_code"), max_length=50),
            FieldSpec("nama_motif", ("nama motif", "motif_name", "pattern_name", "nama"), max_length=255),
        ),
    ),
    SchemaType.TRANSFER_ITEMS: SchemaDefinition(
        schema_type=SchemaType.TRANSFER_ITEMS,
        natural_key=("to_number", "sn"),
        fields=(
            FieldSpec("to_number", ("nomor to", "no to", "transfer order", "to no"), required=True,
                      kind=FieldKind.CODE, max_length=50),
            FieldSpec("sn", ("s/n", "serial_number", "serial no", "serial", "serialno"), required=True,
                      kind=FieldKind.CODE, max_length=100),
            FieldSpec("item_code", ("kode item", "kode_item", "sku", "itemcode", "code"), required=True,
                      kind=FieldKind.CODE, max_length=50),
            FieldSpec("line_no", ("no. baris", "no baris", "line no", "row no"), kind=FieldKind.INTEGER),
            FieldSpec("item_name", ("nama item", "nama_item", "nama", "product name", "description"),
                      max_length=255),
            FieldSpec("qty", ("q to tran", "quantity", "jumlah"), kind=FieldKind.INTEGER, default="1"),
        ),
        preamble_patterns={"to_number": r"untuk\s*nomor\s*to\s*:\s*(.+)"},
    ),
    SchemaType.STAFF: SchemaDefinition(
        schema_type=SchemaType.STAFF,
        natural_key=("nik",),
        fields=(
            FieldSpec("nik", ("employee id", "employee_number"), required=True, kind=FieldKind.CODE, max_length=50),
            FieldSpec("email", ("email address", "e-mail"), required=True, kind=FieldKind.EMAIL, max_length=255),
            FieldSpec("full_name", ("nama lengkap", "nama_lengkap", "name"), required=True, max_length=255),
            FieldSpec("city", ("kota",), max_length=100),
            FieldSpec("address", ("alamat",), max_length=255),
            FieldSpec("phone", ("phone number", "no hp", "no_hp"), max_length=20),
            FieldSpec("birth_place", ("place of birth", "tempat lahir", "tempat_lahir"), max_length=100),
            FieldSpec("birth_date", ("date of birth", "tanggal lahir", "tanggal_lahir"), kind=FieldKind.DATE),
            FieldSpec("joined_date", ("date joined", "tanggal masuk", "tanggal_masuk"), kind=FieldKind.DATE),
            FieldSpec("position", ("jabatan",), max_length=100),
        ),
    ),
    SchemaType.STORES: SchemaDefinition(
        schema_type=SchemaType.STORES,
        natural_key=("store_code",),
        fields=(
            FieldSpec("store_code", ("kode gudang", "kode_gudang", "warehouse code"), required=True,
                      kind=FieldKind.CODE, max_length=50),
            FieldSpec("store_name", ("nama gudang", "nama_gudang", "warehouse name"), required=True,
                      max_length=255),
            FieldSpec("store_type", ("jenis gudang", "jenis_gudang", "warehouse type"), max_length=50),
        ),
    ),
    SchemaType.REFERENCE_SHEET: SchemaDefinition(
        schema_type=SchemaType.REFERENCE_SHEET,
        natural_key=("item_code",),
        fields=(
            FieldSpec("item_code", ("kode item", "kode_item", "sku", "itemcode"), required=True,
                      kind=FieldKind.CODE, max_length=50),
            FieldSpec("item_name", ("nama item", "nama_item"), max_length=255),
            FieldSpec("kelompok", ("kelompol", "group"), max_length=100),
            FieldSpec("family", ("famili",), max_length=100),
            FieldSpec("original_code", ("kode asli", "original code"), max_length=150),
            FieldSpec("color", ("warna", "colour"), max_length=100),
            FieldSpec("kode_material", ("kode material", "material_code"), max_length=100),
            FieldSpec("deskripsi_material", ("deskripsi material", "material description"), max_length=500),
            FieldSpec("kode_motif", ("kode motif", "motif_code"), max_length=100),
            FieldSpec("deskripsi_motif", ("deskripsi motif", "motif description"), max_length=500),
        ),
    ),
}


def get_schema(schema_type: Any) -> SchemaDefinition:
    """Look up a schema definition, raising InvalidSchemaType for unknown names."""
    try:
        key = schema_type if isinstance(schema_type, SchemaType) else SchemaType(str(schema_type))
    except ValueError:
        raise InvalidSchemaType(str(schema_type))
    return SCHEMAS[key]


def max_file_size_bytes(schema_type: SchemaType) -> int:
    """Configured upload limit for a schema type."""
    limits = {
        SchemaType.PRICELIST: settings.pricelist_max_file_size_mb,
        SchemaType.TRANSFER_ITEMS: settings.transfer_items_max_file_size_mb,
    }
    return limits.get(schema_type, settings.upload_max_file_size_mb) * 1024 * 1024


def _alias_index(schema: SchemaDefinition) -> Dict[str, str]:
    index: Dict[str, str] = {}
    for spec in schema.fields:
        for alias in (spec.name,) + spec.aliases:
            # First declaration wins so a shared alias cannot steal a column.
            index.setdefault(normalize_column_name(alias), spec.name)
    return index


def resolve_field(schema: SchemaDefinition, header: Any) -> Optional[str]:
    """Return the canonical field a single header maps to, if any."""
    return _alias_index(schema).get(normalize_column_name(header))


def build_header_mapping(schema: SchemaDefinition, headers: Sequence[Any]) -> HeaderMapping:
    """
    Map source headers to canonical fields.

    The first column matching a canonical field wins; later duplicates and
    unknown headers are left unmapped and ignored downstream.
    """
    columns: Dict[int, str] = {}
    unmapped: List[str] = []
    taken = set()

    for position, header in enumerate(headers):
        canonical = resolve_field(schema, header)
        if canonical and canonical not in taken:
            columns[position] = canonical
            taken.add(canonical)
        elif header not in (None, ""):
            unmapped.append(str(header))

    return HeaderMapping(headers=[("" if h is None else str(h)) for h in headers], columns=columns, unmapped=unmapped)


def header_covers_required(schema: SchemaDefinition, mapping: HeaderMapping, defaults: Optional[Dict[str, Any]] = None) -> bool:
    """True if every required field is either a column or supplied as a default."""
    present = set(mapping.mapped_fields) | set((defaults or {}).keys())
    return all(name in present for name in schema.required_fields)


def find_header_row(
    schema: SchemaDefinition,
    rows: Sequence[Sequence[Any]],
    defaults: Optional[Dict[str, Any]] = None,
) -> Optional[int]:
    """
    Locate the header among the first rows of a file.

    Exported sheets often carry a title block above the real header (company
    name, "Untuk nomor TO: ..."). The header is the first row that covers
    every required field, counting preamble-derived defaults.
    """
    known = dict(defaults or {})
    for position, row in enumerate(rows):
        mapping = build_header_mapping(schema, row)
        if mapping.columns and header_covers_required(schema, mapping, known):
            return position
        known.update(extract_preamble_defaults(schema, [row]))
    return None


def extract_preamble_defaults(schema: SchemaDefinition, rows: Sequence[Sequence[Any]]) -> Dict[str, str]:
    """Pull field defaults out of title rows, e.g. the transfer order number."""
    found: Dict[str, str] = {}
    for field_name, pattern in schema.preamble_patterns.items():
        regex = re.compile(pattern, re.IGNORECASE)
        for row in rows:
            for cell in row:
                if cell is None:
                    continue
                match = regex.search(str(cell))
                if match and match.group(1).strip():
                    found.setdefault(field_name, match.group(1).strip())
    return found


def map_values(mapping: HeaderMapping, values: Sequence[Any]) -> Dict[str, Optional[str]]:
    """Turn a positional row into a canonical-field dict (raw strings only)."""
    record: Dict[str, Optional[str]] = {}
    for position, canonical in mapping.columns.items():
        value = values[position] if position < len(values) else None
        record[canonical] = None if value is None else str(value)
    return record


def map_record(schema: SchemaDefinition, raw: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """
    Map a header-keyed mapping to canonical fields.

    Used for records that arrive as dicts (retry corrections) rather than
    positional rows; keys may be canonical names or any alias.
    """
    headers = list(raw.keys())
    mapping = build_header_mapping(schema, headers)
    if mapping.unmapped:
        logger.debug("Ignoring unmapped %s fields: %s", schema.schema_type.value, mapping.unmapped)
    return map_values(mapping, [raw[h] for h in headers])
