"""
Typed records produced by the validator, one model per schema type.

Raw parsed rows are plain string mappings; once a row passes validation it
becomes one of these models, tagged by ``schema_type`` so downstream code can
dispatch on the variant instead of inspecting keys.
"""
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar, Dict, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict

from app.domain.imports.schema_mapper import SchemaType


class _TypedRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    natural_key_fields: ClassVar[Tuple[str, ...]] = ()

    def natural_key(self) -> Tuple[Any, ...]:
        return tuple(getattr(self, name) for name in self.natural_key_fields)

    def to_row(self) -> Dict[str, Any]:
        """Column values for persistence (tag excluded)."""
        return self.model_dump(exclude={"schema_type"})


class PricelistRecord(_TypedRecord):
    schema_type: Literal[SchemaType.PRICELIST] = SchemaType.PRICELIST
    natural_key_fields: ClassVar[Tuple[str, ...]] = ("item_code",)

    item_code: str
    normal_price: Decimal
    special_price: Optional[Decimal] = None
    sn: Optional[str] = None
    kelompok: Optional[str] = None
    family: Optional[str] = None
    kode_material: Optional[str] = None
    kode_motif: Optional[str] = None
    nama_motif: Optional[str] = None


class TransferItemRecord(_TypedRecord):
    schema_type: Literal[SchemaType.TRANSFER_ITEMS] = SchemaType.TRANSFER_ITEMS
    natural_key_fields: ClassVar[Tuple[str, ...]] = ("to_number", "sn")

    to_number: str
    sn: str
    item_code: str
    line_no: Optional[int] = None
    item_name: Optional[str] = None
    qty: int = 1


class StaffRecord(_TypedRecord):
    schema_type: Literal[SchemaType.STAFF] = SchemaType.STAFF
    natural_key_fields: ClassVar[Tuple[str, ...]] = ("nik",)

    nik: str
    email: str
    full_name: str
    city: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    birth_place: Optional[str] = None
    birth_date: Optional[date] = None
    joined_date: Optional[date] = None
    position: Optional[str] = None


class StoreRecord(_TypedRecord):
    schema_type: Literal[SchemaType.STORES] = SchemaType.STORES
    natural_key_fields: ClassVar[Tuple[str, ...]] = ("store_code",)

    store_code: str
    store_name: str
    store_type: Optional[str] = None


class ReferenceSheetRecord(_TypedRecord):
    schema_type: Literal[SchemaType.REFERENCE_SHEET] = SchemaType.REFERENCE_SHEET
    natural_key_fields: ClassVar[Tuple[str, ...]] = ("item_code",)

    item_code: str
    item_name: Optional[str] = None
    kelompok: Optional[str] = None
    family: Optional[str] = None
    original_code: Optional[str] = None
    color: Optional[str] = None
    kode_material: Optional[str] = None
    deskripsi_material: Optional[str] = None
    kode_motif: Optional[str] = None
    deskripsi_motif: Optional[str] = None


TypedRecord = Union[PricelistRecord, TransferItemRecord, StaffRecord, StoreRecord, ReferenceSheetRecord]

RECORD_TYPES: Dict[SchemaType, Type[_TypedRecord]] = {
    SchemaType.PRICELIST: PricelistRecord,
    SchemaType.TRANSFER_ITEMS: TransferItemRecord,
    SchemaType.STAFF: StaffRecord,
    SchemaType.STORES: StoreRecord,
    SchemaType.REFERENCE_SHEET: ReferenceSheetRecord,
}


def build_record(schema_type: SchemaType, values: Dict[str, Any]) -> TypedRecord:
    return RECORD_TYPES[schema_type](**values)
