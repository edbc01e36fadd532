# models.py
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    create_engine,
    String,
    Integer,
    DateTime,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    sessionmaker,
)


def _to_float(value, default: float = 0.0) -> float:
    try:
        return float(value) if value not in (None, "") else float(default)
    except (TypeError, ValueError):
        return float(default)


def _to_int(value, default: int = 0) -> int:
    try:
        return int(value) if value not in (None, "") else int(default)
    except (TypeError, ValueError):
        return int(default)


def _to_str(value) -> str:
    return "" if value is None else str(value)


def _pick(raw: dict, *keys, default=None):
    """First present key; the API sometimes answers in PascalCase."""
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return default


class InvalidDocument(ValueError):
    """The request body is not a purchase order document."""


# -----------------------------
# Render input (read-only snapshots of the REST API payloads)
# -----------------------------
@dataclass(frozen=True)
class Address:
    name: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""
    phone: str = ""
    contact_person: str = ""

    @classmethod
    def from_dict(cls, raw: dict | None) -> Optional["Address"]:
        if not isinstance(raw, dict):
            return None
        return cls(
            name=_to_str(_pick(raw, "name", "Name")).strip(),
            address=_to_str(_pick(raw, "address", "Address")).strip(),
            city=_to_str(_pick(raw, "city", "City")).strip(),
            state=_to_str(_pick(raw, "state", "State")).strip(),
            zip_code=_to_str(_pick(raw, "zipCode", "ZipCode", "postalCode")).strip(),
            country=_to_str(_pick(raw, "country", "Country")).strip(),
            phone=_to_str(_pick(raw, "phone", "Phone")).strip(),
            contact_person=_to_str(_pick(raw, "contactPerson", "ContactPerson")).strip(),
        )

    def city_line(self) -> str:
        return ", ".join(p for p in [self.city, self.state, self.zip_code, self.country] if p)


@dataclass(frozen=True)
class Payment:
    # type 1 = advance / deposit
    type: int = 0
    amount: float = 0.0

    @classmethod
    def from_dict(cls, raw: dict) -> "Payment":
        return cls(
            type=_to_int(_pick(raw, "type", "Type", "paymentType")),
            amount=_to_float(_pick(raw, "amount", "Amount")),
        )


@dataclass(frozen=True)
class LineItem:
    line_item_id: int = 0
    product_id: int = 0
    product_name: str = ""
    product_variant_id: Optional[int] = None
    sku: str = ""
    ordered_quantity: float = 0.0
    unit_price: float = 0.0
    line_total: float = 0.0
    notes: str = ""
    # Raw JSON blob; may carry image URLs and a color label.
    product_variant_attributes: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict) -> "LineItem":
        variant_id = _pick(raw, "productVariantId", "ProductVariantId")
        attrs = _pick(raw, "productVariantAttributes", "ProductVariantAttributes")
        if attrs is not None and not isinstance(attrs, str):
            # Already-decoded attributes are kept as the API's JSON text would be.
            attrs = json.dumps(attrs)
        return cls(
            line_item_id=_to_int(_pick(raw, "lineItemId", "LineItemId")),
            product_id=_to_int(_pick(raw, "productId", "ProductId")),
            product_name=_to_str(_pick(raw, "productName", "ProductName")),
            product_variant_id=_to_int(variant_id) if variant_id is not None else None,
            sku=_to_str(_pick(raw, "sku", "Sku", "SKU")).strip(),
            ordered_quantity=_to_float(_pick(raw, "orderedQuantity", "OrderedQuantity")),
            unit_price=_to_float(_pick(raw, "unitPrice", "UnitPrice")),
            line_total=_to_float(_pick(raw, "lineTotal", "LineTotal")),
            notes=_to_str(_pick(raw, "notes", "Notes")),
            product_variant_attributes=attrs,
        )


@dataclass(frozen=True)
class Approval:
    po_approval_id: int = 0
    user_id: int = 0
    user_name: str = ""
    user_email: str = ""
    status: str = "Pending"
    comment: str = ""
    signature_url: str = ""
    approved_date: str = ""
    rejected_date: str = ""
    created_date: str = ""

    @classmethod
    def from_dict(cls, raw: dict) -> "Approval":
        return cls(
            po_approval_id=_to_int(_pick(raw, "poApprovalId", "PoApprovalId")),
            user_id=_to_int(_pick(raw, "userId", "UserId")),
            user_name=_to_str(_pick(raw, "userName", "UserName")).strip(),
            user_email=_to_str(_pick(raw, "userEmail", "UserEmail")).strip(),
            status=_to_str(_pick(raw, "status", "Status", default="Pending")),
            comment=_to_str(_pick(raw, "comment", "Comment")),
            signature_url=_to_str(_pick(raw, "signatureUrl", "SignatureUrl")).strip(),
            approved_date=_to_str(_pick(raw, "approvedDate", "ApprovedDate")),
            rejected_date=_to_str(_pick(raw, "rejectedDate", "RejectedDate")),
            created_date=_to_str(_pick(raw, "createdDate", "CreatedDate")),
        )

    @property
    def decided_at(self) -> str:
        return self.approved_date or self.rejected_date


@dataclass(frozen=True)
class PurchaseOrder:
    purchase_order_id: int = 0
    po_number: str = ""
    vendor_id: int = 0
    vendor_name: str = ""
    warehouse_id: Optional[int] = None
    warehouse_name: str = ""
    status: str = ""
    notes: str = ""
    delivery_term: str = ""
    packing: str = ""
    total_value: float = 0.0
    payments_total: float = 0.0
    payment_balance: float = 0.0
    payments: tuple[Payment, ...] = ()
    po_date: str = ""
    created_date: str = ""
    expected_delivery_date: str = ""
    created_by_name: str = ""
    line_items: tuple[LineItem, ...] = ()
    approvals: tuple[Approval, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict) -> "PurchaseOrder":
        warehouse_id = _pick(raw, "warehouseId", "WarehouseId")
        return cls(
            purchase_order_id=_to_int(_pick(raw, "purchaseOrderId", "PurchaseOrderId")),
            po_number=_to_str(_pick(raw, "poNumber", "PoNumber")).strip(),
            vendor_id=_to_int(_pick(raw, "vendorId", "VendorId")),
            vendor_name=_to_str(_pick(raw, "vendorName", "VendorName")).strip(),
            warehouse_id=_to_int(warehouse_id) if warehouse_id is not None else None,
            warehouse_name=_to_str(_pick(raw, "warehouseName", "WarehouseName")).strip(),
            status=_to_str(_pick(raw, "status", "Status")),
            notes=_to_str(_pick(raw, "notes", "Notes")),
            delivery_term=_to_str(_pick(raw, "deliveryTerm", "DeliveryTerm")),
            packing=_to_str(_pick(raw, "packing", "Packing")),
            total_value=_to_float(_pick(raw, "totalValue", "TotalValue")),
            payments_total=_to_float(_pick(raw, "paymentsTotal", "PaymentsTotal")),
            payment_balance=_to_float(_pick(raw, "paymentBalance", "PaymentBalance")),
            payments=tuple(
                Payment.from_dict(p) for p in (_pick(raw, "payments", "Payments") or []) if isinstance(p, dict)
            ),
            po_date=_to_str(_pick(raw, "poDate", "PoDate")),
            created_date=_to_str(_pick(raw, "createdDate", "CreatedDate")),
            expected_delivery_date=_to_str(_pick(raw, "expectedDeliveryDate", "ExpectedDeliveryDate")),
            created_by_name=_to_str(_pick(raw, "createdByName", "CreatedByName")).strip(),
            line_items=tuple(
                LineItem.from_dict(li) for li in (_pick(raw, "lineItems", "LineItems") or []) if isinstance(li, dict)
            ),
            approvals=tuple(
                Approval.from_dict(a) for a in (_pick(raw, "approvals", "Approvals") or []) if isinstance(a, dict)
            ),
        )

    # Convenience totals (computed, not stored)
    def deposit(self) -> float:
        for p in self.payments:
            if p.type == 1:
                return p.amount
        return 0.0

    def balance(self) -> float:
        if self.payment_balance:
            return self.payment_balance
        return round(self.total_value - self.payments_total, 2)


@dataclass(frozen=True)
class DocumentInput:
    """Everything one render needs. Owned by the caller; never mutated by the renderer."""
    purchase_order: PurchaseOrder
    warehouse_address: Optional[Address] = None
    vendor_address: Optional[Address] = None
    approvals: Optional[tuple[Approval, ...]] = None

    @classmethod
    def from_dict(cls, raw: dict) -> "DocumentInput":
        if not isinstance(raw, dict):
            raise InvalidDocument("Document payload must be a JSON object.")
        po_raw = _pick(raw, "purchaseOrder", "PurchaseOrder")
        if not isinstance(po_raw, dict):
            raise InvalidDocument("Document payload is missing 'purchaseOrder'.")
        approvals_raw = _pick(raw, "approvals", "Approvals")
        approvals = None
        if isinstance(approvals_raw, list):
            approvals = tuple(Approval.from_dict(a) for a in approvals_raw if isinstance(a, dict))
        return cls(
            purchase_order=PurchaseOrder.from_dict(po_raw),
            warehouse_address=Address.from_dict(_pick(raw, "warehouseAddress", "WarehouseAddress")),
            vendor_address=Address.from_dict(_pick(raw, "vendorAddress", "VendorAddress")),
            approvals=approvals,
        )

    def approval_list(self) -> tuple[Approval, ...]:
        # Explicit approvals win over the ones embedded in the purchase order.
        if self.approvals is not None:
            return self.approvals
        return self.purchase_order.approvals


# -----------------------------
# SQLAlchemy base
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Tables
# -----------------------------
class PurchaseOrderPdf(Base):
    """
    One stored PDF per PO number (regenerating overwrites the file and the row).
    """
    __tablename__ = "po_pdfs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    purchase_order_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    po_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    pdf_path: Mapped[str] = mapped_column(String, nullable=False)
    page_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


# -----------------------------
# Engine / Session factory
# -----------------------------
def make_engine(db_url: str, echo: bool = False):
    """
    Create SQLAlchemy engine.
    Note: SQLite path must exist (instance/ folder). db_init.py creates it.
    """
    return create_engine(db_url, echo=echo, future=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def find_stored_pdf(session, po_number: str) -> Optional[PurchaseOrderPdf]:
    return session.execute(
        select(PurchaseOrderPdf).where(PurchaseOrderPdf.po_number == po_number)
    ).scalar_one_or_none()
