"""Local billing entities touched by connector syncs.

Only the integration-facing columns are modelled here; the invoice/customer/
product CRUD surfaces live in the billing application.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Numeric, UniqueConstraint

from connector_hub.db.base import Base, utcnow


class ExternalSyncMixin:
    """Columns linking a local row to its counterpart in a third-party system."""

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    external_id = Column(String(100), nullable=True)
    external_source = Column(String(50), nullable=True)  # adapter slug: shopify, stripe, ...
    external_data_json = Column(Text, nullable=True)  # remote fields with no local column
    last_sync = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Customer(ExternalSyncMixin, Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_source", "external_id", name="uq_customer_external"),
    )

    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    tax_id = Column(String(50), nullable=True)


class Product(ExternalSyncMixin, Base):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_source", "external_id", name="uq_product_external"),
    )

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    sku = Column(String(100), nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    stock = Column(Integer, nullable=True)


class Invoice(ExternalSyncMixin, Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_source", "external_id", name="uq_invoice_external"),
    )

    invoice_number = Column(String(100), nullable=False)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    total = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    status = Column(String(30), nullable=True)
    issued_at = Column(DateTime, nullable=True)


ENTITY_MODELS = {
    "customer": Customer,
    "product": Product,
    "invoice": Invoice,
}
