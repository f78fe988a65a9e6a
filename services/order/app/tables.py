"""
Order Service — テーブル定義

在庫 (products.stock) と注文の決済状態 (orders.payment_status) が
共有される可変状態。どちらもトランザクション内の条件付き UPDATE でのみ変更する。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

MONEY = Numeric(12, 2)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False),
    Column("price", MONEY, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("deleted_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("stock >= 0", name="products_stock_non_negative"),
)

addresses = Table(
    "addresses",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("full_name", String(255), nullable=False),
    Column("phone_number", String(32), nullable=False),
    Column("district", String(100), nullable=False),
    Column("details", String(500), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

cart_items = Table(
    "cart_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", MONEY, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "product_id", name="cart_items_user_product_key"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(16), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("address_id", Integer, ForeignKey("addresses.id"), nullable=True),
    Column("delivery_date", Date, nullable=True),
    Column("delivery_time_slot", String(8), nullable=True),
    Column("total_amount", MONEY, nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("payment_status", String(20), nullable=False, index=True),
    Column("gateway_invoice_id", String(255), nullable=True, index=True),
    Column("gateway_payment_id", String(255), nullable=True),
    Column("invoice_expires_at", DateTime(timezone=True), nullable=True),
    Column("invoice_qr_text", Text, nullable=True),
    Column("paid_at", DateTime(timezone=True), nullable=True),
    Column("receipt_id", String(255), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", String(16), ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", MONEY, nullable=False),
    CheckConstraint("quantity > 0", name="order_items_quantity_positive"),
)

draft_orders = Table(
    "draft_orders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("session_token", String(128), nullable=False, unique=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("total_amount", MONEY, nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# 注文番号 (YYMMDDNNN) の日別採番
order_sequences = Table(
    "order_sequences",
    metadata,
    Column("day", String(6), primary_key=True),
    Column("last_value", Integer, nullable=False),
)

disabled_delivery_slots = Table(
    "disabled_delivery_slots",
    metadata,
    Column("delivery_date", Date, primary_key=True),
    Column("slot", String(8), primary_key=True),
)
