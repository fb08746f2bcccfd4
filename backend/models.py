# models.py
"""
SQLAlchemy ORM Models for the AgriMarket application.

Defines the tables for users, profiles, product catalogue, orders,
messages and seller verification requests.
"""

import uuid
import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime, Numeric, JSON,
    ForeignKey, CheckConstraint, Index, text
)
from sqlalchemy.orm import relationship

# Import the Base from the central database configuration file
from database import Base

# Get a logger for this module
log = logging.getLogger(__name__)

USER_ROLES = ("farmer", "buyer")
PRODUCT_STATUSES = ("active", "sold_out", "draft")
ORDER_STATUSES = ("pending", "accepted", "rejected", "packed", "dispatched", "delivered", "cancelled")
VERIFICATION_STATUSES = ("pending", "approved", "rejected")


def generate_id() -> str:
    """Random UUID4 primary key, stored as text."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _in_check(column: str, values) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


# --- User Model (identity-provider subject) ---
class User(Base):
    """A marketplace user, keyed by the identity provider's subject id."""
    __tablename__ = 'users'

    id = Column(String, primary_key=True, default=generate_id, comment="Identity-provider subject id")
    email = Column(String(255), unique=True, index=True, nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    profile_image_url = Column(String, nullable=True)
    role = Column(String(20), nullable=False, default="buyer", comment="'farmer' or 'buyer'")
    is_verified = Column(Boolean, nullable=False, default=False, comment="Set only by an approved verification")
    phone = Column(String(30), nullable=True)
    location = Column(String(200), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    profile = relationship("UserProfile", uselist=False, back_populates="user", passive_deletes=True)

    __table_args__ = (
        CheckConstraint(_in_check("role", USER_ROLES), name="ck_users_role"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"


class UserProfile(Base):
    """Farm metadata attached to a user. One per user, enforced in storage."""
    __tablename__ = 'user_profiles'

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    bio = Column(Text, nullable=True)
    farm_name = Column(String(200), nullable=True)
    farm_size = Column(String(100), nullable=True)
    farm_location = Column(String(200), nullable=True)
    coordinates = Column(String(100), nullable=True, comment="Free text 'lat,lng'")
    specialization = Column(String(200), nullable=True)
    years_experience = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="profile")

    def __repr__(self):
        return f"<UserProfile(user_id={self.user_id}, farm='{self.farm_name}')>"


class ProductCategory(Base):
    __tablename__ = 'product_categories'

    id = Column(String, primary_key=True, default=generate_id)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<ProductCategory(id={self.id}, name='{self.name}')>"


class Product(Base):
    """A produce listing owned by a farmer."""
    __tablename__ = 'products'

    id = Column(String, primary_key=True, default=generate_id)
    farmer_id = Column(String, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    category_id = Column(String, ForeignKey('product_categories.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    price_per_kg = Column(Numeric(10, 2), nullable=False)
    available_stock = Column(Integer, nullable=False)
    unit = Column(String(20), nullable=False, default="kg")
    is_organic = Column(Boolean, default=False)
    allow_pre_order = Column(Boolean, default=False)
    harvest_date = Column(DateTime(timezone=True), nullable=True)
    expiry_date = Column(DateTime(timezone=True), nullable=True)
    quality_grade = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    images = Column(JSON, nullable=True, comment="List of image URLs")

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(_in_check("status", PRODUCT_STATUSES), name="ck_products_status"),
    )

    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', farmer={self.farmer_id})>"


class Order(Base):
    """An order placed by a buyer with a single farmer."""
    __tablename__ = 'orders'

    id = Column(String, primary_key=True, default=generate_id)
    buyer_id = Column(String, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    farmer_id = Column(String, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")
    total_amount = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    delivery_address = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OrderItem.created_at",
    )

    __table_args__ = (
        CheckConstraint(_in_check("status", ORDER_STATUSES), name="ck_orders_status"),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, buyer={self.buyer_id}, farmer={self.farmer_id}, status='{self.status}')>"


class OrderItem(Base):
    __tablename__ = 'order_items'

    id = Column(String, primary_key=True, default=generate_id)
    order_id = Column(String, ForeignKey('orders.id', ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String, ForeignKey('products.id', ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    price_per_unit = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem(order={self.order_id}, product={self.product_id}, qty={self.quantity})>"


class Message(Base):
    """A direct message between two users, optionally about an order."""
    __tablename__ = 'messages'

    id = Column(String, primary_key=True, default=generate_id)
    sender_id = Column(String, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    receiver_id = Column(String, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(String, ForeignKey('orders.id', ondelete="CASCADE"), nullable=True, index=True)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    def __repr__(self):
        return f"<Message(id={self.id}, from={self.sender_id}, to={self.receiver_id})>"


class Verification(Base):
    """A seller's identity verification request awaiting admin review."""
    __tablename__ = 'verifications'

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    full_name = Column(String(200), nullable=False)
    id_number = Column(String(100), nullable=True)
    phone = Column(String(30), nullable=True)
    address = Column(Text, nullable=True)
    farm_name = Column(String(200), nullable=True)
    coordinates = Column(String(100), nullable=True, comment="Free text 'lat,lng'")
    id_image_url = Column(String, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    notes = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), default=utcnow)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    reviewer_id = Column(String, ForeignKey('users.id'), nullable=True)

    __table_args__ = (
        CheckConstraint(_in_check("status", VERIFICATION_STATUSES), name="ck_verifications_status"),
        # At most one request per user may be waiting for review
        Index(
            "uq_verifications_user_pending", "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self):
        return f"<Verification(id={self.id}, user={self.user_id}, status='{self.status}')>"
