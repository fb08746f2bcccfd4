# backend/schemas.py
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

UserRole = Literal["farmer", "buyer"]
ProductStatus = Literal["active", "sold_out", "draft"]
OrderStatus = Literal["pending", "accepted", "rejected", "packed", "dispatched", "delivered", "cancelled"]
ReviewStatus = Literal["approved", "rejected"]


# --- Base Schemas ---
class ApiModel(BaseModel):
    """camelCase on the wire (client contract), snake_case in Python."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True # Allow using field names for input too
        from_attributes = True # Read data from ORM objects


class MessageResponse(BaseModel):
    message: str


# --- Token Schemas (used by auth_utils) ---
class TokenData(BaseModel):
    sub: Optional[str] = None # Subject (identity-provider user id)
    type: Optional[str] = None # 'session'


class IdentityClaims(BaseModel):
    """Claims we read from the identity provider's token."""
    sub: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None


class SessionLogin(ApiModel):
    id_token: str = Field(..., min_length=1)


# --- User Schemas ---
class UserUpsert(BaseModel):
    """Fields left as None keep their stored value."""
    id: str
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    role: Optional[UserRole] = None
    phone: Optional[str] = None
    location: Optional[str] = None


class RoleUpdate(ApiModel):
    role: UserRole


class ProfileFields(ApiModel):
    bio: Optional[str] = None
    farm_name: Optional[str] = Field(None, max_length=200)
    farm_size: Optional[str] = Field(None, max_length=100)
    farm_location: Optional[str] = Field(None, max_length=200)
    coordinates: Optional[str] = Field(None, max_length=100) # "lat,lng"
    specialization: Optional[str] = Field(None, max_length=200)
    years_experience: Optional[int] = Field(None, ge=0)


class ProfileCreate(ProfileFields):
    pass


class ProfileUpdate(ProfileFields):
    """Patch: only fields present in the request body are applied."""


class ProfileOut(ProfileFields):
    id: str
    user_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserOut(ApiModel):
    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    role: str
    is_verified: bool
    phone: Optional[str] = None
    location: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserWithProfile(UserOut):
    profile: Optional[ProfileOut] = None


# --- Catalogue Schemas ---
class CategoryCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class CategoryOut(CategoryCreate):
    id: str
    created_at: Optional[datetime] = None


class ProductCreate(ApiModel):
    category_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    price_per_kg: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    available_stock: int = Field(..., ge=0)
    unit: str = Field("kg", min_length=1, max_length=20)
    is_organic: bool = False
    allow_pre_order: bool = False
    harvest_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    quality_grade: Optional[str] = Field(None, max_length=50)
    status: ProductStatus = "active"
    images: Optional[List[str]] = None


class ProductUpdate(ApiModel):
    """Patch for a product. farmerId is deliberately absent."""
    category_id: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    price_per_kg: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    available_stock: Optional[int] = Field(None, ge=0)
    unit: Optional[str] = Field(None, min_length=1, max_length=20)
    is_organic: Optional[bool] = None
    allow_pre_order: Optional[bool] = None
    harvest_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    quality_grade: Optional[str] = Field(None, max_length=50)
    status: Optional[ProductStatus] = None
    images: Optional[List[str]] = None

    @field_validator("category_id", "name", "price_per_kg", "available_stock", "unit", "status")
    @classmethod
    def not_null(cls, value):
        # These columns are NOT NULL; an explicit null in the patch is a client error
        if value is None:
            raise ValueError("may not be null")
        return value


class ProductOut(ApiModel):
    id: str
    farmer_id: str
    category_id: str
    name: str
    description: Optional[str] = None
    price_per_kg: Decimal
    available_stock: int
    unit: str
    is_organic: Optional[bool] = None
    allow_pre_order: Optional[bool] = None
    harvest_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    quality_grade: Optional[str] = None
    status: str
    images: Optional[List[str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- Order Schemas ---
class OrderItemCreate(ApiModel):
    product_id: str
    quantity: int = Field(..., gt=0)
    price_per_unit: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    total_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)


class OrderCreate(ApiModel):
    farmer_id: str
    items: List[OrderItemCreate] = Field(..., min_length=1)
    total_amount: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    delivery_fee: Decimal = Field(Decimal("0.00"), ge=0, max_digits=10, decimal_places=2)
    delivery_address: Optional[str] = None
    notes: Optional[str] = None


class OrderStatusUpdate(ApiModel):
    status: OrderStatus


class OrderItemOut(ApiModel):
    id: str
    order_id: str
    product_id: str
    quantity: int
    price_per_unit: Decimal
    total_price: Decimal
    created_at: Optional[datetime] = None


class OrderOut(ApiModel):
    id: str
    buyer_id: str
    farmer_id: str
    status: str
    total_amount: Decimal
    delivery_fee: Decimal
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderDetail(OrderOut):
    items: List[OrderItemOut] = []


# --- Message Schemas ---
class MessageCreate(ApiModel):
    receiver_id: str
    order_id: Optional[str] = None
    content: str = Field(..., min_length=1)

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message cannot be empty")
        return value


class MarkRead(ApiModel):
    sender_id: str


class MarkReadResponse(BaseModel):
    message: str
    updated: int


class MessageOut(ApiModel):
    id: str
    sender_id: str
    receiver_id: str
    order_id: Optional[str] = None
    content: str
    is_read: bool
    created_at: Optional[datetime] = None


# --- Verification Schemas ---
class VerificationCreate(ApiModel):
    full_name: str = Field(..., min_length=2, max_length=200)
    id_number: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = None
    farm_name: Optional[str] = Field(None, max_length=200)
    coordinates: Optional[str] = Field(None, max_length=100) # "lat,lng"
    id_image_url: Optional[str] = None


class VerificationReview(ApiModel):
    status: ReviewStatus
    notes: Optional[str] = None


class VerificationOut(VerificationCreate):
    id: str
    user_id: str
    status: str
    notes: Optional[str] = None
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewer_id: Optional[str] = None


# --- Upload Schemas ---
class UploadResponse(BaseModel):
    url: str
