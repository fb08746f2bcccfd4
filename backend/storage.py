# storage.py
"""
Data access layer.

Every operation receives the SQLAlchemy Session as its first argument;
nothing here reaches for a global connection. Reads return ORM rows (or
None when absent); storage errors propagate unchanged to the caller,
which decides how to answer the HTTP request.
"""

import logging
from collections import Counter
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
import schemas
from errors import (
    DuplicatePendingVerificationError,
    OrderValidationError,
    VerificationAlreadyReviewedError,
)
from models import utcnow

log = logging.getLogger(__name__)

MAX_ROWS = 500 # Cap for every collection read


def _contains_pattern(term: str) -> str:
    """ILIKE pattern matching `term` literally anywhere in the value."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# =========================== USERS ===========================

def get_user(db: Session, user_id: str) -> Optional[models.User]:
    return db.get(models.User, user_id)


def upsert_user(db: Session, user: schemas.UserUpsert) -> models.User:
    """
    Inserts the user or updates it by id. Fields passed as None keep
    whatever is already stored (coalesce-to-existing).
    """
    values = user.model_dump(exclude={"id"}, exclude_none=True)
    db_user = db.get(models.User, user.id)
    if db_user is None:
        db_user = models.User(id=user.id, **values)
        db.add(db_user)
        log.info(f"Creating user {user.id}")
    else:
        for field, value in values.items():
            setattr(db_user, field, value)
        db_user.updated_at = utcnow()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(db_user)
    return db_user


# =========================== PROFILES ===========================

def get_user_profile(db: Session, user_id: str) -> Optional[models.UserProfile]:
    return db.query(models.UserProfile).filter(models.UserProfile.user_id == user_id).first()


def create_user_profile(db: Session, user_id: str, profile: schemas.ProfileCreate) -> models.UserProfile:
    db_profile = models.UserProfile(user_id=user_id, **profile.model_dump())
    db.add(db_profile)
    db.commit()
    db.refresh(db_profile)
    log.info(f"Profile {db_profile.id} created for user {user_id}")
    return db_profile


def update_user_profile(db: Session, user_id: str, patch: schemas.ProfileUpdate) -> Optional[models.UserProfile]:
    """Applies only the fields set on the patch. Empty patch returns the row as is."""
    db_profile = get_user_profile(db, user_id)
    if db_profile is None:
        return None
    updates = patch.model_dump(exclude_unset=True)
    if not updates:
        return db_profile
    for field, value in updates.items():
        setattr(db_profile, field, value)
    db.commit()
    db.refresh(db_profile)
    return db_profile


# =========================== CATALOGUE ===========================

def get_product_categories(db: Session) -> List[models.ProductCategory]:
    return db.query(models.ProductCategory).order_by(models.ProductCategory.name.asc()).all()


def get_product_category(db: Session, category_id: str) -> Optional[models.ProductCategory]:
    return db.get(models.ProductCategory, category_id)


def create_product_category(db: Session, category: schemas.CategoryCreate) -> models.ProductCategory:
    db_category = models.ProductCategory(**category.model_dump())
    db.add(db_category)
    db.commit()
    db.refresh(db_category)
    return db_category


def get_products(
    db: Session,
    category: Optional[str] = None,
    farmer_id: Optional[str] = None,
    search: Optional[str] = None,
) -> List[models.Product]:
    """Newest first, at most MAX_ROWS. Filters are ANDed; search is case-insensitive."""
    query = db.query(models.Product)
    if category:
        query = query.filter(models.Product.category_id == category)
    if farmer_id:
        query = query.filter(models.Product.farmer_id == farmer_id)
    if search:
        pattern = _contains_pattern(search)
        query = query.filter(or_(
            models.Product.name.ilike(pattern, escape="\\"),
            models.Product.description.ilike(pattern, escape="\\"),
        ))
    return query.order_by(models.Product.created_at.desc()).limit(MAX_ROWS).all()


def get_product(db: Session, product_id: str) -> Optional[models.Product]:
    return db.get(models.Product, product_id)


def create_product(db: Session, farmer_id: str, product: schemas.ProductCreate) -> models.Product:
    db_product = models.Product(farmer_id=farmer_id, **product.model_dump())
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    log.info(f"Product {db_product.id} listed by farmer {farmer_id}")
    return db_product


def update_product(db: Session, product_id: str, patch: schemas.ProductUpdate) -> Optional[models.Product]:
    """Applies only the fields set on the patch. Empty patch returns the row as is."""
    db_product = get_product(db, product_id)
    if db_product is None:
        return None
    updates = patch.model_dump(exclude_unset=True)
    if not updates:
        return db_product
    for field, value in updates.items():
        setattr(db_product, field, value)
    db.commit()
    db.refresh(db_product)
    return db_product


def delete_product(db: Session, product_id: str) -> int:
    """Deletes by id; order items go with it (FK cascade). Missing ids are fine."""
    deleted = db.query(models.Product).filter(models.Product.id == product_id).delete()
    db.commit()
    return deleted


# =========================== ORDERS ===========================

def get_orders(
    db: Session,
    buyer_id: Optional[str] = None,
    farmer_id: Optional[str] = None,
    participant_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[models.Order]:
    query = db.query(models.Order)
    if buyer_id:
        query = query.filter(models.Order.buyer_id == buyer_id)
    if farmer_id:
        query = query.filter(models.Order.farmer_id == farmer_id)
    if participant_id:
        query = query.filter(or_(
            models.Order.buyer_id == participant_id,
            models.Order.farmer_id == participant_id,
        ))
    if status:
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.created_at.desc()).limit(MAX_ROWS).all()


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    return db.get(models.Order, order_id)


def get_order_items(db: Session, order_id: str) -> List[models.OrderItem]:
    return (
        db.query(models.OrderItem)
        .filter(models.OrderItem.order_id == order_id)
        .order_by(models.OrderItem.created_at.asc())
        .all()
    )


def validate_order(db: Session, buyer_id: str, order: schemas.OrderCreate) -> List[dict]:
    """Returns per-field problems with the order; empty list means it's consistent."""
    errors = []
    if order.farmer_id == buyer_id:
        errors.append({"field": "farmerId", "message": "You cannot order from yourself"})

    line_sum = Decimal("0")
    requested = Counter()
    last_line = {}
    products = {}
    for index, line in enumerate(order.items):
        prefix = f"items.{index}"
        product = get_product(db, line.product_id)
        if product is None:
            errors.append({"field": f"{prefix}.productId", "message": "Product not found"})
        else:
            if product.farmer_id != order.farmer_id:
                errors.append({"field": f"{prefix}.productId", "message": "Product does not belong to this farmer"})
            if product.status != "active":
                errors.append({"field": f"{prefix}.productId", "message": f"Product is {product.status}"})
            # Lines for the same product share one stock
            requested[product.id] += line.quantity
            last_line[product.id] = index
            products[product.id] = product
        if line.total_price != line.price_per_unit * line.quantity:
            errors.append({"field": f"{prefix}.totalPrice", "message": "Must equal quantity x pricePerUnit"})
        line_sum += line.total_price

    for product_id, quantity in requested.items():
        product = products[product_id]
        if quantity > product.available_stock:
            errors.append({
                "field": f"items.{last_line[product_id]}.quantity",
                "message": f"Only {product.available_stock} {product.unit} available",
            })

    if order.total_amount != line_sum:
        errors.append({"field": "totalAmount", "message": f"Must equal the sum of line totals ({line_sum})"})
    return errors


def create_order(
    db: Session,
    buyer_id: str,
    order: schemas.OrderCreate,
    status: Optional[str] = None,
) -> models.Order:
    """
    Creates the order header and all of its line items as one unit.

    The order is validated first (OrderValidationError, nothing written).
    Header and items are then committed together; on any failure the
    transaction is rolled back before the error propagates, so no partial
    order is ever visible.
    """
    errors = validate_order(db, buyer_id, order)
    if errors:
        raise OrderValidationError(errors)

    db_order = models.Order(
        id=models.generate_id(),
        buyer_id=buyer_id,
        farmer_id=order.farmer_id,
        status=status or "pending",
        total_amount=order.total_amount,
        delivery_fee=order.delivery_fee if order.delivery_fee is not None else Decimal("0.00"),
        delivery_address=order.delivery_address,
        notes=order.notes,
    )
    for line in order.items:
        db_order.items.append(models.OrderItem(
            product_id=line.product_id,
            quantity=line.quantity,
            price_per_unit=line.price_per_unit,
            total_price=line.total_price,
        ))

    try:
        db.add(db_order)
        db.commit()
    except Exception as e:
        db.rollback()
        log.error(f"Order creation rolled back (buyer {buyer_id}, farmer {order.farmer_id}): {e}")
        raise

    db.refresh(db_order)
    log.info(f"Order {db_order.id} created with {len(order.items)} item(s)")
    return db_order


def update_order_status(db: Session, order_id: str, status: str) -> Optional[models.Order]:
    """Any status may follow any other; there is no transition graph."""
    db_order = get_order(db, order_id)
    if db_order is None:
        return None
    db_order.status = status
    db.commit()
    db.refresh(db_order)
    return db_order


# =========================== MESSAGES ===========================

def _between(user_id: str, other_id: str):
    return or_(
        and_(models.Message.sender_id == user_id, models.Message.receiver_id == other_id),
        and_(models.Message.sender_id == other_id, models.Message.receiver_id == user_id),
    )


def _involving(user_id: str):
    return or_(models.Message.sender_id == user_id, models.Message.receiver_id == user_id)


def get_messages_between(db: Session, user_id: str, other_id: str) -> List[models.Message]:
    """Both directions of a two-party conversation, oldest first."""
    return (
        db.query(models.Message)
        .filter(_between(user_id, other_id))
        .order_by(models.Message.created_at.asc())
        .all()
    )


def get_messages_for_order(db: Session, order_id: str, participant_id: str) -> List[models.Message]:
    return (
        db.query(models.Message)
        .filter(models.Message.order_id == order_id, _involving(participant_id))
        .order_by(models.Message.created_at.asc())
        .all()
    )


def get_messages_for_participant(db: Session, user_id: str) -> List[models.Message]:
    return (
        db.query(models.Message)
        .filter(_involving(user_id))
        .order_by(models.Message.created_at.asc())
        .all()
    )


def create_message(db: Session, sender_id: str, message: schemas.MessageCreate) -> models.Message:
    db_message = models.Message(
        sender_id=sender_id,
        receiver_id=message.receiver_id,
        order_id=message.order_id,
        content=message.content,
        is_read=False,
    )
    db.add(db_message)
    db.commit()
    db.refresh(db_message)
    return db_message


def mark_messages_as_read(db: Session, receiver_id: str, sender_id: str) -> int:
    """Marks everything sender_id sent to receiver_id as read. Returns rows touched."""
    updated = (
        db.query(models.Message)
        .filter(
            models.Message.receiver_id == receiver_id,
            models.Message.sender_id == sender_id,
            models.Message.is_read.is_(False),
        )
        .update({models.Message.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return updated


# =========================== VERIFICATIONS ===========================

def get_verification(db: Session, verification_id: str) -> Optional[models.Verification]:
    return db.get(models.Verification, verification_id)


def get_verification_for_user(db: Session, user_id: str) -> Optional[models.Verification]:
    """Most recently submitted request for the user."""
    return (
        db.query(models.Verification)
        .filter(models.Verification.user_id == user_id)
        .order_by(models.Verification.submitted_at.desc())
        .first()
    )


def get_verifications(db: Session, status: Optional[str] = None) -> List[models.Verification]:
    query = db.query(models.Verification)
    if status:
        query = query.filter(models.Verification.status == status)
    return query.order_by(models.Verification.submitted_at.desc()).limit(MAX_ROWS).all()


def _pending_verification(db: Session, user_id: str) -> Optional[models.Verification]:
    return (
        db.query(models.Verification)
        .filter(models.Verification.user_id == user_id, models.Verification.status == "pending")
        .first()
    )


def create_verification_request(
    db: Session, user_id: str, data: schemas.VerificationCreate
) -> models.Verification:
    """New pending request. A user may only have one pending request at a time."""
    pending = _pending_verification(db, user_id)
    if pending is not None:
        raise DuplicatePendingVerificationError(f"User {user_id} already has pending request {pending.id}")

    db_verification = models.Verification(user_id=user_id, status="pending", **data.model_dump())
    db.add(db_verification)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        # Lost a race against a concurrent submission (partial unique index);
        # any other constraint failure propagates as is
        if _pending_verification(db, user_id) is None:
            raise
        raise DuplicatePendingVerificationError(f"User {user_id} already has a pending request") from e
    db.refresh(db_verification)
    log.info(f"Verification {db_verification.id} submitted by user {user_id}")
    return db_verification


def review_verification(
    db: Session,
    verification_id: str,
    status: str,
    reviewer_id: str,
    notes: Optional[str] = None,
) -> Optional[models.Verification]:
    """
    Moves a pending request to 'approved' or 'rejected'.

    The status write and, on approval, the owner's is_verified flag are
    committed in the same transaction. The status write only matches rows
    still pending, so a request is reviewed at most once even when two
    reviewers race. Returns None if the request does not exist.
    """
    db_verification = get_verification(db, verification_id)
    if db_verification is None:
        return None
    user_id = db_verification.user_id

    try:
        claimed = (
            db.query(models.Verification)
            .filter(models.Verification.id == verification_id, models.Verification.status == "pending")
            .update(
                {
                    models.Verification.status: status,
                    models.Verification.notes: notes,
                    models.Verification.reviewer_id: reviewer_id,
                    models.Verification.reviewed_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        if claimed and status == "approved":
            db.query(models.User).filter(models.User.id == user_id).update(
                {models.User.is_verified: True, models.User.updated_at: utcnow()},
                synchronize_session=False,
            )
        db.commit()
    except Exception as e:
        db.rollback()
        log.error(f"Review of verification {verification_id} rolled back: {e}")
        raise

    if not claimed:
        raise VerificationAlreadyReviewedError(f"Verification {verification_id} was already reviewed")

    db.refresh(db_verification)
    log.info(f"Verification {verification_id} {status} by {reviewer_id}")
    return db_verification
