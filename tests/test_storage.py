from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError

import models
import schemas
import storage
from errors import (
    DuplicatePendingVerificationError,
    OrderValidationError,
    VerificationAlreadyReviewedError,
)


def _order(farmer_id, lines, total=None, **extra):
    items = [
        {"product_id": pid, "quantity": qty, "price_per_unit": price, "total_price": str(Decimal(price) * qty)}
        for pid, qty, price in lines
    ]
    if total is None:
        total = str(sum(Decimal(i["total_price"]) for i in items))
    return schemas.OrderCreate(farmer_id=farmer_id, items=items, total_amount=total, **extra)


# --- Users ---

def test_upsert_user_keeps_fields_omitted_on_second_call(db):
    storage.upsert_user(db, schemas.UserUpsert(
        id="u1", email="u1@example.com", first_name="Tendai", phone="+263 77 000 0000"
    ))
    user = storage.upsert_user(db, schemas.UserUpsert(id="u1", last_name="Moyo"))

    assert user.email == "u1@example.com"
    assert user.first_name == "Tendai"
    assert user.last_name == "Moyo"
    assert user.phone == "+263 77 000 0000"
    assert user.role == "buyer"
    assert user.is_verified is False


def test_upsert_user_cannot_set_verified_flag():
    assert "is_verified" not in schemas.UserUpsert.model_fields


def test_get_user_returns_none_when_missing(db):
    assert storage.get_user(db, "nobody") is None


# --- Products ---

def test_product_search_matches_name_or_description_case_insensitively(db, farmer, make_product):
    roma = make_product(farmer.id, name="Roma TOMATO")
    cherry = make_product(farmer.id, name="Cherry mix", description="Sweet tomatoes and grapes")
    make_product(farmer.id, name="Potato", description="Starchy")
    make_product(farmer.id, name="Onion")

    found = storage.get_products(db, search="tom")

    assert {p.id for p in found} == {roma.id, cherry.id}


def test_product_search_treats_wildcards_literally(db, farmer, make_product):
    kale = make_product(farmer.id, name="100% organic kale")
    make_product(farmer.id, name="Spinach")

    assert [p.id for p in storage.get_products(db, search="%")] == [kale.id]


def test_products_filtered_by_category_and_farmer(db, farmer, buyer, make_product):
    fruit = storage.create_product_category(db, schemas.CategoryCreate(name="Fruit"))
    mango = make_product(farmer.id, name="Mango", category_id=fruit.id)
    make_product(farmer.id, name="Cabbage")
    make_product(buyer.id, name="Guava", category_id=fruit.id)

    found = storage.get_products(db, category=fruit.id, farmer_id=farmer.id)

    assert [p.id for p in found] == [mango.id]


def test_products_capped_at_500_newest_first(db, farmer, category):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    db.add_all([
        models.Product(
            farmer_id=farmer.id, category_id=category.id, name=f"Lot {i}",
            price_per_kg=Decimal("1.00"), available_stock=1,
            created_at=start + timedelta(minutes=i),
        )
        for i in range(505)
    ])
    db.commit()

    products = storage.get_products(db)

    assert len(products) == storage.MAX_ROWS
    assert products[0].name == "Lot 504"
    assert products[-1].name == "Lot 5"


def test_update_product_applies_only_set_fields(db, farmer, make_product):
    product = make_product(farmer.id, description="Vine ripened")

    updated = storage.update_product(db, product.id, schemas.ProductUpdate(available_stock=7))

    assert updated.available_stock == 7
    assert updated.description == "Vine ripened"
    assert updated.price_per_kg == Decimal("2.50")


def test_update_product_with_empty_patch_returns_row_unchanged(db, farmer, make_product):
    product = make_product(farmer.id)
    before = product.updated_at

    same = storage.update_product(db, product.id, schemas.ProductUpdate())

    assert same.id == product.id
    assert same.updated_at == before


def test_update_product_missing_returns_none(db):
    assert storage.update_product(db, "missing", schemas.ProductUpdate(name="x")) is None


def test_delete_product_is_idempotent_and_cascades_to_order_items(db, farmer, buyer, make_product):
    product = make_product(farmer.id)
    order = storage.create_order(db, buyer.id, _order(farmer.id, [(product.id, 2, "2.50")]))

    assert storage.delete_product(db, product.id) == 1
    assert storage.delete_product(db, product.id) == 0

    db.expire_all()
    assert storage.get_product(db, product.id) is None
    assert storage.get_order_items(db, order.id) == []
    assert storage.get_order(db, order.id) is not None


# --- Orders ---

def test_create_order_persists_header_and_items(db, farmer, buyer, make_product):
    tomatoes = make_product(farmer.id)
    onions = make_product(farmer.id, name="Onions", price_per_kg="1.20")

    order = storage.create_order(db, buyer.id, _order(
        farmer.id, [(tomatoes.id, 4, "2.50"), (onions.id, 5, "1.20")], delivery_address="Stand 12, Mutare"
    ))

    assert order.status == "pending"
    assert order.total_amount == Decimal("16.00")
    assert order.delivery_fee == Decimal("0.00")
    items = storage.get_order_items(db, order.id)
    assert sorted((i.product_id, i.quantity) for i in items) == sorted([(tomatoes.id, 4), (onions.id, 5)])


def test_create_order_rolls_back_everything_when_a_line_item_fails(db, farmer, buyer, make_product):
    first = make_product(farmer.id)
    second = make_product(farmer.id, name="Onions")
    seen = []

    def fail_on_second_item(mapper, connection, target):
        seen.append(target)
        if len(seen) == 2:
            raise RuntimeError("simulated write failure")

    event.listen(models.OrderItem, "before_insert", fail_on_second_item)
    try:
        with pytest.raises(RuntimeError):
            storage.create_order(db, buyer.id, _order(farmer.id, [(first.id, 1, "2.50"), (second.id, 1, "2.50")]))
    finally:
        event.remove(models.OrderItem, "before_insert", fail_on_second_item)

    db.expire_all()
    assert db.query(models.Order).count() == 0
    assert db.query(models.OrderItem).count() == 0
    assert storage.get_orders(db, buyer_id=buyer.id) == []


def test_create_order_rejects_inconsistent_orders_without_writing(db, farmer, buyer, make_product):
    mine = make_product(farmer.id, available_stock=3)
    theirs = make_product(buyer.id, name="Someone else's maize")
    order = schemas.OrderCreate(
        farmer_id=farmer.id,
        total_amount="100.00",
        items=[
            {"product_id": mine.id, "quantity": 5, "price_per_unit": "2.50", "total_price": "12.50"},
            {"product_id": theirs.id, "quantity": 1, "price_per_unit": "2.50", "total_price": "3.00"},
            {"product_id": "ghost", "quantity": 1, "price_per_unit": "1.00", "total_price": "1.00"},
        ],
    )

    with pytest.raises(OrderValidationError) as excinfo:
        storage.create_order(db, buyer.id, order)

    fields = {e["field"] for e in excinfo.value.errors}
    assert fields == {
        "items.0.quantity",
        "items.1.productId",
        "items.1.totalPrice",
        "items.2.productId",
        "totalAmount",
    }
    assert db.query(models.Order).count() == 0


def test_lines_for_the_same_product_share_its_stock(db, farmer, buyer, make_product):
    product = make_product(farmer.id, available_stock=100)
    other = make_product(farmer.id, name="Onions", available_stock=100)
    order = _order(farmer.id, [(product.id, 60, "2.50"), (other.id, 10, "2.50"), (product.id, 60, "2.50")])

    with pytest.raises(OrderValidationError) as excinfo:
        storage.create_order(db, buyer.id, order)

    assert [e["field"] for e in excinfo.value.errors] == ["items.2.quantity"]
    assert db.query(models.Order).count() == 0

    within = _order(farmer.id, [(product.id, 50, "2.50"), (product.id, 50, "2.50")])
    assert storage.create_order(db, buyer.id, within).status == "pending"


@pytest.mark.parametrize("listing_status", ["draft", "sold_out"])
def test_only_active_listings_can_be_ordered(db, farmer, buyer, make_product, listing_status):
    product = make_product(farmer.id, status=listing_status)

    with pytest.raises(OrderValidationError) as excinfo:
        storage.create_order(db, buyer.id, _order(farmer.id, [(product.id, 1, "2.50")]))

    assert excinfo.value.errors == [{"field": "items.0.productId", "message": f"Product is {listing_status}"}]
    assert db.query(models.Order).count() == 0


def test_create_order_rejects_buying_from_yourself(db, farmer, make_product):
    product = make_product(farmer.id)
    with pytest.raises(OrderValidationError) as excinfo:
        storage.create_order(db, farmer.id, _order(farmer.id, [(product.id, 1, "2.50")]))
    assert excinfo.value.errors[0]["field"] == "farmerId"


def test_order_status_accepts_any_transition(db, farmer, buyer, make_product):
    product = make_product(farmer.id)
    order = storage.create_order(db, buyer.id, _order(farmer.id, [(product.id, 1, "2.50")]))

    assert storage.update_order_status(db, order.id, "delivered").status == "delivered"
    assert storage.update_order_status(db, order.id, "pending").status == "pending"
    assert storage.update_order_status(db, "missing", "packed") is None


def test_get_orders_by_participant(db, farmer, buyer, make_product):
    product = make_product(farmer.id)
    order = storage.create_order(db, buyer.id, _order(farmer.id, [(product.id, 1, "2.50")]))

    assert [o.id for o in storage.get_orders(db, participant_id=farmer.id)] == [order.id]
    assert [o.id for o in storage.get_orders(db, participant_id=buyer.id)] == [order.id]
    assert storage.get_orders(db, participant_id="stranger") == []
    assert storage.get_orders(db, buyer_id=buyer.id, status="accepted") == []


# --- Messages ---

def test_conversation_is_identical_from_both_sides(db, farmer, buyer):
    storage.create_message(db, buyer.id, schemas.MessageCreate(receiver_id=farmer.id, content="Still have okra?"))
    storage.create_message(db, farmer.id, schemas.MessageCreate(receiver_id=buyer.id, content="Yes, 20kg"))
    storage.create_message(db, buyer.id, schemas.MessageCreate(receiver_id=farmer.id, content="I'll take 5"))

    from_buyer = [m.id for m in storage.get_messages_between(db, buyer.id, farmer.id)]
    from_farmer = [m.id for m in storage.get_messages_between(db, farmer.id, buyer.id)]

    assert from_buyer == from_farmer
    assert len(from_buyer) == 3


def test_mark_messages_as_read_only_touches_one_direction(db, farmer, buyer):
    storage.create_message(db, buyer.id, schemas.MessageCreate(receiver_id=farmer.id, content="hello"))
    storage.create_message(db, farmer.id, schemas.MessageCreate(receiver_id=buyer.id, content="hi"))

    assert storage.mark_messages_as_read(db, receiver_id=farmer.id, sender_id=buyer.id) == 1
    assert storage.mark_messages_as_read(db, receiver_id=farmer.id, sender_id=buyer.id) == 0

    db.expire_all()
    states = {m.sender_id: m.is_read for m in storage.get_messages_between(db, farmer.id, buyer.id)}
    assert states == {buyer.id: True, farmer.id: False}


# --- Verifications ---

def test_only_one_pending_verification_per_user(db, farmer):
    storage.create_verification_request(db, farmer.id, schemas.VerificationCreate(full_name="Rudo Chikore"))
    with pytest.raises(DuplicatePendingVerificationError):
        storage.create_verification_request(db, farmer.id, schemas.VerificationCreate(full_name="Rudo Chikore"))


def test_unknown_user_is_not_reported_as_duplicate_request(db):
    with pytest.raises(IntegrityError):
        storage.create_verification_request(db, "no-such-user", schemas.VerificationCreate(full_name="Rudo Chikore"))
    assert storage.get_verifications(db) == []


def test_approval_sets_verified_flag_in_same_commit(db, farmer):
    request = storage.create_verification_request(db, farmer.id, schemas.VerificationCreate(full_name="Rudo Chikore"))

    reviewed = storage.review_verification(db, request.id, status="approved", reviewer_id=farmer.id, notes="ok")

    assert reviewed.status == "approved"
    assert reviewed.reviewer_id == farmer.id
    assert reviewed.reviewed_at is not None
    db.expire_all()
    assert storage.get_user(db, farmer.id).is_verified is True


def test_rejection_leaves_verified_flag_alone(db, farmer):
    request = storage.create_verification_request(db, farmer.id, schemas.VerificationCreate(full_name="Rudo Chikore"))

    storage.review_verification(db, request.id, status="rejected", reviewer_id=farmer.id)

    db.expire_all()
    assert storage.get_user(db, farmer.id).is_verified is False


def test_reviewed_request_cannot_be_reviewed_again(db, farmer):
    request = storage.create_verification_request(db, farmer.id, schemas.VerificationCreate(full_name="Rudo Chikore"))
    storage.review_verification(db, request.id, status="rejected", reviewer_id=farmer.id)

    with pytest.raises(VerificationAlreadyReviewedError):
        storage.review_verification(db, request.id, status="approved", reviewer_id=farmer.id)

    db.expire_all()
    assert storage.get_verification(db, request.id).status == "rejected"
    assert storage.get_user(db, farmer.id).is_verified is False


def test_review_of_missing_request_returns_none(db, farmer):
    assert storage.review_verification(db, "missing", status="approved", reviewer_id=farmer.id) is None


def test_latest_verification_is_returned_after_resubmission(db, farmer):
    first = storage.create_verification_request(db, farmer.id, schemas.VerificationCreate(full_name="Rudo C"))
    storage.review_verification(db, first.id, status="rejected", reviewer_id=farmer.id)
    second = storage.create_verification_request(db, farmer.id, schemas.VerificationCreate(full_name="Rudo Chikore"))

    latest = storage.get_verification_for_user(db, farmer.id)

    assert latest.id == second.id
    assert latest.status == "pending"
    assert [v.id for v in storage.get_verifications(db, status="pending")] == [second.id]
