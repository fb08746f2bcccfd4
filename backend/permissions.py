# permissions.py
"""Resource-level authorization checks. Each raises 403 when the caller may not act."""

import logging

from fastapi import HTTPException, status

import models

log = logging.getLogger(__name__)


def _forbidden() -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")


def ensure_product_owner(product: models.Product, user_id: str) -> None:
    if product.farmer_id != user_id:
        log.warning(f"User {user_id} is not the owner of product {product.id}")
        raise _forbidden()


def ensure_order_participant(order: models.Order, user_id: str) -> None:
    if user_id not in (order.buyer_id, order.farmer_id):
        log.warning(f"User {user_id} is not a participant of order {order.id}")
        raise _forbidden()


def ensure_order_farmer(order: models.Order, user_id: str) -> None:
    if order.farmer_id != user_id:
        log.warning(f"User {user_id} may not change status of order {order.id}")
        raise _forbidden()
