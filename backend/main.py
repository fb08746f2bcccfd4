# backend/main.py
# AgriMarket API - farmer-to-buyer marketplace backend

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
from typing import List, Literal, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Depends, File, Query, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy import text # Required for db health check

# --- Project Imports ---
import auth_utils
import database
import models
import schemas
import storage
import uploads
from auth_utils import get_current_user_id, get_settings, require_admin
from config import Settings
from database import get_db
from errors import (
    DuplicatePendingVerificationError,
    VerificationAlreadyReviewedError,
    register_exception_handlers,
)
from permissions import ensure_order_farmer, ensure_order_participant, ensure_product_owner

# --- Basic Logging Configuration ---
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
log = logging.getLogger(__name__) # Logger for this module

API_VERSION = "1.0.0"

router = APIRouter()


def _server_error(detail: str, e: Exception) -> HTTPException:
    """Logs a storage failure with full context and hides it from the client."""
    log.error(f"{detail}: {e}", exc_info=True)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


# =========================== API ENDPOINTS ===========================

# --- Health Check ---
@router.get("/health", tags=["System"], status_code=status.HTTP_200_OK)
def health_check(db: Session = Depends(get_db)):
    """Performs health check including basic database connectivity."""
    db_ok = False
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
        log.debug("Health check DB query successful.")
    except SQLAlchemyError as e:
        log.error(f"Health check DB connection error: {e}", exc_info=False) # Avoid traceback flood

    status_info = {"status": "healthy" if db_ok else "unhealthy"}
    status_info["db_connection"] = "ok" if db_ok else "failed"
    status_info["timestamp"] = datetime.now(timezone.utc).isoformat()
    return status_info


# --- Session (identity provider handoff) ---
@router.post(
    "/api/auth/session",
    response_model=schemas.UserOut,
    tags=["Auth"],
    summary="Exchange an identity-provider token for a session cookie"
)
def create_session(
    response: Response,
    login: schemas.SessionLogin,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Verifies the provider token, upserts the user, and sets the HTTPOnly session cookie."""
    claims = auth_utils.decode_identity_token(login.id_token, settings)
    log.info(f"Session requested for subject {claims.sub}")

    try:
        user = storage.upsert_user(db, schemas.UserUpsert(
            id=claims.sub,
            email=claims.email,
            first_name=claims.first_name,
            last_name=claims.last_name,
            profile_image_url=claims.profile_image_url,
        ))
    except IntegrityError as e:
        log.warning(f"User upsert conflict for {claims.sub}: {e.orig}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already belongs to another account")
    except SQLAlchemyError as e:
        raise _server_error("Failed to sign in", e)

    expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    access_token = auth_utils.create_access_token(
        {"sub": user.id, "type": auth_utils.SESSION_TOKEN_TYPE}, settings, expires_delta=expires_delta
    )
    response.set_cookie(
        key=auth_utils.AUTH_COOKIE_NAME,
        value=access_token,
        httponly=True,      # Prevent JS access
        max_age=int(expires_delta.total_seconds()),
        expires=datetime.now(timezone.utc) + expires_delta,
        path="/",
        samesite="lax",
        secure=settings.production, # HTTPS only in production
    )
    log.info(f"Session cookie set for user {user.id}. Secure={settings.production}")
    return user


@router.post("/api/logout", response_model=schemas.MessageResponse, tags=["Auth"])
def logout(response: Response, settings: Settings = Depends(get_settings)):
    """Clears the session cookie."""
    response.delete_cookie(
        key=auth_utils.AUTH_COOKIE_NAME,
        path="/",
        secure=settings.production,
        httponly=True,
        samesite="lax",
    )
    return {"message": "Logout successful"}


@router.get("/api/auth/user", response_model=schemas.UserWithProfile, tags=["Auth"])
def read_current_user(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """Current user with their profile (profile is null until created)."""
    try:
        user = storage.get_user(db, user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        profile = storage.get_user_profile(db, user_id)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch user", e)

    result = schemas.UserWithProfile.model_validate(user)
    result.profile = schemas.ProfileOut.model_validate(profile) if profile else None
    return result


# --- Profile & Role ---
@router.post("/api/profile", response_model=schemas.ProfileOut, tags=["Profile"])
def create_profile(
    data: schemas.ProfileCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Creates the caller's profile. A second POST updates the existing one."""
    try:
        if storage.get_user_profile(db, user_id) is not None:
            log.info(f"Profile already exists for {user_id}; applying as update.")
            patch = schemas.ProfileUpdate(**data.model_dump(exclude_unset=True))
            return storage.update_user_profile(db, user_id, patch)
        return storage.create_user_profile(db, user_id, data)
    except SQLAlchemyError as e:
        raise _server_error("Failed to create profile", e)


@router.put("/api/profile", response_model=schemas.ProfileOut, tags=["Profile"])
def update_profile(
    patch: schemas.ProfileUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        profile = storage.update_user_profile(db, user_id, patch)
    except SQLAlchemyError as e:
        raise _server_error("Failed to update profile", e)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile


@router.put("/api/user/role", response_model=schemas.UserOut, tags=["Profile"])
def update_role(
    data: schemas.RoleUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        user = storage.upsert_user(db, schemas.UserUpsert(id=user_id, role=data.role))
    except SQLAlchemyError as e:
        raise _server_error("Failed to update user role", e)
    log.info(f"User {user_id} switched role to {data.role}")
    return user


# --- Products ---
@router.get("/api/products", response_model=List[schemas.ProductOut], tags=["Products"])
def list_products(
    category: Optional[str] = None,
    farmer_id: Optional[str] = Query(None, alias="farmerId"),
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        return storage.get_products(db, category=category, farmer_id=farmer_id, search=search)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch products", e)


@router.get("/api/products/{product_id}", response_model=schemas.ProductOut, tags=["Products"])
def read_product(product_id: str, db: Session = Depends(get_db)):
    try:
        product = storage.get_product(db, product_id)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch product", e)
    if product is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return product


def _ensure_category_exists(db: Session, category_id: str) -> None:
    if storage.get_product_category(db, category_id) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown category")


@router.post(
    "/api/products",
    response_model=schemas.ProductOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Products"],
)
def create_product(
    data: schemas.ProductCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Lists a product owned by the caller."""
    try:
        _ensure_category_exists(db, data.category_id)
        return storage.create_product(db, user_id, data)
    except SQLAlchemyError as e:
        raise _server_error("Failed to create product", e)


@router.put("/api/products/{product_id}", response_model=schemas.ProductOut, tags=["Products"])
def update_product(
    product_id: str,
    patch: schemas.ProductUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        product = storage.get_product(db, product_id)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        ensure_product_owner(product, user_id)
        if patch.category_id is not None:
            _ensure_category_exists(db, patch.category_id)
        return storage.update_product(db, product_id, patch)
    except SQLAlchemyError as e:
        raise _server_error("Failed to update product", e)


@router.delete("/api/products/{product_id}", response_model=schemas.MessageResponse, tags=["Products"])
def delete_product(
    product_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        product = storage.get_product(db, product_id)
        if product is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        ensure_product_owner(product, user_id)
        storage.delete_product(db, product_id)
    except SQLAlchemyError as e:
        raise _server_error("Failed to delete product", e)
    log.info(f"Product {product_id} deleted by {user_id}")
    return {"message": "Product deleted successfully"}


# --- Categories ---
@router.get("/api/categories", response_model=List[schemas.CategoryOut], tags=["Products"])
def list_categories(db: Session = Depends(get_db)):
    try:
        return storage.get_product_categories(db)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch categories", e)


@router.post(
    "/api/categories",
    response_model=schemas.CategoryOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Products"],
)
def create_category(
    data: schemas.CategoryCreate,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        category = storage.create_product_category(db, data)
    except SQLAlchemyError as e:
        raise _server_error("Failed to create category", e)
    log.info(f"Category '{category.name}' created by admin {admin_id}")
    return category


# --- Orders ---
@router.get("/api/orders", response_model=List[schemas.OrderOut], tags=["Orders"])
def list_orders(
    role: Optional[Literal["buyer", "farmer"]] = None,
    order_status: Optional[schemas.OrderStatus] = Query(None, alias="status"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Caller's orders as buyer, as farmer, or (no role) either."""
    filters = {"status": order_status}
    if role == "buyer":
        filters["buyer_id"] = user_id
    elif role == "farmer":
        filters["farmer_id"] = user_id
    else:
        filters["participant_id"] = user_id
    try:
        return storage.get_orders(db, **filters)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch orders", e)


@router.get("/api/orders/{order_id}", response_model=schemas.OrderDetail, tags=["Orders"])
def read_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        order = storage.get_order(db, order_id)
        if order is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
        ensure_order_participant(order, user_id)
        items = storage.get_order_items(db, order_id)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch order", e)

    detail = schemas.OrderDetail.model_validate(order)
    detail.items = [schemas.OrderItemOut.model_validate(item) for item in items]
    return detail


@router.post(
    "/api/orders",
    response_model=schemas.OrderOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Orders"],
)
def create_order(
    data: schemas.OrderCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Places an order; header and line items are stored atomically."""
    log.info(f"Order request from buyer {user_id} to farmer {data.farmer_id} ({len(data.items)} items)")
    try:
        return storage.create_order(db, user_id, data)
    except SQLAlchemyError as e:
        raise _server_error("Failed to create order", e)


@router.put("/api/orders/{order_id}/status", response_model=schemas.OrderOut, tags=["Orders"])
def update_order_status(
    order_id: str,
    data: schemas.OrderStatusUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        order = storage.get_order(db, order_id)
        if order is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
        ensure_order_farmer(order, user_id)
        order = storage.update_order_status(db, order_id, data.status)
    except SQLAlchemyError as e:
        raise _server_error("Failed to update order status", e)
    log.info(f"Order {order_id} moved to '{data.status}' by farmer {user_id}")
    return order


# --- Messages ---
@router.get("/api/messages", response_model=List[schemas.MessageOut], tags=["Messages"])
def list_messages(
    other_id: Optional[str] = Query(None, alias="otherId"),
    order_id: Optional[str] = Query(None, alias="orderId"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Conversation with otherId, thread of orderId, or everything the caller sent/received."""
    try:
        if other_id:
            return storage.get_messages_between(db, user_id, other_id)
        if order_id:
            return storage.get_messages_for_order(db, order_id, user_id)
        return storage.get_messages_for_participant(db, user_id)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch messages", e)


@router.post(
    "/api/messages",
    response_model=schemas.MessageOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Messages"],
)
def send_message(
    data: schemas.MessageCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    if data.receiver_id == user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot message yourself")
    try:
        if storage.get_user(db, data.receiver_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipient not found")
        if data.order_id and storage.get_order(db, data.order_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
        return storage.create_message(db, user_id, data)
    except SQLAlchemyError as e:
        raise _server_error("Failed to create message", e)


@router.put("/api/messages/mark-read", response_model=schemas.MarkReadResponse, tags=["Messages"])
def mark_messages_read(
    data: schemas.MarkRead,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        updated = storage.mark_messages_as_read(db, receiver_id=user_id, sender_id=data.sender_id)
    except SQLAlchemyError as e:
        raise _server_error("Failed to mark messages as read", e)
    return {"message": "Messages marked as read", "updated": updated}


# --- Verification ---
@router.post(
    "/api/profile/verify",
    response_model=schemas.VerificationOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Verification"],
)
def submit_verification(
    data: schemas.VerificationCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return storage.create_verification_request(db, user_id, data)
    except DuplicatePendingVerificationError as e:
        log.warning(str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A verification request is already pending")
    except SQLAlchemyError as e:
        raise _server_error("Failed to submit verification request", e)


@router.get("/api/profile/verify", response_model=Optional[schemas.VerificationOut], tags=["Verification"])
def read_own_verification(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """Most recent request of the caller, or null."""
    try:
        return storage.get_verification_for_user(db, user_id)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch verification status", e)


@router.put(
    "/api/profile/verify/{verification_id}/review",
    response_model=schemas.VerificationOut,
    tags=["Verification"],
)
def review_verification(
    verification_id: str,
    data: schemas.VerificationReview,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Approve or reject a pending request. Approval marks the user verified."""
    try:
        verification = storage.review_verification(
            db, verification_id, status=data.status, reviewer_id=admin_id, notes=data.notes
        )
    except VerificationAlreadyReviewedError as e:
        log.warning(str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Verification request was already reviewed")
    except SQLAlchemyError as e:
        raise _server_error("Failed to review verification request", e)
    if verification is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Verification request not found")
    return verification


@router.get("/api/admin/verifications", response_model=List[schemas.VerificationOut], tags=["Verification"])
def list_verifications(
    verification_status: Optional[Literal["pending", "approved", "rejected"]] = Query(None, alias="status"),
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Review queue for administrators."""
    try:
        return storage.get_verifications(db, status=verification_status)
    except SQLAlchemyError as e:
        raise _server_error("Failed to fetch verification requests", e)


# --- Uploads ---
@router.post("/api/uploads/id-image", response_model=schemas.UploadResponse, tags=["Uploads"])
async def upload_id_image(
    id_image: UploadFile = File(..., alias="idImage"),
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
):
    """Stores an identity image on local disk and returns its public URL."""
    content_type = id_image.content_type or ""
    if not content_type.startswith(uploads.ALLOWED_CONTENT_TYPE_PREFIX):
        log.warning(f"Upload from {user_id} rejected: content type '{content_type}'")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only image uploads are allowed")

    data = await id_image.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        log.warning(f"Upload from {user_id} rejected: larger than {settings.max_upload_bytes} bytes")
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File is too large")
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    try:
        url = uploads.save_uploaded_file(settings.upload_dir, data, id_image.filename)
    except OSError as e:
        raise _server_error("Failed to store upload", e)
    return {"url": url}


# --- Application Factory ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("--- AgriMarket API starting ---")
    yield
    log.info("Shutting down: disposing database engine (draining connection pool).")
    app.state.engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Builds the FastAPI application with its own engine and session factory."""
    settings = settings or Settings.from_env()

    engine = database.create_db_engine(settings.database_url)
    try:
        log.info("Attempting to create database tables if they don't exist...")
        models.Base.metadata.create_all(bind=engine)
        log.info("Database tables checked/created successfully.")
    except SQLAlchemyError as e:
        log.critical(f"FATAL: Error creating database tables: {e}", exc_info=True)
        raise

    app = FastAPI(
        title="AgriMarket API",
        description="Farmer-to-buyer marketplace: products, orders, messaging and seller verification.",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = database.create_session_factory(engine)

    # --- CORS Middleware Configuration ---
    log.info(f"CORS configuration: Allowing origins: {settings.allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True, # Essential for cookies
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(router)

    upload_dir = uploads.ensure_upload_dir(settings.upload_dir)
    app.mount(uploads.UPLOADS_URL_PREFIX, StaticFiles(directory=upload_dir), name="uploads")
    return app


# --- Run Application (using Uvicorn when script is executed directly) ---
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")
    reload_flag = os.getenv("UVICORN_RELOAD", "false").lower() == "true" # Default OFF
    log_level = os.getenv("UVICORN_LOG_LEVEL", "info").lower()

    log.info(f"--- Starting AgriMarket API Server ---")
    log.info(f" Listening on: http://{host}:{port}")
    log.info(f" Uvicorn Reloading: {reload_flag}")

    uvicorn.run(
        "main:create_app",
        factory=True,           # create_app() builds the app from the environment
        host=host,
        port=port,
        reload=reload_flag,
        log_level=log_level,
    )
