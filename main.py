import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import httpx
from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import listing
import reports
import users
import voting
from auth import FirebaseTokenVerifier, Principal, get_principal, has_role, require_role, require_self
from config import get_settings
from context import ServiceContext, get_context, get_store
from database import Store, connect, sanitize, to_obj_id
from errors import ConflictError, ForbiddenError, NotFoundError, register_exception_handlers
from media import CloudinaryClient
from schemas import (
    Application as ApplicationSchema,
    Coupon as CouponSchema,
    DiscountType,
    Person,
    Review as ReviewSchema,
    Role,
    Status,
    as_naive_utc,
    unique_strings,
)

logger = logging.getLogger(__name__)

require_moderator = require_role("moderator")
require_admin = require_role("admin")


def build_context(settings) -> ServiceContext:
    mongo = connect(settings.DATABASE_URL, settings.DATABASE_NAME)
    store = Store(mongo[settings.DATABASE_NAME])
    http = httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)
    return ServiceContext(
        store=store,
        verifier=FirebaseTokenVerifier(settings.firebase_project_id, http),
        media=CloudinaryClient(
            settings.CLOUDINARY_CLOUD_NAME,
            settings.CLOUDINARY_API_KEY,
            settings.CLOUDINARY_API_SECRET,
            http,
        ),
        mongo=mongo,
        http=http,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    owned = getattr(app.state, "context", None) is None
    if owned:
        settings = get_settings()
        logging.basicConfig(
            level=settings.LOG_LEVEL,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        app.state.context = build_context(settings)
        try:
            app.state.context.store.ping()
            app.state.context.store.ensure_indexes()
            logger.info("Pinged your deployment. Connected to MongoDB")
        except Exception:
            logger.exception("MongoDB connection failed")
    yield
    if owned:
        logger.info("Shutting down AppOrbit API")
        app.state.context.close()
        app.state.context = None


def create_app(context: Optional[ServiceContext] = None, cors_origins: Optional[List[str]] = None) -> FastAPI:
    app = FastAPI(title="AppOrbit API", lifespan=lifespan)
    app.state.context = context
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins is not None else get_settings().cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    register_routes(app)
    return app


# Request Models
class AppCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    title: Optional[str] = Field(None, max_length=200)
    website: Optional[str] = None
    description: Optional[str] = Field(None, max_length=5000)
    tags: List[str] = Field(default_factory=list)
    image: Optional[str] = None
    owner: Optional[Person] = None


class AppUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    title: Optional[str] = Field(None, max_length=200)
    website: Optional[str] = None
    description: Optional[str] = Field(None, max_length=5000)
    tags: Optional[List[str]] = None
    image: Optional[str] = None


class FeatureRequest(BaseModel):
    isFeatured: bool = True


class StatusRequest(BaseModel):
    status: Status


class ReviewRequest(BaseModel):
    productId: str
    body: str = Field(..., min_length=1, max_length=5000)
    rating: Optional[int] = Field(None, ge=1, le=5)
    reviewerName: Optional[str] = None
    reviewerImage: Optional[str] = None


class ReportRequest(BaseModel):
    appId: str
    productName: Optional[str] = None


class SignInRequest(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    image: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None


class RoleUpdateRequest(BaseModel):
    role: Role


class CouponCreateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = None
    discountType: DiscountType = "percent"
    discountValue: float = Field(..., gt=0)
    isActive: bool = True
    expiryDate: datetime


class CouponUpdateRequest(BaseModel):
    description: Optional[str] = None
    discountType: Optional[DiscountType] = None
    discountValue: Optional[float] = Field(None, gt=0)
    isActive: Optional[bool] = None
    expiryDate: Optional[datetime] = None


def register_routes(app: FastAPI) -> None:
    # Utility endpoints
    @app.get("/")
    def root():
        return "AppOrbit server is running"

    @app.get("/health")
    def health(store: Store = Depends(get_store)):
        try:
            store.ping()
            return {"backend": "ok", "database": "ok", "collections": store.db.list_collection_names()}
        except PyMongoError as e:
            logger.warning("Health check failed: %s", e)
            return {"backend": "ok", "database": "unavailable"}

    # Applications
    @app.post("/add-apps", status_code=201)
    def add_app(payload: AppCreateRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        owner = payload.owner.model_dump() if payload.owner else {}
        owner["email"] = principal.email
        doc = ApplicationSchema(**payload.model_dump(exclude={"owner"}), owner=owner)
        return sanitize(store.insert(store.apps, doc))

    @app.get("/apps")
    def all_apps(store: Store = Depends(get_store)):
        return listing.list_all_apps(store)

    @app.get("/apps/paginated")
    def paginated_apps(
        page: int = Query(1, ge=1),
        limit: int = Query(6, ge=1, le=100),
        search: Optional[str] = None,
        status: Optional[Status] = None,
        store: Store = Depends(get_store),
    ):
        return listing.list_apps(store, page, limit, search, status)

    @app.get("/apps/featured")
    def featured_apps(limit: int = Query(6, ge=1, le=100), store: Store = Depends(get_store)):
        return listing.list_featured_apps(store, limit)

    @app.get("/apps/trending")
    def trending_apps(limit: int = Query(6, ge=1, le=100), store: Store = Depends(get_store)):
        return listing.list_trending_apps(store, limit)

    @app.get("/apps/user")
    def user_apps(
        email: str,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        principal: Principal = Depends(get_principal),
        store: Store = Depends(get_store),
    ):
        require_self(principal, email)
        return listing.list_owner_apps(store, email, page, limit)

    @app.get("/appsDetails/{app_id}")
    def app_details(app_id: str, store: Store = Depends(get_store)):
        doc = store.get_app(app_id)
        if not doc:
            raise NotFoundError("Application not found")
        return sanitize(doc)

    @app.patch("/apps/feature/{app_id}")
    def feature_app(app_id: str, payload: Optional[FeatureRequest] = None, moderator=Depends(require_moderator), store: Store = Depends(get_store)):
        featured = payload.isFeatured if payload else True
        return _set_app_fields(store, app_id, {"isFeatured": featured})

    @app.patch("/apps/status/{app_id}")
    def moderate_app(app_id: str, payload: StatusRequest, moderator=Depends(require_moderator), store: Store = Depends(get_store)):
        return _set_app_fields(store, app_id, {"status": payload.status})

    @app.patch("/apps/upvote/{app_id}")
    def upvote(app_id: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        return sanitize(voting.apply_vote(store, app_id, principal.email))

    @app.patch("/apps/undo-upvote/{app_id}")
    def undo_upvote(app_id: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        return sanitize(voting.undo_vote(store, app_id, principal.email))

    @app.patch("/apps/{app_id}")
    def update_app(app_id: str, payload: AppUpdateRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        fields = payload.model_dump(exclude_none=True)
        if "tags" in fields:
            fields["tags"] = unique_strings(fields["tags"])
        if not fields:
            raise HTTPException(status_code=400, detail="Nothing to update")
        return _set_app_fields(store, app_id, fields)

    @app.delete("/apps/{app_id}")
    def delete_app(app_id: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        oid = to_obj_id(app_id)
        if has_role(store, principal.email, "moderator"):
            res = store.apps.delete_one({"_id": oid})
        else:
            res = store.apps.delete_one({"_id": oid, "owner.email": principal.email})
        if res.deleted_count == 0:
            if store.apps.find_one({"_id": oid}, {"_id": 1}) is None:
                raise NotFoundError("Application not found")
            raise ForbiddenError("Only the owner or a moderator can delete this application")
        logger.info("App %s deleted by %s", app_id, principal.email)
        return {"message": "Application deleted", "deletedCount": res.deleted_count}

    # Reviews
    @app.post("/reviews", status_code=201)
    def add_review(payload: ReviewRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        if store.get_app(payload.productId) is None:
            raise NotFoundError("Application not found")
        review = ReviewSchema(
            productId=payload.productId,
            reviewer=Person(name=payload.reviewerName, email=principal.email, image=payload.reviewerImage),
            rating=payload.rating,
            body=payload.body,
        )
        return sanitize(store.insert(store.reviews, review))

    @app.get("/reviews")
    def get_reviews(productId: str, store: Store = Depends(get_store)):
        return listing.list_reviews(store, productId)

    # Reports
    @app.post("/reports", status_code=201)
    def add_report(payload: ReportRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        return reports.file_report(store, payload.appId, principal.email, payload.productName)

    @app.get("/reports")
    def get_reports(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), store: Store = Depends(get_store)):
        return reports.list_reports(store, page, limit)

    @app.delete("/reports/{report_id}")
    def remove_report(report_id: str, moderator=Depends(require_moderator), store: Store = Depends(get_store)):
        reports.delete_report(store, report_id)
        return {"message": "Report deleted"}

    # Users
    @app.post("/user")
    def sign_in(payload: SignInRequest, store: Store = Depends(get_store)):
        return users.sign_in(store, payload.email, payload.name, payload.image)

    @app.get("/user/role/{email}")
    def user_role(email: str, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        return {"role": users.get_role(store, email)}

    @app.patch("/users/{email}")
    def update_user(email: str, payload: ProfileUpdateRequest, principal: Principal = Depends(get_principal), store: Store = Depends(get_store)):
        require_self(principal, email)
        return users.update_profile(store, email, payload.name, payload.image)

    @app.get("/users")
    def list_users(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        search: Optional[str] = None,
        admin=Depends(require_admin),
        store: Store = Depends(get_store),
    ):
        return listing.list_users(store, page, limit, search)

    @app.patch("/users/role/{user_id}")
    def change_role(user_id: str, payload: RoleUpdateRequest, admin=Depends(require_admin), store: Store = Depends(get_store)):
        return users.set_user_role(store, user_id, payload.role)

    # Admin
    @app.get("/admin/stats")
    def admin_stats(admin=Depends(require_admin), store: Store = Depends(get_store)):
        return store.counts()

    @app.get("/admin/coupons")
    def admin_list_coupons(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
        admin=Depends(require_admin),
        store: Store = Depends(get_store),
    ):
        return listing.list_coupons(store, page, limit)

    @app.post("/admin/coupons", status_code=201)
    def admin_create_coupon(payload: CouponCreateRequest, admin=Depends(require_admin), store: Store = Depends(get_store)):
        coupon = CouponSchema(**payload.model_dump())
        try:
            doc = store.insert(store.coupons, coupon)
        except DuplicateKeyError:
            raise ConflictError(f"Coupon code already exists: {coupon.code}")
        return sanitize(doc)

    @app.patch("/admin/coupons/{coupon_id}")
    def admin_update_coupon(coupon_id: str, payload: CouponUpdateRequest, admin=Depends(require_admin), store: Store = Depends(get_store)):
        fields = payload.model_dump(exclude_none=True)
        if "expiryDate" in fields:
            fields["expiryDate"] = as_naive_utc(fields["expiryDate"])
        if not fields:
            raise HTTPException(status_code=400, detail="Nothing to update")
        doc = store.coupons.find_one_and_update(
            {"_id": to_obj_id(coupon_id)}, {"$set": fields}, return_document=ReturnDocument.AFTER
        )
        if not doc:
            raise NotFoundError("Coupon not found")
        return sanitize(doc)

    @app.delete("/admin/coupons/{coupon_id}")
    def admin_delete_coupon(coupon_id: str, admin=Depends(require_admin), store: Store = Depends(get_store)):
        res = store.coupons.delete_one({"_id": to_obj_id(coupon_id)})
        if res.deleted_count == 0:
            raise NotFoundError("Coupon not found")
        return {"message": "Coupon deleted"}

    @app.get("/coupons")
    def valid_coupons(store: Store = Depends(get_store)):
        return listing.list_valid_coupons(store)

    @app.get("/coupons/validate/{code}")
    def validate_coupon(code: str, store: Store = Depends(get_store)):
        doc = listing.find_valid_coupon(store, code)
        if not doc:
            raise NotFoundError("Coupon is invalid or expired")
        return doc

    # Upload
    @app.post("/upload")
    def upload(file: UploadFile = File(...), context: ServiceContext = Depends(get_context)):
        content = file.file.read()
        if not content:
            raise HTTPException(status_code=400, detail="No file uploaded")
        return context.media.upload(file.filename or "upload", content, file.content_type)


def _set_app_fields(store: Store, app_id: str, fields: dict):
    doc = store.apps.find_one_and_update(
        {"_id": to_obj_id(app_id)}, {"$set": fields}, return_document=ReturnDocument.AFTER
    )
    if not doc:
        raise NotFoundError("Application not found")
    return sanitize(doc)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().PORT)
