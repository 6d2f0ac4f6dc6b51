import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from auth import get_current_user, require_admin, token_for
from database import db, serialize_doc
from errors import StoreError
from schemas import CartItem, Principal, ShippingAddress
from services import Services, get_services, init_services, shutdown_background
from users import to_principal

logger = logging.getLogger(__name__)

app = FastAPI(title="RunMate API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_services(db)


@app.on_event("shutdown")
def shutdown():
    shutdown_background()


@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def public_user(user: dict) -> dict:
    principal = to_principal(user)
    return {**principal.model_dump(), "photo": user.get("photo", "")}


# ----------------------- Models -----------------------
class SignupBody(BaseModel):
    name: str = ""
    email: EmailStr
    password: str


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProfileBody(BaseModel):
    name: Optional[str] = None
    photo: Optional[str] = None


class ProductCreateBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    photos: List[str] = []


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    photos: Optional[List[str]] = None


class PhotoBody(BaseModel):
    photo_url: str


class OrderCreateBody(BaseModel):
    items: List[CartItem] = []
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Optional[str] = None


class OrderUpdateBody(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None


class CheckoutBody(BaseModel):
    items: List[CartItem] = []
    shipping_address: Optional[ShippingAddress] = None


class ConfirmBody(BaseModel):
    session_id: Optional[str] = None


class ReviewCreateBody(BaseModel):
    product_id: str
    order_id: str
    item_id: str
    rating: int
    comment: str = ""


class ReviewUpdateBody(BaseModel):
    product_id: str
    rating: int
    comment: str = ""


class UserUpdateBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    is_admin: Optional[bool] = None


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "RunMate API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/api/auth/signup", status_code=201)
def signup(body: SignupBody, services: Services = Depends(get_services)):
    user = services.users.signup(body.name, body.email, body.password)
    return {"token": token_for(user), "user": public_user(user)}


@app.post("/api/auth/login")
def login(body: LoginBody, services: Services = Depends(get_services)):
    user = services.users.authenticate(body.email, body.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": token_for(user), "user": public_user(user)}


@app.get("/api/auth/me")
def me(user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    return {"user": public_user(services.users.get(user.id))}


@app.put("/api/auth/profile")
def update_profile(body: ProfileBody, user: Principal = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    updated = services.users.update(user.id, body.model_dump(exclude_none=True))
    return {"user": public_user(updated)}


# ----------------------- Products -----------------------
@app.get("/api/products")
def list_products(category: Optional[str] = None, search: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  min_rating: Optional[float] = None, page: int = 1, limit: int = 10,
                  services: Services = Depends(get_services)):
    result = services.catalog.list(category=category, search=search, min_price=min_price,
                                   max_price=max_price, min_rating=min_rating, page=page, limit=limit)
    return serialize_doc(result)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, services: Services = Depends(get_services)):
    return {"product": serialize_doc(services.catalog.get(product_id))}


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreateBody, user: Principal = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    product = services.catalog.create(user, body.model_dump())
    return {"product": serialize_doc(product)}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user: Principal = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    product = services.catalog.update(product_id, user, body.model_dump(exclude_none=True))
    return {"product": serialize_doc(product)}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user: Principal = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    services.catalog.delete(product_id, user)
    return {"message": "Product deleted successfully"}


@app.delete("/api/products/{product_id}/photos")
def delete_product_photo(product_id: str, body: PhotoBody, user: Principal = Depends(get_current_user),
                         services: Services = Depends(get_services)):
    product = services.catalog.remove_photo(product_id, user, body.photo_url)
    return {"product": serialize_doc(product)}


@app.delete("/api/products/{product_id}/reviews/{review_id}")
def delete_review(product_id: str, review_id: str, user: Principal = Depends(get_current_user),
                  services: Services = Depends(get_services)):
    product = services.reviews.delete_review(user, product_id, review_id)
    return {"message": "Review deleted", "rating": product["rating"], "num_reviews": product["num_reviews"]}


# ----------------------- Orders -----------------------
@app.post("/api/orders", status_code=201)
def create_order(body: OrderCreateBody, user: Principal = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    order = services.order_workflow.place_order(user, body.items, body.shipping_address, body.payment_method)
    return {"order": serialize_doc(order)}


@app.get("/api/orders")
def list_orders(status: Optional[str] = None, page: int = 1, limit: int = 10,
                user: Principal = Depends(get_current_user), services: Services = Depends(get_services)):
    return serialize_doc(services.order_workflow.list_orders(user, status=status, page=page, limit=limit))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: Principal = Depends(get_current_user),
              services: Services = Depends(get_services)):
    return {"order": serialize_doc(services.order_workflow.get_order(user, order_id))}


@app.put("/api/orders/{order_id}")
def update_order(order_id: str, body: OrderUpdateBody, user: Principal = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    order = services.order_workflow.update_status(user, order_id, body.status, body.payment_status)
    return {"order": serialize_doc(order)}


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, user: Principal = Depends(get_current_user),
                 services: Services = Depends(get_services)):
    services.order_workflow.delete_order(user, order_id)
    return {"message": "Order deleted successfully"}


# ----------------------- Payments -----------------------
@app.post("/api/payments/create-checkout-session")
def create_checkout_session(body: CheckoutBody, user: Principal = Depends(get_current_user),
                            services: Services = Depends(get_services)):
    return services.checkout.create_session(user, body.items, body.shipping_address)


@app.post("/api/payments/confirm")
def confirm_checkout(body: ConfirmBody, user: Principal = Depends(get_current_user),
                     services: Services = Depends(get_services)):
    order, created = services.checkout.confirm_session(user, body.session_id)
    return JSONResponse(status_code=201 if created else 200, content={"order": serialize_doc(order)})


# ----------------------- Reviews -----------------------
@app.post("/api/reviews", status_code=201)
def create_review(body: ReviewCreateBody, user: Principal = Depends(get_current_user),
                  services: Services = Depends(get_services)):
    product = services.reviews.create_review(user, body.product_id, body.order_id, body.item_id,
                                             body.rating, body.comment)
    return {"message": "Review submitted successfully",
            "rating": product["rating"], "num_reviews": product["num_reviews"]}


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, body: ReviewUpdateBody, user: Principal = Depends(get_current_user),
                  services: Services = Depends(get_services)):
    review, product = services.reviews.update_review(user, body.product_id, review_id, body.rating, body.comment)
    return {
        "message": "Review updated successfully",
        "review": serialize_doc(review),
        "rating": product["rating"],
        "num_reviews": product["num_reviews"],
    }


# ----------------------- Admin -----------------------
@app.get("/api/admin/users")
def admin_list_users(search: str = "", page: int = 1, limit: int = 10, user: Principal = Depends(require_admin),
                     services: Services = Depends(get_services)):
    return serialize_doc(services.users.list(search=search, page=page, limit=limit))


@app.put("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, body: UserUpdateBody, user: Principal = Depends(require_admin),
                      services: Services = Depends(get_services)):
    updated = services.users.update(user_id, body.model_dump(exclude_none=True))
    return {"user": public_user(updated)}


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: str, user: Principal = Depends(require_admin),
                      services: Services = Depends(get_services)):
    services.users.delete(user, user_id)
    return {"message": "User deleted successfully"}


@app.get("/api/admin/reviews")
def admin_list_reviews(user: Principal = Depends(require_admin), services: Services = Depends(get_services)):
    return {"reviews": serialize_doc(services.reviews.list_reviews(user))}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
