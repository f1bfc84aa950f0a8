import logging
import os
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

import stripe
from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from bson import ObjectId
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import reports
from database import db, create_document, ensure_indexes, get_documents, utcnow
from schemas import (
    Banner as BannerSchema,
    BannerStatus,
    CartItem as CartItemSchema,
    Category as CategorySchema,
    CategoryUpdate,
    Medicine as MedicineSchema,
    Order as OrderSchema,
    OrderStatus,
    Role,
    User as UserSchema,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("pharma")

# JWT Config
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")

app = FastAPI(title="Pharma Care API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    for k, v in list(doc.items()):
        doc[k] = _serialize_value(v)
    return doc


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(user)
    user.pop("password_hash", None)
    return user


def get_database():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def collection(name: str):
    return get_database()[name]


def to_object_id(value: str, label: str = "id") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(value)


# Auth dependencies

def verify_token(authorization: Optional[str] = Header(default=None)) -> str:
    """Email carried by the bearer token."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token")
    return email


def require_role(role: str):
    # the stored role is authoritative, a valid token alone is not enough
    def dependency(email: str = Depends(verify_token)) -> dict:
        user = collection("users").find_one({"email": email})
        if not user or user.get("role") != role:
            logger.warning("role gate %s rejected %s", role, email)
            raise HTTPException(status_code=401, detail="Unauthorized access")
        return public_user(user)
    return dependency


verify_admin = require_role("admin")
verify_seller = require_role("seller")
verify_user = require_role("user")


def ensure_same_email(requested: str, token_email: str) -> None:
    if requested.lower() != token_email.lower():
        raise HTTPException(status_code=403, detail="Forbidden access")


# Error mapping

@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("duplicate key on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": "Duplicate record"})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


@app.exception_handler(stripe.StripeError)
async def stripe_error_handler(request: Request, exc: stripe.StripeError):
    logger.error("stripe error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": "Payment provider error"})


@app.on_event("startup")
def on_startup():
    if db is None:
        logger.warning("DATABASE_URL not set, running without a database")
        return
    ensure_indexes(db)
    logger.info("connected to database %s", db.name)


# Routes
@app.get("/")
def read_root():
    return "server is running"


STORE_COLLECTIONS = ("users", "medicines", "carts", "orders", "categories", "banners")


@app.get("/health")
def store_health():
    """Document counts per store collection, or why they could not be read."""
    response: Dict[str, Any] = {"server": "running", "database": None, "connected": False, "documents": {}}
    if db is None:
        response["error"] = "DATABASE_URL not set"
        return response
    response["database"] = db.name
    try:
        response["documents"] = {name: db[name].estimated_document_count() for name in STORE_COLLECTIONS}
        response["connected"] = True
    except PyMongoError as e:
        logger.error("health check failed: %s", e)
        response["error"] = str(e)[:80]
    return response


# Users & auth
class RegisterInput(BaseModel):
    user: UserSchema


class TokenInput(BaseModel):
    email: EmailStr
    password: str


@app.post("/user")
def create_user(payload: RegisterInput):
    data = payload.user.model_dump()
    email = data.pop("email").lower()
    data["password_hash"] = hash_password(data.pop("password"))
    data["created_at"] = utcnow()
    result = collection("users").update_one({"email": email}, {"$setOnInsert": data}, upsert=True)
    if result.upserted_id is None:
        raise HTTPException(status_code=409, detail="user already exist")
    logger.info("registered %s as %s", email, data["role"])
    return {"acknowledged": True, "insertedId": str(result.upserted_id)}


@app.post("/jwt")
def issue_token(payload: TokenInput):
    email = payload.email.lower()
    user = collection("users").find_one({"email": email})
    if not user or not verify_password(payload.password, user.get("password_hash")):
        logger.warning("token refused for %s", email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = create_access_token({"sub": email})
    return {"token": token}


@app.get("/user-role/{email}")
def get_user_role(email: str, _: str = Depends(verify_token)):
    user = collection("users").find_one({"email": email.lower()}, {"role": 1})
    return {"role": user.get("role") if user else None}


# Medicines
def medicine_filter(search: Optional[str], category: Optional[str]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"genericName": {"$regex": pattern, "$options": "i"}},
            {"company": {"$regex": pattern, "$options": "i"}},
            {"category": {"$regex": pattern, "$options": "i"}},
        ]
    if category:
        query["category"] = category
    return query


@app.get("/medicines")
def list_medicines(
    search: Optional[str] = None,
    category: Optional[str] = None,
    sort: Optional[str] = Query(None, description="asc|desc by price"),
    page: int = Query(1, ge=1),
    size: Optional[int] = Query(None, ge=1),
):
    cursor = collection("medicines").find(medicine_filter(search, category))
    if sort == "asc":
        cursor = cursor.sort("price", 1)
    elif sort == "desc":
        cursor = cursor.sort("price", -1)
    if size:
        cursor = cursor.skip((page - 1) * size).limit(size)
    return [serialize_doc(d) for d in cursor]


@app.get("/medicines-count")
def count_medicines(search: Optional[str] = None, category: Optional[str] = None):
    count = collection("medicines").count_documents(medicine_filter(search, category))
    return {"count": count}


@app.get("/medicines/{medicine_id}")
def get_medicine(medicine_id: str):
    medicine = collection("medicines").find_one({"_id": to_object_id(medicine_id, "medicine id")})
    if not medicine:
        raise HTTPException(status_code=404, detail="Medicine not found")
    return serialize_doc(medicine)


@app.post("/medicines")
def create_medicine(data: MedicineSchema, seller: dict = Depends(verify_seller)):
    doc = data.model_dump()
    doc["seller"] = {"email": seller["email"], "name": seller.get("name")}
    medicine_id = create_document("medicines", doc)
    logger.info("seller %s added medicine %s", seller["email"], medicine_id)
    return serialize_doc(collection("medicines").find_one({"_id": ObjectId(medicine_id)}))


# Carts
@app.get("/carts")
def get_cart(email: str, token_email: str = Depends(verify_token)):
    ensure_same_email(email, token_email)
    rows = list(collection("carts").find({"email": email.lower()}))
    ids = [ObjectId(r["medicineId"]) for r in rows if ObjectId.is_valid(r.get("medicineId", ""))]
    medicines = {str(m["_id"]): m for m in collection("medicines").find({"_id": {"$in": ids}})}
    items = []
    for row in rows:
        medicine = medicines.get(row["medicineId"])
        items.append({**serialize_doc(row), "medicine": serialize_doc(medicine) if medicine else None})
    return items


@app.post("/carts")
def add_to_cart(item: CartItemSchema, email: str = Depends(verify_token)):
    medicine_id = to_object_id(item.medicineId, "medicine id")
    if not collection("medicines").find_one({"_id": medicine_id}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Medicine not found")
    cart = collection("carts").find_one_and_update(
        {"email": email, "medicineId": str(medicine_id)},
        {"$inc": {"quantity": item.quantity}, "$setOnInsert": {"created_at": utcnow()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return serialize_doc(cart)


@app.patch("/carts/{item_id}")
def update_cart_quantity(item_id: str, decrement: bool = False, email: str = Depends(verify_token)):
    query: Dict[str, Any] = {"_id": to_object_id(item_id, "cart item id"), "email": email}
    if decrement:
        query["quantity"] = {"$gt": 1}
    cart = collection("carts").find_one_and_update(
        query,
        {"$inc": {"quantity": -1 if decrement else 1}},
        return_document=ReturnDocument.AFTER,
    )
    if cart is None:
        if decrement and collection("carts").find_one({"_id": query["_id"], "email": email}, {"_id": 1}):
            raise HTTPException(status_code=400, detail="Quantity cannot go below 1")
        raise HTTPException(status_code=404, detail="Cart item not found")
    return serialize_doc(cart)


@app.delete("/carts/clear/{email}")
def clear_cart(email: str, token_email: str = Depends(verify_token)):
    ensure_same_email(email, token_email)
    res = collection("carts").delete_many({"email": email.lower()})
    return {"deletedCount": res.deleted_count}


@app.delete("/carts/{item_id}")
def remove_cart_item(item_id: str, email: str = Depends(verify_token)):
    res = collection("carts").delete_one({"_id": to_object_id(item_id, "cart item id"), "email": email})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return {"ok": True}


# Orders & payments
class PaymentIntentInput(BaseModel):
    price: float


@app.post("/orders")
def place_order(order: OrderSchema, email: str = Depends(verify_token)):
    ids = [to_object_id(line.medicineId, "medicine id") for line in order.items]
    medicines = {m["_id"]: m for m in collection("medicines").find({"_id": {"$in": ids}})}
    items = []
    total = 0.0
    for medicine_id, line in zip(ids, order.items):
        medicine = medicines.get(medicine_id)
        if not medicine:
            raise HTTPException(status_code=404, detail=f"Medicine {line.medicineId} not found")
        items.append({
            "medicineId": medicine_id,
            "quantity": line.quantity,
            "seller": medicine.get("seller", {}).get("email"),
        })
        total += medicine["price"] * line.quantity
    doc = {
        "email": email,
        "name": order.name,
        "items": items,
        "totalPrice": round(total, 2),
        "status": "requested",
        "transactionId": order.transactionId,
        "orderDate": utcnow(),
    }
    res = collection("orders").insert_one(doc)
    logger.info("order %s placed by %s (%s)", res.inserted_id, email, order.transactionId)
    return serialize_doc(collection("orders").find_one({"_id": res.inserted_id}))


@app.get("/invoice/{invoice_id}")
def get_invoice(invoice_id: str, _: str = Depends(verify_token)):
    return [serialize_doc(row) for row in reports.invoice(get_database(), invoice_id)]


@app.post("/create-payment-intent")
def create_payment_intent(payload: PaymentIntentInput, email: str = Depends(verify_token)):
    amount = int(round(payload.price * 100))
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Price must be positive")
    intent = stripe.PaymentIntent.create(
        amount=amount,
        currency="usd",
        payment_method_types=["card"],
        receipt_email=email,
    )
    logger.info("payment intent of %s cents created for %s", amount, email)
    return {"clientSecret": intent.client_secret}


# Admin
class StatusUpdate(BaseModel):
    status: OrderStatus = "paid"


class BannerStatusUpdate(BaseModel):
    status: BannerStatus


@app.get("/admin-stats")
def get_admin_stats(_: dict = Depends(verify_admin)):
    return reports.admin_stats(get_database())


@app.get("/users/{email}")
def list_users(email: str, _: dict = Depends(verify_admin)):
    users = collection("users").find({"email": {"$ne": email.lower()}}).sort("created_at", -1)
    return [public_user(u) for u in users]


@app.patch("/users/{user_id}/{role}")
def update_user_role(user_id: str, role: Role, admin: dict = Depends(verify_admin)):
    res = collection("users").update_one({"_id": to_object_id(user_id, "user id")}, {"$set": {"role": role}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("admin %s set role of %s to %s", admin["email"], user_id, role)
    return {"modifiedCount": res.modified_count}


@app.get("/categories")
def list_categories():
    return [serialize_doc(c) for c in reports.categories_with_counts(get_database())]


@app.post("/categories")
def create_category(data: CategorySchema, _: dict = Depends(verify_admin)):
    category_id = create_document("categories", data.model_dump())
    return serialize_doc(collection("categories").find_one({"_id": ObjectId(category_id)}))


@app.patch("/categories/{category_id}")
def update_category(category_id: str, data: CategoryUpdate, _: dict = Depends(verify_admin)):
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    previous = collection("categories").find_one_and_update(
        {"_id": to_object_id(category_id, "category id")},
        {"$set": update_dict},
        return_document=ReturnDocument.BEFORE,
    )
    if previous is None:
        raise HTTPException(status_code=404, detail="Category not found")
    new_name = update_dict.get("name")
    if new_name and new_name != previous["name"]:
        # medicines reference their category by name
        res = collection("medicines").update_many({"category": previous["name"]}, {"$set": {"category": new_name}})
        logger.info("category %s renamed to %s, %s medicines moved", previous["name"], new_name, res.modified_count)
    return serialize_doc({**previous, **update_dict})


@app.delete("/categories/{category_id}")
def delete_category(category_id: str, _: dict = Depends(verify_admin)):
    res = collection("categories").delete_one({"_id": to_object_id(category_id, "category id")})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"ok": True}


@app.get("/payments")
def list_payments(_: dict = Depends(verify_admin)):
    return [serialize_doc(o) for o in collection("orders").find().sort("orderDate", -1)]


@app.patch("/payments/{order_id}")
def update_payment_status(order_id: str, data: StatusUpdate, admin: dict = Depends(verify_admin)):
    order = collection("orders").find_one_and_update(
        {"_id": to_object_id(order_id, "order id")},
        {"$set": {"status": data.status}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("admin %s marked order %s %s", admin["email"], order_id, data.status)
    return serialize_doc(order)


@app.get("/banners")
def list_banners(_: dict = Depends(verify_admin)):
    return [serialize_doc(b) for b in collection("banners").find().sort("created_at", -1)]


@app.get("/banners/active")
def list_active_banners():
    get_database()
    return [serialize_doc(b) for b in get_documents("banners", {"status": "added"})]


@app.patch("/banners/{banner_id}")
def update_banner_status(banner_id: str, data: BannerStatusUpdate, _: dict = Depends(verify_admin)):
    banner = collection("banners").find_one_and_update(
        {"_id": to_object_id(banner_id, "banner id")},
        {"$set": {"status": data.status}},
        return_document=ReturnDocument.AFTER,
    )
    if banner is None:
        raise HTTPException(status_code=404, detail="Banner not found")
    return serialize_doc(banner)


@app.get("/sales-report")
def get_sales_report(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    status: Optional[OrderStatus] = None,
    _: dict = Depends(verify_admin),
):
    start = datetime.combine(start_date, time.min) if start_date else None
    end = datetime.combine(end_date, time.max) if end_date else None
    report = reports.sales_report(get_database(), start, end, status)
    return {"rows": [serialize_doc(r) for r in report["rows"]], "totalSales": report["totalSales"]}


# Seller
@app.get("/seller/stats/{email}")
def get_seller_stats(email: str, seller: dict = Depends(verify_seller)):
    ensure_same_email(email, seller["email"])
    return reports.seller_stats(get_database(), seller["email"])


@app.get("/seller/medicines/{email}")
def list_seller_medicines(email: str, seller: dict = Depends(verify_seller)):
    ensure_same_email(email, seller["email"])
    medicines = collection("medicines").find({"seller.email": seller["email"]}).sort("created_at", -1)
    return [serialize_doc(m) for m in medicines]


@app.get("/seller/payments/{email}")
def list_seller_payments(email: str, seller: dict = Depends(verify_seller)):
    ensure_same_email(email, seller["email"])
    return [serialize_doc(r) for r in reports.seller_payments(get_database(), seller["email"])]


@app.get("/seller/advertisements/{email}")
def list_seller_advertisements(email: str, seller: dict = Depends(verify_seller)):
    ensure_same_email(email, seller["email"])
    return [serialize_doc(b) for b in collection("banners").find({"sellerEmail": seller["email"]})]


@app.post("/banners")
def request_banner(data: BannerSchema, seller: dict = Depends(verify_seller)):
    medicine = collection("medicines").find_one({"_id": to_object_id(data.medicineId, "medicine id")})
    if not medicine:
        raise HTTPException(status_code=404, detail="Medicine not found")
    if medicine.get("seller", {}).get("email") != seller["email"]:
        raise HTTPException(status_code=403, detail="Forbidden access")
    doc = data.model_dump()
    doc.update({"sellerEmail": seller["email"], "medicineName": medicine.get("name"), "status": "requested"})
    banner_id = create_document("banners", doc)
    return serialize_doc(collection("banners").find_one({"_id": ObjectId(banner_id)}))


# User
@app.get("/users/payments/{email}")
def list_user_payments(email: str, user: dict = Depends(verify_user)):
    ensure_same_email(email, user["email"])
    orders = collection("orders").find({"email": user["email"]}).sort("orderDate", -1)
    return [serialize_doc(o) for o in orders]


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
