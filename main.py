import os
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date
from typing import Optional, List

from fastapi import FastAPI, Depends, Response, Cookie, Request, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import db, get_db, create_document, get_documents, current_time, ensure_indexes, serialize, to_object_id
from errors import OrderingError, NotAuthenticated, NotAuthorized, NotFound, PreconditionFailed, ValidationFailed
from schemas import (
    CurrentUser,
    User,
    MenuCategory,
    MenuItem,
    MenuItemVariant,
    ChoiceGroup,
    OrderDraft,
    OrderPatch,
    OrderItemsUpdate,
    ChatMessageIn,
    ChatSummaryRequest,
    Voucher,
    VoucherUpdate,
    VoucherValidation,
    DeliveryFee,
    WebsiteInquiry,
    SiteSetting,
)
from order_status import Role, allowed_targets, is_delivery
from orders import OrderStore
from chat import ChatChannel
from active_orders import (
    has_blocking_order,
    get_customer_active_order,
    get_customer_active_orders,
    get_customer_pre_orders,
)
from order_filters import (
    OrderFilterConfig,
    STATUS_FILTER_OPTIONS,
    active_status_matcher,
    filter_and_sort_orders,
    last_message_sort_key,
    recent_chat_matcher,
)
from catalog import list_categories, list_menu_items, list_variants, list_choice_groups, delivery_fee_for_address
from vouchers import check_voucher, validate_code_format, find_voucher, list_vouchers
from storage import generate_upload_url, save_file, load_file_for, resolve_url
from rate_limit import check_rate_limit
from notifications import send_inquiry_email
from payments import suggested_downpayment

import hashlib
import hmac

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        try:
            ensure_indexes(db)
        except PyMongoError as e:
            logger.warning(f"Could not create indexes at startup: {str(e)[:120]}")
    yield


app = FastAPI(title="Restaurant Ordering API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.method} {request.url.path}: {str(exc)[:200]}")
    return JSONResponse(status_code=503, content={"detail": "Database temporarily unavailable. Please try again."})


def get_clock():
    return current_time


# -----------------
# Auth (session cookie)
# -----------------
SESSION_COOKIE = "order_session"
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-secret-change")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "owner@restaurant.local")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin12345")


class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    gcash_number: Optional[str] = None


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


def verify_password(password: str, hashed: str) -> bool:
    return hmac.compare_digest(hash_password(password), hashed)


def sign(user_id: str) -> str:
    return hmac.new(SESSION_SECRET.encode(), msg=user_id.encode(), digestmod=hashlib.sha256).hexdigest()


def set_session(resp: Response, user_id: str):
    resp.set_cookie(SESSION_COOKIE, f"{user_id}:{sign(user_id)}", httponly=True, secure=False, samesite="lax", max_age=60*60*8)


def to_current_user(user: dict) -> CurrentUser:
    return CurrentUser(
        id=str(user["_id"]),
        role=user.get("role", Role.CUSTOMER.value),
        display_name=f"{user['first_name']} {user['last_name']}".strip(),
    )


def current_user(session: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE), database: Database = Depends(get_db)) -> CurrentUser:
    if not session:
        raise NotAuthenticated("Not authenticated")
    user_id, _, sig = session.partition(":")
    if not sig or not hmac.compare_digest(sig, sign(user_id)):
        raise NotAuthenticated("Invalid session")
    try:
        user = database["user"].find_one({"_id": to_object_id(user_id, "User")})
    except NotFound:
        raise NotAuthenticated("Invalid session")
    if not user or not user.get("is_active", True):
        raise NotAuthenticated("Invalid session")
    return to_current_user(user)


def require_owner(actor: CurrentUser = Depends(current_user)) -> CurrentUser:
    if actor.role != Role.OWNER:
        raise NotAuthorized("Owner access required")
    return actor


def rate_limited(endpoint: str):
    def dependency(actor: CurrentUser = Depends(current_user), database: Database = Depends(get_db), clock=Depends(get_clock)):
        check_rate_limit(database, actor.id, endpoint, clock)
    return dependency


def get_store(database: Database = Depends(get_db), clock=Depends(get_clock)) -> OrderStore:
    return OrderStore(database, clock)


def get_chat(database: Database = Depends(get_db), clock=Depends(get_clock)) -> ChatChannel:
    return ChatChannel(database, clock)


def bootstrap_owner(database: Database, email: str, password: str) -> Optional[dict]:
    # First owner login creates the account from ADMIN_EMAIL / ADMIN_PASSWORD
    if email != ADMIN_EMAIL or password != ADMIN_PASSWORD:
        return None
    user = User(email=ADMIN_EMAIL, first_name="Restaurant", last_name="Owner", password_hash=hash_password(ADMIN_PASSWORD), role=Role.OWNER)
    doc = user.model_dump()
    doc["role"] = Role.OWNER.value
    user_id = create_document(database, "user", doc)
    logger.info(f"Bootstrapped owner account {user_id}")
    return database["user"].find_one({"_id": to_object_id(user_id)})


@app.post("/api/auth/register")
def register(payload: RegisterRequest, resp: Response, database: Database = Depends(get_db)):
    email = payload.email.strip().lower()
    if database["user"].find_one({"email": email}):
        raise PreconditionFailed("An account with this email already exists")
    if len(payload.password) < 8:
        raise ValidationFailed("Password must be at least 8 characters")
    user = User(
        email=email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        password_hash=hash_password(payload.password),
        phone=payload.phone,
        address=payload.address,
        gcash_number=payload.gcash_number,
    )
    doc = user.model_dump()
    doc["role"] = Role.CUSTOMER.value
    user_id = create_document(database, "user", doc)
    set_session(resp, user_id)
    return to_current_user(database["user"].find_one({"_id": to_object_id(user_id)}))


@app.post("/api/auth/login")
def login(payload: LoginRequest, resp: Response, database: Database = Depends(get_db), clock=Depends(get_clock)):
    email = payload.email.strip().lower()
    check_rate_limit(database, f"login:{email}", "auth.login", clock)
    user = database["user"].find_one({"email": email})
    if not user:
        user = bootstrap_owner(database, email, payload.password)
    if not user or not verify_password(payload.password, user["password_hash"]):
        raise NotAuthenticated("Invalid credentials")
    set_session(resp, str(user["_id"]))
    return to_current_user(user)


@app.post("/api/auth/logout")
def logout(resp: Response):
    resp.delete_cookie(SESSION_COOKIE)
    return {"ok": True}


@app.get("/api/auth/me")
def me(actor: CurrentUser = Depends(current_user)):
    return actor


# -----------------
# Utility
# -----------------
@app.get("/")
def root():
    return {"message": "Restaurant Ordering API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            collections = db.list_collection_names()
            response["collections"] = collections[:20]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:120]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


# -----------------
# Catalog
# -----------------
@app.get("/api/menu")
def get_menu(category: Optional[str] = None, database: Database = Depends(get_db)):
    return {"categories": list_categories(database), "items": list_menu_items(database, category)}


@app.get("/api/menu/items/{menu_item_id}/variants")
def get_variants(menu_item_id: str, database: Database = Depends(get_db)):
    return list_variants(database, menu_item_id)


@app.get("/api/menu/items/{menu_item_id}/choice-groups")
def get_choice_groups(menu_item_id: str, database: Database = Depends(get_db)):
    return list_choice_groups(database, menu_item_id)


class UpsertItem(MenuItem):
    id: Optional[str] = None


@app.post("/api/admin/menu/category", dependencies=[Depends(require_owner)])
def upsert_category(cat: MenuCategory, database: Database = Depends(get_db)):
    database["menucategory"].update_one({"slug": cat.slug}, {"$set": cat.model_dump()}, upsert=True)
    return {"ok": True}


@app.post("/api/admin/menu/item", dependencies=[Depends(require_owner), Depends(rate_limited("menu.add"))])
def upsert_item(item: UpsertItem, database: Database = Depends(get_db)):
    data = item.model_dump(exclude={"id"})
    if item.id:
        result = database["menuitem"].update_one({"_id": to_object_id(item.id, "Menu item")}, {"$set": data})
        if not result.matched_count:
            raise NotFound("Menu item not found")
        return {"id": item.id}
    return {"id": create_document(database, "menuitem", data)}


@app.post("/api/admin/menu/variant", dependencies=[Depends(require_owner)])
def add_variant(variant: MenuItemVariant, database: Database = Depends(get_db)):
    return {"id": create_document(database, "menuitemvariant", variant)}


@app.post("/api/admin/menu/choice-group", dependencies=[Depends(require_owner)])
def add_choice_group(group: ChoiceGroup, database: Database = Depends(get_db)):
    return {"id": create_document(database, "choicegroup", group)}


class SettingBody(BaseModel):
    value: dict | str | int | float | bool
    description: Optional[str] = None


@app.put("/api/admin/settings/{key}", dependencies=[Depends(require_owner)])
def put_setting(key: str, body: SettingBody, database: Database = Depends(get_db)):
    setting = SiteSetting(key=key, **body.model_dump())
    database["sitesetting"].update_one({"key": key}, {"$set": setting.model_dump()}, upsert=True)
    return {"ok": True}


# -----------------
# Blob storage
# -----------------
@app.post("/api/storage/upload-url", dependencies=[Depends(current_user)])
def storage_upload_url():
    return {"upload_url": generate_upload_url()}


@app.post("/api/storage/upload")
async def storage_upload(request: Request, actor: CurrentUser = Depends(current_user), database: Database = Depends(get_db)):
    data = await request.body()
    storage_id = save_file(database, data, request.headers.get("content-type", ""), uploaded_by=actor.id)
    return {"storage_id": storage_id, "url": resolve_url(database, storage_id)}


@app.get("/api/storage/{storage_id}")
def storage_get(storage_id: str, actor: CurrentUser = Depends(current_user), database: Database = Depends(get_db)):
    doc = load_file_for(database, actor, storage_id)
    return Response(content=bytes(doc["data"]), media_type=doc["content_type"])


# -----------------
# Orders
# -----------------
def visible_orders(store: OrderStore, actor: CurrentUser) -> List[dict]:
    if actor.role == Role.OWNER:
        return store.list_all_orders(actor)
    return store.list_orders_by_customer(actor, actor.id)


@app.post("/api/orders", dependencies=[Depends(rate_limited("orders.create"))])
def create_order(draft: OrderDraft, actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return {"order_id": store.create_order(actor, draft)}


@app.get("/api/orders")
def get_orders(
    status: str = "all",
    order_type: str = "all",
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    customer_id: Optional[str] = None,
    sort: str = "created",
    actor: CurrentUser = Depends(current_user),
    store: OrderStore = Depends(get_store),
    chat: ChatChannel = Depends(get_chat),
    clock=Depends(get_clock),
):
    orders = visible_orders(store, actor)
    if actor.role != Role.OWNER:
        customer_id = actor.id

    matcher = active_status_matcher
    sort_key = None
    if status == "recent" or sort == "last_message":
        stats = chat.get_per_order_unread_and_last(actor, [o["id"] for o in orders])
        last_by_order = {s["order_id"]: s["last_message"] for s in stats if s["last_message"]}
        matcher = recent_chat_matcher(last_by_order, clock().date())
        if sort == "last_message":
            sort_key = last_message_sort_key(last_by_order)

    config = OrderFilterConfig(
        customer_id=customer_id or "",
        from_date=from_date,
        to_date=to_date,
        status_filter=status,
        order_type=order_type,
        custom_status_matcher=matcher,
        sort_key=sort_key,
    )
    return filter_and_sort_orders(orders, config)


@app.get("/api/orders/status-options")
def get_status_options():
    return [{"id": key, "label": label} for key, label in STATUS_FILTER_OPTIONS]


@app.get("/api/orders/active")
def get_active_order(actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return {"order": get_customer_active_order(store.list_orders_by_customer(actor, actor.id), actor.id)}


@app.get("/api/orders/active-list")
def get_active_orders(actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return get_customer_active_orders(store.list_orders_by_customer(actor, actor.id), actor.id)


@app.get("/api/orders/pre-orders")
def get_pre_orders(actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return get_customer_pre_orders(store.list_orders_by_customer(actor, actor.id), actor.id)


@app.get("/api/orders/gate")
def get_order_gate(actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return {"blocked": has_blocking_order(store.list_orders_by_customer(actor, actor.id), actor.id)}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    order = store.get_order_by_id(actor, order_id)
    targets = allowed_targets(order["status"], actor.role, delivery=is_delivery(order))
    order["allowed_statuses"] = sorted(t.value for t in targets)
    return order


@app.patch("/api/orders/{order_id}")
def patch_order(order_id: str, patch: OrderPatch, actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return store.update_order(actor, order_id, patch)


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return store.cancel_order(actor, order_id)


@app.post("/api/orders/{order_id}/confirm-denial")
def confirm_denial(order_id: str, actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return store.confirm_denial(actor, order_id)


@app.put("/api/orders/{order_id}/items")
def put_order_items(order_id: str, body: OrderItemsUpdate, actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return store.update_order_items(actor, order_id, body.items, body.modification_type, body.item_details)


@app.get("/api/orders/{order_id}/payment")
def get_order_payment(order_id: str, actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return asdict(store.payment_status(actor, order_id))


@app.get("/api/orders/{order_id}/modifications")
def get_order_modifications(order_id: str, actor: CurrentUser = Depends(current_user), store: OrderStore = Depends(get_store)):
    return store.list_modifications(actor, order_id)


@app.get("/api/payments/suggested-downpayment")
def get_suggested_downpayment(total: float):
    if total <= 0:
        raise ValidationFailed("Total must be greater than zero")
    return {"amount": suggested_downpayment(total)}


# -----------------
# Chat
# -----------------
@app.get("/api/orders/{order_id}/messages")
def get_messages(order_id: str, actor: CurrentUser = Depends(current_user), chat: ChatChannel = Depends(get_chat)):
    return chat.list_by_order(actor, order_id)


@app.post("/api/orders/{order_id}/messages", dependencies=[Depends(rate_limited("chat.send"))])
def post_message(order_id: str, body: ChatMessageIn, actor: CurrentUser = Depends(current_user), chat: ChatChannel = Depends(get_chat)):
    return chat.send_message(actor, order_id, body.message, body.kind)


@app.post("/api/orders/{order_id}/messages/read")
def read_messages(order_id: str, actor: CurrentUser = Depends(current_user), chat: ChatChannel = Depends(get_chat)):
    return {"last_read_at": chat.mark_as_read(actor, order_id)}


@app.post("/api/chat/summary")
def chat_summary(body: ChatSummaryRequest, actor: CurrentUser = Depends(current_user), chat: ChatChannel = Depends(get_chat)):
    return chat.get_per_order_unread_and_last(actor, body.order_ids)


@app.get("/api/chat/unread-count")
def chat_unread_count(actor: CurrentUser = Depends(current_user), chat: ChatChannel = Depends(get_chat)):
    return {"count": chat.get_unread_count(actor)}


# -----------------
# Vouchers
# -----------------
@app.get("/api/vouchers/validate", response_model=VoucherValidation)
def validate_voucher_code(code: str, amount: float, database: Database = Depends(get_db), clock=Depends(get_clock)):
    try:
        validate_code_format(code)
    except ValidationFailed as e:
        return VoucherValidation(valid=False, discount=0, message=e.message)
    return check_voucher(database, code, amount, clock())


@app.get("/api/admin/vouchers", dependencies=[Depends(require_owner)])
def admin_list_vouchers(database: Database = Depends(get_db)):
    return list_vouchers(database)


@app.post("/api/admin/vouchers", dependencies=[Depends(require_owner), Depends(rate_limited("vouchers.add"))])
def admin_add_voucher(voucher: Voucher, database: Database = Depends(get_db)):
    validate_code_format(voucher.code)
    if find_voucher(database, voucher.code):
        raise PreconditionFailed("Voucher code already exists")
    return {"id": create_document(database, "voucher", voucher)}


@app.put("/api/admin/vouchers/{voucher_id}", dependencies=[Depends(require_owner)])
def admin_update_voucher(voucher_id: str, voucher: VoucherUpdate, database: Database = Depends(get_db), clock=Depends(get_clock)):
    # max_discount may be cleared with null; other fields cannot be unset
    data = {k: v for k, v in voucher.model_dump(exclude_unset=True).items() if v is not None or k == "max_discount"}
    if "code" in data:
        data["code"] = validate_code_format(data["code"])
        existing = find_voucher(database, data["code"])
        if existing and str(existing["_id"]) != voucher_id:
            raise PreconditionFailed("Voucher code already exists")
    data["updated_at"] = clock()
    result = database["voucher"].update_one({"_id": to_object_id(voucher_id, "Voucher")}, {"$set": data})
    if not result.matched_count:
        raise NotFound("Voucher not found")
    return serialize(database["voucher"].find_one({"_id": to_object_id(voucher_id)}))


@app.delete("/api/admin/vouchers/{voucher_id}", dependencies=[Depends(require_owner)])
def admin_delete_voucher(voucher_id: str, database: Database = Depends(get_db)):
    result = database["voucher"].delete_one({"_id": to_object_id(voucher_id, "Voucher")})
    if not result.deleted_count:
        raise NotFound("Voucher not found")
    return {"ok": True}


# -----------------
# Delivery fees
# -----------------
@app.get("/api/delivery-fee")
def get_delivery_fee(address: str, database: Database = Depends(get_db)):
    return {"fee": delivery_fee_for_address(database, address)}


@app.get("/api/delivery-fees")
def get_delivery_fees(database: Database = Depends(get_db)):
    return get_documents(database, "deliveryfee")


@app.post("/api/admin/delivery-fees", dependencies=[Depends(require_owner)])
def upsert_delivery_fee(fee: DeliveryFee, database: Database = Depends(get_db)):
    database["deliveryfee"].update_one({"barangay": fee.barangay}, {"$set": fee.model_dump()}, upsert=True)
    return {"ok": True}


# -----------------
# Website inquiries
# -----------------
class InquiryBody(BaseModel):
    name: str
    email: str
    company_name: Optional[str] = None
    subject: str
    message: str


@app.post("/api/inquiries")
def new_inquiry(body: InquiryBody, background_tasks: BackgroundTasks, database: Database = Depends(get_db)):
    inquiry = WebsiteInquiry(**body.model_dump())
    inquiry_id = create_document(database, "websiteinquiry", inquiry)
    background_tasks.add_task(send_inquiry_email, inquiry)
    return {"inquiry_id": inquiry_id}


# -----------------
# Schema endpoint for viewer tooling
# -----------------
@app.get("/schema")
def get_schema_definitions():
    return {
        "collections": [
            "user","menucategory","menuitem","menuitemvariant","choicegroup","order","ordermodification",
            "chatmessage","chatreadstatus","voucher","deliveryfee","sitesetting","storedfile","websiteinquiry","ratelimit"
        ]
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
