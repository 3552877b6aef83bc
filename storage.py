"""
Blob store for payment proofs and chat images.

Uploaded bytes live in the ``storedfile`` collection. A storage id resolves
to a durable URL under ``/api/storage/``.
"""

import os
import re
from typing import Optional

from bson import Binary
from pymongo.database import Database

from database import create_document, current_time, to_object_id
from errors import NotAuthorized, NotFound, ValidationFailed
from order_status import Role
from schemas import CurrentUser

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
ALLOWED_CONTENT_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/gif", "image/webp"}

STORAGE_PATH = "/api/storage/"
PROOF_FIELDS = ("downpayment_proof_url", "payment_screenshot", "remaining_payment_proof_url")


def generate_upload_url() -> str:
    return f"{PUBLIC_BASE_URL}{STORAGE_PATH}upload"


def save_file(database: Database, data: bytes, content_type: str, uploaded_by: Optional[str] = None) -> str:
    content_type = (content_type or "").split(";")[0].strip().lower()
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationFailed("Only image uploads are accepted")
    if not data:
        raise ValidationFailed("Uploaded file is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationFailed("Uploaded file is too large")
    return create_document(
        database,
        "storedfile",
        {"content_type": content_type, "size": len(data), "data": Binary(data), "uploaded_by": uploaded_by},
        now=current_time(),
    )


def load_file(database: Database, storage_id: str) -> dict:
    doc = database["storedfile"].find_one({"_id": to_object_id(storage_id, "File")})
    if not doc:
        raise NotFound("File not found")
    return doc


def resolve_url(database: Database, storage_id: str) -> Optional[str]:
    try:
        load_file(database, storage_id)
    except NotFound:
        return None
    return f"{PUBLIC_BASE_URL}{STORAGE_PATH}{storage_id}"


def resolve_reference(database: Database, value: Optional[str], what: str = "payment proof") -> Optional[str]:
    """
    Turn a proof/attachment reference into a URL.

    URLs pass through untouched; anything else is treated as a storage id
    and must exist in the store.
    """
    if not value:
        return value
    if value.startswith("http://") or value.startswith("https://") or value.startswith(STORAGE_PATH):
        return value
    url = resolve_url(database, value)
    if not url:
        raise ValidationFailed(f"Invalid {what}. Please upload a valid image.")
    return url


def load_file_for(database: Database, actor: CurrentUser, storage_id: str) -> dict:
    """
    Load a stored file the actor may see.

    Owners see every file. A customer sees files they uploaded and files
    referenced by their own orders' payment proofs or chat messages.
    """
    doc = load_file(database, storage_id)
    if actor.role == Role.OWNER or doc.get("uploaded_by") == actor.id:
        return doc

    reference = {"$regex": re.escape(f"{STORAGE_PATH}{doc['_id']}") + "$"}
    orders = database["order"]
    if orders.find_one({"customer_id": actor.id, "$or": [{field: reference} for field in PROOF_FIELDS]}, {"_id": 1}):
        return doc
    order_ids = [str(o["_id"]) for o in orders.find({"customer_id": actor.id}, {"_id": 1})]
    if order_ids and database["chatmessage"].find_one({"order_id": {"$in": order_ids}, "message": reference}, {"_id": 1}):
        return doc
    raise NotAuthorized("Unauthorized to view this file")
