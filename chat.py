"""
Per-order chat channel.

Messages are append-only and scoped to one order. Sending is gated by the
order's lifecycle: chat closes when ``allow_chat`` is off, or when the order
has reached a final status and the calendar day has rolled past the day the
order was created. Unread counts come from a per-role "last read"
watermark in ``chatreadstatus``.
"""

import logging
import os
import re
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional

from pymongo import ASCENDING
from pymongo.database import Database

from database import create_document, current_time, get_setting, serialize, to_object_id
from errors import ChatClosed, NotAuthorized, NotFound, ValidationFailed
from order_status import Role, is_final
from schemas import ChatMessage, CurrentUser
from storage import STORAGE_PATH, resolve_reference

logger = logging.getLogger(__name__)

RESTAURANT_NAME = os.getenv("RESTAURANT_NAME", "The Restaurant")
MAX_MESSAGE_LENGTH = 100

IMAGE_EXTENSIONS = re.compile(r"\.(png|jpg|jpeg|gif|webp|bmp|svg)(\?.*)?$", re.IGNORECASE)
BLOB_ID = re.compile(r"^[A-Za-z0-9]{24,}$")


def can_access_order(actor: CurrentUser, order: Mapping) -> bool:
    return actor.role == Role.OWNER or order.get("customer_id") == actor.id


def restaurant_name(database: Database) -> str:
    return get_setting(database, "restaurant_name", RESTAURANT_NAME)


def chat_gate_reason(order: Mapping, now: datetime) -> Optional[str]:
    """Why chat is closed for ``order`` at ``now``, or None when it is open."""
    if order.get("allow_chat", True) is False:
        return "Chat is disabled for this order"
    if is_final(order["status"]) and now.date() > order["created_at"].date():
        return "Chat is closed for this order. Same-day follow-up has ended."
    return None


def is_chat_open(order: Mapping, now: datetime) -> bool:
    return chat_gate_reason(order, now) is None


def sanitize_text(message: str) -> str:
    text = message.strip()
    text = re.sub(r"<[^>]*>", "", text)
    text = text.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")
    text = re.sub(r"javascript:", "", text, flags=re.IGNORECASE)
    text = re.sub(r"on\w+\s*=", "", text, flags=re.IGNORECASE)
    return text


def classify_message_body(text: str) -> str:
    """
    Guess whether a stored body is an image reference.

    Only used for rows written before messages carried ``kind``. A long
    space-free alphanumeric text message will be taken for a blob id.
    """
    if not text:
        return "text"
    if text.startswith("http://") or text.startswith("https://"):
        if STORAGE_PATH in text or IMAGE_EXTENSIONS.search(text):
            return "image"
        return "text"
    if BLOB_ID.match(text):
        return "image"
    return "text"


def message_kind(message: Mapping) -> str:
    return message.get("kind") or classify_message_body(message.get("message", ""))


class ChatChannel:
    def __init__(self, database: Database, clock: Callable[[], datetime] = current_time):
        self.db = database
        self.clock = clock

    def _load_order(self, actor: CurrentUser, order_id: str) -> dict:
        order = self.db["order"].find_one({"_id": to_object_id(order_id, "Order")})
        if not order:
            raise NotFound("Order not found")
        if not can_access_order(actor, order):
            raise NotAuthorized("Unauthorized: You don't have access to this order")
        return order

    def _sender_name(self, actor: CurrentUser) -> str:
        if actor.role == Role.OWNER:
            return restaurant_name(self.db)
        return actor.display_name

    def send_message(self, actor: CurrentUser, order_id: str, content: str, kind: str = "text") -> dict:
        order = self._load_order(actor, order_id)
        now = self.clock()

        reason = chat_gate_reason(order, now)
        if reason:
            logger.info(f"Chat send rejected on order {order_id}: {reason}")
            raise ChatClosed(reason)

        if kind == "image":
            if actor.role == Role.CUSTOMER and not order.get("allow_customer_images", False):
                raise ChatClosed("Image messages are not enabled for this order")
            body = resolve_reference(self.db, (content or "").strip(), "image")
            if not body:
                raise ValidationFailed("Image is required")
        elif kind == "text":
            if not content or not content.strip():
                raise ValidationFailed("Message cannot be empty")
            if len(content) > MAX_MESSAGE_LENGTH:
                raise ValidationFailed(f"Message must be {MAX_MESSAGE_LENGTH} characters or less")
            body = sanitize_text(content)
            if not body:
                raise ValidationFailed("Message cannot be empty")
        else:
            raise ValidationFailed(f"Unknown message kind: {kind}")

        message = ChatMessage(
            order_id=str(order["_id"]),
            sender_id=actor.id,
            sender_name=self._sender_name(actor),
            sender_role=actor.role,
            message=body,
            kind=kind,
            timestamp=now,
        )
        doc = message.model_dump(mode="python")
        doc["sender_role"] = actor.role.value
        message_id = create_document(self.db, "chatmessage", doc, now=now)
        return serialize(self.db["chatmessage"].find_one({"_id": to_object_id(message_id)}))

    def post_system_message(self, order_id: str, sender_id: str, text: str, sender_role: Role = Role.OWNER, sender_name: Optional[str] = None) -> str:
        """Automatic status/notice message; written regardless of the chat gate."""
        now = self.clock()
        doc = {
            "order_id": str(order_id),
            "sender_id": sender_id,
            "sender_name": sender_name or restaurant_name(self.db),
            "sender_role": Role(sender_role).value,
            "message": text,
            "kind": "text",
            "timestamp": now,
        }
        return create_document(self.db, "chatmessage", doc, now=now)

    def list_by_order(self, actor: CurrentUser, order_id: str) -> List[dict]:
        order_id = str(self._load_order(actor, order_id)["_id"])
        cursor = self.db["chatmessage"].find({"order_id": order_id}).sort([("timestamp", ASCENDING), ("_id", ASCENDING)])
        out = []
        for m in cursor:
            item = serialize(m)
            item["kind"] = message_kind(m)
            out.append(item)
        return out

    def mark_as_read(self, actor: CurrentUser, order_id: str) -> Optional[datetime]:
        """
        Advance the reader role's watermark to the newest message.

        Calling it again with nothing new is a no-op; the watermark never
        moves backwards.
        """
        order_id = str(self._load_order(actor, order_id)["_id"])
        latest =self.db["chatmessage"].find_one({"order_id": order_id}, sort=[("timestamp", -1)])
        if not latest:
            return None
        self.db["chatreadstatus"].update_one(
            {"order_id": order_id, "role": actor.role.value},
            {"$max": {"last_read_at": latest["timestamp"]}},
            upsert=True,
        )
        return latest["timestamp"]

    def get_per_order_unread_and_last(self, actor: CurrentUser, order_ids: List[str]) -> List[dict]:
        if not order_ids:
            return []
        order_ids = [str(self._load_order(actor, order_id)["_id"]) for order_id in order_ids]

        watermarks: Dict[str, datetime] = {
            s["order_id"]: s["last_read_at"]
            for s in self.db["chatreadstatus"].find({"order_id": {"$in": order_ids}, "role": actor.role.value})
        }
        stats = {oid: {"order_id": oid, "unread_count": 0, "last_message": None} for oid in order_ids}
        cursor = self.db["chatmessage"].find({"order_id": {"$in": order_ids}}).sort([("timestamp", ASCENDING), ("_id", ASCENDING)])
        for m in cursor:
            entry = stats[m["order_id"]]
            item = serialize(m)
            item["kind"] = message_kind(m)
            entry["last_message"] = item
            if m["sender_role"] == actor.role.value:
                continue
            watermark = watermarks.get(m["order_id"])
            if watermark is None or m["timestamp"] > watermark:
                entry["unread_count"] += 1
        return [stats[oid] for oid in order_ids]

    def get_unread_count(self, actor: CurrentUser) -> int:
        q = {} if actor.role == Role.OWNER else {"customer_id": actor.id}
        order_ids = [str(o["_id"]) for o in self.db["order"].find(q, {"_id": 1})]
        return sum(s["unread_count"] for s in self.get_per_order_unread_and_last(actor, order_ids))
