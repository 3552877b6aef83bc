import pytest

from chat import classify_message_body, is_chat_open
from errors import ChatClosed, NotAuthorized, ValidationFailed


@pytest.fixture
def order_id(store, customer, make_draft):
    return store.create_order(customer, make_draft())


def test_chat_stays_open_on_the_day_a_final_order_was_placed(store, chat, customer, order_id, clock):
    store.cancel_order(customer, order_id)
    clock.advance(hours=11, minutes=59)  # 23:59 the same day
    assert chat.send_message(customer, order_id, "Thanks!")["message"] == "Thanks!"

    clock.advance(minutes=1)
    with pytest.raises(ChatClosed, match="Same-day follow-up has ended"):
        chat.send_message(customer, order_id, "Hello?")


def test_active_order_chat_stays_open_across_days(chat, customer, order_id, clock):
    clock.advance(days=2)
    assert chat.send_message(customer, order_id, "Still waiting")


def test_owner_can_close_chat(store, chat, owner, customer, order_id):
    store.update_order(owner, order_id, {"allow_chat": False})
    with pytest.raises(ChatClosed, match="disabled"):
        chat.send_message(customer, order_id, "hi")


def test_is_chat_open(clock):
    order = {"status": "completed", "created_at": clock(), "allow_chat": True}
    assert is_chat_open(order, clock())
    clock.advance(days=1)
    assert not is_chat_open(order, clock())


def test_text_message_rules(chat, customer, order_id):
    with pytest.raises(ValidationFailed, match="empty"):
        chat.send_message(customer, order_id, "   ")
    with pytest.raises(ValidationFailed, match="100 characters"):
        chat.send_message(customer, order_id, "x" * 101)
    sent = chat.send_message(customer, order_id, "<b>Extra</b> napkins onclick=please")
    assert sent["message"] == "Extra napkins please"
    assert sent["sender_name"] == "Ana Reyes"
    assert sent["kind"] == "text"


def test_customer_images_need_owner_permission(store, chat, owner, customer, order_id):
    url = "https://img.example.com/receipt.jpg"
    with pytest.raises(ChatClosed):
        chat.send_message(customer, order_id, url, kind="image")

    store.update_order(owner, order_id, {"allow_customer_images": True})
    assert chat.send_message(customer, order_id, url, kind="image")["kind"] == "image"


def test_owner_messages_use_restaurant_name(database, chat, owner, order_id):
    database["sitesetting"].insert_one({"key": "restaurant_name", "value": "Pizza Camp"})
    assert chat.send_message(owner, order_id, "On it")["sender_name"] == "Pizza Camp"


def test_other_customer_cannot_read_or_send(chat, other_customer, order_id):
    with pytest.raises(NotAuthorized):
        chat.list_by_order(other_customer, order_id)
    with pytest.raises(NotAuthorized):
        chat.send_message(other_customer, order_id, "hi")


def test_mark_as_read_is_idempotent(chat, owner, customer, order_id, clock):
    clock.advance(minutes=1)
    chat.send_message(owner, order_id, "Confirming your order")
    [stats] = chat.get_per_order_unread_and_last(customer, [order_id])
    # seeded "Order placed" message plus the owner's message
    assert stats["unread_count"] == 2
    assert stats["last_message"]["message"] == "Confirming your order"

    first = chat.mark_as_read(customer, order_id)
    second = chat.mark_as_read(customer, order_id)
    assert first == second
    assert chat.get_unread_count(customer) == 0

    clock.advance(minutes=1)
    chat.send_message(owner, order_id, "Ready in 10 minutes")
    assert chat.get_unread_count(customer) == 1


def test_own_messages_are_never_unread(chat, owner, customer, order_id, clock):
    clock.advance(minutes=1)
    chat.send_message(customer, order_id, "Hi!")
    [stats] = chat.get_per_order_unread_and_last(owner, [order_id])
    assert stats["unread_count"] == 1
    [stats] = chat.get_per_order_unread_and_last(customer, [order_id])
    assert stats["unread_count"] == 1  # only the seeded owner message


def test_read_watermarks_are_per_role(chat, owner, customer, order_id, clock):
    clock.advance(minutes=1)
    chat.send_message(customer, order_id, "Hi!")
    chat.mark_as_read(owner, order_id)
    assert chat.get_unread_count(owner) == 0
    assert chat.get_unread_count(customer) == 1


def test_messages_are_ordered_by_time(chat, owner, customer, order_id, clock):
    clock.advance(minutes=2)
    chat.send_message(customer, order_id, "second")
    clock.advance(minutes=1)
    chat.send_message(owner, order_id, "third")
    assert [m["message"] for m in chat.list_by_order(customer, order_id)][1:] == ["second", "third"]


def test_legacy_rows_are_classified(database, chat, customer, order_id, clock):
    database["chatmessage"].insert_one({
        "order_id": order_id, "sender_id": customer.id, "sender_name": "Ana Reyes",
        "sender_role": "customer", "message": "https://img.example.com/a.png", "timestamp": clock(),
    })
    legacy = [m for m in chat.list_by_order(customer, order_id) if m["sender_role"] == "customer"]
    assert legacy[0]["kind"] == "image"


@pytest.mark.parametrize("body,kind", [
    ("https://cdn.example.com/photo.JPG", "image"),
    ("https://example.com/api/storage/abc", "image"),
    ("https://example.com/menu", "text"),
    ("kg2a7d9x1v8f3q0z5n6m4p2b", "image"),
    ("see you soon", "text"),
    ("", "text"),
])
def test_classify_message_body(body, kind):
    assert classify_message_body(body) == kind


def test_upper_case_order_id_reads_the_same_thread(chat, owner, customer, order_id, clock):
    clock.advance(minutes=1)
    chat.send_message(owner, order_id, "Ready soon")
    upper = order_id.upper()

    assert len(chat.list_by_order(customer, upper)) == len(chat.list_by_order(customer, order_id)) == 2
    chat.mark_as_read(customer, upper)
    summary = chat.get_per_order_unread_and_last(customer, [upper])
    assert summary[0]["order_id"] == order_id
    assert summary[0]["unread_count"] == 0
