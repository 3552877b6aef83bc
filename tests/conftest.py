from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from chat import ChatChannel
from database import get_db
from main import app, get_clock, hash_password
from order_status import Role
from orders import OrderStore
from schemas import CurrentUser, OrderDraft


class Clock:
    """Settable clock injected wherever the service asks for the time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def database():
    return mongomock.MongoClient().ordering


@pytest.fixture
def clock():
    return Clock(datetime(2025, 3, 10, 12, 0, 0))


def _add_user(database, email, first, last, role):
    doc = {
        "email": email,
        "first_name": first,
        "last_name": last,
        "password_hash": hash_password("password123"),
        "role": role.value,
        "is_active": True,
    }
    user_id = database["user"].insert_one(doc).inserted_id
    return CurrentUser(id=str(user_id), role=role, display_name=f"{first} {last}")


@pytest.fixture
def owner(database):
    return _add_user(database, "owner@example.com", "Olive", "Owner", Role.OWNER)


@pytest.fixture
def customer(database):
    return _add_user(database, "ana@example.com", "Ana", "Reyes", Role.CUSTOMER)


@pytest.fixture
def other_customer(database):
    return _add_user(database, "ben@example.com", "Ben", "Cruz", Role.CUSTOMER)


@pytest.fixture
def menu(database):
    items = database["menuitem"]
    pizza = items.insert_one({"name": "Pepperoni Pizza", "price": 100.0, "category": "pizza", "available": True}).inserted_id
    pasta = items.insert_one({"name": "Carbonara", "price": 150.0, "category": "pasta", "available": True}).inserted_id
    sold_out = items.insert_one({"name": "Lasagna", "price": 200.0, "category": "pasta", "available": False}).inserted_id
    large = database["menuitemvariant"].insert_one(
        {"menu_item_id": str(pizza), "name": "Large", "price": 180.0, "available": True}
    ).inserted_id
    crust = database["choicegroup"].insert_one({
        "menu_item_id": str(pizza),
        "name": "Crust",
        "choices": [
            {"name": "Thin", "price": 0, "available": True},
            {"name": "Stuffed", "price": 30, "available": True},
            {"name": "Cheese", "price": 40, "available": False},
        ],
    }).inserted_id
    return {
        "pizza": str(pizza),
        "pasta": str(pasta),
        "sold_out": str(sold_out),
        "large": str(large),
        "crust": str(crust),
    }


@pytest.fixture
def make_draft(menu):
    def build(**overrides):
        data = {
            "customer_name": "Ana Reyes",
            "customer_phone": "09171234567",
            "items": [
                {"menu_item_id": menu["pizza"], "quantity": 1},
                {"menu_item_id": menu["pasta"], "quantity": 1},
            ],
            "order_type": "takeaway",
            "payment_screenshot": "https://img.example.com/proof.png",
        }
        data.update(overrides)
        return OrderDraft(**data)

    return build


@pytest.fixture
def chat(database, clock):
    return ChatChannel(database, clock)


@pytest.fixture
def store(database, clock, owner, chat):
    return OrderStore(database, clock, chat)


@pytest.fixture
def api(database, clock):
    app.dependency_overrides[get_db] = lambda: database
    app.dependency_overrides[get_clock] = lambda: clock
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def login(api):
    """Return a fresh logged-in TestClient; each has its own cookie jar."""

    def make(email, password="password123"):
        client = TestClient(api)
        resp = client.post("/api/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return client

    return make
