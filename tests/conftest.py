import os
import tempfile

# Must be set before the application modules are imported.
os.environ["DATABASE_URL"] = ""
os.environ["FARMMARKET_DB"] = os.path.join(tempfile.mkdtemp(), "import.db")
os.environ["FARMMARKET_ADMIN_EMAIL"] = "admin@example.com"

import pytest

import db
import market
from app import app as flask_app

PASSWORD = "secret123"


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_NAME", str(tmp_path / "farmmarket.db"))
    db.ensure_schema()
    flask_app.config.update(TESTING=True, SECRET_KEY="test-secret")
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def users(app):
    with app.app_context():
        return {
            "farmer": market.sign_up("farmer@example.com", PASSWORD, "Fiona Farmer", "Farmer"),
            "farmer2": market.sign_up("grower@example.com", PASSWORD, "Gus Grower", "Farmer"),
            "buyer": market.sign_up("buyer@example.com", PASSWORD, "Bea Buyer", "Buyer"),
            "buyer2": market.sign_up("shopper@example.com", PASSWORD, "Sam Shopper", "Buyer"),
            # the configured admin address is promoted regardless of the requested role
            "admin": market.sign_up("admin@example.com", PASSWORD, "Ada Admin", "Buyer"),
        }


@pytest.fixture
def category_id(app):
    with app.app_context():
        return market.list_categories()[0]["category_id"]


@pytest.fixture
def make_product(app, users, category_id):
    def _make(farmer=None, name="Tomatoes", price="9.99", stock=5, approve=True):
        with app.app_context():
            p = market.create_product(farmer or users["farmer"], {
                "name": name,
                "description": "Fresh from the field",
                "price": price,
                "stock": stock,
                "category_id": category_id,
            })
            if approve:
                p, _ = market.set_product_status(users["admin"], p["product_id"], "Approved")
            return p
    return _make


@pytest.fixture
def login(client):
    def _login(email, password=PASSWORD):
        return client.post("/login", data={"email": email, "password": password})
    return _login
