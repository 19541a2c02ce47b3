from __future__ import annotations

import os
import json
import uuid
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import wraps
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from db import (
    DB_ERRORS,
    _ph,
    _ph_list,
    db_commit,
    db_execute,
    db_fetchall,
    db_fetchone,
    db_insert,
    db_rollback,
    db_scalar,
    now_str,
)
import db
from realtime import ChangeFeed, OrderBoard, emit_change

logger = logging.getLogger("farmmarket")

ADMIN_EMAIL = os.environ.get("FARMMARKET_ADMIN_EMAIL", "admin@farmmarket.local").strip().lower()
LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "10"))

FARMER = "Farmer"
BUYER = "Buyer"
ADMIN = "Admin"
ROLES = (FARMER, BUYER, ADMIN)

PENDING = "Pending"
APPROVED = "Approved"
REJECTED = "Rejected"
PRODUCT_STATUSES = (PENDING, APPROVED, REJECTED)

# Admin-only moves; Pending is never re-entered.
PRODUCT_TRANSITIONS = {
    PENDING: {APPROVED, REJECTED},
    APPROVED: {REJECTED},
    REJECTED: {APPROVED},
}

STATUS_PENDING = 1
STATUS_CONFIRMED = 2
STATUS_SHIPPED = 3
STATUS_DELIVERED = 4
STATUS_CANCELLED = 5
STATUS_NAMES = {
    STATUS_PENDING: "Pending",
    STATUS_CONFIRMED: "Confirmed",
    STATUS_SHIPPED: "Shipped",
    STATUS_DELIVERED: "Delivered",
    STATUS_CANCELLED: "Cancelled",
}
TERMINAL_STATUSES = {STATUS_DELIVERED, STATUS_CANCELLED}

CENTS = Decimal("0.01")
CART_SESSION_KEY = "carts"


# -----------------------------
# Errors
# -----------------------------

class MarketError(Exception):
    """Base error; the message is shown to the user as-is."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(MarketError):
    pass


class AuthorizationError(MarketError):
    pass


class ValidationError(MarketError):
    pass


class CartError(MarketError):
    pass


class OutOfStockError(CartError):
    pass


class QuantityExceedsStockError(CartError):
    pass


class NotFoundError(MarketError):
    pass


class BackendError(MarketError):
    pass


class CheckoutError(MarketError):
    pass


class InvalidStatusError(MarketError):
    pass


class InvalidTransitionError(MarketError):
    pass


def _quiet_rollback(op: str) -> None:
    try:
        db_rollback()
    except DB_ERRORS:
        logger.warning("rollback_failed op=%s", op)


def _backend_call(fn):
    """Wrap driver errors in BackendError, rolling back the open transaction."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except DB_ERRORS as e:
            _quiet_rollback(fn.__name__)
            logger.error("backend_error op=%s error=%s", fn.__name__, e)
            raise BackendError(str(e)) from e
    return wrapper


# -----------------------------
# Money
# -----------------------------

def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _money_param(value: Decimal):
    # sqlite3 has no Decimal adapter
    return value if db.USE_POSTGRES else float(value)


# -----------------------------
# Access control
# -----------------------------

def require_user(user: Optional[dict]) -> dict:
    if not user:
        raise AuthenticationError("Please log in first.")
    return user


def require_role(user: Optional[dict], *roles: str) -> dict:
    user = require_user(user)
    if user["role"] not in roles:
        raise AuthorizationError("Access denied for your role.")
    return user


def can_view_product(user: Optional[dict], product: Mapping[str, Any]) -> bool:
    if user and user["role"] == ADMIN:
        return True
    if user and user["role"] == FARMER and product.get("farmer_id") == user["id"]:
        return True
    return product.get("status") == APPROVED


def allowed_product_actions(user: Optional[dict], product: Mapping[str, Any]) -> set[str]:
    """Operations the user may perform on a product."""
    if not user or not can_view_product(user, product):
        return set()
    actions = {"view"}
    if user["role"] == FARMER and product.get("farmer_id") == user["id"]:
        actions |= {"edit", "delete"}
    elif user["role"] == ADMIN:
        actions.add("set_status")
    elif user["role"] == BUYER and product.get("status") == APPROVED:
        actions |= {"add_to_cart", "rate"}
    return actions


def _require_owner(user: dict, product: Mapping[str, Any]) -> None:
    if user["role"] == ADMIN:
        raise AuthorizationError("Admins can only change a product's status.")
    if user["role"] != FARMER or product.get("farmer_id") != user["id"]:
        raise AuthorizationError("You can only manage your own products.")


# -----------------------------
# Role -> dashboard view
# -----------------------------

@dataclass(frozen=True)
class DashboardView:
    kind: str
    template: str
    title: str
    nav: Tuple[Tuple[str, str], ...]


_VIEWS = {
    FARMER: DashboardView(
        kind="farmer",
        template="dashboard_farmer.html",
        title="Farmer Dashboard",
        nav=(("Dashboard", "/dashboard"), ("My Products", "/products"), ("Orders", "/orders"), ("Profile", "/profile")),
    ),
    BUYER: DashboardView(
        kind="buyer",
        template="dashboard_buyer.html",
        title="Buyer Dashboard",
        nav=(("Dashboard", "/dashboard"), ("Marketplace", "/products"), ("Cart", "/cart"), ("My Orders", "/orders"), ("Profile", "/profile")),
    ),
    ADMIN: DashboardView(
        kind="admin",
        template="dashboard_admin.html",
        title="Admin Dashboard",
        nav=(("Dashboard", "/dashboard"), ("Products", "/products"), ("Orders", "/orders"), ("Profile", "/profile")),
    ),
}


def dashboard_view(role: str) -> DashboardView:
    try:
        return _VIEWS[role]
    except KeyError:
        raise AuthorizationError(f"Unknown role: {role!r}") from None


# -----------------------------
# Profiles + auth
# -----------------------------

def _public_profile(row: Optional[dict]) -> Optional[dict]:
    if row is None:
        return None
    row = dict(row)
    row.pop("password_hash", None)
    return row


@_backend_call
def get_profile(user_id: str) -> Optional[dict]:
    return _public_profile(db_fetchone(f"SELECT * FROM profiles WHERE id = {_ph()}", (user_id,)))


@_backend_call
def sign_up(email: str, password: str, name: str, role: str) -> dict:
    email = (email or "").strip().lower()
    name = (name or "").strip()
    role = (role or "").strip().capitalize()

    if "@" not in email or len(email) < 3:
        raise ValidationError("A valid email is required.")
    if len(password or "") < 6:
        raise ValidationError("Password must be at least 6 characters.")
    if not name:
        raise ValidationError("Name is required.")
    if email == ADMIN_EMAIL:
        role = ADMIN
    elif role not in (FARMER, BUYER):
        raise ValidationError("Please choose Farmer or Buyer.")

    if db_fetchone(f"SELECT id FROM profiles WHERE email = {_ph()}", (email,)):
        raise ValidationError("An account with this email already exists.")

    uid = uuid.uuid4().hex
    db_execute(
        f"INSERT INTO profiles(id, name, email, role, password_hash, created_at) VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()})",
        (uid, name, email, role, generate_password_hash(password), now_str()),
    )
    db_commit()
    logger.info("user_registered user_id=%s role=%s", uid, role)
    log_activity(uid, "sign_up", f"{role} account created")
    return get_profile(uid)


@_backend_call
def sign_in(email: str, password: str) -> dict:
    email = (email or "").strip().lower()
    row = db_fetchone(f"SELECT * FROM profiles WHERE email = {_ph()}", (email,))
    if not row or not check_password_hash(row["password_hash"], password or ""):
        raise AuthenticationError("Invalid email or password.")
    return _public_profile(row)


@_backend_call
def update_profile_name(user: dict, name: str) -> dict:
    user = require_user(user)
    name = (name or "").strip()
    if not name:
        raise ValidationError("Name is required.")
    db_execute(f"UPDATE profiles SET name = {_ph()} WHERE id = {_ph()}", (name, user["id"]))
    db_commit()
    return get_profile(user["id"])


@_backend_call
def list_users(role: Optional[str] = None) -> List[dict]:
    if role and role in ROLES:
        rows = db_fetchall(
            f"SELECT * FROM profiles WHERE role = {_ph()} ORDER BY created_at DESC",
            (role,),
        )
    else:
        rows = db_fetchall("SELECT * FROM profiles ORDER BY created_at DESC")
    return [_public_profile(r) for r in rows]


# -----------------------------
# Activity log + notifications
# -----------------------------

def log_activity(user_id: Optional[str], action: str, details: str = "") -> None:
    db_execute(
        f"INSERT INTO log_activity(user_id, action, details, created_at) VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()})",
        (user_id, action, details, now_str()),
    )
    db_commit()


def recent_activity(limit: int = 20) -> List[dict]:
    return db_fetchall(
        f"""
        SELECT l.*, p.name AS user_name
        FROM log_activity l
        LEFT JOIN profiles p ON p.id = l.user_id
        ORDER BY l.log_id DESC
        LIMIT {_ph()}
        """,
        (limit,),
    )


def notify_user(user_id: Optional[str], kind: str, message: str, link: str = "/orders") -> None:
    """Create an in-app notification for a specific user (and persist immediately)."""
    if not user_id:
        return
    db_execute(
        f"INSERT INTO notifications(user_id, kind, message, link, created_at) VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()})",
        (user_id, kind, message, link, now_str()),
    )
    db_commit()


@_backend_call
def notifications_since(user: dict, since: int, limit: int = 25) -> List[dict]:
    rows = db_fetchall(
        f"SELECT id, kind, message, link, created_at FROM notifications WHERE user_id = {_ph()} AND id > {_ph()} ORDER BY id ASC LIMIT {_ph()}",
        (user["id"], since, limit),
    )
    return [
        {
            "id": int(r["id"]),
            "kind": r["kind"],
            "message": r["message"],
            "link": r.get("link") or "",
            "created_at": r["created_at"],
        }
        for r in rows
    ]


# -----------------------------
# Catalog
# -----------------------------

_PRODUCT_SELECT = """
    SELECT p.*, c.name AS category_name, f.name AS farmer_name,
           COALESCE(r.avg_rating, 0) AS avg_rating,
           COALESCE(r.rating_count, 0) AS rating_count
    FROM products p
    LEFT JOIN categories c ON c.category_id = p.category_id
    LEFT JOIN profiles f ON f.id = p.farmer_id
    LEFT JOIN (
        SELECT product_id, AVG(rating) AS avg_rating, COUNT(*) AS rating_count
        FROM ratings
        GROUP BY product_id
    ) r ON r.product_id = p.product_id
"""

_SORTS = {
    "newest": "p.created_at DESC, p.product_id DESC",
    "price_asc": "p.price ASC, p.product_id ASC",
    "price_desc": "p.price DESC, p.product_id DESC",
    "rating": "avg_rating DESC, rating_count DESC, p.product_id DESC",
}


def _product_out(row: Optional[dict]) -> Optional[dict]:
    if row is None:
        return None
    p = dict(row)
    p["price"] = to_money(p["price"])
    p["stock"] = int(p["stock"])
    if "avg_rating" in p:
        p["avg_rating"] = round(float(p["avg_rating"] or 0), 2)
        p["rating_count"] = int(p["rating_count"] or 0)
    return p


@_backend_call
def list_categories() -> List[dict]:
    return db_fetchall("SELECT * FROM categories ORDER BY name")


@_backend_call
def list_products(
    user: Optional[dict],
    q: str = "",
    category_id: Any = None,
    status: Optional[str] = None,
    sort: str = "newest",
    limit: Optional[int] = None,
) -> List[dict]:
    """Catalog rows visible to the user.

    Buyers (and anonymous visitors) only ever see Approved products; farmers
    see their own listings; admins see everything.
    """
    sql = _PRODUCT_SELECT + " WHERE 1=1"
    params: list = []

    role = user["role"] if user else None
    if role == FARMER:
        sql += f" AND p.farmer_id = {_ph()}"
        params.append(user["id"])
    elif role != ADMIN:
        sql += f" AND p.status = {_ph()}"
        params.append(APPROVED)

    if status and status in PRODUCT_STATUSES and role in (FARMER, ADMIN):
        sql += f" AND p.status = {_ph()}"
        params.append(status)

    q = (q or "").strip()
    if q:
        sql += f" AND LOWER(p.name) LIKE {_ph()}"
        params.append(f"%{q.lower()}%")

    if category_id not in (None, ""):
        try:
            cid = int(category_id)
        except (TypeError, ValueError):
            raise ValidationError("Invalid category.") from None
        sql += f" AND p.category_id = {_ph()}"
        params.append(cid)

    sql += " ORDER BY " + _SORTS.get(sort, _SORTS["newest"])
    if limit:
        sql += f" LIMIT {_ph()}"
        params.append(int(limit))

    return [_product_out(r) for r in db_fetchall(sql, tuple(params))]


def _load_product(product_id: Any) -> dict:
    try:
        pid = int(product_id)
    except (TypeError, ValueError):
        raise NotFoundError("Product not found.") from None
    row = db_fetchone(_PRODUCT_SELECT + f" WHERE p.product_id = {_ph()}", (pid,))
    if not row:
        raise NotFoundError("Product not found.")
    return _product_out(row)


@_backend_call
def get_product(user: Optional[dict], product_id: Any) -> dict:
    product = _load_product(product_id)
    if not can_view_product(user, product):
        # Hidden products look exactly like missing ones.
        raise NotFoundError("Product not found.")
    return product


def validate_product_form(form: Mapping[str, Any]) -> dict:
    name = str(form.get("name") or "").strip()
    if len(name) < 2:
        raise ValidationError("Product name must be at least 2 characters.")

    try:
        price = Decimal(str(form.get("price") or "").strip())
    except InvalidOperation:
        raise ValidationError("Price must be a number.") from None
    if not price.is_finite() or price <= 0:
        raise ValidationError("Price must be greater than 0.")
    if price != price.quantize(CENTS):
        raise ValidationError("Price can have at most 2 decimal places.")

    try:
        stock = int(str(form.get("stock") if form.get("stock") is not None else "0").strip())
    except ValueError:
        raise ValidationError("Stock must be a whole number.") from None
    if stock < 0:
        raise ValidationError("Stock must be at least 0.")

    try:
        category_id = int(str(form.get("category_id") or "").strip())
    except ValueError:
        raise ValidationError("Please select a category.") from None
    if not db_fetchone(f"SELECT category_id FROM categories WHERE category_id = {_ph()}", (category_id,)):
        raise ValidationError("Please select a category.")

    image_url = str(form.get("image_url") or "").strip() or None
    if image_url and not image_url.startswith(("http://", "https://")):
        raise ValidationError("Please enter a valid image URL.")

    return {
        "name": name,
        "description": str(form.get("description") or "").strip() or None,
        "price": price,
        "stock": stock,
        "category_id": category_id,
        "image_url": image_url,
    }


@_backend_call
def create_product(user: Optional[dict], form: Mapping[str, Any], feed: Optional[ChangeFeed] = None) -> dict:
    user = require_role(user, FARMER)
    data = validate_product_form(form)

    pid = db_insert(
        f"""
        INSERT INTO products(farmer_id, category_id, name, description, image_url, price, stock, status, created_at)
        VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()})
        """,
        (user["id"], data["category_id"], data["name"], data["description"], data["image_url"],
         _money_param(data["price"]), data["stock"], PENDING, now_str()),
        pk="product_id",
    )
    db_commit()

    product = _load_product(pid)
    logger.info("product_created product_id=%s farmer_id=%s", pid, user["id"])
    log_activity(user["id"], "product_created", f"{product['name']} (#{pid})")
    if feed is not None:
        emit_change(feed, "products", "INSERT", new=product)
    return product


@_backend_call
def update_product(user: Optional[dict], product_id: Any, form: Mapping[str, Any], feed: Optional[ChangeFeed] = None) -> dict:
    user = require_user(user)
    old = _load_product(product_id)
    _require_owner(user, old)
    data = validate_product_form(form)

    # status is intentionally absent: farmers cannot move it
    db_execute(
        f"""
        UPDATE products
        SET name={_ph()}, description={_ph()}, image_url={_ph()}, price={_ph()}, stock={_ph()}, category_id={_ph()}
        WHERE product_id={_ph()}
        """,
        (data["name"], data["description"], data["image_url"], _money_param(data["price"]),
         data["stock"], data["category_id"], old["product_id"]),
    )
    db_commit()

    product = _load_product(old["product_id"])
    logger.info("product_updated product_id=%s farmer_id=%s", product["product_id"], user["id"])
    log_activity(user["id"], "product_updated", f"{product['name']} (#{product['product_id']})")
    if feed is not None:
        emit_change(feed, "products", "UPDATE", new=product, old=old)
    return product


@_backend_call
def delete_product(user: Optional[dict], product_id: Any, feed: Optional[ChangeFeed] = None) -> None:
    user = require_user(user)
    product = _load_product(product_id)
    _require_owner(user, product)

    if db_scalar(f"SELECT COUNT(*) AS c FROM order_items WHERE product_id = {_ph()}", (product["product_id"],)):
        raise ValidationError("This product has been ordered and cannot be deleted.")

    db_execute(f"DELETE FROM ratings WHERE product_id = {_ph()}", (product["product_id"],))
    db_execute(f"DELETE FROM reviews WHERE product_id = {_ph()}", (product["product_id"],))
    db_execute(f"DELETE FROM products WHERE product_id = {_ph()}", (product["product_id"],))
    db_commit()

    logger.info("product_deleted product_id=%s farmer_id=%s", product["product_id"], user["id"])
    log_activity(user["id"], "product_deleted", f"{product['name']} (#{product['product_id']})")
    if feed is not None:
        emit_change(feed, "products", "DELETE", old=product)


@_backend_call
def set_product_status(user: Optional[dict], product_id: Any, status: str, feed: Optional[ChangeFeed] = None) -> Tuple[dict, bool]:
    """Admin approval workflow. Returns (product, changed)."""
    user = require_role(user, ADMIN)
    status = (status or "").strip().capitalize()
    if status not in (APPROVED, REJECTED):
        raise InvalidStatusError("Product status must be Approved or Rejected.")

    old = _load_product(product_id)
    if old["status"] == status:
        return old, False
    if status not in PRODUCT_TRANSITIONS.get(old["status"], set()):
        raise InvalidTransitionError(f"Cannot move a {old['status']} product to {status}.")

    db_execute(
        f"UPDATE products SET status={_ph()} WHERE product_id={_ph()} AND status={_ph()}",
        (status, old["product_id"], old["status"]),
    )
    db_commit()

    product = _load_product(old["product_id"])
    logger.info("product_status product_id=%s status=%s admin_id=%s", product["product_id"], status, user["id"])
    log_activity(user["id"], "product_status", f"{product['name']} (#{product['product_id']}) -> {status}")
    notify_user(product["farmer_id"], "PRODUCT_" + status.upper(), f"Your product {product['name']} was {status.lower()}.", link="/products")
    if feed is not None:
        emit_change(feed, "products", "UPDATE", new=product, old=old)
    return product, True


# -----------------------------
# Cart
# -----------------------------

class Cart:
    """Client-side quantity ledger: product_id -> {product snapshot, quantity}.

    Never touches the database; callers pass in fresh product rows and decide
    where the JSON snapshot is stored.
    """

    def __init__(self, lines: Optional[Dict[str, Dict[str, Any]]] = None):
        self._lines: Dict[str, Dict[str, Any]] = {}
        for key, line in (lines or {}).items():
            try:
                qty = int(line["quantity"])
                snap = self.snapshot(line["product"])
            except (KeyError, TypeError, ValueError):
                continue
            if qty > 0:
                self._lines[str(key)] = {"product": snap, "quantity": qty}

    @staticmethod
    def snapshot(product: Mapping[str, Any]) -> dict:
        return {
            "product_id": int(product["product_id"]),
            "name": str(product.get("name") or ""),
            "price": float(to_money(product["price"])),
            "stock": int(product["stock"]),
            "image_url": product.get("image_url"),
            "farmer_id": product.get("farmer_id"),
        }

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, product_id: Any) -> bool:
        return str(product_id) in self._lines

    def quantity(self, product_id: Any) -> int:
        line = self._lines.get(str(product_id))
        return int(line["quantity"]) if line else 0

    def add(self, product: Mapping[str, Any], qty: int = 1) -> int:
        qty = int(qty)
        if qty < 1:
            raise ValidationError("Quantity must be at least 1.")
        snap = self.snapshot(product)
        if snap["stock"] <= 0:
            raise OutOfStockError(f"{snap['name']} is out of stock.")

        key = str(snap["product_id"])
        new_qty = self.quantity(key) + qty
        if new_qty > snap["stock"]:
            raise QuantityExceedsStockError(f"Only {snap['stock']} of {snap['name']} available.")
        self._lines[key] = {"product": snap, "quantity": new_qty}
        return new_qty

    def update_quantity(self, product_id: Any, qty: int, product: Optional[Mapping[str, Any]] = None) -> int:
        key = str(product_id)
        qty = int(qty)
        if qty <= 0:
            self.remove(key)
            return 0

        if product is not None:
            snap = self.snapshot(product)
        elif key in self._lines:
            snap = self._lines[key]["product"]
        else:
            raise NotFoundError("Product is not in your cart.")

        if qty > snap["stock"]:
            raise QuantityExceedsStockError(f"Only {snap['stock']} of {snap['name']} available.")
        self._lines[key] = {"product": snap, "quantity": qty}
        return qty

    def remove(self, product_id: Any) -> None:
        self._lines.pop(str(product_id), None)

    def clear(self) -> None:
        self._lines.clear()

    def refresh(self, products: Iterable[Mapping[str, Any]]) -> None:
        """Replace snapshots with current rows (price, stock, name)."""
        for p in products:
            key = str(p["product_id"])
            if key in self._lines:
                self._lines[key]["product"] = self.snapshot(p)

    def reconcile(self, products: Iterable[Mapping[str, Any]]) -> List[str]:
        """Bring lines in line with current rows; returns a note per trimmed line.

        Lines whose product is gone, not Approved or sold out are dropped;
        quantities above stock are lowered to the stock.
        """
        current = {str(p["product_id"]): p for p in products}
        notes = []
        for key in list(self._lines):
            line = self._lines[key]
            row = current.get(key)
            if row is None or row.get("status", APPROVED) != APPROVED:
                del self._lines[key]
                notes.append(f"{line['product']['name']} is no longer available and was removed from your cart.")
                continue
            snap = self.snapshot(row)
            if snap["stock"] <= 0:
                del self._lines[key]
                notes.append(f"{snap['name']} is out of stock and was removed from your cart.")
            elif line["quantity"] > snap["stock"]:
                self._lines[key] = {"product": snap, "quantity": snap["stock"]}
                notes.append(f"Only {snap['stock']} of {snap['name']} left, so your cart now holds {snap['stock']}.")
            else:
                line["product"] = snap
        return notes

    def lines(self) -> List[dict]:
        out = []
        for key, line in self._lines.items():
            price = to_money(line["product"]["price"])
            out.append({
                "product_id": int(key),
                "product": line["product"],
                "quantity": line["quantity"],
                "line_total": to_money(price * line["quantity"]),
            })
        return out

    def count(self) -> int:
        return sum(line["quantity"] for line in self._lines.values())

    def total(self) -> Decimal:
        return to_money(sum((line["line_total"] for line in self.lines()), Decimal("0")))

    def to_json(self) -> str:
        return json.dumps(self._lines, sort_keys=True)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "Cart":
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cart_snapshot_unreadable")
            return cls()
        if not isinstance(data, dict):
            return cls()
        return cls(data)


def load_cart(store: Mapping[str, Any], user_id: str) -> Cart:
    carts = store.get(CART_SESSION_KEY) or {}
    if not isinstance(carts, dict):
        return Cart()
    return Cart.from_json(carts.get(str(user_id)))


def save_cart(store: MutableMapping[str, Any], user_id: str, cart: Cart) -> None:
    carts = dict(store.get(CART_SESSION_KEY) or {})
    if len(cart):
        carts[str(user_id)] = cart.to_json()
    else:
        carts.pop(str(user_id), None)
    store[CART_SESSION_KEY] = carts


def _current_rows(cart: Cart) -> List[dict]:
    ids = [line["product_id"] for line in cart.lines()]
    if not ids:
        return []
    rows = db_fetchall(
        f"SELECT * FROM products WHERE product_id IN ({_ph_list(len(ids))})",
        tuple(ids),
    )
    return [_product_out(r) for r in rows]


@_backend_call
def sync_cart(cart: Cart) -> List[str]:
    """Reconcile the cart against the catalog as it is now."""
    return cart.reconcile(_current_rows(cart))


def cart_add(user: Optional[dict], cart: Cart, product_id: Any, qty: Any = 1) -> dict:
    """Add to cart against the current catalog row."""
    user = require_role(user, BUYER)
    try:
        qty = int(qty)
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a whole number.") from None
    product = get_product(user, product_id)
    cart.add(product, qty)
    return product


def cart_update(user: Optional[dict], cart: Cart, product_id: Any, qty: Any) -> int:
    user = require_role(user, BUYER)
    try:
        qty = int(qty)
    except (TypeError, ValueError):
        raise ValidationError("Quantity must be a whole number.") from None
    if qty <= 0:
        return cart.update_quantity(product_id, qty)
    try:
        product = get_product(user, product_id)
    except NotFoundError:
        cart.remove(product_id)
        raise
    return cart.update_quantity(product_id, qty, product=product)


# -----------------------------
# Orders
# -----------------------------

def status_name(status_id: Any) -> str:
    try:
        return STATUS_NAMES[int(status_id)]
    except (KeyError, TypeError, ValueError):
        return "Unknown"


def _order_out(row: dict) -> dict:
    o = dict(row)
    o["total_price"] = to_money(o["total_price"])
    o["status_id"] = int(o["status_id"])
    return o


def fetch_order_detail(order_id: Any) -> Optional[dict]:
    """Order joined with buyer, status and line items."""
    row = db_fetchone(
        f"""
        SELECT o.*, b.name AS buyer_name, b.email AS buyer_email, s.name AS status_name
        FROM orders o
        LEFT JOIN profiles b ON b.id = o.buyer_id
        LEFT JOIN order_status s ON s.status_id = o.status_id
        WHERE o.order_id = {_ph()}
        """,
        (order_id,),
    )
    if not row:
        return None

    items = db_fetchall(
        f"""
        SELECT oi.*, p.name AS product_name, p.farmer_id AS farmer_id
        FROM order_items oi
        LEFT JOIN products p ON p.product_id = oi.product_id
        WHERE oi.order_id = {_ph()}
        ORDER BY oi.item_id
        """,
        (order_id,),
    )
    order = _order_out(row)
    order["buyer"] = {"id": row["buyer_id"], "name": row.pop("buyer_name", None), "email": row.pop("buyer_email", None)}
    order["status"] = {"status_id": order["status_id"], "name": row.get("status_name") or status_name(order["status_id"])}
    order["line_items"] = [
        {
            "item_id": it["item_id"],
            "product_id": it["product_id"],
            "product_name": it.get("product_name"),
            "farmer_id": it.get("farmer_id"),
            "quantity": int(it["quantity"]),
            "price_per_unit": to_money(it["price_per_unit"]),
            "line_total": to_money(to_money(it["price_per_unit"]) * int(it["quantity"])),
        }
        for it in items
    ]
    order.pop("buyer_name", None)
    order.pop("buyer_email", None)
    return order


def farmer_manages_order(farmer_id: str, order: Mapping[str, Any]) -> bool:
    """A farmer may move an order only when every line item is theirs."""
    items = order.get("line_items") or []
    return bool(items) and all(it.get("farmer_id") == farmer_id for it in items)


def order_visible_to(user: dict, order: Mapping[str, Any]) -> bool:
    if user["role"] == ADMIN:
        return True
    if user["role"] == BUYER:
        return order.get("buyer_id") == user["id"]
    return any(it.get("farmer_id") == user["id"] for it in order.get("line_items") or [])


@_backend_call
def list_orders(user: Optional[dict], status: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
    user = require_user(user)
    params: list = []
    if user["role"] == BUYER:
        sql = f"SELECT o.order_id FROM orders o WHERE o.buyer_id = {_ph()}"
        params.append(user["id"])
    elif user["role"] == FARMER:
        sql = f"""
            SELECT DISTINCT o.order_id, o.created_at
            FROM orders o
            JOIN order_items oi ON oi.order_id = o.order_id
            JOIN products p ON p.product_id = oi.product_id
            WHERE p.farmer_id = {_ph()}
        """
        params.append(user["id"])
    else:
        sql = "SELECT o.order_id FROM orders o WHERE 1=1"

    if status:
        wanted = [sid for sid, name in STATUS_NAMES.items() if name.lower() == str(status).lower()]
        if wanted:
            sql += f" AND o.status_id = {_ph()}"
            params.append(wanted[0])

    sql += " ORDER BY o.created_at DESC, o.order_id DESC"
    if limit:
        sql += f" LIMIT {_ph()}"
        params.append(int(limit))

    out = []
    for r in db_fetchall(sql, tuple(params)):
        detail = fetch_order_detail(r["order_id"])
        if detail:
            out.append(detail)
    return out


@_backend_call
def get_order(user: Optional[dict], order_id: Any) -> dict:
    user = require_user(user)
    order = fetch_order_detail(order_id)
    if not order or not order_visible_to(user, order):
        raise NotFoundError("Order not found.")
    return order


def checkout(user: Optional[dict], cart: Cart, feed: Optional[ChangeFeed] = None) -> dict:
    """Place an order for every cart line in one transaction.

    Order row, line items and stock decrements commit together or not at all;
    the cart is cleared only after commit.
    """
    user = require_role(user, BUYER)
    if not len(cart):
        raise CheckoutError("Your cart is empty.")

    try:
        by_id = {p["product_id"]: p for p in _current_rows(cart)}

        for line in cart.lines():
            pr = by_id.get(line["product_id"])
            if not pr or pr["status"] != APPROVED:
                raise CheckoutError(f"{line['product']['name']} is no longer available.")
            if line["quantity"] > pr["stock"]:
                raise CheckoutError(f"Only {pr['stock']} of {pr['name']} left in stock.")

        # price_per_unit is the current catalog price, so the total is too
        cart.refresh(by_id.values())
        total = cart.total()

        order_id = db_insert(
            f"INSERT INTO orders(buyer_id, total_price, status_id, created_at) VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()})",
            (user["id"], _money_param(total), STATUS_PENDING, now_str()),
            pk="order_id",
        )
        for line in cart.lines():
            db_execute(
                f"INSERT INTO order_items(order_id, product_id, quantity, price_per_unit) VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()})",
                (order_id, line["product_id"], line["quantity"], _money_param(to_money(line["product"]["price"]))),
            )
            updated = db_execute(
                f"UPDATE products SET stock = stock - {_ph()} WHERE product_id = {_ph()} AND stock >= {_ph()}",
                (line["quantity"], line["product_id"], line["quantity"]),
            )
            if updated != 1:
                raise CheckoutError(f"Not enough stock left for {line['product']['name']}.")
        db_commit()
    except CheckoutError as e:
        db_rollback()
        logger.warning("checkout_refused buyer_id=%s reason=%s", user["id"], e.message)
        try:
            # lower the cart to what can still be bought
            cart.reconcile(_current_rows(cart))
        except DB_ERRORS:
            _quiet_rollback("checkout")
        raise
    except DB_ERRORS as e:
        db_rollback()
        logger.error("checkout_failed buyer_id=%s error=%s", user["id"], e)
        raise CheckoutError(str(e)) from e

    # The order is committed from here on; follow-up failures must not undo that.
    cart.clear()
    logger.info("order_placed order_id=%s buyer_id=%s total=%s", order_id, user["id"], total)
    order = {"order_id": order_id, "buyer_id": user["id"], "total_price": total,
             "status_id": STATUS_PENDING, "line_items": []}
    try:
        order = fetch_order_detail(order_id) or order
        log_activity(user["id"], "order_placed", f"Order #{order_id} ({total})")
        farmer_ids = sorted({pr["farmer_id"] for pr in by_id.values() if pr.get("farmer_id")})
        for fid in farmer_ids:
            notify_user(fid, "NEW_ORDER", f"New order #{order_id} includes your products.")
        if feed is not None:
            emit_change(feed, "orders", "INSERT", new=order)
    except DB_ERRORS as e:
        _quiet_rollback("checkout")
        logger.error("order_followup_failed order_id=%s error=%s", order_id, e)
    return order


@dataclass
class StatusChange:
    order: dict
    changed: bool
    notice: str


@_backend_call
def set_order_status(user: Optional[dict], order_id: Any, new_status_id: Any, feed: Optional[ChangeFeed] = None) -> StatusChange:
    """Move an order through Pending -> Confirmed -> Shipped -> Delivered.

    Cancellation is allowed from any non-terminal status and puts the line
    item quantities back into stock. Delivered and Cancelled are terminal;
    reapplying the current status changes nothing.
    """
    try:
        new_status_id = int(new_status_id)
    except (TypeError, ValueError):
        raise InvalidStatusError("Unknown order status.") from None
    if new_status_id not in STATUS_NAMES:
        raise InvalidStatusError("Unknown order status.")

    user = require_role(user, ADMIN, FARMER)
    old = fetch_order_detail(order_id)
    if not old:
        raise NotFoundError("Order not found.")
    if user["role"] == FARMER and not farmer_manages_order(user["id"], old):
        raise AuthorizationError("This order includes other farmers' products; only an admin can change it.")

    current = old["status_id"]
    if current == new_status_id:
        return StatusChange(old, False, f"Order is already {status_name(current)}.")
    if current in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Order #{old['order_id']} is {status_name(current)} and cannot become {status_name(new_status_id)}."
        )
    if new_status_id != STATUS_CANCELLED and new_status_id < current:
        raise InvalidTransitionError(
            f"Order #{old['order_id']} cannot move back from {status_name(current)} to {status_name(new_status_id)}."
        )

    updated = db_execute(
        f"UPDATE orders SET status_id = {_ph()} WHERE order_id = {_ph()} AND status_id = {_ph()}",
        (new_status_id, old["order_id"], current),
    )
    if updated != 1:
        db_rollback()
        raise InvalidTransitionError("Order status changed in the meantime. Please reload.")

    if new_status_id == STATUS_CANCELLED:
        for it in old["line_items"]:
            db_execute(
                f"UPDATE products SET stock = stock + {_ph()} WHERE product_id = {_ph()}",
                (it["quantity"], it["product_id"]),
            )
    db_commit()

    name = status_name(new_status_id)
    logger.info("order_status order_id=%s from=%s to=%s user_id=%s", old["order_id"], current, new_status_id, user["id"])
    order = dict(old, status_id=new_status_id, status_name=name,
                 status={"status_id": new_status_id, "name": name})
    try:
        order = fetch_order_detail(old["order_id"]) or order
        log_activity(user["id"], "order_status", f"Order #{old['order_id']}: {status_name(current)} -> {name}")
        notify_user(order["buyer_id"], "ORDER_" + name.upper(), f"Order #{order['order_id']} is now {name}.")
        if feed is not None:
            emit_change(feed, "orders", "UPDATE", new=order, old=old)
    except DB_ERRORS as e:
        _quiet_rollback("set_order_status")
        logger.error("order_followup_failed order_id=%s error=%s", old["order_id"], e)
    return StatusChange(order, True, f"Order #{order['order_id']} marked {name}.")


# -----------------------------
# Ratings + reviews
# -----------------------------

@_backend_call
def submit_rating(user: Optional[dict], product_id: Any, rating: Any, comment: str = "") -> dict:
    user = require_role(user, BUYER)
    product = get_product(user, product_id)
    try:
        value = int(rating)
    except (TypeError, ValueError):
        raise ValidationError("Rating must be a whole number from 1 to 5.") from None
    if not 1 <= value <= 5:
        raise ValidationError("Rating must be a whole number from 1 to 5.")

    rating_id = db_insert(
        f"INSERT INTO ratings(buyer_id, product_id, rating, created_at) VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()})",
        (user["id"], product["product_id"], value, now_str()),
        pk="rating_id",
    )
    review_id = None
    comment = (comment or "").strip()
    if comment:
        review_id = db_insert(
            f"INSERT INTO reviews(buyer_id, product_id, comment, created_at) VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()})",
            (user["id"], product["product_id"], comment[:2000], now_str()),
            pk="review_id",
        )
    db_commit()
    logger.info("rating_submitted product_id=%s buyer_id=%s rating=%s", product["product_id"], user["id"], value)
    return {"rating_id": rating_id, "review_id": review_id}


@_backend_call
def rating_summary(product_ids: Optional[Iterable[Any]] = None) -> Dict[int, dict]:
    sql = "SELECT product_id, AVG(rating) AS avg_rating, COUNT(*) AS rating_count FROM ratings"
    params: tuple = ()
    if product_ids is not None:
        ids = [int(x) for x in product_ids]
        if not ids:
            return {}
        sql += f" WHERE product_id IN ({_ph_list(len(ids))})"
        params = tuple(ids)
    sql += " GROUP BY product_id"
    return {
        int(r["product_id"]): {"avg": round(float(r["avg_rating"]), 2), "count": int(r["rating_count"])}
        for r in db_fetchall(sql, params)
    }


@_backend_call
def list_reviews(product_id: Any, limit: int = 50) -> List[dict]:
    return db_fetchall(
        f"""
        SELECT r.*, p.name AS buyer_name
        FROM reviews r
        LEFT JOIN profiles p ON p.id = r.buyer_id
        WHERE r.product_id = {_ph()}
        ORDER BY r.review_id DESC
        LIMIT {_ph()}
        """,
        (int(product_id), limit),
    )


# -----------------------------
# Aggregates + dashboards
# -----------------------------

@_backend_call
def admin_stats() -> dict:
    by_role = {r["role"]: int(r["c"]) for r in db_fetchall("SELECT role, COUNT(*) AS c FROM profiles GROUP BY role")}
    by_status = {r["status"]: int(r["c"]) for r in db_fetchall("SELECT status, COUNT(*) AS c FROM products GROUP BY status")}
    orders_by_status = {
        status_name(r["status_id"]): int(r["c"])
        for r in db_fetchall("SELECT status_id, COUNT(*) AS c FROM orders GROUP BY status_id")
    }
    return {
        "total_users": sum(by_role.values()),
        "users_by_role": by_role,
        "products_by_status": by_status,
        "pending_approvals": by_status.get(PENDING, 0),
        "low_stock_products": int(db_scalar(
            f"SELECT COUNT(*) AS c FROM products WHERE stock < {_ph()}", (LOW_STOCK_THRESHOLD,)
        )),
        "total_sales": to_money(db_scalar(
            f"SELECT SUM(total_price) AS s FROM orders WHERE status_id <> {_ph()}", (STATUS_CANCELLED,)
        )),
        "orders_by_status": orders_by_status,
    }


@_backend_call
def farmer_stats(user: dict) -> dict:
    return {
        "total_products": int(db_scalar(
            f"SELECT COUNT(*) AS c FROM products WHERE farmer_id = {_ph()}", (user["id"],)
        )),
        "pending_products": int(db_scalar(
            f"SELECT COUNT(*) AS c FROM products WHERE farmer_id = {_ph()} AND status = {_ph()}", (user["id"], PENDING)
        )),
        "total_sales": to_money(db_scalar(
            f"""
            SELECT SUM(oi.quantity * oi.price_per_unit) AS s
            FROM order_items oi
            JOIN products p ON p.product_id = oi.product_id
            JOIN orders o ON o.order_id = oi.order_id
            WHERE p.farmer_id = {_ph()} AND o.status_id <> {_ph()}
            """,
            (user["id"], STATUS_CANCELLED),
        )),
    }


def order_board_for(user: dict, status: Optional[str] = None, limit: Optional[int] = None) -> OrderBoard:
    """Order state container for a dashboard, filtered the way the user sees orders."""
    orders = list_orders(user, status=status, limit=limit)
    if user["role"] == FARMER:
        return OrderBoard(fetch_order_detail, include=lambda o: order_visible_to(user, o)).load(orders)
    if user["role"] == BUYER:
        return OrderBoard(fetch_order_detail).load(orders, buyer_id=user["id"])
    return OrderBoard(fetch_order_detail).load(orders)


def build_dashboard(user: Optional[dict], filters: Optional[Mapping[str, Any]] = None) -> Tuple[DashboardView, dict]:
    user = require_user(user)
    view = dashboard_view(user["role"])
    filters = filters or {}
    ctx: Dict[str, Any] = {"view": view}

    if view.kind == "farmer":
        products = list_products(user)
        ctx.update(farmer_stats(user))
        ctx["products"] = products
        ctx["low_stock"] = [p for p in products if p["stock"] < LOW_STOCK_THRESHOLD]
        ctx["orders"] = order_board_for(user).orders
    elif view.kind == "buyer":
        ctx["featured"] = list_products(user, limit=6)
        ctx["orders"] = order_board_for(user, limit=5).orders
    else:
        ctx["stats"] = admin_stats()
        ctx["users"] = list_users(filters.get("user_role") or None)
        ctx["products"] = list_products(user, status=filters.get("product_status") or None)
        ctx["orders"] = order_board_for(user, status=filters.get("order_status") or None).orders
        ctx["activity"] = recent_activity()
    return view, ctx


# -----------------------------
# Change events visible to a user
# -----------------------------

@_backend_call
def changes_for_user(user: dict, since: int, table: Optional[str] = None, limit: int = 50) -> Tuple[List[dict], int]:
    """Change events after `since` the user may see, and the last event id scanned."""
    sql = f"SELECT * FROM change_events WHERE id > {_ph()}"
    params: list = [since]
    if table:
        sql += f" AND table_name = {_ph()}"
        params.append(table)
    if user["role"] == BUYER:
        sql += f" AND table_name = 'orders' AND buyer_id = {_ph()}"
        params.append(user["id"])
    sql += f" ORDER BY id ASC LIMIT {_ph()}"
    params.append(limit)

    out = []
    latest_id = since
    for ev in db_fetchall(sql, tuple(params)):
        latest_id = int(ev["id"])
        item = {
            "id": int(ev["id"]),
            "table": ev["table_name"],
            "event": ev["event"],
            "row_id": ev["row_id"],
            "record": None,
        }
        if ev["table_name"] == "orders":
            detail = fetch_order_detail(ev["row_id"])
            if detail and not order_visible_to(user, detail):
                continue
            item["record"] = jsonable(detail)
        elif ev["table_name"] == "products":
            row = db_fetchone(f"SELECT * FROM products WHERE product_id = {_ph()}", (ev["row_id"],))
            if user["role"] == FARMER and row and row["farmer_id"] != user["id"]:
                continue
            item["record"] = jsonable(_product_out(row))
        out.append(item)
    return out, latest_id


@_backend_call
def poll_cursors(user: dict) -> dict:
    """High-water marks a freshly rendered page starts polling from."""
    return {
        "changes": int(db_scalar("SELECT MAX(id) AS m FROM change_events")),
        "notifications": int(db_scalar(
            f"SELECT MAX(id) AS m FROM notifications WHERE user_id = {_ph()}", (user["id"],)
        )),
    }


def jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return value
