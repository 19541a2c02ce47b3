from __future__ import annotations

import os
import logging
from functools import wraps
from typing import Any

from flask import Flask, g, redirect, render_template, request, session, url_for, flash, jsonify

import db
from db import close_db, ensure_schema, table_counts
from market import (
    ADMIN,
    BUYER,
    FARMER,
    PRODUCT_STATUSES,
    ROLES,
    STATUS_NAMES,
    BackendError,
    MarketError,
    allowed_product_actions,
    build_dashboard,
    cart_add,
    cart_update,
    changes_for_user,
    checkout,
    create_product,
    dashboard_view,
    delete_product,
    get_order,
    get_product,
    get_profile,
    list_categories,
    list_orders,
    list_products,
    list_reviews,
    load_cart,
    notifications_since,
    poll_cursors,
    save_cart,
    set_order_status,
    set_product_status,
    sign_in,
    sign_up,
    status_name,
    submit_rating,
    sync_cart,
    update_product,
    update_profile_name,
    jsonable,
)
from realtime import ChangeFeed

APP_TITLE = "FarmMarket"

app = Flask(__name__)

# Basic structured logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger("farmmarket")
# IMPORTANT: set a stable SECRET_KEY env var in production (sessions hold the carts)
app.secret_key = os.environ.get("SECRET_KEY") or "dev-CHANGE-ME"

# Shared by every view that patches state from row changes
feed = ChangeFeed()

app.teardown_appcontext(close_db)

ensure_schema()


# -----------------------------
# Auth helpers
# -----------------------------

def current_user():
    uid = session.get("uid")
    if not uid:
        return None
    if "user" not in g:
        g.user = get_profile(uid)
    return g.user


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not current_user():
            flash("Please log in first.", "error")
            return redirect(url_for("login"))
        return fn(*args, **kwargs)
    return wrapper


def role_required(*roles):
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            u = current_user()
            if not u:
                return redirect(url_for("login"))
            if u["role"] not in roles:
                flash("Access denied for your role.", "error")
                return redirect(url_for("dashboard"))
            return fn(*args, **kwargs)
        return wrapper
    return deco


def report(e: MarketError, event: str) -> None:
    """Surface a failed action to the user and the log; never re-raise."""
    if isinstance(e, BackendError):
        logger.exception("%s backend_error=%s", event, e.message)
    else:
        logger.warning("%s error=%s", event, e.message)
    flash(e.message, "error")


def back(default: str):
    target = request.form.get("next") or ""
    # only same-site relative paths
    if target.startswith("/") and not target.startswith("//"):
        return redirect(target)
    return redirect(default)


# -----------------------------
# UI helpers
# -----------------------------

def money(n: Any) -> str:
    try:
        n = float(n)
    except (TypeError, ValueError):
        return "$0.00"
    return "${:,.2f}".format(n)


app.jinja_env.globals["money"] = money
app.jinja_env.globals["status_name"] = status_name


@app.context_processor
def inject_nav():
    u = current_user()
    nav = dashboard_view(u["role"]).nav if u and u["role"] in ROLES else ()
    # pages poll /api/changes and /api/notifications from here on
    poll = None
    if u:
        try:
            poll = poll_cursors(u)
        except MarketError as e:
            logger.warning("poll_cursors_failed user_id=%s error=%s", u["id"], e.message)
    return {"app_title": APP_TITLE, "nav": nav, "user": u, "poll": poll}


# -----------------------------
# Routes: public + auth
# -----------------------------

@app.get("/")
def index():
    if current_user():
        return redirect(url_for("dashboard"))
    try:
        featured = list_products(None, limit=6)
    except MarketError as e:
        report(e, "landing_failed")
        featured = []
    return render_template("index.html", featured=featured)


@app.get("/login")
def login():
    return render_template("login.html")


@app.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip()
    password = request.form.get("password") or ""
    try:
        u = sign_in(email, password)
    except MarketError as e:
        report(e, "login_failed")
        return render_template("login.html", email=email), 401

    session.pop("uid", None)
    session["uid"] = u["id"]
    session.permanent = True
    logger.info("login user_id=%s role=%s", u["id"], u["role"])
    return redirect(url_for("dashboard"))


@app.get("/register")
def register():
    return render_template("register.html")


@app.post("/register")
def register_post():
    form = request.form
    if not form.get("accept_terms"):
        flash("Please accept the terms of service.", "error")
        return render_template("register.html", form=form), 400
    try:
        sign_up(form.get("email"), form.get("password"), form.get("name"), form.get("role"))
    except MarketError as e:
        report(e, "register_failed")
        return render_template("register.html", form=form), 400

    flash("Account created. Please log in.", "ok")
    return redirect(url_for("login"))


@app.get("/logout")
def logout():
    # carts stay in the session, keyed per user
    session.pop("uid", None)
    g.pop("user", None)
    return redirect(url_for("login"))


@app.get("/healthz")
def healthz():
    """Database reachability and row counts for uptime checks; no secrets."""
    backend = "postgres" if db.USE_POSTGRES else "sqlite"
    try:
        counts = table_counts("profiles", "products", "orders", "change_events")
    except db.DB_ERRORS as e:
        logger.error("healthz_failed db=%s error=%s", backend, e)
        return jsonify({"ok": False, "db": backend, "error": str(e)}), 500
    return jsonify({"ok": True, "db": backend, "counts": counts})


# -----------------------------
# Routes: dashboard + profile
# -----------------------------

@app.get("/dashboard")
@login_required
def dashboard():
    u = current_user()
    filters = {
        "user_role": request.args.get("user_role") or "",
        "product_status": request.args.get("product_status") or "",
        "order_status": request.args.get("order_status") or "",
    }
    try:
        view, ctx = build_dashboard(u, filters)
    except MarketError as e:
        report(e, "dashboard_failed")
        return redirect(url_for("profile"))

    if view.kind == "buyer":
        ctx["cart_count"] = load_cart(session, u["id"]).count()
    return render_template(
        view.template,
        filters=filters,
        roles=ROLES,
        product_statuses=PRODUCT_STATUSES,
        order_statuses=STATUS_NAMES,
        **ctx,
    )


@app.get("/profile")
@login_required
def profile():
    return render_template("profile.html")


@app.post("/profile")
@login_required
def profile_post():
    try:
        update_profile_name(current_user(), request.form.get("name"))
    except MarketError as e:
        report(e, "profile_update_failed")
        return redirect(url_for("profile"))
    g.pop("user", None)
    flash("Profile updated.", "ok")
    return redirect(url_for("profile"))


# -----------------------------
# Routes: catalog
# -----------------------------

@app.get("/products")
@login_required
def products():
    u = current_user()
    q = (request.args.get("q") or "").strip()
    category_id = request.args.get("category_id") or ""
    status = request.args.get("status") or ""
    sort = (request.args.get("sort") or "newest").strip().lower()
    try:
        rows = list_products(u, q=q, category_id=category_id, status=status, sort=sort)
        categories = list_categories()
    except MarketError as e:
        report(e, "products_failed")
        rows, categories = [], []

    return render_template(
        "products.html",
        products=rows,
        categories=categories,
        q=q,
        category_id=category_id,
        status=status,
        sort=sort,
        product_statuses=PRODUCT_STATUSES,
        actions={p["product_id"]: allowed_product_actions(u, p) for p in rows},
    )


@app.get("/products/new")
@role_required(FARMER)
def product_new():
    return render_template("product_form.html", product=None, categories=list_categories())


@app.post("/products/new")
@role_required(FARMER)
def product_create():
    try:
        p = create_product(current_user(), request.form, feed=feed)
    except MarketError as e:
        report(e, "product_create_failed")
        return render_template("product_form.html", product=None, form=request.form, categories=list_categories()), 400
    flash(f"{p['name']} has been created and is awaiting approval.", "ok")
    return redirect(url_for("products"))


@app.get("/products/<int:product_id>")
@login_required
def product_detail(product_id: int):
    u = current_user()
    try:
        p = get_product(u, product_id)
        reviews = list_reviews(product_id)
    except MarketError as e:
        report(e, "product_detail_failed")
        return redirect(url_for("products"))

    actions = allowed_product_actions(u, p)
    if "edit" in actions:
        return render_template("product_form.html", product=p, categories=list_categories())
    return render_template("product_detail.html", product=p, reviews=reviews, actions=actions)


@app.post("/products/<int:product_id>")
@login_required
def product_update(product_id: int):
    try:
        p = update_product(current_user(), product_id, request.form, feed=feed)
    except MarketError as e:
        report(e, "product_update_failed")
        return redirect(url_for("product_detail", product_id=product_id))
    flash(f"{p['name']} has been updated.", "ok")
    return redirect(url_for("products"))


@app.post("/products/<int:product_id>/delete")
@login_required
def product_delete(product_id: int):
    try:
        delete_product(current_user(), product_id, feed=feed)
    except MarketError as e:
        report(e, "product_delete_failed")
        return redirect(url_for("products"))
    flash("The product has been removed.", "ok")
    return redirect(url_for("products"))


@app.post("/products/<int:product_id>/status")
@role_required(ADMIN)
def product_status(product_id: int):
    try:
        p, changed = set_product_status(current_user(), product_id, request.form.get("status"), feed=feed)
    except MarketError as e:
        report(e, "product_status_failed")
        return back(url_for("products"))
    if changed:
        flash(f"Product status has been updated to {p['status']}.", "ok")
    else:
        flash(f"Product is already {p['status']}.", "warn")
    return back(url_for("products"))


@app.post("/products/<int:product_id>/rate")
@role_required(BUYER)
def product_rate(product_id: int):
    try:
        submit_rating(current_user(), product_id, request.form.get("rating"), request.form.get("comment") or "")
    except MarketError as e:
        report(e, "rating_failed")
        return redirect(url_for("product_detail", product_id=product_id))
    flash("Thanks for your rating.", "ok")
    return redirect(url_for("product_detail", product_id=product_id))


# -----------------------------
# Routes: cart + checkout
# -----------------------------

@app.get("/cart")
@role_required(BUYER)
def cart_view():
    u = current_user()
    cart = load_cart(session, u["id"])
    try:
        notes = sync_cart(cart)
    except MarketError as e:
        report(e, "cart_sync_failed")
        notes = []
    if notes:
        save_cart(session, u["id"], cart)
        for note in notes:
            flash(note, "warn")
    return render_template("cart.html", lines=cart.lines(), total=cart.total(), count=cart.count())


@app.post("/cart/add")
@role_required(BUYER)
def cart_add_post():
    u = current_user()
    cart = load_cart(session, u["id"])
    try:
        p = cart_add(u, cart, request.form.get("product_id"), request.form.get("qty") or 1)
    except MarketError as e:
        report(e, "cart_add_failed")
        return back(url_for("products"))
    save_cart(session, u["id"], cart)
    flash(f"{p['name']} added to cart.", "ok")
    return back(url_for("products"))


@app.post("/cart/update")
@role_required(BUYER)
def cart_update_post():
    u = current_user()
    cart = load_cart(session, u["id"])
    try:
        cart_update(u, cart, request.form.get("product_id"), request.form.get("qty"))
    except MarketError as e:
        report(e, "cart_update_failed")
        save_cart(session, u["id"], cart)
        return redirect(url_for("cart_view"))
    save_cart(session, u["id"], cart)
    flash("Cart updated.", "ok")
    return redirect(url_for("cart_view"))


@app.post("/cart/remove")
@role_required(BUYER)
def cart_remove_post():
    u = current_user()
    cart = load_cart(session, u["id"])
    cart.remove(request.form.get("product_id") or "")
    save_cart(session, u["id"], cart)
    flash("Removed.", "ok")
    return redirect(url_for("cart_view"))


@app.post("/checkout")
@role_required(BUYER)
def checkout_post():
    u = current_user()
    cart = load_cart(session, u["id"])
    try:
        order = checkout(u, cart, feed=feed)
    except MarketError as e:
        report(e, "checkout_failed")
        # checkout trims lines that can no longer be bought
        save_cart(session, u["id"], cart)
        return redirect(url_for("cart_view"))

    save_cart(session, u["id"], cart)
    flash(f"Order #{order['order_id']} placed.", "ok")
    return redirect(url_for("orders"))


# -----------------------------
# Routes: orders
# -----------------------------

@app.get("/orders")
@login_required
def orders():
    u = current_user()
    status = request.args.get("status") or ""
    try:
        rows = list_orders(u, status=status or None)
    except MarketError as e:
        report(e, "orders_failed")
        rows = []
    return render_template("orders.html", orders=rows, status=status, order_statuses=STATUS_NAMES)


@app.post("/orders/<int:order_id>/status")
@role_required(ADMIN, FARMER)
def order_status(order_id: int):
    try:
        result = set_order_status(current_user(), order_id, request.form.get("status_id"), feed=feed)
    except MarketError as e:
        report(e, "order_status_failed")
        return back(url_for("orders"))
    flash(result.notice, "ok" if result.changed else "warn")
    return back(url_for("orders"))


@app.get("/api/orders/<int:order_id>")
def api_order(order_id: int):
    u = current_user()
    if not u:
        return jsonify({"ok": False, "error": "not_logged_in"}), 401
    try:
        order = get_order(u, order_id)
    except MarketError as e:
        return jsonify({"ok": False, "error": e.message}), 404
    return jsonify({"ok": True, "order": jsonable(order)})


# -----------------------------
# Polling endpoints
# -----------------------------

@app.get("/api/notifications")
def api_notifications():
    """Return new notifications for the logged-in user.

    The client passes `since=<last_seen_id>`; we respond with notifications where id > since.
    """
    u = current_user()
    if not u:
        return jsonify({"ok": False, "error": "not_logged_in"}), 401
    try:
        since = int(request.args.get("since", "0"))
    except ValueError:
        since = 0

    try:
        items = notifications_since(u, since)
    except MarketError as e:
        logger.exception("notifications_failed user_id=%s", u["id"])
        return jsonify({"ok": False, "error": e.message}), 500
    latest_id = items[-1]["id"] if items else since
    return jsonify({"ok": True, "latest_id": latest_id, "items": items})


@app.get("/api/changes")
def api_changes():
    """Row changes since `since`, with the re-fetched joined record for each."""
    u = current_user()
    if not u:
        return jsonify({"ok": False, "error": "not_logged_in"}), 401
    try:
        since = int(request.args.get("since", "0"))
    except ValueError:
        return jsonify({"ok": False, "error": "bad_since"}), 400
    table = (request.args.get("table") or "").strip() or None
    if table not in (None, "orders", "products"):
        return jsonify({"ok": False, "error": "bad_table"}), 400

    try:
        items, latest_id = changes_for_user(u, since, table=table)
    except MarketError as e:
        logger.exception("changes_failed user_id=%s", u["id"])
        return jsonify({"ok": False, "error": e.message}), 500
    return jsonify({"ok": True, "latest_id": latest_id, "items": items})


@app.errorhandler(404)
def not_found(e):
    return render_template("not_found.html"), 404


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5000"))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
