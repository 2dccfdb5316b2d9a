import os
import sqlite3

import pytest
from werkzeug.security import generate_password_hash

from business_app import create_app
from business_app.db import get_db


def seed_vehicle_store(path):
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE gaoff (vin_number TEXT PRIMARY KEY, vc_code TEXT);
        CREATE TABLE gcms_vehicle_code (vehicle_code TEXT PRIMARY KEY, model TEXT, color TEXT);
        CREATE TABLE gcms_category (category_id TEXT, type TEXT, topic TEXT);

        INSERT INTO gaoff VALUES ('MR0TEST1234567890', 'VC01');
        INSERT INTO gcms_vehicle_code VALUES ('VC01', 'M01', 'C01');
        INSERT INTO gcms_category VALUES ('M01', 'vehicle_model', 'Hilux Revo');
        INSERT INTO gcms_category VALUES ('C01', 'vehicle_color', 'White');
        """
    )
    conn.commit()
    conn.close()


@pytest.fixture
def app(tmp_path):
    vehicle_path = tmp_path / "vehicles.sqlite"
    seed_vehicle_store(vehicle_path)

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DATABASE": str(tmp_path / "business.sqlite"),
            "VEHICLE_DATABASE": str(vehicle_path),
            "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        }
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


def login(client, identifier, password):
    return client.post("/login", data={"identifier": identifier, "password": password})


@pytest.fixture
def auth_client(client):
    response = login(client, "admin", "admin123")
    assert response.status_code == 302
    return client


def add_user(app, username, role, password="secret123"):
    with app.app_context():
        db = get_db()
        role_id = db.execute("SELECT id FROM roles WHERE name = ?", (role,)).fetchone()["id"]
        db.execute(
            "INSERT INTO users (username, email, full_name, password_hash, role_id) VALUES (?, ?, ?, ?, ?)",
            (username, f"{username}@example.com", username.title(), generate_password_hash(password), role_id),
        )
        db.commit()


@pytest.fixture
def staff_client(app):
    add_user(app, "staff1", "staff")
    client = app.test_client()
    assert login(client, "staff1", "secret123").status_code == 302
    return client


@pytest.fixture
def viewer_client(app):
    add_user(app, "viewer1", "viewer")
    client = app.test_client()
    assert login(client, "viewer1", "secret123").status_code == 302
    return client


@pytest.fixture
def customer_id(app):
    with app.app_context():
        db = get_db()
        row_id = db.execute(
            "INSERT INTO customers (name, company_name, tax_id) VALUES (?, ?, ?)",
            ("Somchai Logistics", "Somchai Logistics Co., Ltd.", "0105555000001"),
        ).lastrowid
        db.commit()
    return row_id


@pytest.fixture
def vendor_id(app):
    with app.app_context():
        db = get_db()
        row_id = db.execute(
            "INSERT INTO vendors (name, company_name) VALUES (?, ?)",
            ("Siam Parts", "Siam Parts Supply"),
        ).lastrowid
        db.commit()
    return row_id


@pytest.fixture
def product_id(app):
    with app.app_context():
        db = get_db()
        row_id = db.execute(
            "INSERT INTO products (sku, name, unit, selling_price, purchase_cost) VALUES (?, ?, ?, ?, ?)",
            ("OIL-5W30", "Engine oil 5W-30", "L", 150, 110),
        ).lastrowid
        db.commit()
    return row_id


def line_items(*rows):
    """Build the parallel form lists for ``(description, quantity, unit_price[, product_id])`` rows."""
    data = {
        "product_id[]": [],
        "description[]": [],
        "quantity[]": [],
        "unit[]": [],
        "unit_price[]": [],
    }
    for row in rows:
        description, quantity, unit_price = row[:3]
        product = row[3] if len(row) > 3 else ""
        data["product_id[]"].append(str(product))
        data["description[]"].append(description)
        data["quantity[]"].append(str(quantity))
        data["unit[]"].append("pcs")
        data["unit_price[]"].append(str(unit_price))
    return data


def query(app, sql, params=()):
    with app.app_context():
        return [dict(row) for row in get_db().execute(sql, params).fetchall()]


def reject_writes(app, table, event="INSERT", message="writes are disabled"):
    """Make every ``event`` on ``table`` fail inside SQLite."""
    with app.app_context():
        get_db().executescript(
            f"""
            CREATE TRIGGER reject_{event.lower()}_{table} BEFORE {event} ON {table}
            BEGIN
                SELECT RAISE(ABORT, '{message}');
            END;
            """
        )


def stored_files(app, area):
    directory = os.path.join(app.config["UPLOAD_FOLDER"], area)
    if not os.path.isdir(directory):
        return []
    return sorted(os.listdir(directory))
