import logging
import os
import sqlite3
from pathlib import Path

import click
from flask import current_app, g
from werkzeug.security import generate_password_hash

logger = logging.getLogger(__name__)

PERMISSIONS = (
    "manage users",
    "manage master data",
    "manage sales documents",
    "manage purchasing",
    "manage payments",
    "manage repairs",
    "manage assets",
    "manage job orders",
)

DEFAULT_ROLES = {
    "admin": PERMISSIONS,
    "staff": tuple(name for name in PERMISSIONS if name != "manage users"),
    "viewer": (),
}


def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(current_app.config["DATABASE"])
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


def get_vehicle_db():
    """Open the secondary vehicle store read-only for this request."""
    if "vehicle_db" not in g:
        database_path = current_app.config.get("VEHICLE_DATABASE")
        if not database_path:
            raise RuntimeError("Vehicle database is not configured")
        if not os.path.exists(database_path):
            raise RuntimeError(f"Vehicle database not found at {database_path}")
        uri = Path(database_path).resolve().as_uri() + "?mode=ro"
        g.vehicle_db = sqlite3.connect(uri, uri=True)
        g.vehicle_db.row_factory = sqlite3.Row
    return g.vehicle_db


def close_db(e=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()

    vehicle_db = g.pop("vehicle_db", None)
    if vehicle_db is not None:
        vehicle_db.close()


def ensure_security_tables():
    db = get_db()
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS roles (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL UNIQUE
        )
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS permissions (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL UNIQUE
        )
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS role_has_permissions (
          role_id INTEGER NOT NULL,
          permission_id INTEGER NOT NULL,
          PRIMARY KEY (role_id, permission_id),
          FOREIGN KEY (role_id) REFERENCES roles(id) ON DELETE CASCADE,
          FOREIGN KEY (permission_id) REFERENCES permissions(id) ON DELETE CASCADE
        )
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          username TEXT NOT NULL UNIQUE,
          email TEXT UNIQUE,
          full_name TEXT,
          password_hash TEXT NOT NULL,
          role_id INTEGER REFERENCES roles(id) ON DELETE SET NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    for name in PERMISSIONS:
        db.execute("INSERT OR IGNORE INTO permissions (name) VALUES (?)", (name,))

    for role_name, granted in DEFAULT_ROLES.items():
        existing = db.execute("SELECT id FROM roles WHERE name = ?", (role_name,)).fetchone()
        if existing is not None:
            continue
        role_id = db.execute("INSERT INTO roles (name) VALUES (?)", (role_name,)).lastrowid
        for permission_name in granted:
            db.execute(
                """
                INSERT INTO role_has_permissions (role_id, permission_id)
                SELECT ?, id FROM permissions WHERE name = ?
                """,
                (role_id, permission_name),
            )
    db.commit()


def ensure_default_admin():
    db = get_db()
    existing = db.execute("SELECT id FROM users LIMIT 1").fetchone()
    if existing is not None:
        return

    role = db.execute("SELECT id FROM roles WHERE name = 'admin'").fetchone()
    db.execute(
        """
        INSERT INTO users (username, email, full_name, password_hash, role_id, is_active)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            "admin",
            "admin@example.com",
            "Administrator",
            generate_password_hash("admin123"),
            role["id"] if role is not None else None,
            1,
        ),
    )
    db.commit()
    logger.info("Created default admin user")


def ensure_master_data_tables():
    db = get_db()
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS customers (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          company_name TEXT,
          tax_id TEXT,
          address TEXT,
          phone TEXT,
          email TEXT,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS vendors (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          company_name TEXT,
          tax_id TEXT,
          address TEXT,
          phone TEXT,
          email TEXT,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS products (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          sku TEXT NOT NULL UNIQUE,
          name TEXT NOT NULL,
          unit TEXT,
          selling_price REAL NOT NULL DEFAULT 0,
          purchase_cost REAL NOT NULL DEFAULT 0,
          is_active INTEGER NOT NULL DEFAULT 1,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.commit()


def _create_line_items_table(db, table, parent_column, parent_table):
    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          {parent_column} INTEGER NOT NULL,
          product_id INTEGER,
          description TEXT NOT NULL,
          quantity REAL NOT NULL DEFAULT 1,
          unit TEXT,
          unit_price REAL NOT NULL DEFAULT 0,
          line_total REAL NOT NULL DEFAULT 0,
          item_order INTEGER NOT NULL DEFAULT 0,
          FOREIGN KEY ({parent_column}) REFERENCES {parent_table}(id) ON DELETE CASCADE,
          FOREIGN KEY (product_id) REFERENCES products(id)
        )
        """
    )


def ensure_sales_tables():
    db = get_db()
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS billing_notes (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          billing_note_number TEXT NOT NULL,
          billing_date TEXT NOT NULL,
          due_date TEXT,
          customer_id INTEGER REFERENCES customers(id),
          notes TEXT,
          total_amount REAL NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'Draft',
          created_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    _create_line_items_table(db, "billing_note_items", "billing_note_id", "billing_notes")

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS invoices (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          invoice_number TEXT NOT NULL,
          invoice_date TEXT NOT NULL,
          due_date TEXT,
          customer_id INTEGER REFERENCES customers(id),
          reference_doc TEXT,
          notes TEXT,
          total_amount REAL NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'Draft',
          created_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    _create_line_items_table(db, "invoice_items", "invoice_id", "invoices")
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS invoice_attachments (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          invoice_id INTEGER NOT NULL,
          file_original_name TEXT NOT NULL,
          file_path TEXT NOT NULL,
          file_mime_type TEXT,
          file_size_bytes INTEGER,
          uploaded_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP,
          FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE CASCADE
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS receipts (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          receipt_number TEXT NOT NULL,
          receipt_date TEXT NOT NULL,
          customer_id INTEGER REFERENCES customers(id),
          invoice_id INTEGER REFERENCES invoices(id) ON DELETE SET NULL,
          reference_doc TEXT,
          notes TEXT,
          total_amount REAL NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'Issued',
          created_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    _create_line_items_table(db, "receipt_items", "receipt_id", "receipts")
    db.commit()


def ensure_purchasing_tables():
    db = get_db()
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS purchase_requests (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          pr_number TEXT NOT NULL,
          request_date TEXT NOT NULL,
          requester_id INTEGER,
          department TEXT,
          description TEXT,
          total_amount REAL NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'PENDING',
          created_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    _create_line_items_table(db, "purchase_request_items", "purchase_request_id", "purchase_requests")

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS purchase_orders (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          po_number TEXT NOT NULL,
          po_date TEXT NOT NULL,
          vendor_id INTEGER REFERENCES vendors(id),
          purchase_request_id INTEGER REFERENCES purchase_requests(id) ON DELETE SET NULL,
          contact_person TEXT,
          delivery_date TEXT,
          payment_term TEXT,
          notes TEXT,
          total_amount REAL NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'DRAFT',
          created_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    _create_line_items_table(db, "purchase_order_items", "purchase_order_id", "purchase_orders")
    db.commit()


def ensure_voucher_table():
    db = get_db()
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS general_vouchers (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          voucher_type TEXT NOT NULL,
          voucher_number TEXT NOT NULL,
          voucher_date TEXT NOT NULL,
          contact_name TEXT,
          description TEXT,
          subtotal REAL NOT NULL DEFAULT 0,
          vat_rate REAL NOT NULL DEFAULT 0,
          vat_amount REAL NOT NULL DEFAULT 0,
          wht_rate REAL NOT NULL DEFAULT 0,
          wht_amount REAL NOT NULL DEFAULT 0,
          total_amount REAL NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'Completed',
          created_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.commit()


def ensure_bill_payment_tables():
    db = get_db()
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS bill_payments (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          payment_number TEXT NOT NULL,
          payment_date TEXT NOT NULL,
          vendor_id INTEGER NOT NULL REFERENCES vendors(id),
          payment_reference TEXT,
          notes TEXT,
          subtotal REAL NOT NULL DEFAULT 0,
          discount_amount REAL NOT NULL DEFAULT 0,
          total_after_discount REAL NOT NULL DEFAULT 0,
          withholding_tax_rate REAL NOT NULL DEFAULT 0,
          withholding_tax_amount REAL NOT NULL DEFAULT 0,
          total_amount REAL NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'Draft',
          created_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    _create_line_items_table(db, "bill_payment_items", "bill_payment_id", "bill_payments")
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS bill_payment_attachments (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          bill_payment_id INTEGER NOT NULL,
          file_original_name TEXT NOT NULL,
          file_path TEXT NOT NULL,
          file_mime_type TEXT,
          file_size_bytes INTEGER,
          uploaded_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP,
          FOREIGN KEY (bill_payment_id) REFERENCES bill_payments(id) ON DELETE CASCADE
        )
        """
    )
    db.commit()


def ensure_freight_tables():
    db = get_db()
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS job_orders (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          job_number TEXT NOT NULL,
          job_date TEXT NOT NULL,
          customer_id INTEGER NOT NULL REFERENCES customers(id),
          contract_reference TEXT,
          job_type TEXT NOT NULL,
          service_type TEXT,
          location TEXT,
          bl_number TEXT,
          liner_name TEXT,
          invoice_no TEXT,
          expire_date TEXT,
          total_amount REAL NOT NULL DEFAULT 0,
          currency TEXT NOT NULL DEFAULT 'THB',
          remarks TEXT,
          status TEXT NOT NULL DEFAULT 'Pending',
          created_by_user_id INTEGER,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.commit()


def ensure_operations_tables():
    db = get_db()
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS asset_repairs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ticket_code TEXT NOT NULL,
          asset_name TEXT NOT NULL,
          vin TEXT,
          location_name TEXT,
          reporter_name TEXT NOT NULL,
          contact_info TEXT,
          issue_description TEXT NOT NULL,
          image_path TEXT,
          completion_image_path TEXT,
          admin_notes TEXT,
          status TEXT NOT NULL DEFAULT 'Pending',
          created_at TEXT DEFAULT CURRENT_TIMESTAMP,
          updated_at TEXT
        )
        """
    )
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS assets (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          asset_tag TEXT NOT NULL,
          name TEXT NOT NULL,
          category TEXT,
          location TEXT,
          status TEXT NOT NULL DEFAULT 'In Storage',
          purchase_date TEXT,
          purchase_cost REAL,
          notes TEXT,
          image_path TEXT,
          created_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    db.commit()


def ensure_schema():
    ensure_security_tables()
    ensure_default_admin()
    ensure_master_data_tables()
    ensure_sales_tables()
    ensure_purchasing_tables()
    ensure_voucher_table()
    ensure_bill_payment_tables()
    ensure_freight_tables()
    ensure_operations_tables()


@click.command("init-db")
def init_db_command():
    ensure_schema()
    click.echo("Initialized the database.")


def init_app(app):
    app.teardown_appcontext(close_db)
    app.cli.add_command(init_db_command)
