import logging
import math
import os
import sqlite3
from datetime import date, datetime, timedelta

from flask import (
    Flask,
    abort,
    current_app,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    session,
    url_for,
)
from flask_login import (
    LoginManager,
    current_user,
    login_required,
    login_user,
    logout_user,
)
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from .auth import AppUser, load_app_user, permission_required
from .db import PERMISSIONS, ensure_schema, get_db, get_vehicle_db
from .db import init_app as init_db_app
from .documents import (
    BILL_PAYMENT,
    BILLING_NOTE,
    CENT,
    DOCUMENT_TYPES,
    INVOICE,
    JOB_ORDER,
    PURCHASE_ORDER,
    PURCHASE_REQUEST,
    RECEIPT,
    VOUCHER,
    VOUCHER_TYPES,
    DocumentWriteError,
    apply_bill_payment_totals,
    count_by_status,
    create_document,
    delete_document,
    generate_document_number,
    get_document,
    get_document_items,
    like_pattern,
    list_documents,
    parse_line_items,
    parse_reference_date,
    preview_document_number,
    replace_document_items,
    to_decimal,
    update_document_status,
)
from .uploads import delete_upload, describe_upload, save_upload, upload_root

logger = logging.getLogger(__name__)

REPAIR_STATUSES = ("Pending", "In Progress", "Completed", "Cancelled")
ASSET_STATUSES = ("In Use", "In Storage", "Under Maintenance", "Disposed")

ITEMS_REQUIRED = {PURCHASE_REQUEST.key, PURCHASE_ORDER.key, BILL_PAYMENT.key}

DOCUMENT_PERMISSIONS = {
    BILLING_NOTE.key: "manage sales documents",
    INVOICE.key: "manage sales documents",
    RECEIPT.key: "manage sales documents",
    PURCHASE_REQUEST.key: "manage purchasing",
    PURCHASE_ORDER.key: "manage purchasing",
    VOUCHER.key: "manage payments",
    BILL_PAYMENT.key: "manage payments",
    JOB_ORDER.key: "manage job orders",
}

REFERENCE_TABLES = {
    "customer": "customers",
    "vendor": "vendors",
    "invoice": "invoices",
    "purchase_request": "purchase_requests",
}


def _parse_int(value):
    raw_value = (value or "").strip()
    if not raw_value:
        return None
    try:
        return int(raw_value)
    except ValueError:
        return None


def _row_exists(db, table, row_id):
    row = db.execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (row_id,)).fetchone()
    return row is not None


def _current_user_id():
    if not current_user.is_authenticated:
        return None
    return int(current_user.get_id())


def _read_document_header(db, doc_type, form):
    header = {}
    for column, _label, kind in doc_type.fields:
        raw_value = form.get(column, "").strip()
        if kind in REFERENCE_TABLES:
            header[column] = _parse_int(raw_value)
        elif kind == "number":
            header[column] = to_decimal(raw_value, "0")
        elif kind == "choice":
            header[column] = raw_value.upper() or None
        else:
            header[column] = raw_value or None

    date_column = doc_type.date_column
    if header.get(date_column) is None and date_column not in doc_type.required:
        header[date_column] = date.today().isoformat()

    missing = [
        label
        for column, label, _kind in doc_type.fields
        if column in doc_type.required and header.get(column) is None
    ]
    if missing:
        return header, f"Please fill in the required fields: {', '.join(missing)}."

    for column, _label, kind in doc_type.fields:
        if kind != "date" or header.get(column) is None:
            continue
        try:
            header[column] = parse_reference_date(header[column]).isoformat()
        except ValueError as exc:
            return header, str(exc)

    for column, label, kind in doc_type.fields:
        table = REFERENCE_TABLES.get(kind)
        if table and header.get(column) is not None and not _row_exists(db, table, header[column]):
            return header, f"{label} not found."

    return header, None


def _document_form_options(db, doc_type, values):
    options = {"customers": [], "vendors": [], "invoices": [], "products": []}
    if doc_type.counterparty_table == "customers":
        options["customers"] = db.execute(
            "SELECT id, name FROM customers ORDER BY name ASC"
        ).fetchall()
    if doc_type.counterparty_table == "vendors":
        options["vendors"] = db.execute(
            "SELECT id, name, company_name FROM vendors ORDER BY name ASC"
        ).fetchall()
    if doc_type is RECEIPT:
        options["invoices"] = db.execute(
            """
            SELECT id, invoice_number, customer_id, total_amount
            FROM invoices
            WHERE status NOT IN ('Paid', 'Void') OR id = ?
            ORDER BY invoice_date DESC, id DESC
            """,
            (_parse_int(str(values.get("invoice_id") or "")),),
        ).fetchall()
    if doc_type.item_table is not None:
        options["products"] = db.execute(
            """
            SELECT id, sku, name, unit, selling_price, purchase_cost
            FROM products
            WHERE is_active = 1
            ORDER BY name ASC
            """
        ).fetchall()
    return options


def _render_document_form(
    doc_type,
    values,
    items,
    form_action,
    document_number,
    error_message="",
    status_code=200,
):
    db = get_db()
    return (
        render_template(
            "document_form.html",
            page_title=f"{'Edit' if values.get('id') else 'New'} {doc_type.label}",
            active_menu=doc_type.endpoint,
            doc_type=doc_type,
            values=values,
            items=items,
            form_action=form_action,
            document_number=document_number,
            error_message=error_message,
            **_document_form_options(db, doc_type, values),
        ),
        status_code,
    )


def _list_documents_response(doc_type, filters=None, template="document_list.html", **extra):
    db = get_db()
    search_query = request.args.get("q", "").strip()
    status = request.args.get("status", "").strip()
    counterparty_id = _parse_int(request.args.get("counterparty", ""))
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    page_size = int(current_app.config["DOCUMENTS_PAGE_SIZE"])

    documents, total = list_documents(
        db,
        doc_type,
        search=search_query,
        status=status,
        counterparty_id=counterparty_id,
        filters=filters,
        page=page,
        page_size=page_size,
    )

    counterparties = []
    if doc_type.counterparty_table is not None:
        counterparties = db.execute(
            f"SELECT id, name FROM {doc_type.counterparty_table} ORDER BY name ASC"
        ).fetchall()

    return render_template(
        template,
        page_title=f"{doc_type.label}s",
        active_menu=doc_type.endpoint,
        doc_type=doc_type,
        documents=documents,
        counterparties=counterparties,
        search_query=search_query,
        filter_status=status,
        filter_counterparty=counterparty_id,
        current_page=page,
        total_pages=max(math.ceil(total / page_size), 1),
        total=total,
        **extra,
    )


def _new_document_response(doc_type, values=None, items=None):
    db = get_db()
    values = dict(values or {})
    values.setdefault(doc_type.date_column, date.today().isoformat())
    return _render_document_form(
        doc_type,
        values,
        items or [],
        url_for(f"{doc_type.endpoint}_create"),
        preview_document_number(db, doc_type, values[doc_type.date_column]),
    )


def _read_document_form(db, doc_type, prepare=None):
    """Header, line items and the first validation error of a posted document form.

    ``prepare(header, items)`` may fill in defaults and returns an error
    message or ``None``.
    """
    header, error_message = _read_document_header(db, doc_type, request.form)
    items = parse_line_items(request.form)
    if error_message is None and doc_type.key in ITEMS_REQUIRED and not items:
        error_message = "Please add at least one line item."
    if error_message is None and prepare is not None:
        error_message = prepare(header, items)
    return header, items, error_message


def _create_document_response(doc_type, after=None, on_failure=None, prepare=None):
    db = get_db()
    header, items, error_message = _read_document_form(db, doc_type, prepare)

    form_action = url_for(f"{doc_type.endpoint}_create")
    if error_message is not None:
        return _render_document_form(
            doc_type, request.form.to_dict(), items, form_action, "", error_message, 400
        )

    def run_after(db, document_id):
        after(db, document_id, header)

    try:
        document_id, document_number = create_document(
            db,
            doc_type,
            header,
            items,
            user_id=_current_user_id(),
            after=run_after if after is not None else None,
        )
    except DocumentWriteError as exc:
        if on_failure is not None:
            on_failure()
        return _render_document_form(
            doc_type, request.form.to_dict(), items, form_action, "", f"Error: {exc}", 500
        )

    return redirect(url_for(f"{doc_type.endpoint}_view", document_id=document_id), code=303)


def _load_document_or_404(db, doc_type, document_id):
    document = get_document(db, doc_type, document_id)
    if document is None:
        abort(404, description=f"{doc_type.label} not found.")
    return document


def _view_document_response(doc_type, document_id, **extra):
    db = get_db()
    document = _load_document_or_404(db, doc_type, document_id)
    items = get_document_items(db, doc_type, document_id) if doc_type.item_table else []
    return render_template(
        "document_view.html",
        page_title=f"{doc_type.label} {document['document_number']}",
        active_menu=doc_type.endpoint,
        doc_type=doc_type,
        document=document,
        items=items,
        **extra,
    )


def _edit_document_response(doc_type, document_id):
    db = get_db()
    document = _load_document_or_404(db, doc_type, document_id)
    items = get_document_items(db, doc_type, document_id) if doc_type.item_table else []
    return _render_document_form(
        doc_type,
        dict(document),
        [dict(item) for item in items],
        url_for(f"{doc_type.endpoint}_update", document_id=document_id),
        document["document_number"],
    )


def _update_document_response(doc_type, document_id, after=None, prepare=None):
    db = get_db()
    document = _load_document_or_404(db, doc_type, document_id)
    header, items, error_message = _read_document_form(db, doc_type, prepare)

    form_action = url_for(f"{doc_type.endpoint}_update", document_id=document_id)
    values = {**request.form.to_dict(), "id": document_id}
    if error_message is not None:
        return _render_document_form(
            doc_type, values, items, form_action, document["document_number"], error_message, 400
        )

    def run_after(db, document_id):
        after(db, document_id, header)

    try:
        replace_document_items(
            db,
            doc_type,
            document_id,
            header,
            items,
            after=run_after if after is not None else None,
        )
    except DocumentWriteError as exc:
        return _render_document_form(
            doc_type, values, items, form_action, document["document_number"], f"Error: {exc}", 500
        )

    return redirect(url_for(f"{doc_type.endpoint}_view", document_id=document_id))


def _update_status_response(doc_type, document_id):
    db = get_db()
    status = request.form.get("status", "").strip()
    try:
        update_document_status(db, doc_type, document_id, status)
    except ValueError as exc:
        abort(400, description=str(exc))
    except LookupError:
        abort(404, description=f"{doc_type.label} not found.")
    return redirect(url_for(f"{doc_type.endpoint}_view", document_id=document_id))


def _delete_document_response(doc_type, before_delete=None):
    db = get_db()
    document_id = _parse_int(request.form.get("document_id", ""))
    if document_id is None:
        abort(400, description="Missing document id.")

    cleanup = before_delete(db, document_id) if before_delete is not None else ()
    try:
        deleted = delete_document(db, doc_type, document_id)
    except DocumentWriteError as exc:
        abort(500, description=f"Error: {exc}")
    if not deleted:
        abort(404, description=f"{doc_type.label} not found.")

    for relative_path in cleanup:
        delete_upload(relative_path)
    return redirect(url_for(f"{doc_type.endpoint}_list"))


def _attachment_writer(table, parent_column, area):
    """Return ``(store, discard)`` hooks for the posted ``attachments`` files.

    ``store`` runs as a document ``after`` hook so the attachment rows share
    the document's transaction. ``discard`` removes the files it saved when
    that transaction is rolled back.
    """
    saved_paths = []

    def store(db, document_id, header):
        for file_storage in request.files.getlist("attachments"):
            relative_path = save_upload(file_storage, area)
            if relative_path is None:
                continue
            saved_paths.append(relative_path)
            attachment = describe_upload(file_storage, relative_path)
            db.execute(
                f"""
                INSERT INTO {table} (
                    {parent_column}, file_original_name, file_path,
                    file_mime_type, file_size_bytes, uploaded_by_user_id
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    attachment["file_original_name"],
                    attachment["file_path"],
                    attachment["file_mime_type"],
                    attachment["file_size_bytes"],
                    _current_user_id(),
                ),
            )

    def discard():
        for relative_path in saved_paths:
            delete_upload(relative_path)
        if saved_paths:
            logger.info("Discarded %d %s upload(s) after rollback", len(saved_paths), area)

    return store, discard


def _attachment_rows(db, table, parent_column, document_id):
    return db.execute(
        f"""
        SELECT id, file_original_name, file_path, file_mime_type, file_size_bytes, created_at
        FROM {table}
        WHERE {parent_column} = ?
        ORDER BY id ASC
        """,
        (document_id,),
    ).fetchall()


def _attachment_paths(table, parent_column):
    def attachment_paths(db, document_id):
        rows = db.execute(
            f"SELECT file_path FROM {table} WHERE {parent_column} = ?",
            (document_id,),
        ).fetchall()
        return [row["file_path"] for row in rows]

    return attachment_paths


def _prepare_bill_payment(header, items):
    if header["discount_amount"] < 0:
        return "Discount cannot be negative."
    if not 0 <= header["withholding_tax_rate"] <= 100:
        return "WHT % must be between 0 and 100."
    for item in items:
        if item["product_id"] is None:
            return "Product is required for all line items."
        if item["quantity"] < 0 or item["unit_price"] < 0:
            return "Quantity and unit price cannot be negative."
    subtotal = sum(item["quantity"] * item["unit_price"] for item in items)
    if header["discount_amount"] > subtotal:
        return "Discount cannot exceed the subtotal."
    return None


def _settle_bill_payment(db, payment_id, header):
    apply_bill_payment_totals(
        db, payment_id, header["discount_amount"], header["withholding_tax_rate"]
    )


def _prepare_job_order(header, items):
    header["currency"] = (header["currency"] or "THB").upper()
    if header["total_amount"] < 0:
        return "Amount cannot be negative."
    if header["expire_date"] is not None and header["expire_date"] < header["job_date"]:
        return "Expire date cannot be before the job date."
    return None


def _read_party_form(form):
    return {
        "name": form.get("name", "").strip(),
        "company_name": form.get("company_name", "").strip() or None,
        "tax_id": form.get("tax_id", "").strip() or None,
        "address": form.get("address", "").strip() or None,
        "phone": form.get("phone", "").strip() or None,
        "email": form.get("email", "").strip() or None,
    }


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "business.sqlite"),
        VEHICLE_DATABASE=None,
        UPLOAD_FOLDER=os.path.join(app.instance_path, "uploads"),
        MAX_CONTENT_LENGTH=16 * 1024 * 1024,
        PERMANENT_SESSION_LIFETIME=timedelta(minutes=30),
        DOCUMENTS_PAGE_SIZE=15,
        LOG_LEVEL="INFO",
    )

    if test_config is None:
        app.config.from_pyfile("config.py", silent=True)
        app.config.from_prefixed_env("BUSINESS_APP")
    else:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    try:
        os.makedirs(app.instance_path, exist_ok=True)
    except OSError:
        pass

    init_db_app(app)

    with app.app_context():
        ensure_schema()

    login_manager = LoginManager()
    login_manager.login_view = "login"
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        user = load_app_user(get_db(), user_id)
        if user is None:
            logger.info("Session refers to unknown user %s", user_id)
        return user

    @app.context_processor
    def inject_document_permissions():
        return {"document_permissions": DOCUMENT_PERMISSIONS}

    @app.before_request
    def make_session_permanent():
        session.permanent = True

    @app.before_request
    def require_login_for_app_pages():
        allowed_endpoints = {
            "login",
            "static",
        }
        if request.endpoint in allowed_endpoints:
            return None
        if request.endpoint is None:
            return None
        if current_user.is_authenticated:
            return None
        if request.path.startswith(("/api/", "/uploads/")):
            abort(401, description="Unauthorized")
        return redirect(url_for("login"))

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if error.code is not None and error.code >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, error.description)
        if request.path.startswith("/api/"):
            return jsonify(error=error.description), error.code
        return (
            render_template(
                "error.html",
                page_title=f"{error.code} {error.name}",
                active_menu="",
                error=error,
            ),
            error.code,
        )

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if current_user.is_authenticated:
            return redirect(url_for("dashboard"))

        if request.method == "POST":
            db = get_db()

            identifier = request.form.get("identifier", "").strip()
            password = request.form.get("password", "")

            if not identifier or not password:
                return (
                    render_template(
                        "login.html",
                        page_title="Login",
                        active_menu="",
                        identifier=identifier,
                        error_message="Please enter your username or email and password.",
                    ),
                    400,
                )

            user_row = db.execute(
                """
                SELECT id, password_hash, is_active
                FROM users
                WHERE username = ? OR email = ?
                LIMIT 1
                """,
                (identifier, identifier),
            ).fetchone()

            if (
                user_row is not None
                and user_row["is_active"]
                and check_password_hash(user_row["password_hash"], password)
            ):
                login_user(load_app_user(db, user_row["id"]), remember=True)
                logger.info("User %s logged in", identifier)
                return redirect(url_for("dashboard"))

            logger.info("Failed login for %s", identifier)
            return (
                render_template(
                    "login.html",
                    page_title="Login",
                    active_menu="",
                    identifier=identifier,
                    error_message="Invalid username or password.",
                ),
                401,
            )

        return render_template(
            "login.html",
            page_title="Login",
            active_menu="",
            identifier="",
            error_message="",
        )

    @app.post("/logout")
    @login_required
    def logout():
        logout_user()
        return redirect(url_for("login"))

    @app.route("/")
    def index():
        return redirect(url_for("dashboard"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        db = get_db()
        document_counts = [
            (doc_type, count_by_status(db, doc_type)) for doc_type in DOCUMENT_TYPES.values()
        ]
        open_repairs = db.execute(
            "SELECT COUNT(*) FROM asset_repairs WHERE status IN ('Pending', 'In Progress')"
        ).fetchone()[0]
        asset_total = db.execute("SELECT COUNT(*) FROM assets").fetchone()[0]
        return render_template(
            "dashboard.html",
            page_title="Dashboard",
            active_menu="dashboard",
            document_counts=document_counts,
            open_repairs=open_repairs,
            asset_total=asset_total,
        )

    # Users and roles

    @app.route("/users")
    @permission_required("manage users")
    def users_page():
        db = get_db()
        users = db.execute(
            """
            SELECT u.id, u.username, u.email, u.full_name, u.is_active, u.created_at,
                   u.role_id, r.name AS role_name
            FROM users u
            LEFT JOIN roles r ON r.id = u.role_id
            ORDER BY u.id DESC
            """
        ).fetchall()
        roles = db.execute("SELECT id, name FROM roles ORDER BY name ASC").fetchall()
        return render_template(
            "users.html",
            page_title="Users",
            active_menu="users",
            users=users,
            roles=roles,
            status=request.args.get("status", "").strip(),
        )

    @app.post("/users/add")
    @permission_required("manage users")
    def add_user():
        db = get_db()

        username = request.form.get("username", "").strip()
        email = request.form.get("email", "").strip() or None
        full_name = request.form.get("full_name", "").strip() or None
        password = request.form.get("password", "")
        role_id = _parse_int(request.form.get("role_id", ""))
        is_active = 1 if request.form.get("is_active") == "on" else 0

        if not username or not password:
            return redirect(url_for("users_page", status="missing-fields"))

        existing = db.execute(
            "SELECT id FROM users WHERE username = ? OR (email IS NOT NULL AND email = ?)",
            (username, email),
        ).fetchone()
        if existing is not None:
            return redirect(url_for("users_page", status="duplicate"))

        db.execute(
            """
            INSERT INTO users (username, email, full_name, password_hash, role_id, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (username, email, full_name, generate_password_hash(password), role_id, is_active),
        )
        db.commit()
        logger.info("User %s created by %s", username, current_user.username)
        return redirect(url_for("users_page"))

    @app.post("/users/edit")
    @permission_required("manage users")
    def edit_user():
        db = get_db()

        user_id = _parse_int(request.form.get("user_id", ""))
        username = request.form.get("username", "").strip()
        email = request.form.get("email", "").strip() or None
        full_name = request.form.get("full_name", "").strip() or None
        role_id = _parse_int(request.form.get("role_id", ""))
        is_active = 1 if request.form.get("is_active") == "on" else 0

        if user_id is None or not username:
            return redirect(url_for("users_page", status="missing-fields"))

        existing = db.execute(
            "SELECT id FROM users WHERE (username = ? OR (email IS NOT NULL AND email = ?)) AND id != ?",
            (username, email, user_id),
        ).fetchone()
        if existing is not None:
            return redirect(url_for("users_page", status="duplicate"))

        db.execute(
            """
            UPDATE users
            SET username = ?, email = ?, full_name = ?, role_id = ?, is_active = ?
            WHERE id = ?
            """,
            (username, email, full_name, role_id, is_active, user_id),
        )
        db.commit()
        return redirect(url_for("users_page"))

    @app.post("/users/delete")
    @permission_required("manage users")
    def delete_user():
        db = get_db()

        user_id = _parse_int(request.form.get("user_id", ""))
        if user_id is None:
            return redirect(url_for("users_page"))

        if str(user_id) == current_user.get_id():
            return redirect(url_for("users_page", status="self-delete"))

        db.execute("DELETE FROM users WHERE id = ?", (user_id,))
        db.commit()
        logger.info("User id=%s deleted by %s", user_id, current_user.username)
        return redirect(url_for("users_page"))

    @app.post("/users/reset-password")
    @permission_required("manage users")
    def reset_user_password():
        db = get_db()

        user_id = _parse_int(request.form.get("user_id", ""))
        new_password = request.form.get("new_password", "")
        if user_id is None or not new_password:
            return redirect(url_for("users_page", status="missing-fields"))

        db.execute(
            "UPDATE users SET password_hash = ? WHERE id = ?",
            (generate_password_hash(new_password), user_id),
        )
        db.commit()
        return redirect(url_for("users_page"))

    @app.route("/roles")
    @permission_required("manage users")
    def roles_page():
        db = get_db()
        roles = db.execute("SELECT id, name FROM roles ORDER BY name ASC").fetchall()
        granted = db.execute(
            """
            SELECT rhp.role_id, p.name
            FROM role_has_permissions rhp
            JOIN permissions p ON p.id = rhp.permission_id
            """
        ).fetchall()
        role_permissions = {role["id"]: set() for role in roles}
        for row in granted:
            role_permissions.setdefault(row["role_id"], set()).add(row["name"])
        return render_template(
            "roles.html",
            page_title="Roles",
            active_menu="roles",
            roles=roles,
            permissions=PERMISSIONS,
            role_permissions=role_permissions,
        )

    @app.post("/roles/add")
    @permission_required("manage users")
    def add_role():
        db = get_db()
        name = request.form.get("name", "").strip().lower()
        if not name:
            return redirect(url_for("roles_page"))
        db.execute("INSERT OR IGNORE INTO roles (name) VALUES (?)", (name,))
        db.commit()
        return redirect(url_for("roles_page"))

    @app.post("/roles/<int:role_id>/permissions")
    @permission_required("manage users")
    def update_role_permissions(role_id):
        db = get_db()
        if not _row_exists(db, "roles", role_id):
            abort(404, description="Role not found.")

        selected = [name for name in request.form.getlist("permissions") if name in PERMISSIONS]
        db.execute("DELETE FROM role_has_permissions WHERE role_id = ?", (role_id,))
        for name in selected:
            db.execute(
                """
                INSERT INTO role_has_permissions (role_id, permission_id)
                SELECT ?, id FROM permissions WHERE name = ?
                """,
                (role_id, name),
            )
        db.commit()
        logger.info("Role id=%s permissions set to %s", role_id, ", ".join(selected) or "none")
        return redirect(url_for("roles_page"))

    # Master data

    @app.route("/customers")
    @login_required
    def customers_page():
        db = get_db()
        search_query = request.args.get("q", "").strip()
        like_query = like_pattern(search_query)
        customers = db.execute(
            """
            SELECT id, name, company_name, tax_id, address, phone, email, created_at
            FROM customers
            WHERE ? = ''
               OR name LIKE ? ESCAPE '\\'
               OR company_name LIKE ? ESCAPE '\\'
               OR tax_id LIKE ? ESCAPE '\\'
               OR phone LIKE ? ESCAPE '\\'
            ORDER BY name ASC
            """,
            (search_query, like_query, like_query, like_query, like_query),
        ).fetchall()
        return render_template(
            "parties.html",
            page_title="Customers",
            active_menu="customers",
            parties=customers,
            party_label="Customer",
            add_endpoint="add_customer",
            edit_endpoint="edit_customer",
            delete_endpoint="delete_customer",
            list_endpoint="customers_page",
            search_query=search_query,
            status=request.args.get("status", "").strip(),
        )

    @app.post("/customers/add")
    @permission_required("manage master data")
    def add_customer():
        db = get_db()
        values = _read_party_form(request.form)
        if not values["name"]:
            return redirect(url_for("customers_page", status="missing-name"))

        db.execute(
            """
            INSERT INTO customers (name, company_name, tax_id, address, phone, email)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            tuple(values.values()),
        )
        db.commit()
        return redirect(url_for("customers_page"))

    @app.post("/customers/edit")
    @permission_required("manage master data")
    def edit_customer():
        db = get_db()
        customer_id = _parse_int(request.form.get("customer_id", ""))
        values = _read_party_form(request.form)
        if customer_id is None or not values["name"]:
            return redirect(url_for("customers_page", status="missing-name"))

        db.execute(
            """
            UPDATE customers
            SET name = ?, company_name = ?, tax_id = ?, address = ?, phone = ?, email = ?
            WHERE id = ?
            """,
            (*values.values(), customer_id),
        )
        db.commit()
        return redirect(url_for("customers_page"))

    @app.post("/customers/delete")
    @permission_required("manage master data")
    def delete_customer():
        db = get_db()
        customer_id = _parse_int(request.form.get("customer_id", ""))
        if customer_id is None:
            return redirect(url_for("customers_page"))

        try:
            db.execute("DELETE FROM customers WHERE id = ?", (customer_id,))
            db.commit()
        except sqlite3.IntegrityError:
            db.rollback()
            return redirect(url_for("customers_page", status="in-use"))
        return redirect(url_for("customers_page"))

    @app.route("/vendors")
    @login_required
    def vendors_page():
        db = get_db()
        search_query = request.args.get("q", "").strip()
        like_query = like_pattern(search_query)
        vendors = db.execute(
            """
            SELECT id, name, company_name, tax_id, address, phone, email, created_at
            FROM vendors
            WHERE ? = ''
               OR name LIKE ? ESCAPE '\\'
               OR company_name LIKE ? ESCAPE '\\'
               OR tax_id LIKE ? ESCAPE '\\'
               OR phone LIKE ? ESCAPE '\\'
            ORDER BY name ASC
            """,
            (search_query, like_query, like_query, like_query, like_query),
        ).fetchall()
        return render_template(
            "parties.html",
            page_title="Vendors",
            active_menu="vendors",
            parties=vendors,
            party_label="Vendor",
            add_endpoint="add_vendor",
            edit_endpoint="edit_vendor",
            delete_endpoint="delete_vendor",
            list_endpoint="vendors_page",
            search_query=search_query,
            status=request.args.get("status", "").strip(),
        )

    @app.post("/vendors/add")
    @permission_required("manage master data")
    def add_vendor():
        db = get_db()
        values = _read_party_form(request.form)
        if not values["name"]:
            return redirect(url_for("vendors_page", status="missing-name"))

        db.execute(
            """
            INSERT INTO vendors (name, company_name, tax_id, address, phone, email)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            tuple(values.values()),
        )
        db.commit()
        return redirect(url_for("vendors_page"))

    @app.post("/vendors/edit")
    @permission_required("manage master data")
    def edit_vendor():
        db = get_db()
        vendor_id = _parse_int(request.form.get("vendor_id", ""))
        values = _read_party_form(request.form)
        if vendor_id is None or not values["name"]:
            return redirect(url_for("vendors_page", status="missing-name"))

        db.execute(
            """
            UPDATE vendors
            SET name = ?, company_name = ?, tax_id = ?, address = ?, phone = ?, email = ?
            WHERE id = ?
            """,
            (*values.values(), vendor_id),
        )
        db.commit()
        return redirect(url_for("vendors_page"))

    @app.post("/vendors/delete")
    @permission_required("manage master data")
    def delete_vendor():
        db = get_db()
        vendor_id = _parse_int(request.form.get("vendor_id", ""))
        if vendor_id is None:
            return redirect(url_for("vendors_page"))

        try:
            db.execute("DELETE FROM vendors WHERE id = ?", (vendor_id,))
            db.commit()
        except sqlite3.IntegrityError:
            db.rollback()
            return redirect(url_for("vendors_page", status="in-use"))
        return redirect(url_for("vendors_page"))

    @app.route("/products")
    @login_required
    def products_page():
        db = get_db()
        search_query = request.args.get("q", "").strip()
        like_query = like_pattern(search_query)
        products = db.execute(
            """
            SELECT id, sku, name, unit, selling_price, purchase_cost, is_active
            FROM products
            WHERE ? = '' OR sku LIKE ? ESCAPE '\\' OR name LIKE ? ESCAPE '\\'
            ORDER BY name ASC
            """,
            (search_query, like_query, like_query),
        ).fetchall()
        return render_template(
            "products.html",
            page_title="Products",
            active_menu="products",
            products=products,
            search_query=search_query,
            status=request.args.get("status", "").strip(),
        )

    @app.post("/products/add")
    @permission_required("manage master data")
    def add_product():
        db = get_db()
        sku = request.form.get("sku", "").strip()
        name = request.form.get("name", "").strip()
        unit = request.form.get("unit", "").strip() or None
        selling_price = to_decimal(request.form.get("selling_price"), "0")
        purchase_cost = to_decimal(request.form.get("purchase_cost"), "0")
        is_active = 1 if request.form.get("is_active", "on") == "on" else 0

        if not sku or not name:
            return redirect(url_for("products_page", status="missing-fields"))

        existing = db.execute("SELECT id FROM products WHERE sku = ?", (sku,)).fetchone()
        if existing is not None:
            return redirect(url_for("products_page", status="duplicate-sku"))

        db.execute(
            """
            INSERT INTO products (sku, name, unit, selling_price, purchase_cost, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (sku, name, unit, float(selling_price), float(purchase_cost), is_active),
        )
        db.commit()
        return redirect(url_for("products_page"))

    @app.post("/products/edit")
    @permission_required("manage master data")
    def edit_product():
        db = get_db()
        product_id = _parse_int(request.form.get("product_id", ""))
        sku = request.form.get("sku", "").strip()
        name = request.form.get("name", "").strip()
        unit = request.form.get("unit", "").strip() or None
        selling_price = to_decimal(request.form.get("selling_price"), "0")
        purchase_cost = to_decimal(request.form.get("purchase_cost"), "0")
        is_active = 1 if request.form.get("is_active") == "on" else 0

        if product_id is None or not sku or not name:
            return redirect(url_for("products_page", status="missing-fields"))

        existing = db.execute(
            "SELECT id FROM products WHERE sku = ? AND id != ?", (sku, product_id)
        ).fetchone()
        if existing is not None:
            return redirect(url_for("products_page", status="duplicate-sku"))

        db.execute(
            """
            UPDATE products
            SET sku = ?, name = ?, unit = ?, selling_price = ?, purchase_cost = ?, is_active = ?
            WHERE id = ?
            """,
            (sku, name, unit, float(selling_price), float(purchase_cost), is_active, product_id),
        )
        db.commit()
        return redirect(url_for("products_page"))

    @app.post("/products/delete")
    @permission_required("manage master data")
    def delete_product():
        db = get_db()
        product_id = _parse_int(request.form.get("product_id", ""))
        if product_id is None:
            return redirect(url_for("products_page"))

        try:
            db.execute("DELETE FROM products WHERE id = ?", (product_id,))
            db.commit()
        except sqlite3.IntegrityError:
            db.rollback()
            return redirect(url_for("products_page", status="in-use"))
        return redirect(url_for("products_page"))

    # Billing notes

    @app.route("/billing-notes")
    @login_required
    def billing_notes_list():
        return _list_documents_response(BILLING_NOTE)

    @app.get("/billing-notes/new")
    @permission_required("manage sales documents")
    def billing_notes_new():
        return _new_document_response(BILLING_NOTE)

    @app.post("/billing-notes/new")
    @permission_required("manage sales documents")
    def billing_notes_create():
        return _create_document_response(BILLING_NOTE)

    @app.route("/billing-notes/<int:document_id>")
    @login_required
    def billing_notes_view(document_id):
        return _view_document_response(BILLING_NOTE, document_id)

    @app.get("/billing-notes/<int:document_id>/edit")
    @permission_required("manage sales documents")
    def billing_notes_edit(document_id):
        return _edit_document_response(BILLING_NOTE, document_id)

    @app.post("/billing-notes/<int:document_id>/edit")
    @permission_required("manage sales documents")
    def billing_notes_update(document_id):
        return _update_document_response(BILLING_NOTE, document_id)

    @app.post("/billing-notes/<int:document_id>/status")
    @permission_required("manage sales documents")
    def billing_notes_status(document_id):
        return _update_status_response(BILLING_NOTE, document_id)

    @app.post("/billing-notes/delete")
    @permission_required("manage sales documents")
    def billing_notes_delete():
        return _delete_document_response(BILLING_NOTE)

    # Invoices

    @app.route("/invoices")
    @login_required
    def invoices_list():
        return _list_documents_response(INVOICE)

    @app.get("/invoices/new")
    @permission_required("manage sales documents")
    def invoices_new():
        return _new_document_response(INVOICE)

    @app.post("/invoices/new")
    @permission_required("manage sales documents")
    def invoices_create():
        store_attachments, discard_attachments = _attachment_writer(
            "invoice_attachments", "invoice_id", "invoices"
        )
        return _create_document_response(
            INVOICE, after=store_attachments, on_failure=discard_attachments
        )

    @app.route("/invoices/<int:document_id>")
    @login_required
    def invoices_view(document_id):
        attachments = _attachment_rows(get_db(), "invoice_attachments", "invoice_id", document_id)
        return _view_document_response(INVOICE, document_id, attachments=attachments)

    @app.get("/invoices/<int:document_id>/edit")
    @permission_required("manage sales documents")
    def invoices_edit(document_id):
        return _edit_document_response(INVOICE, document_id)

    @app.post("/invoices/<int:document_id>/edit")
    @permission_required("manage sales documents")
    def invoices_update(document_id):
        return _update_document_response(INVOICE, document_id)

    @app.post("/invoices/<int:document_id>/status")
    @permission_required("manage sales documents")
    def invoices_status(document_id):
        return _update_status_response(INVOICE, document_id)

    @app.post("/invoices/delete")
    @permission_required("manage sales documents")
    def invoices_delete():
        return _delete_document_response(
            INVOICE, before_delete=_attachment_paths("invoice_attachments", "invoice_id")
        )

    # Receipts

    @app.route("/receipts")
    @login_required
    def receipts_list():
        return _list_documents_response(RECEIPT)

    @app.get("/receipts/new")
    @permission_required("manage sales documents")
    def receipts_new():
        db = get_db()
        invoice_id = _parse_int(request.args.get("invoice_id", ""))
        if invoice_id is None:
            return _new_document_response(RECEIPT)

        invoice = _load_document_or_404(db, INVOICE, invoice_id)
        items = [dict(item) for item in get_document_items(db, INVOICE, invoice_id)]
        values = {
            "customer_id": invoice["customer_id"],
            "invoice_id": invoice_id,
            "reference_doc": invoice["invoice_number"],
        }
        return _new_document_response(RECEIPT, values=values, items=items)

    @app.post("/receipts/new")
    @permission_required("manage sales documents")
    def receipts_create():
        def mark_invoice_paid(db, receipt_id, header):
            if header.get("invoice_id") is None:
                return
            db.execute(
                "UPDATE invoices SET status = 'Paid' WHERE id = ?",
                (header["invoice_id"],),
            )

        return _create_document_response(RECEIPT, after=mark_invoice_paid)

    @app.route("/receipts/<int:document_id>")
    @login_required
    def receipts_view(document_id):
        return _view_document_response(RECEIPT, document_id)

    @app.get("/receipts/<int:document_id>/edit")
    @permission_required("manage sales documents")
    def receipts_edit(document_id):
        return _edit_document_response(RECEIPT, document_id)

    @app.post("/receipts/<int:document_id>/edit")
    @permission_required("manage sales documents")
    def receipts_update(document_id):
        return _update_document_response(RECEIPT, document_id)

    @app.post("/receipts/<int:document_id>/status")
    @permission_required("manage sales documents")
    def receipts_status(document_id):
        return _update_status_response(RECEIPT, document_id)

    @app.post("/receipts/delete")
    @permission_required("manage sales documents")
    def receipts_delete():
        return _delete_document_response(RECEIPT)

    # Purchase requests

    @app.route("/purchase-requests")
    @login_required
    def purchase_requests_list():
        return _list_documents_response(PURCHASE_REQUEST)

    @app.get("/purchase-requests/new")
    @permission_required("manage purchasing")
    def purchase_requests_new():
        return _new_document_response(PURCHASE_REQUEST)

    @app.post("/purchase-requests/new")
    @permission_required("manage purchasing")
    def purchase_requests_create():
        def record_requester(db, request_id, header):
            db.execute(
                "UPDATE purchase_requests SET requester_id = ? WHERE id = ?",
                (_current_user_id(), request_id),
            )

        return _create_document_response(PURCHASE_REQUEST, after=record_requester)

    @app.route("/purchase-requests/<int:document_id>")
    @login_required
    def purchase_requests_view(document_id):
        return _view_document_response(PURCHASE_REQUEST, document_id)

    @app.get("/purchase-requests/<int:document_id>/edit")
    @permission_required("manage purchasing")
    def purchase_requests_edit(document_id):
        return _edit_document_response(PURCHASE_REQUEST, document_id)

    @app.post("/purchase-requests/<int:document_id>/edit")
    @permission_required("manage purchasing")
    def purchase_requests_update(document_id):
        return _update_document_response(PURCHASE_REQUEST, document_id)

    @app.post("/purchase-requests/<int:document_id>/status")
    @permission_required("manage purchasing")
    def purchase_requests_status(document_id):
        return _update_status_response(PURCHASE_REQUEST, document_id)

    @app.post("/purchase-requests/delete")
    @permission_required("manage purchasing")
    def purchase_requests_delete():
        return _delete_document_response(PURCHASE_REQUEST)

    # Purchase orders

    @app.route("/purchase-orders")
    @login_required
    def purchase_orders_list():
        return _list_documents_response(PURCHASE_ORDER)

    @app.get("/purchase-orders/new")
    @permission_required("manage purchasing")
    def purchase_orders_new():
        db = get_db()
        from_pr_id = _parse_int(request.args.get("from_pr_id", ""))
        if from_pr_id is None:
            return _new_document_response(PURCHASE_ORDER)

        purchase_request = _load_document_or_404(db, PURCHASE_REQUEST, from_pr_id)
        items = [dict(item) for item in get_document_items(db, PURCHASE_REQUEST, from_pr_id)]
        values = {
            "purchase_request_id": from_pr_id,
            "notes": f"From {purchase_request['pr_number']}",
        }
        return _new_document_response(PURCHASE_ORDER, values=values, items=items)

    @app.post("/purchase-orders/new")
    @permission_required("manage purchasing")
    def purchase_orders_create():
        def mark_request_ordered(db, order_id, header):
            if header.get("purchase_request_id") is None:
                return
            db.execute(
                "UPDATE purchase_requests SET status = 'PO_CREATED' WHERE id = ?",
                (header["purchase_request_id"],),
            )

        return _create_document_response(PURCHASE_ORDER, after=mark_request_ordered)

    @app.route("/purchase-orders/<int:document_id>")
    @login_required
    def purchase_orders_view(document_id):
        return _view_document_response(PURCHASE_ORDER, document_id)

    @app.get("/purchase-orders/<int:document_id>/edit")
    @permission_required("manage purchasing")
    def purchase_orders_edit(document_id):
        return _edit_document_response(PURCHASE_ORDER, document_id)

    @app.post("/purchase-orders/<int:document_id>/edit")
    @permission_required("manage purchasing")
    def purchase_orders_update(document_id):
        return _update_document_response(PURCHASE_ORDER, document_id)

    @app.post("/purchase-orders/<int:document_id>/status")
    @permission_required("manage purchasing")
    def purchase_orders_status(document_id):
        return _update_status_response(PURCHASE_ORDER, document_id)

    @app.post("/purchase-orders/delete")
    @permission_required("manage purchasing")
    def purchase_orders_delete():
        return _delete_document_response(PURCHASE_ORDER)

    # Payment vouchers

    @app.route("/payments")
    @login_required
    def payments_list():
        voucher_type = request.args.get("type", "").strip().upper()
        filters = {"voucher_type": voucher_type} if voucher_type in VOUCHER_TYPES else None
        return _list_documents_response(
            VOUCHER,
            filters=filters,
            template="vouchers.html",
            voucher_types=VOUCHER_TYPES,
            filter_type=voucher_type,
        )

    @app.get("/payments/new")
    @permission_required("manage payments")
    def payments_new():
        voucher_type = request.args.get("type", "RV").strip().upper()
        if voucher_type not in VOUCHER_TYPES:
            voucher_type = "RV"
        return render_template(
            "voucher_form.html",
            page_title="New Voucher",
            active_menu="payments",
            voucher_types=VOUCHER_TYPES,
            values={"voucher_type": voucher_type, "voucher_date": date.today().isoformat()},
            document_number=preview_document_number(get_db(), VOUCHER, prefix=voucher_type),
            error_message="",
        )

    @app.post("/payments/new")
    @permission_required("manage payments")
    def payments_create():
        db = get_db()
        header, error_message = _read_document_header(db, VOUCHER, request.form)
        if error_message is None and header["voucher_type"] not in VOUCHER_TYPES:
            error_message = "Unknown voucher type."

        status_code = 400
        if error_message is None:
            subtotal = header["subtotal"]
            if not header["vat_amount"]:
                header["vat_amount"] = (subtotal * header["vat_rate"] / 100).quantize(CENT)
            if not header["wht_amount"]:
                header["wht_amount"] = (subtotal * header["wht_rate"] / 100).quantize(CENT)
            if not header["total_amount"]:
                header["total_amount"] = subtotal + header["vat_amount"] - header["wht_amount"]

            try:
                create_document(
                    db,
                    VOUCHER,
                    header,
                    [],
                    user_id=_current_user_id(),
                    prefix=header["voucher_type"],
                )
            except DocumentWriteError as exc:
                error_message = f"Error: {exc}"
                status_code = 500
            else:
                return redirect(url_for("payments_list"), code=303)

        return (
            render_template(
                "voucher_form.html",
                page_title="New Voucher",
                active_menu="payments",
                voucher_types=VOUCHER_TYPES,
                values=request.form.to_dict(),
                document_number="",
                error_message=error_message,
            ),
            status_code,
        )

    @app.post("/payments/<int:document_id>/status")
    @permission_required("manage payments")
    def payments_status(document_id):
        db = get_db()
        try:
            update_document_status(db, VOUCHER, document_id, request.form.get("status", "").strip())
        except ValueError as exc:
            abort(400, description=str(exc))
        except LookupError:
            abort(404, description="Voucher not found.")
        return redirect(url_for("payments_list"))

    @app.post("/payments/delete")
    @permission_required("manage payments")
    def payments_delete():
        return _delete_document_response(VOUCHER)

    # Bill payments

    @app.route("/bill-payments")
    @login_required
    def bill_payments_list():
        return _list_documents_response(BILL_PAYMENT)

    @app.get("/bill-payments/new")
    @permission_required("manage payments")
    def bill_payments_new():
        return _new_document_response(
            BILL_PAYMENT, values={"discount_amount": "0", "withholding_tax_rate": "0"}
        )

    @app.post("/bill-payments/new")
    @permission_required("manage payments")
    def bill_payments_create():
        store_attachments, discard_attachments = _attachment_writer(
            "bill_payment_attachments", "bill_payment_id", "bill_payments"
        )

        def record_payment(db, payment_id, header):
            _settle_bill_payment(db, payment_id, header)
            store_attachments(db, payment_id, header)

        return _create_document_response(
            BILL_PAYMENT,
            after=record_payment,
            on_failure=discard_attachments,
            prepare=_prepare_bill_payment,
        )

    @app.route("/bill-payments/<int:document_id>")
    @login_required
    def bill_payments_view(document_id):
        attachments = _attachment_rows(
            get_db(), "bill_payment_attachments", "bill_payment_id", document_id
        )
        return _view_document_response(BILL_PAYMENT, document_id, attachments=attachments)

    @app.get("/bill-payments/<int:document_id>/edit")
    @permission_required("manage payments")
    def bill_payments_edit(document_id):
        return _edit_document_response(BILL_PAYMENT, document_id)

    @app.post("/bill-payments/<int:document_id>/edit")
    @permission_required("manage payments")
    def bill_payments_update(document_id):
        return _update_document_response(
            BILL_PAYMENT,
            document_id,
            after=_settle_bill_payment,
            prepare=_prepare_bill_payment,
        )

    @app.post("/bill-payments/<int:document_id>/status")
    @permission_required("manage payments")
    def bill_payments_status(document_id):
        return _update_status_response(BILL_PAYMENT, document_id)

    @app.post("/bill-payments/delete")
    @permission_required("manage payments")
    def bill_payments_delete():
        return _delete_document_response(
            BILL_PAYMENT,
            before_delete=_attachment_paths("bill_payment_attachments", "bill_payment_id"),
        )

    # Freight forwarder job orders

    @app.route("/freight-forwarder/job-orders")
    @login_required
    def job_orders_list():
        return _list_documents_response(JOB_ORDER)

    @app.get("/freight-forwarder/job-orders/new")
    @permission_required("manage job orders")
    def job_orders_new():
        return _new_document_response(JOB_ORDER, values={"currency": "THB"})

    @app.post("/freight-forwarder/job-orders/new")
    @permission_required("manage job orders")
    def job_orders_create():
        return _create_document_response(JOB_ORDER, prepare=_prepare_job_order)

    @app.route("/freight-forwarder/job-orders/<int:document_id>")
    @login_required
    def job_orders_view(document_id):
        return _view_document_response(JOB_ORDER, document_id)

    @app.get("/freight-forwarder/job-orders/<int:document_id>/edit")
    @permission_required("manage job orders")
    def job_orders_edit(document_id):
        return _edit_document_response(JOB_ORDER, document_id)

    @app.post("/freight-forwarder/job-orders/<int:document_id>/edit")
    @permission_required("manage job orders")
    def job_orders_update(document_id):
        return _update_document_response(JOB_ORDER, document_id, prepare=_prepare_job_order)

    @app.post("/freight-forwarder/job-orders/<int:document_id>/status")
    @permission_required("manage job orders")
    def job_orders_status(document_id):
        return _update_status_response(JOB_ORDER, document_id)

    @app.post("/freight-forwarder/job-orders/delete")
    @permission_required("manage job orders")
    def job_orders_delete():
        return _delete_document_response(JOB_ORDER)

    # Repairs

    @app.route("/repairs")
    @login_required
    def repairs_page():
        db = get_db()
        search_query = request.args.get("q", "").strip()
        status = request.args.get("status", "").strip()
        like_query = like_pattern(search_query)
        repairs = db.execute(
            """
            SELECT id, ticket_code, asset_name, vin, location_name, reporter_name,
                   status, created_at, updated_at
            FROM asset_repairs
            WHERE (
                ? = ''
                OR ticket_code LIKE ? ESCAPE '\\'
                OR asset_name LIKE ? ESCAPE '\\'
                OR reporter_name LIKE ? ESCAPE '\\'
                OR vin LIKE ? ESCAPE '\\'
            )
            AND (? = '' OR status = ?)
            ORDER BY id DESC
            """,
            (search_query, like_query, like_query, like_query, like_query, status, status),
        ).fetchall()
        return render_template(
            "repairs.html",
            page_title="Repairs",
            active_menu="repairs",
            repairs=repairs,
            statuses=REPAIR_STATUSES,
            search_query=search_query,
            filter_status=status,
        )

    @app.get("/repairs/new")
    @permission_required("manage repairs")
    def new_repair_page():
        return render_template(
            "repair_form.html",
            page_title="Report Repair",
            active_menu="repairs",
            values={},
            error_message="",
        )

    @app.post("/repairs/new")
    @permission_required("manage repairs")
    def create_repair():
        db = get_db()
        asset_name = request.form.get("asset_name", "").strip()
        reporter_name = request.form.get("reporter_name", "").strip()
        issue_description = request.form.get("issue_description", "").strip()
        vin = request.form.get("vin", "").strip().upper() or None
        location_name = request.form.get("location_name", "").strip() or None
        contact_info = request.form.get("contact_info", "").strip() or None

        if not asset_name or not reporter_name or not issue_description:
            return (
                render_template(
                    "repair_form.html",
                    page_title="Report Repair",
                    active_menu="repairs",
                    values=request.form.to_dict(),
                    error_message="Please fill in the asset, reporter and issue description.",
                ),
                400,
            )

        image_path = save_upload(request.files.get("repair_image"), "repairs")
        try:
            ticket_code = generate_document_number(
                db, "asset_repairs", "ticket_code", "RP", date.today()
            )
            cursor = db.execute(
                """
                INSERT INTO asset_repairs (
                    ticket_code, asset_name, vin, location_name, reporter_name,
                    contact_info, issue_description, image_path, status
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket_code,
                    asset_name,
                    vin,
                    location_name,
                    reporter_name,
                    contact_info,
                    issue_description,
                    image_path,
                    REPAIR_STATUSES[0],
                ),
            )
            db.commit()
        except sqlite3.Error as exc:
            db.rollback()
            delete_upload(image_path)
            logger.exception("Failed to create repair ticket")
            return (
                render_template(
                    "repair_form.html",
                    page_title="Report Repair",
                    active_menu="repairs",
                    values=request.form.to_dict(),
                    error_message=f"Error: {exc}",
                ),
                500,
            )

        logger.info("Created repair ticket %s", ticket_code)
        return redirect(url_for("view_repair_page", repair_id=cursor.lastrowid))

    @app.route("/repairs/<int:repair_id>")
    @login_required
    def view_repair_page(repair_id):
        db = get_db()
        repair = db.execute("SELECT * FROM asset_repairs WHERE id = ?", (repair_id,)).fetchone()
        if repair is None:
            abort(404, description="Repair ticket not found.")
        return render_template(
            "repair_view.html",
            page_title=f"Repair {repair['ticket_code']}",
            active_menu="repairs",
            repair=repair,
            statuses=REPAIR_STATUSES,
        )

    @app.post("/repairs/<int:repair_id>/status")
    @permission_required("manage repairs")
    def update_repair_status(repair_id):
        db = get_db()
        repair = db.execute(
            "SELECT id, completion_image_path FROM asset_repairs WHERE id = ?", (repair_id,)
        ).fetchone()
        if repair is None:
            abort(404, description="Repair ticket not found.")

        status = request.form.get("status", "").strip()
        if status not in REPAIR_STATUSES:
            abort(400, description=f"Invalid status: {status}")
        admin_notes = request.form.get("admin_notes", "").strip() or None

        completion_image_path = save_upload(request.files.get("completion_image"), "repairs")
        try:
            db.execute(
                """
                UPDATE asset_repairs
                SET status = ?, admin_notes = ?,
                    completion_image_path = COALESCE(?, completion_image_path),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    status,
                    admin_notes,
                    completion_image_path,
                    datetime.now().isoformat(timespec="seconds"),
                    repair_id,
                ),
            )
            db.commit()
        except sqlite3.Error as exc:
            db.rollback()
            delete_upload(completion_image_path)
            logger.exception("Failed to update repair ticket id=%s", repair_id)
            abort(500, description=f"Error: {exc}")

        if completion_image_path is not None and repair["completion_image_path"]:
            delete_upload(repair["completion_image_path"])
        logger.info("Repair id=%s status changed to %s", repair_id, status)
        return redirect(url_for("view_repair_page", repair_id=repair_id))

    @app.post("/repairs/delete")
    @permission_required("manage repairs")
    def delete_repair():
        db = get_db()
        repair_id = _parse_int(request.form.get("repair_id", ""))
        if repair_id is None:
            abort(400, description="Missing repair id.")

        repair = db.execute(
            "SELECT image_path, completion_image_path FROM asset_repairs WHERE id = ?",
            (repair_id,),
        ).fetchone()
        if repair is None:
            abort(404, description="Repair ticket not found.")

        db.execute("DELETE FROM asset_repairs WHERE id = ?", (repair_id,))
        db.commit()
        delete_upload(repair["image_path"])
        delete_upload(repair["completion_image_path"])
        return redirect(url_for("repairs_page"))

    # Assets

    @app.route("/assets")
    @login_required
    def assets_page():
        db = get_db()
        search_query = request.args.get("q", "").strip()
        status = request.args.get("status", "").strip()
        like_query = like_pattern(search_query)
        assets = db.execute(
            """
            SELECT id, asset_tag, name, category, location, status,
                   purchase_date, purchase_cost, notes, image_path
            FROM assets
            WHERE (
                ? = ''
                OR name LIKE ? ESCAPE '\\'
                OR asset_tag LIKE ? ESCAPE '\\'
                OR category LIKE ? ESCAPE '\\'
                OR location LIKE ? ESCAPE '\\'
            )
            AND (? = '' OR status = ?)
            ORDER BY id DESC
            """,
            (search_query, like_query, like_query, like_query, like_query, status, status),
        ).fetchall()
        return render_template(
            "assets.html",
            page_title="Assets",
            active_menu="assets",
            assets=assets,
            statuses=ASSET_STATUSES,
            search_query=search_query,
            filter_status=status,
        )

    def _read_asset_form(default_status="In Storage"):
        status = request.form.get("status", "").strip() or default_status
        purchase_date = request.form.get("purchase_date", "").strip() or None
        raw_cost = request.form.get("purchase_cost", "").strip()
        return {
            "name": request.form.get("name", "").strip(),
            "category": request.form.get("category", "").strip() or None,
            "location": request.form.get("location", "").strip() or None,
            "status": status,
            "purchase_date": purchase_date,
            "purchase_cost": float(to_decimal(raw_cost)) if raw_cost else None,
            "notes": request.form.get("notes", "").strip() or None,
        }

    @app.post("/assets/add")
    @permission_required("manage assets")
    def add_asset():
        db = get_db()
        values = _read_asset_form()
        if not values["name"]:
            abort(400, description="Asset name is required.")
        if values["status"] not in ASSET_STATUSES:
            abort(400, description=f"Invalid status: {values['status']}")

        image_path = save_upload(request.files.get("image"), "assets")
        try:
            asset_tag = generate_document_number(db, "assets", "asset_tag", "AST", date.today())
            db.execute(
                """
                INSERT INTO assets (
                    asset_tag, name, category, location, status,
                    purchase_date, purchase_cost, notes, image_path
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (asset_tag, *values.values(), image_path),
            )
            db.commit()
        except sqlite3.Error as exc:
            db.rollback()
            delete_upload(image_path)
            logger.exception("Failed to add asset")
            abort(500, description=f"Error: {exc}")

        logger.info("Added asset %s", asset_tag)
        return redirect(url_for("assets_page"))

    @app.post("/assets/<int:asset_id>/edit")
    @permission_required("manage assets")
    def edit_asset(asset_id):
        db = get_db()
        asset = db.execute(
            "SELECT id, status, image_path FROM assets WHERE id = ?", (asset_id,)
        ).fetchone()
        if asset is None:
            abort(404, description="Asset not found.")

        values = _read_asset_form(default_status=asset["status"])
        if not values["name"]:
            abort(400, description="Asset name is required.")
        if values["status"] not in ASSET_STATUSES:
            abort(400, description=f"Invalid status: {values['status']}")

        new_image_path = save_upload(request.files.get("image"), "assets")
        try:
            db.execute(
                """
                UPDATE assets
                SET name = ?, category = ?, location = ?, status = ?,
                    purchase_date = ?, purchase_cost = ?, notes = ?,
                    image_path = COALESCE(?, image_path)
                WHERE id = ?
                """,
                (*values.values(), new_image_path, asset_id),
            )
            db.commit()
        except sqlite3.Error as exc:
            db.rollback()
            delete_upload(new_image_path)
            logger.exception("Failed to update asset id=%s", asset_id)
            abort(500, description=f"Error: {exc}")

        if new_image_path is not None and asset["image_path"]:
            delete_upload(asset["image_path"])
        return redirect(url_for("assets_page"))

    @app.post("/assets/delete")
    @permission_required("manage assets")
    def delete_asset():
        db = get_db()
        asset_id = _parse_int(request.form.get("asset_id", ""))
        if asset_id is None:
            abort(400, description="Missing asset id.")

        asset = db.execute("SELECT image_path FROM assets WHERE id = ?", (asset_id,)).fetchone()
        if asset is None:
            abort(404, description="Asset not found.")

        db.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
        db.commit()
        delete_upload(asset["image_path"])
        return redirect(url_for("assets_page"))

    # Uploaded files

    @app.get("/uploads/<path:filename>")
    @login_required
    def uploaded_file(filename):
        return send_from_directory(upload_root(), filename, max_age=3600)

    # JSON API

    @app.get("/api/search-products")
    @login_required
    def api_search_products():
        search_term = request.args.get("search", "").strip()
        if not search_term:
            return jsonify([])

        like_term = like_pattern(search_term)
        starts_with_term = like_pattern(search_term, starts_with=True)
        rows = get_db().execute(
            """
            SELECT id, sku, name, unit, selling_price, purchase_cost
            FROM products
            WHERE is_active = 1
              AND (sku LIKE ? ESCAPE '\\' OR name LIKE ? ESCAPE '\\')
            ORDER BY
                CASE
                    WHEN sku LIKE ? ESCAPE '\\' THEN 1
                    WHEN name LIKE ? ESCAPE '\\' THEN 2
                    ELSE 3
                END,
                sku ASC,
                name ASC
            LIMIT 20
            """,
            (like_term, like_term, starts_with_term, starts_with_term),
        ).fetchall()

        return jsonify(
            [
                {
                    "value": row["id"],
                    "label": f"{row['sku']} - {row['name']}",
                    "product": dict(row),
                }
                for row in rows
            ]
        )

    @app.get("/api/vehicle-lookup")
    @login_required
    def api_vehicle_lookup():
        vin = request.args.get("vin", "").strip()
        if not vin:
            return jsonify(error="Please provide a VIN."), 400

        try:
            row = get_vehicle_db().execute(
                """
                SELECT
                    g.vin_number,
                    COALESCE(cat_model.topic, vc.model) AS model,
                    COALESCE(cat_color.topic, vc.color) AS color
                FROM gaoff g
                LEFT JOIN gcms_vehicle_code vc ON g.vc_code = vc.vehicle_code
                LEFT JOIN gcms_category cat_model
                    ON vc.model = cat_model.category_id
                    AND cat_model.type = 'vehicle_model'
                LEFT JOIN gcms_category cat_color
                    ON vc.color = cat_color.category_id
                    AND cat_color.type = 'vehicle_color'
                WHERE g.vin_number = ?
                LIMIT 1
                """,
                (vin,),
            ).fetchone()
        except (RuntimeError, sqlite3.Error) as exc:
            logger.error("Vehicle lookup failed for %s: %s", vin, exc)
            return jsonify(error=f"Vehicle database unavailable: {exc}"), 500

        if row is None:
            return jsonify(found=False, message="Vehicle not found.")
        return jsonify(found=True, data=dict(row))

    return app
