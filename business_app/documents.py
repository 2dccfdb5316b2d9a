"""Numbered business documents and their line items.

Every document type (billing notes, invoices, receipts, purchase requests,
purchase orders, vouchers, bill payments, job orders) shares the same shape:
a parent row carrying a ``<PREFIX>-<YYYYMM>-<NNNN>`` number, a date, a status and a total, plus an
optional child table of priced line items. The helpers here generate the
numbers and perform the multi-row writes inside a single transaction.
"""

import logging
import re
from collections import namedtuple
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

logger = logging.getLogger(__name__)

NUMBER_WIDTH = 4

CENT = Decimal("0.01")

_DIGITS = re.compile(r"[0-9]+")


class DocumentWriteError(Exception):
    """A multi-row document write failed and was rolled back."""


DocumentType = namedtuple(
    "DocumentType",
    [
        "key",
        "label",
        "prefix",
        "table",
        "number_column",
        "date_column",
        "item_table",
        "parent_column",
        "counterparty_table",
        "counterparty_column",
        "statuses",
        "default_status",
        "fields",
        "required",
        "search_columns",
        "endpoint",
    ],
)

BILLING_NOTE = DocumentType(
    key="billing_note",
    label="Billing Note",
    prefix="BN",
    table="billing_notes",
    number_column="billing_note_number",
    date_column="billing_date",
    item_table="billing_note_items",
    parent_column="billing_note_id",
    counterparty_table="customers",
    counterparty_column="customer_id",
    statuses=("Draft", "Sent", "Paid", "Void"),
    default_status="Sent",
    fields=(
        ("customer_id", "Customer", "customer"),
        ("billing_date", "Billing date", "date"),
        ("due_date", "Due date", "date"),
        ("notes", "Notes", "textarea"),
    ),
    required=("customer_id",),
    search_columns=("billing_note_number",),
    endpoint="billing_notes",
)

INVOICE = DocumentType(
    key="invoice",
    label="Invoice",
    prefix="INV",
    table="invoices",
    number_column="invoice_number",
    date_column="invoice_date",
    item_table="invoice_items",
    parent_column="invoice_id",
    counterparty_table="customers",
    counterparty_column="customer_id",
    statuses=("Draft", "Sent", "Paid", "Void"),
    default_status="Sent",
    fields=(
        ("customer_id", "Customer", "customer"),
        ("invoice_date", "Invoice date", "date"),
        ("due_date", "Due date", "date"),
        ("reference_doc", "Reference", "text"),
        ("notes", "Notes", "textarea"),
    ),
    required=("customer_id",),
    search_columns=("invoice_number", "reference_doc"),
    endpoint="invoices",
)

RECEIPT = DocumentType(
    key="receipt",
    label="Receipt",
    prefix="RC",
    table="receipts",
    number_column="receipt_number",
    date_column="receipt_date",
    item_table="receipt_items",
    parent_column="receipt_id",
    counterparty_table="customers",
    counterparty_column="customer_id",
    statuses=("Issued", "Void"),
    default_status="Issued",
    fields=(
        ("customer_id", "Customer", "customer"),
        ("receipt_date", "Receipt date", "date"),
        ("invoice_id", "Invoice", "invoice"),
        ("reference_doc", "Reference", "text"),
        ("notes", "Notes", "textarea"),
    ),
    required=("customer_id",),
    search_columns=("receipt_number", "reference_doc"),
    endpoint="receipts",
)

PURCHASE_REQUEST = DocumentType(
    key="purchase_request",
    label="Purchase Request",
    prefix="PR",
    table="purchase_requests",
    number_column="pr_number",
    date_column="request_date",
    item_table="purchase_request_items",
    parent_column="purchase_request_id",
    counterparty_table=None,
    counterparty_column=None,
    statuses=("PENDING", "APPROVED", "REJECTED", "PO_CREATED"),
    default_status="PENDING",
    fields=(
        ("request_date", "Request date", "date"),
        ("department", "Department", "text"),
        ("description", "Description", "textarea"),
    ),
    required=("department",),
    search_columns=("pr_number", "department", "description"),
    endpoint="purchase_requests",
)

PURCHASE_ORDER = DocumentType(
    key="purchase_order",
    label="Purchase Order",
    prefix="PO",
    table="purchase_orders",
    number_column="po_number",
    date_column="po_date",
    item_table="purchase_order_items",
    parent_column="purchase_order_id",
    counterparty_table="vendors",
    counterparty_column="vendor_id",
    statuses=("DRAFT", "SENT", "PARTIAL", "COMPLETED", "CANCELLED"),
    default_status="DRAFT",
    fields=(
        ("vendor_id", "Vendor", "vendor"),
        ("po_date", "Order date", "date"),
        ("delivery_date", "Delivery date", "date"),
        ("contact_person", "Contact person", "text"),
        ("payment_term", "Payment term", "text"),
        ("notes", "Notes", "textarea"),
        ("purchase_request_id", "Purchase request", "purchase_request"),
    ),
    required=("vendor_id", "po_date"),
    search_columns=("po_number", "contact_person"),
    endpoint="purchase_orders",
)

VOUCHER = DocumentType(
    key="voucher",
    label="Voucher",
    prefix="RV",
    table="general_vouchers",
    number_column="voucher_number",
    date_column="voucher_date",
    item_table=None,
    parent_column=None,
    counterparty_table=None,
    counterparty_column=None,
    statuses=("Completed", "Void"),
    default_status="Completed",
    fields=(
        ("voucher_type", "Type", "choice"),
        ("voucher_date", "Date", "date"),
        ("contact_name", "Contact", "text"),
        ("description", "Description", "textarea"),
        ("subtotal", "Subtotal", "number"),
        ("vat_rate", "VAT %", "number"),
        ("vat_amount", "VAT", "number"),
        ("wht_rate", "WHT %", "number"),
        ("wht_amount", "WHT", "number"),
        ("total_amount", "Total", "number"),
    ),
    required=("voucher_type", "voucher_date"),
    search_columns=("voucher_number", "contact_name", "description"),
    endpoint="payments",
)

BILL_PAYMENT = DocumentType(
    key="bill_payment",
    label="Bill Payment",
    prefix="BP",
    table="bill_payments",
    number_column="payment_number",
    date_column="payment_date",
    item_table="bill_payment_items",
    parent_column="bill_payment_id",
    counterparty_table="vendors",
    counterparty_column="vendor_id",
    statuses=("Draft", "Submitted", "Paid", "Void"),
    default_status="Draft",
    fields=(
        ("vendor_id", "Vendor", "vendor"),
        ("payment_date", "Payment date", "date"),
        ("payment_reference", "Reference", "text"),
        ("discount_amount", "Discount", "number"),
        ("withholding_tax_rate", "WHT %", "number"),
        ("notes", "Notes", "textarea"),
    ),
    required=("vendor_id", "payment_date"),
    search_columns=("payment_number", "payment_reference"),
    endpoint="bill_payments",
)

JOB_ORDER = DocumentType(
    key="job_order",
    label="Job Order",
    prefix="JO",
    table="job_orders",
    number_column="job_number",
    date_column="job_date",
    item_table=None,
    parent_column=None,
    counterparty_table="customers",
    counterparty_column="customer_id",
    statuses=("Pending", "In Progress", "Completed", "Cancelled"),
    default_status="Pending",
    fields=(
        ("customer_id", "Customer", "customer"),
        ("job_date", "Job date", "date"),
        ("job_type", "Job type", "text"),
        ("service_type", "Service type", "text"),
        ("contract_reference", "Contract", "text"),
        ("location", "Location", "text"),
        ("bl_number", "B/L number", "text"),
        ("liner_name", "Liner", "text"),
        ("invoice_no", "Invoice no.", "text"),
        ("expire_date", "Expire date", "date"),
        ("total_amount", "Amount", "number"),
        ("currency", "Currency", "text"),
        ("remarks", "Remarks", "textarea"),
    ),
    required=("customer_id", "job_type"),
    search_columns=("job_number", "job_type", "bl_number", "liner_name", "invoice_no"),
    endpoint="job_orders",
)

DOCUMENT_TYPES = {
    doc_type.key: doc_type
    for doc_type in (
        BILLING_NOTE,
        INVOICE,
        RECEIPT,
        PURCHASE_REQUEST,
        PURCHASE_ORDER,
        VOUCHER,
        BILL_PAYMENT,
        JOB_ORDER,
    )
}

VOUCHER_TYPES = {
    "RV": "Receipt Voucher",
    "PV": "Payment Voucher",
}


def to_decimal(value, default="0"):
    raw_value = str(value if value is not None else "").strip()
    if raw_value == "":
        raw_value = default
    try:
        result = Decimal(raw_value)
    except InvalidOperation:
        return Decimal(default)
    if not result.is_finite():
        return Decimal(default)
    return result


def parse_reference_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw_value = (value or "").strip()
    if not raw_value:
        raise ValueError("A document date is required.")
    try:
        return date.fromisoformat(raw_value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(raw_value).date()
    except ValueError:
        raise ValueError(f"Invalid date: {raw_value}") from None


def like_pattern(term, starts_with=False):
    """``LIKE`` pattern matching ``term`` literally; use with ``ESCAPE '\\'``."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    if starts_with:
        return f"{escaped}%"
    return f"%{escaped}%"


def number_scope(prefix, reference_date):
    parsed = parse_reference_date(reference_date)
    return f"{prefix}-{parsed.year:04d}{parsed.month:02d}-"


def generate_document_number(db, table, column, prefix, reference_date):
    """Return the next ``<PREFIX>-<YYYYMM>-<NNNN>`` number for ``table``.

    The latest existing number in the same prefix and month (descending text
    order) is read and its numeric suffix incremented; the sequence starts at
    ``0001``. Nothing is locked, so the caller must insert the new row right
    away on the same connection.
    """
    scope = number_scope(prefix, reference_date)
    rows = db.execute(
        f"SELECT {column} FROM {table} WHERE {column} LIKE ? ORDER BY {column} DESC",
        (f"{scope}%",),
    )

    next_number = 1
    for row in rows:
        existing = row[0] or ""
        if not existing.startswith(scope):
            continue
        suffix = existing.rsplit("-", 1)[-1]
        if _DIGITS.fullmatch(suffix):
            next_number = int(suffix) + 1
            break

    return f"{scope}{next_number:0{NUMBER_WIDTH}d}"


def preview_document_number(db, doc_type, reference_date=None, prefix=None):
    return generate_document_number(
        db,
        doc_type.table,
        doc_type.number_column,
        prefix or doc_type.prefix,
        reference_date or date.today(),
    )


def parse_line_items(form):
    product_ids = form.getlist("product_id[]")
    descriptions = form.getlist("description[]")
    quantities = form.getlist("quantity[]")
    units = form.getlist("unit[]")
    unit_prices = form.getlist("unit_price[]")

    max_len = max(
        len(product_ids),
        len(descriptions),
        len(quantities),
        len(units),
        len(unit_prices),
        0,
    )

    items = []
    for index in range(max_len):
        description = descriptions[index].strip() if index < len(descriptions) else ""
        if not description:
            continue

        raw_product_id = product_ids[index].strip() if index < len(product_ids) else ""
        raw_quantity = quantities[index] if index < len(quantities) else ""
        raw_unit = units[index].strip() if index < len(units) else ""
        raw_price = unit_prices[index] if index < len(unit_prices) else ""

        product_id = None
        if raw_product_id:
            try:
                product_id = int(raw_product_id)
            except ValueError:
                product_id = None

        items.append(
            {
                "product_id": product_id,
                "description": description,
                "quantity": to_decimal(raw_quantity, "1"),
                "unit": raw_unit or None,
                "unit_price": to_decimal(raw_price, "0"),
            }
        )
    return items


def _sql_value(value):
    if isinstance(value, Decimal):
        return float(value)
    return value


def _check_columns(doc_type, header):
    allowed = {column for column, _label, _kind in doc_type.fields}
    unknown = set(header) - allowed
    if unknown:
        raise ValueError(f"Unknown {doc_type.label} fields: {', '.join(sorted(unknown))}")


def _insert_line_items(db, doc_type, document_id, items):
    total = Decimal("0")
    for position, item in enumerate(items):
        quantity = to_decimal(item.get("quantity"), "0")
        unit_price = to_decimal(item.get("unit_price"), "0")
        line_total = quantity * unit_price
        db.execute(
            f"""
            INSERT INTO {doc_type.item_table} (
                {doc_type.parent_column}, product_id, description,
                quantity, unit, unit_price, line_total, item_order
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document_id,
                item.get("product_id"),
                item["description"],
                float(quantity),
                item.get("unit"),
                float(unit_price),
                float(line_total),
                position,
            ),
        )
        total += line_total
    return total


def apply_bill_payment_totals(db, payment_id, discount_amount, withholding_tax_rate):
    """Recompute a bill payment's totals from its stored line items.

    The discount comes off the item subtotal first and withholding tax is
    then taken from the discounted amount. Returns the amount payable.
    """
    subtotal = db.execute(
        "SELECT COALESCE(SUM(line_total), 0) FROM bill_payment_items WHERE bill_payment_id = ?",
        (payment_id,),
    ).fetchone()[0]
    subtotal = to_decimal(subtotal).quantize(CENT)
    discount = to_decimal(discount_amount).quantize(CENT)
    after_discount = subtotal - discount
    withholding_tax = (after_discount * to_decimal(withholding_tax_rate) / 100).quantize(CENT)
    total = after_discount - withholding_tax

    db.execute(
        """
        UPDATE bill_payments
        SET subtotal = ?, discount_amount = ?, total_after_discount = ?,
            withholding_tax_amount = ?, total_amount = ?
        WHERE id = ?
        """,
        (
            float(subtotal),
            float(discount),
            float(after_discount),
            float(withholding_tax),
            float(total),
            payment_id,
        ),
    )
    return total


def create_document(db, doc_type, header, items, user_id=None, prefix=None, after=None):
    """Insert a document and its line items in one transaction.

    ``after(db, document_id)`` runs inside the same transaction before the
    commit. Any failure rolls everything back and raises
    :class:`DocumentWriteError` with the original message. Returns
    ``(document_id, document_number)``.
    """
    _check_columns(doc_type, header)
    reference_date = parse_reference_date(header.get(doc_type.date_column))
    if items and doc_type.item_table is None:
        raise ValueError(f"{doc_type.label} documents do not have line items.")

    columns = [doc_type.number_column, "status", "created_by_user_id", *header.keys()]

    try:
        number = generate_document_number(
            db,
            doc_type.table,
            doc_type.number_column,
            prefix or doc_type.prefix,
            reference_date,
        )
        values = [number, doc_type.default_status, user_id]
        values.extend(_sql_value(value) for value in header.values())
        cursor = db.execute(
            f"INSERT INTO {doc_type.table} ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            values,
        )
        document_id = cursor.lastrowid

        if items:
            total = _insert_line_items(db, doc_type, document_id, items)
            db.execute(
                f"UPDATE {doc_type.table} SET total_amount = ? WHERE id = ?",
                (float(total), document_id),
            )

        if after is not None:
            after(db, document_id)

        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("Rolled back %s creation", doc_type.label)
        raise DocumentWriteError(str(exc)) from exc

    logger.info("Created %s %s (id=%s)", doc_type.label, number, document_id)
    return document_id, number


def replace_document_items(db, doc_type, document_id, header, items, after=None):
    """Update a document's header and swap in a new set of line items.

    Types without an item table only get the header update. ``after`` has
    the same contract as in :func:`create_document`.
    """
    _check_columns(doc_type, header)
    if doc_type.date_column in header:
        parse_reference_date(header[doc_type.date_column])
    if items and doc_type.item_table is None:
        raise ValueError(f"{doc_type.label} documents do not have line items.")

    try:
        if header:
            assignments = ", ".join(f"{column} = ?" for column in header)
            db.execute(
                f"UPDATE {doc_type.table} SET {assignments} WHERE id = ?",
                [*(_sql_value(value) for value in header.values()), document_id],
            )
        if doc_type.item_table is not None:
            db.execute(
                f"DELETE FROM {doc_type.item_table} WHERE {doc_type.parent_column} = ?",
                (document_id,),
            )
            total = _insert_line_items(db, doc_type, document_id, items)
            db.execute(
                f"UPDATE {doc_type.table} SET total_amount = ? WHERE id = ?",
                (float(total), document_id),
            )

        if after is not None:
            after(db, document_id)

        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("Rolled back %s %s update", doc_type.label, document_id)
        raise DocumentWriteError(str(exc)) from exc

    logger.info("Updated %s id=%s with %d items", doc_type.label, document_id, len(items))


def update_document_status(db, doc_type, document_id, status):
    if status not in doc_type.statuses:
        raise ValueError(f"Invalid status: {status}")

    cursor = db.execute(
        f"UPDATE {doc_type.table} SET status = ? WHERE id = ?",
        (status, document_id),
    )
    if cursor.rowcount == 0:
        db.rollback()
        raise LookupError(f"{doc_type.label} {document_id} not found")
    db.commit()
    logger.info("%s id=%s status changed to %s", doc_type.label, document_id, status)


def delete_document(db, doc_type, document_id):
    try:
        if doc_type.item_table is not None:
            db.execute(
                f"DELETE FROM {doc_type.item_table} WHERE {doc_type.parent_column} = ?",
                (document_id,),
            )
        cursor = db.execute(f"DELETE FROM {doc_type.table} WHERE id = ?", (document_id,))
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.exception("Rolled back %s %s deletion", doc_type.label, document_id)
        raise DocumentWriteError(str(exc)) from exc

    if cursor.rowcount:
        logger.info("Deleted %s id=%s", doc_type.label, document_id)
    return cursor.rowcount > 0


def _document_select(doc_type):
    if doc_type.counterparty_table is not None:
        counterparty_join = (
            f"LEFT JOIN {doc_type.counterparty_table} c ON d.{doc_type.counterparty_column} = c.id"
        )
        counterparty_name = "c.name"
    else:
        counterparty_join = ""
        counterparty_name = "NULL"

    return f"""
        SELECT
            d.*,
            d.{doc_type.number_column} AS document_number,
            d.{doc_type.date_column} AS document_date,
            {counterparty_name} AS counterparty_name,
            u.full_name AS created_by_name
        FROM {doc_type.table} d
        {counterparty_join}
        LEFT JOIN users u ON d.created_by_user_id = u.id
    """


def list_documents(db, doc_type, search="", status="", counterparty_id=None, filters=None, page=1, page_size=15):
    """Return ``(rows, total_count)`` for one page of documents."""
    where_clause = " WHERE 1=1 "
    params = []

    if search:
        like_query = like_pattern(search)
        conditions = [f"d.{column} LIKE ? ESCAPE '\\'" for column in doc_type.search_columns]
        params.extend(like_query for _ in doc_type.search_columns)
        if doc_type.counterparty_table is not None:
            conditions.append("c.name LIKE ? ESCAPE '\\'")
            params.append(like_query)
        where_clause += f" AND ({' OR '.join(conditions)}) "

    if status:
        where_clause += " AND d.status = ? "
        params.append(status)

    if counterparty_id is not None and doc_type.counterparty_column is not None:
        where_clause += f" AND d.{doc_type.counterparty_column} = ? "
        params.append(counterparty_id)

    for column, value in (filters or {}).items():
        _check_columns(doc_type, {column: value})
        where_clause += f" AND d.{column} = ? "
        params.append(value)

    select_sql = _document_select(doc_type)
    count_sql = f"SELECT COUNT(*) FROM ({select_sql} {where_clause})"
    total = db.execute(count_sql, params).fetchone()[0]

    page = max(page, 1)
    rows = db.execute(
        f"""
        {select_sql}
        {where_clause}
        ORDER BY d.{doc_type.date_column} DESC, d.id DESC
        LIMIT ? OFFSET ?
        """,
        [*params, page_size, (page - 1) * page_size],
    ).fetchall()
    return rows, total


def get_document(db, doc_type, document_id):
    return db.execute(
        f"{_document_select(doc_type)} WHERE d.id = ?",
        (document_id,),
    ).fetchone()


def get_document_items(db, doc_type, document_id):
    return db.execute(
        f"""
        SELECT id, product_id, description, quantity, unit, unit_price, line_total
        FROM {doc_type.item_table}
        WHERE {doc_type.parent_column} = ?
        ORDER BY item_order ASC, id ASC
        """,
        (document_id,),
    ).fetchall()


def count_by_status(db, doc_type):
    rows = db.execute(
        f"SELECT status, COUNT(*) AS total FROM {doc_type.table} GROUP BY status"
    ).fetchall()
    counts = {status: 0 for status in doc_type.statuses}
    for row in rows:
        counts[row["status"]] = row["total"]
    return counts
