import io

from conftest import line_items, query, reject_writes, stored_files


def _bill_payment_form(vendor_id, *rows, **overrides):
    data = {
        "vendor_id": str(vendor_id),
        "payment_date": "2024-08-20",
        "payment_reference": "SP-7781",
        "discount_amount": "100",
        "withholding_tax_rate": "3",
        "notes": "August parts",
    }
    data.update(overrides)
    data.update(line_items(*rows))
    return data


class TestBillPayments:
    """Vendor bill payments with discount and withholding tax"""

    def test_create_computes_totals(self, auth_client, app, vendor_id, product_id):
        response = auth_client.post(
            "/bill-payments/new",
            data=_bill_payment_form(
                vendor_id,
                ("Brake pads", 2, 800, product_id),
                ("Fitting", 1, 400, product_id),
            ),
        )
        assert response.status_code == 303
        assert response.headers["Location"].endswith("/bill-payments/1")

        payment = query(app, "SELECT * FROM bill_payments")[0]
        assert payment["payment_number"] == "BP-202408-0001"
        assert payment["status"] == "Draft"
        assert payment["subtotal"] == 2000.0
        assert payment["discount_amount"] == 100.0
        assert payment["total_after_discount"] == 1900.0
        assert payment["withholding_tax_rate"] == 3.0
        assert payment["withholding_tax_amount"] == 57.0
        assert payment["total_amount"] == 1843.0

        items = query(app, "SELECT description, item_order FROM bill_payment_items ORDER BY id")
        assert items == [
            {"description": "Brake pads", "item_order": 0},
            {"description": "Fitting", "item_order": 1},
        ]

        page = auth_client.get("/bill-payments/1").data
        assert b"1,843.00" in page
        assert b"Siam Parts" in page

    def test_attachments_share_the_transaction(self, auth_client, app, vendor_id, product_id):
        data = _bill_payment_form(vendor_id, ("Brake pads", 1, 800, product_id))
        data["attachments"] = [(io.BytesIO(b"%PDF-1.4 bill"), "vendor bill.pdf")]
        response = auth_client.post("/bill-payments/new", data=data, content_type="multipart/form-data")
        assert response.status_code == 303

        attachments = query(app, "SELECT * FROM bill_payment_attachments")
        assert len(attachments) == 1
        assert attachments[0]["bill_payment_id"] == 1
        assert attachments[0]["file_original_name"] == "vendor bill.pdf"
        assert attachments[0]["file_path"].startswith("bill_payments/")
        assert len(stored_files(app, "bill_payments")) == 1
        assert b"vendor bill.pdf" in auth_client.get("/bill-payments/1").data

    def test_failed_attachment_row_rolls_back_everything(self, auth_client, app, vendor_id, product_id):
        reject_writes(app, "bill_payment_attachments", message="attachment table is read-only")

        data = _bill_payment_form(vendor_id, ("Brake pads", 1, 800, product_id))
        data["attachments"] = [(io.BytesIO(b"%PDF-1.4 bill"), "vendor bill.pdf")]
        response = auth_client.post("/bill-payments/new", data=data, content_type="multipart/form-data")

        assert response.status_code == 500
        assert b"Error: attachment table is read-only" in response.data
        assert query(app, "SELECT * FROM bill_payments") == []
        assert query(app, "SELECT * FROM bill_payment_items") == []
        assert stored_files(app, "bill_payments") == []

    def test_validation(self, auth_client, app, vendor_id, product_id):
        response = auth_client.post("/bill-payments/new", data=_bill_payment_form(vendor_id, ("Loose part", 1, 50)))
        assert response.status_code == 400
        assert b"Product is required for all line items." in response.data

        response = auth_client.post(
            "/bill-payments/new",
            data=_bill_payment_form(vendor_id, ("Part", 1, 50, product_id), discount_amount="60"),
        )
        assert response.status_code == 400
        assert b"Discount cannot exceed the subtotal." in response.data

        response = auth_client.post(
            "/bill-payments/new",
            data=_bill_payment_form(vendor_id, ("Part", 1, 50, product_id), payment_date=""),
        )
        assert response.status_code == 400
        assert b"Payment date" in response.data

        response = auth_client.post("/bill-payments/new", data=_bill_payment_form(vendor_id))
        assert response.status_code == 400
        assert b"Please add at least one line item." in response.data

        assert query(app, "SELECT * FROM bill_payments") == []

    def test_edit_recomputes_totals(self, auth_client, app, vendor_id, product_id):
        auth_client.post("/bill-payments/new", data=_bill_payment_form(vendor_id, ("Part", 2, 500, product_id)))

        response = auth_client.post(
            "/bill-payments/1/edit",
            data=_bill_payment_form(
                vendor_id,
                ("Part", 1, 500, product_id),
                discount_amount="0",
                withholding_tax_rate="0",
            ),
        )
        assert response.status_code == 302

        payment = query(
            app,
            "SELECT payment_number, subtotal, withholding_tax_amount, total_amount FROM bill_payments",
        )[0]
        assert payment == {
            "payment_number": "BP-202408-0001",
            "subtotal": 500.0,
            "withholding_tax_amount": 0.0,
            "total_amount": 500.0,
        }

    def test_delete_removes_attachments(self, auth_client, app, vendor_id, product_id):
        data = _bill_payment_form(vendor_id, ("Part", 1, 500, product_id))
        data["attachments"] = [(io.BytesIO(b"receipt"), "receipt.jpg")]
        auth_client.post("/bill-payments/new", data=data, content_type="multipart/form-data")

        response = auth_client.post("/bill-payments/delete", data={"document_id": "1"})
        assert response.status_code == 302
        assert query(app, "SELECT * FROM bill_payments") == []
        assert query(app, "SELECT * FROM bill_payment_attachments") == []
        assert stored_files(app, "bill_payments") == []

    def test_listing_and_status(self, auth_client, vendor_id, product_id):
        auth_client.post("/bill-payments/new", data=_bill_payment_form(vendor_id, ("Part", 1, 500, product_id)))
        assert auth_client.post("/bill-payments/1/status", data={"status": "Paid"}).status_code == 302

        listing = auth_client.get("/bill-payments?status=Paid").data
        assert b"BP-202408-0001" in listing
        listing = auth_client.get("/bill-payments?q=SP-7781").data
        assert b"BP-202408-0001" in listing
