import io
from datetime import date

import pytest
from werkzeug.datastructures import FileStorage

from conftest import query, reject_writes, stored_files

from business_app.uploads import resolve_upload, save_upload

MONTH = date.today().strftime("%Y%m")


def _repair_form(**overrides):
    data = {
        "asset_name": "Forklift FL-02",
        "vin": "mr0test1234567890",
        "location_name": "Warehouse B",
        "reporter_name": "Somsak",
        "contact_info": "081-234-5678",
        "issue_description": "Hydraulic leak under the mast",
        "repair_image": (io.BytesIO(b"\xff\xd8\xff fake jpeg"), "leak photo.JPG"),
    }
    data.update(overrides)
    return {key: value for key, value in data.items() if value is not None}


class TestSaveUpload:
    """Storing uploaded files"""

    def test_random_name_keeps_extension(self, app, tmp_path):
        with app.app_context():
            stored = save_upload(FileStorage(io.BytesIO(b"data"), filename="../../etc/Report.PDF"), "invoices")
        area, name = stored.split("/")
        assert area == "invoices"
        assert name.endswith(".pdf")
        assert len(name) == 32 + len(".pdf")
        assert (tmp_path / "uploads" / "invoices" / name).read_bytes() == b"data"

    def test_empty_upload_is_ignored(self, app, tmp_path):
        with app.app_context():
            assert save_upload(FileStorage(io.BytesIO(b""), filename="empty.png"), "assets") is None
            assert save_upload(FileStorage(io.BytesIO(b"x"), filename=""), "assets") is None
            assert save_upload(None, "assets") is None
        assert list((tmp_path / "uploads" / "assets").glob("*")) == []

    def test_unknown_area(self, app):
        with app.app_context(), pytest.raises(ValueError):
            save_upload(FileStorage(io.BytesIO(b"x"), filename="a.txt"), "secrets")

    def test_resolve_rejects_traversal(self, app, tmp_path):
        (tmp_path / "outside.txt").write_text("secret")
        with app.app_context():
            assert resolve_upload("../outside.txt") is None
            assert resolve_upload(str(tmp_path / "outside.txt")) is None
            assert resolve_upload("repairs/missing.jpg") is None


class TestServeUploads:
    """Serving stored files"""

    def test_serves_file_with_cache_header(self, auth_client, app):
        auth_client.post("/repairs/new", data=_repair_form(), content_type="multipart/form-data")
        image_path = query(app, "SELECT image_path FROM asset_repairs")[0]["image_path"]

        response = auth_client.get(f"/uploads/{image_path}")
        assert response.status_code == 200
        assert response.data == b"\xff\xd8\xff fake jpeg"
        assert response.mimetype == "image/jpeg"
        assert "max-age=3600" in response.headers["Cache-Control"]

    def test_traversal_and_missing_files(self, auth_client):
        assert auth_client.get("/uploads/..%2Fbusiness.sqlite").status_code == 404
        assert auth_client.get("/uploads/repairs/nothing.jpg").status_code == 404


class TestRepairs:
    """Repair tickets"""

    def test_create_ticket(self, auth_client, app):
        response = auth_client.post("/repairs/new", data=_repair_form(), content_type="multipart/form-data")
        assert response.status_code == 302
        assert response.headers["Location"].endswith("/repairs/1")

        repair = query(app, "SELECT * FROM asset_repairs")[0]
        assert repair["ticket_code"] == f"RP-{MONTH}-0001"
        assert repair["status"] == "Pending"
        assert repair["vin"] == "MR0TEST1234567890"
        assert repair["image_path"].startswith("repairs/")
        assert repair["image_path"].endswith(".jpg")

        page = auth_client.get("/repairs/1")
        assert b"Hydraulic leak under the mast" in page.data

    def test_ticket_numbers_increment(self, auth_client, app):
        for _ in range(2):
            auth_client.post("/repairs/new", data=_repair_form(repair_image=None))
        codes = [row["ticket_code"] for row in query(app, "SELECT ticket_code FROM asset_repairs ORDER BY id")]
        assert codes == [f"RP-{MONTH}-0001", f"RP-{MONTH}-0002"]

    def test_missing_fields(self, auth_client, app):
        response = auth_client.post("/repairs/new", data=_repair_form(reporter_name="", repair_image=None))
        assert response.status_code == 400
        assert query(app, "SELECT * FROM asset_repairs") == []

    def test_status_update_with_completion_photo(self, auth_client, app):
        auth_client.post("/repairs/new", data=_repair_form(repair_image=None))
        response = auth_client.post(
            "/repairs/1/status",
            data={
                "status": "Completed",
                "admin_notes": "Replaced seal",
                "completion_image": (io.BytesIO(b"done"), "done.png"),
            },
            content_type="multipart/form-data",
        )
        assert response.status_code == 302

        repair = query(app, "SELECT * FROM asset_repairs")[0]
        assert repair["status"] == "Completed"
        assert repair["admin_notes"] == "Replaced seal"
        assert repair["completion_image_path"].endswith(".png")
        assert repair["updated_at"] is not None

    def test_failed_status_update_discards_photo(self, auth_client, app):
        auth_client.post("/repairs/new", data=_repair_form(repair_image=None))
        reject_writes(app, "asset_repairs", "UPDATE", message="repairs are locked")

        response = auth_client.post(
            "/repairs/1/status",
            data={"status": "Completed", "completion_image": (io.BytesIO(b"done"), "done.png")},
            content_type="multipart/form-data",
        )
        assert response.status_code == 500

        repair = query(app, "SELECT status, completion_image_path FROM asset_repairs")[0]
        assert repair == {"status": "Pending", "completion_image_path": None}
        assert stored_files(app, "repairs") == []

    def test_invalid_status_and_missing_ticket(self, auth_client):
        auth_client.post("/repairs/new", data=_repair_form(repair_image=None))
        assert auth_client.post("/repairs/1/status", data={"status": "Lost"}).status_code == 400
        assert auth_client.post("/repairs/9/status", data={"status": "Completed"}).status_code == 404

    def test_delete_removes_photo(self, auth_client, app, tmp_path):
        auth_client.post("/repairs/new", data=_repair_form(), content_type="multipart/form-data")
        image_path = query(app, "SELECT image_path FROM asset_repairs")[0]["image_path"]
        assert (tmp_path / "uploads" / image_path).is_file()

        response = auth_client.post("/repairs/delete", data={"repair_id": "1"})
        assert response.status_code == 302
        assert not (tmp_path / "uploads" / image_path).exists()
        assert query(app, "SELECT * FROM asset_repairs") == []

    def test_status_filter(self, auth_client):
        auth_client.post("/repairs/new", data=_repair_form(repair_image=None))
        auth_client.post("/repairs/new", data=_repair_form(repair_image=None, asset_name="Truck 7"))
        auth_client.post("/repairs/2/status", data={"status": "Cancelled"})

        listing = auth_client.get("/repairs?status=Pending").data
        assert b"Forklift FL-02" in listing
        assert b"Truck 7" not in listing


class TestAssets:
    """Asset register"""

    def _add_asset(self, client, **overrides):
        data = {
            "name": "Air compressor",
            "category": "Tools",
            "location": "Workshop",
            "status": "In Use",
            "purchase_date": "2023-08-01",
            "purchase_cost": "18500",
            "image": (io.BytesIO(b"first image"), "compressor.jpg"),
        }
        data.update(overrides)
        data = {key: value for key, value in data.items() if value is not None}
        return client.post("/assets/add", data=data, content_type="multipart/form-data")

    def test_add_asset(self, auth_client, app):
        assert self._add_asset(auth_client).status_code == 302
        asset = query(app, "SELECT * FROM assets")[0]
        assert asset["asset_tag"] == f"AST-{MONTH}-0001"
        assert asset["purchase_cost"] == 18500.0
        assert asset["image_path"].startswith("assets/")

    def test_status_defaults_and_validation(self, auth_client, app):
        self._add_asset(auth_client, status="", image=None)
        assert query(app, "SELECT status FROM assets")[0]["status"] == "In Storage"
        assert self._add_asset(auth_client, status="Stolen", image=None).status_code == 400
        assert self._add_asset(auth_client, name="", image=None).status_code == 400

    def test_edit_replaces_image(self, auth_client, app, tmp_path):
        self._add_asset(auth_client)
        old_path = query(app, "SELECT image_path FROM assets")[0]["image_path"]

        response = auth_client.post(
            "/assets/1/edit",
            data={
                "name": "Air compressor 50L",
                "status": "Under Maintenance",
                "image": (io.BytesIO(b"second image"), "compressor-new.png"),
            },
            content_type="multipart/form-data",
        )
        assert response.status_code == 302

        asset = query(app, "SELECT * FROM assets")[0]
        assert asset["name"] == "Air compressor 50L"
        assert asset["status"] == "Under Maintenance"
        assert asset["image_path"] != old_path
        assert not (tmp_path / "uploads" / old_path).exists()
        assert (tmp_path / "uploads" / asset["image_path"]).read_bytes() == b"second image"

    def test_edit_without_image_keeps_it(self, auth_client, app):
        self._add_asset(auth_client)
        old_path = query(app, "SELECT image_path FROM assets")[0]["image_path"]
        auth_client.post("/assets/1/edit", data={"name": "Compressor", "status": "In Use"})
        assert query(app, "SELECT image_path FROM assets")[0]["image_path"] == old_path

    def test_delete_removes_image(self, auth_client, app, tmp_path):
        self._add_asset(auth_client)
        image_path = query(app, "SELECT image_path FROM assets")[0]["image_path"]
        assert auth_client.post("/assets/delete", data={"asset_id": "1"}).status_code == 302
        assert not (tmp_path / "uploads" / image_path).exists()
        assert auth_client.post("/assets/delete", data={"asset_id": "1"}).status_code == 404

    def test_search(self, auth_client):
        self._add_asset(auth_client, image=None)
        self._add_asset(auth_client, name="Pallet jack", category="Handling", image=None)
        listing = auth_client.get("/assets?q=Handling").data
        assert b"Pallet jack" in listing
        assert b"Air compressor" not in listing

    def test_search_wildcards_match_literally(self, auth_client):
        self._add_asset(auth_client, name="Drill_01", image=None)
        self._add_asset(auth_client, name="DrillX01", image=None)
        listing = auth_client.get("/assets?q=Drill_").data
        assert b"Drill_01" in listing
        assert b"DrillX01" not in listing

    def test_edit_with_blank_status_keeps_current(self, auth_client, app):
        self._add_asset(auth_client, image=None)
        response = auth_client.post("/assets/1/edit", data={"name": "Compressor", "status": ""})
        assert response.status_code == 302
        assert query(app, "SELECT status FROM assets")[0]["status"] == "In Use"

    def test_failed_edit_discards_new_image(self, auth_client, app):
        self._add_asset(auth_client)
        old_path = query(app, "SELECT image_path FROM assets")[0]["image_path"]
        reject_writes(app, "assets", "UPDATE", message="assets are locked")

        response = auth_client.post(
            "/assets/1/edit",
            data={"name": "Renamed", "image": (io.BytesIO(b"second image"), "new.png")},
            content_type="multipart/form-data",
        )
        assert response.status_code == 500

        asset = query(app, "SELECT name, image_path FROM assets")[0]
        assert asset == {"name": "Air compressor", "image_path": old_path}
        assert stored_files(app, "assets") == [old_path.split("/", 1)[1]]
