from conftest import line_items, login, query

from business_app.auth import get_user_permissions
from business_app.db import PERMISSIONS, get_db


class TestLogin:
    """Login and logout"""

    def test_pages_redirect_to_login(self, client):
        response = client.get("/dashboard")
        assert response.status_code == 302
        assert response.headers["Location"].endswith("/login")

    def test_api_and_uploads_require_login(self, client):
        response = client.get("/api/search-products?search=oil")
        assert response.status_code == 401
        assert response.get_json() == {"error": "Unauthorized"}
        assert client.get("/uploads/repairs/anything.jpg").status_code == 401

    def test_login_page_renders(self, client):
        assert client.get("/login").status_code == 200

    def test_missing_fields(self, client):
        response = client.post("/login", data={"identifier": "admin"})
        assert response.status_code == 400
        assert b"Please enter your username or email and password." in response.data

    def test_bad_password(self, client):
        response = login(client, "admin", "wrong")
        assert response.status_code == 401
        assert b"Invalid username or password." in response.data
        assert client.get("/dashboard").status_code == 302

    def test_login_by_email(self, client):
        response = login(client, "admin@example.com", "admin123")
        assert response.status_code == 302
        assert client.get("/dashboard").status_code == 200

    def test_inactive_user_cannot_login(self, auth_client):
        auth_client.post(
            "/users/add",
            data={"username": "temp", "password": "temp1234", "role_id": ""},
        )
        auth_client.post("/logout")
        response = login(auth_client, "temp", "temp1234")
        assert response.status_code == 401

    def test_logout(self, auth_client):
        assert auth_client.post("/logout").status_code == 302
        assert auth_client.get("/dashboard").status_code == 302


class TestPermissions:
    """Role based access"""

    def test_admin_role_has_all_permissions(self, app):
        with app.app_context():
            assert sorted(get_user_permissions(get_db(), 1)) == sorted(PERMISSIONS)

    def test_viewer_can_read_but_not_write(self, viewer_client, app, customer_id):
        assert viewer_client.get("/billing-notes").status_code == 200

        data = {"customer_id": str(customer_id), "billing_date": "2024-03-15"}
        data.update(line_items(("Fee", 1, 10)))
        response = viewer_client.post("/billing-notes/new", data=data)
        assert response.status_code == 403
        assert query(app, "SELECT * FROM billing_notes") == []

    def test_viewer_denied_other_writes(self, viewer_client):
        assert viewer_client.get("/purchase-requests/new").status_code == 403
        assert viewer_client.post("/payments/new", data={}).status_code == 403
        assert viewer_client.post("/customers/add", data={"name": "X"}).status_code == 403

    def test_staff_cannot_manage_users(self, staff_client):
        assert staff_client.get("/users").status_code == 403
        assert staff_client.get("/roles").status_code == 403
        assert staff_client.get("/billing-notes/new").status_code == 200

    def test_granting_permission_to_role(self, app, auth_client, viewer_client):
        viewer_role = query(app, "SELECT id FROM roles WHERE name = 'viewer'")[0]["id"]
        response = auth_client.post(
            f"/roles/{viewer_role}/permissions",
            data={"permissions": ["manage repairs", "not a permission"]},
        )
        assert response.status_code == 302

        viewer_id = query(app, "SELECT id FROM users WHERE username = 'viewer1'")[0]["id"]
        with app.app_context():
            assert get_user_permissions(get_db(), viewer_id) == ["manage repairs"]
        assert viewer_client.get("/repairs/new").status_code == 200


class TestUserManagement:
    """User administration pages"""

    def test_add_edit_and_delete_user(self, app, auth_client):
        staff_role = query(app, "SELECT id FROM roles WHERE name = 'staff'")[0]["id"]
        auth_client.post(
            "/users/add",
            data={
                "username": "clerk",
                "email": "clerk@example.com",
                "full_name": "Office Clerk",
                "password": "clerk123",
                "role_id": str(staff_role),
                "is_active": "on",
            },
        )
        user = query(app, "SELECT * FROM users WHERE username = 'clerk'")[0]
        assert user["role_id"] == staff_role
        assert user["is_active"] == 1

        auth_client.post(
            "/users/edit",
            data={"user_id": str(user["id"]), "username": "clerk", "full_name": "Senior Clerk", "role_id": ""},
        )
        user = query(app, "SELECT * FROM users WHERE username = 'clerk'")[0]
        assert user["full_name"] == "Senior Clerk"
        assert user["role_id"] is None
        assert user["is_active"] == 0

        auth_client.post("/users/delete", data={"user_id": str(user["id"])})
        assert query(app, "SELECT * FROM users WHERE username = 'clerk'") == []

    def test_duplicate_username(self, auth_client):
        response = auth_client.post("/users/add", data={"username": "admin", "password": "x"})
        assert response.headers["Location"].endswith("status=duplicate")

    def test_cannot_delete_self(self, app, auth_client):
        response = auth_client.post("/users/delete", data={"user_id": "1"})
        assert response.headers["Location"].endswith("status=self-delete")
        assert len(query(app, "SELECT * FROM users WHERE id = 1")) == 1

    def test_reset_password(self, auth_client):
        auth_client.post("/users/reset-password", data={"user_id": "1", "new_password": "changed456"})
        auth_client.post("/logout")
        assert login(auth_client, "admin", "admin123").status_code == 401
        assert login(auth_client, "admin", "changed456").status_code == 302

    def test_users_page_lists_roles(self, auth_client):
        response = auth_client.get("/users")
        assert response.status_code == 200
        assert b"admin" in response.data
        assert b"viewer" in response.data
