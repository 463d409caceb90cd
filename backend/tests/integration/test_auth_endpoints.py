"""
Integration tests for /api/auth and for how its tokens gate the other routers.
"""

import pytest
import sys
import os

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


def _register(client, username, /, role=None, **overrides):
    body = {
        "username": username,
        "email": f"{username}@clinic.example.com",
        "password": "Radiology123!",
        "full_name": username.title(),
    }
    if role is not None:
        body["role"] = role
    body.update(overrides)
    return client.post("/api/auth/register", json=body)


class TestRegister:
    """Tests for POST /api/auth/register."""

    def test_defaults_to_patient(self, client):
        response = _register(client, "jdoe")

        assert response.status_code == 201
        data = response.json()
        assert data["role"] == "patient"
        assert data["is_active"] is True
        assert "hashed_password" not in data

    @pytest.mark.parametrize("role", ["doctor", "admin"])
    def test_staff_roles(self, client, role):
        response = _register(client, f"staff_{role}", role=role)

        assert response.status_code == 201
        assert response.json()["role"] == role

    def test_unknown_role(self, client):
        response = _register(client, "rad", role="radiologist")

        assert response.status_code == 400
        assert "invalid role" in response.json()["detail"].lower()

    def test_taken_username_or_email(self, client, test_user):
        assert _register(client, test_user.username).status_code == 400
        response = _register(client, "someone_else", email=test_user.email)
        assert response.status_code == 400
        assert "already registered" in response.json()["detail"].lower()

    @pytest.mark.parametrize("overrides", [
        {"email": "not-an-email"},
        {"password": "short"},
        {"username": None},
    ])
    def test_rejected_payloads(self, client, overrides):
        assert _register(client, "badpayload", **overrides).status_code == 422


class TestLogin:
    """Tests for POST /api/auth/login."""

    def test_issues_bearer_token(self, client, test_user, test_user_data):
        response = client.post("/api/auth/login", json={
            "username": test_user_data["username"],
            "password": test_user_data["password"],
        })

        assert response.status_code == 200
        assert response.json()["token_type"] == "bearer"
        assert response.json()["access_token"]

    def test_wrong_password(self, client, test_user, test_user_data):
        response = client.post("/api/auth/login", json={
            "username": test_user_data["username"],
            "password": "WrongPassword123!",
        })

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestErrorMapping:
    """The principal errors render as {"detail", "error"} bodies."""

    def test_no_token(self, client):
        response = client.get("/api/auth/me")

        assert response.status_code == 401
        assert response.json()["error"] == "AuthMissing"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.parametrize("header", ["Bearer invalid_token_here", "Bearer ", "some_token"])
    def test_unusable_token(self, client, header):
        response = client.get("/api/diagnostics/records", headers={"Authorization": header})

        assert response.status_code == 401
        assert response.json()["error"] == "AuthMissing"

    def test_expired_token(self, client, expired_token):
        response = client.get("/api/diagnostics/records", headers={"Authorization": f"Bearer {expired_token}"})

        assert response.status_code == 401
        assert response.json()["error"] == "AuthExpired"

    def test_inactive_account(self, client, inactive_auth_headers):
        response = client.get("/api/auth/me", headers=inactive_auth_headers)

        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden"


class TestTokenFlow:

    def test_register_login_upload(self, client, sample_image_bytes):
        assert _register(client, "flowuser").status_code == 201
        token = client.post("/api/auth/login", json={
            "username": "flowuser",
            "password": "Radiology123!",
        }).json()["access_token"]
        headers = {"Authorization": f"Bearer {token}"}

        me = client.get("/api/auth/me", headers=headers).json()
        upload = client.post(
            "/api/diagnostics/upload",
            files=[("images", ("chest.png", sample_image_bytes, "image/png"))],
            data={"modality": "xray", "bodyPart": "chest"},
            headers=headers,
        )

        assert me["username"] == "flowuser"
        assert upload.status_code == 201

    def test_registered_doctor_can_diagnose_but_not_administer(self, client, auth_headers, sample_image_bytes):
        _register(client, "drwho", role="doctor")
        token = client.post("/api/auth/login", json={"username": "drwho", "password": "Radiology123!"}).json()["access_token"]
        doctor = {"Authorization": f"Bearer {token}"}
        record_id = client.post(
            "/api/diagnostics/upload",
            files=[("images", ("chest.png", sample_image_bytes, "image/png"))],
            data={"modality": "xray", "bodyPart": "chest"},
            headers=auth_headers,
        ).json()["recordId"]

        diagnosis = client.patch(
            f"/api/diagnostics/records/{record_id}/diagnosis",
            json={"doctorDiagnosis": "Normal study"},
            headers=doctor,
        )

        assert diagnosis.status_code == 200
        assert client.get("/api/admin/models", headers=doctor).status_code == 403
