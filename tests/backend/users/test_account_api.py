"""End-to-end tests for the account HTTP endpoints."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from fastapi.testclient import TestClient

from backend.app.config import AppConfig, load_config
from backend.app.main import create_app

PREFIX = "/api/v1/users"


class _StubStorage:
    def __init__(self) -> None:
        self.uploaded: List[Path] = []

    def store(self, path: Path, content_type: Optional[str] = None) -> str:
        self.uploaded.append(path)
        return f"https://media.example/avatars/{len(self.uploaded)}.png"


def _config(tmp_path: Path, *, refresh_requires_access_token: bool = True) -> AppConfig:
    config = load_config()
    auth_config = config.auth.model_copy(
        update={
            "database_url": f"sqlite+aiosqlite:///{tmp_path / 'accounts.db'}",
            "cookies": config.auth.cookies.model_copy(update={"secure": False}),
            "refresh_requires_access_token": refresh_requires_access_token,
        }
    )
    return config.model_copy(update={"auth": auth_config})


def _client(tmp_path: Path, storage: Optional[_StubStorage] = None, **overrides) -> TestClient:
    app = create_app(config=_config(tmp_path, **overrides), storage=storage or _StubStorage())
    return TestClient(app)


def _register(client: TestClient, **overrides):
    data = {"name": "alice", "username": "alice", "email": "a@x.com", "password": "secret1"}
    data.update(overrides)
    return client.post(f"{PREFIX}/register", data=data)


def _login(client: TestClient, identifier: str = "alice", password: str = "secret1"):
    return client.post(
        f"{PREFIX}/login", json={"usernameOrEmail": identifier, "password": password}
    )


def test_register_login_and_fetch_current_user(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["statusCode"] == 201
        assert body["message"] == "User registered successfully"
        assert body["data"]["username"] == "alice"
        assert "password" not in body["data"]
        assert "refreshToken" not in body["data"]

        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["accessToken"] == response.cookies["accessToken"]
        assert data["refreshToken"] == response.cookies["refreshToken"]
        assert "password" not in data["user"]

        response = client.get(f"{PREFIX}/user")
        assert response.status_code == 200
        user = response.json()["data"]
        assert user["name"] == "alice"
        assert "password" not in user


def test_register_with_avatar_upload(tmp_path: Path) -> None:
    storage = _StubStorage()
    with _client(tmp_path, storage) as client:
        response = client.post(
            f"{PREFIX}/register",
            data={"name": "alice", "username": "alice", "email": "a@x.com", "password": "secret1"},
            files={"avatar": ("me.png", b"\x89PNG data", "image/png")},
        )
        assert response.status_code == 201
        assert response.json()["data"]["avatar"] == "https://media.example/avatars/1.png"
        assert len(storage.uploaded) == 1
        assert not storage.uploaded[0].exists()


def test_register_rejects_second_avatar_file(tmp_path: Path) -> None:
    storage = _StubStorage()
    with _client(tmp_path, storage) as client:
        response = client.post(
            f"{PREFIX}/register",
            data={"name": "alice", "username": "alice", "email": "a@x.com", "password": "secret1"},
            files=[
                ("avatar", ("one.png", b"one", "image/png")),
                ("avatar", ("two.png", b"two", "image/png")),
            ],
        )
        assert response.status_code == 400
        assert storage.uploaded == []


def test_register_blank_and_duplicate(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = _register(client, name="  ")
        assert response.status_code == 400
        assert response.json() == {
            "statusCode": 400,
            "message": "All fields are required",
            "success": False,
        }

        assert _register(client).status_code == 201
        response = _register(client, email="other@x.com")
        assert response.status_code == 409
        assert response.json()["success"] is False


def test_login_errors(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        _register(client)
        assert client.post(f"{PREFIX}/login", json={"password": "secret1"}).status_code == 400
        assert _login(client, identifier="nobody").status_code == 404
        response = _login(client, password="wrong")
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid user credentials"
        assert "accessToken" not in response.cookies


def test_protected_routes_require_credentials(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        for method, path in (
            ("get", "/user"),
            ("post", "/logout"),
            ("post", "/update-password"),
            ("post", "/update-user-details"),
            ("post", "/update-avatar"),
            ("post", "/refresh-token"),
        ):
            response = getattr(client, method)(f"{PREFIX}{path}")
            assert response.status_code == 401, path
            assert response.json()["success"] is False

        response = client.get(
            f"{PREFIX}/user", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401


def test_bearer_header_authenticates(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        _register(client)
        access_token = _login(client).json()["data"]["accessToken"]
        client.cookies.clear()

        response = client.get(
            f"{PREFIX}/user", headers={"Authorization": f"Bearer {access_token}"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["username"] == "alice"


def test_refresh_and_logout_flow(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        _register(client)
        first_refresh = _login(client).json()["data"]["refreshToken"]

        response = client.post(f"{PREFIX}/refresh-token")
        assert response.status_code == 200
        tokens = response.json()["data"]
        assert tokens["refreshToken"] != first_refresh
        assert response.cookies["refreshToken"] == tokens["refreshToken"]

        response = client.post(f"{PREFIX}/logout")
        assert response.status_code == 200
        assert response.json()["message"] == "User logged out"

        # Access token is still valid, the refresh token is not.
        client.cookies.clear()
        response = client.post(
            f"{PREFIX}/refresh-token",
            json={"refreshToken": tokens["refreshToken"]},
            headers={"Authorization": f"Bearer {tokens['accessToken']}"},
        )
        assert response.status_code == 401


def test_refresh_without_access_token_when_gate_disabled(tmp_path: Path) -> None:
    with _client(tmp_path, refresh_requires_access_token=False) as client:
        _register(client)
        refresh = _login(client).json()["data"]["refreshToken"]
        client.cookies.clear()

        response = client.post(f"{PREFIX}/refresh-token", json={"refreshToken": refresh})
        assert response.status_code == 200
        client.cookies.clear()

        response = client.post(f"{PREFIX}/refresh-token", json={"refreshToken": refresh})
        assert response.status_code == 401
        assert response.json()["message"] == "Refresh token is expired or used"


def test_update_password_and_details(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        _register(client)
        _register(client, name="bob", username="bob", email="b@x.com")
        _login(client)

        response = client.post(
            f"{PREFIX}/update-password",
            json={"oldPassword": "secret1", "newPassword": "secret1", "confirmPassword": "secret1"},
        )
        assert response.status_code == 400

        response = client.post(
            f"{PREFIX}/update-password",
            json={"oldPassword": "secret1", "newPassword": "secret2", "confirmPassword": "nope"},
        )
        assert response.status_code == 400

        response = client.post(
            f"{PREFIX}/update-password",
            json={"oldPassword": "secret1", "newPassword": "secret2", "confirmPassword": "secret2"},
        )
        assert response.status_code == 200

        assert client.post(f"{PREFIX}/update-user-details", json={"username": "alice"}).status_code == 409
        assert client.post(f"{PREFIX}/update-user-details", json={"email": "b@x.com"}).status_code == 409
        assert client.post(f"{PREFIX}/update-user-details", json={}).status_code == 400
        assert client.post(f"{PREFIX}/update-user-details", json={"email": "bad"}).status_code == 400

        response = client.post(f"{PREFIX}/update-user-details", json={"name": "Alice L."})
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alice L."

        assert _login(client, password="secret1").status_code == 401
        assert _login(client, password="secret2").status_code == 200


def test_update_avatar_endpoint(tmp_path: Path) -> None:
    storage = _StubStorage()
    with _client(tmp_path, storage) as client:
        _register(client)
        _login(client)

        response = client.post(f"{PREFIX}/update-avatar")
        assert response.status_code == 400
        assert response.json()["message"] == "Avatar file is missing"

        response = client.post(
            f"{PREFIX}/update-avatar", files={"avatar": ("me.gif", b"GIF89a", "image/gif")}
        )
        assert response.status_code == 200
        assert response.json()["data"]["avatar"] == "https://media.example/avatars/1.png"


def test_unknown_route_uses_error_envelope(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.get(f"{PREFIX}/does-not-exist")
        assert response.status_code == 404
        assert response.json()["success"] is False


def test_oversized_json_body_rejected(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.post(
            f"{PREFIX}/login",
            json={"usernameOrEmail": "alice", "password": "x" * (32 * 1024)},
        )
        assert response.status_code == 413


def test_health_endpoint(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": "1.0.0"}


def test_passwords_longer_than_bcrypt_limit_are_rejected(tmp_path: Path) -> None:
    # 40 two-byte characters: 40 characters but 80 bytes.
    long_password = "é" * 40
    with _client(tmp_path) as client:
        response = _register(client, password=long_password)
        assert response.status_code == 400
        assert response.json()["success"] is False
        assert _login(client, password="é" * 36 + "zzzz").status_code == 404

        assert _register(client).status_code == 201
        _login(client)
        response = client.post(
            f"{PREFIX}/update-password",
            json={
                "oldPassword": "secret1",
                "newPassword": long_password,
                "confirmPassword": long_password,
            },
        )
        assert response.status_code == 400
        assert _login(client, password="secret1").status_code == 200


def _expired_access_token(client: TestClient, user: dict) -> str:
    jwt_manager = client.app.state.jwt_manager
    return jwt_manager.create_access_token(
        user["id"],
        username=user["username"],
        email=user["email"],
        issued_at=datetime.now(timezone.utc) - timedelta(hours=2),
    )


def test_refresh_ignores_stale_access_token_when_gate_disabled(tmp_path: Path) -> None:
    with _client(tmp_path, refresh_requires_access_token=False) as client:
        _register(client)
        data = _login(client).json()["data"]
        client.cookies.clear()

        response = client.post(
            f"{PREFIX}/refresh-token",
            json={"refreshToken": data["refreshToken"]},
            headers={"Authorization": f"Bearer {_expired_access_token(client, data['user'])}"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["refreshToken"] != data["refreshToken"]


def test_refresh_with_stale_access_token_rejected_when_gate_enabled(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        _register(client)
        data = _login(client).json()["data"]
        client.cookies.clear()

        response = client.post(
            f"{PREFIX}/refresh-token",
            json={"refreshToken": data["refreshToken"]},
            headers={"Authorization": f"Bearer {_expired_access_token(client, data['user'])}"},
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Unauthorized request"


def test_oversized_body_response_keeps_cors_headers(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.post(
            f"{PREFIX}/login",
            json={"usernameOrEmail": "alice", "password": "x" * (32 * 1024)},
            headers={"Origin": "http://localhost:3000"},
        )
        assert response.status_code == 413
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_chunked_body_without_length_is_capped(tmp_path: Path) -> None:
    def _chunks() -> Iterator[bytes]:
        yield b'{"usernameOrEmail": "alice", "password": "'
        yield b"x" * (32 * 1024)
        yield b'"}'

    with _client(tmp_path) as client:
        response = client.post(
            f"{PREFIX}/login",
            content=_chunks(),
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 413
        assert response.json()["message"] == "Request body too large"

        _register(client)
        small = iter([b'{"usernameOrEmail": "alice", ', b'"password": "secret1"}'])
        response = client.post(
            f"{PREFIX}/login", content=small, headers={"content-type": "application/json"}
        )
        assert response.status_code == 200
