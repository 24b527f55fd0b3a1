import io
import zipfile

import pytest
from starlette.testclient import TestClient

from web_ssh_gateway.gateway import Gateway
from web_ssh_gateway.server import create_app

from conftest import PEM_BYTES

API_KEY_HEADERS = {"X-API-Key": "s3cret", "X-Client-ID": "browser"}


@pytest.fixture
def client(gateway):
    with TestClient(create_app(gateway)) as client:
        yield client


def _connect(client, slot="left", headers=None):
    response = client.post(
        "/api/ssh/upload-key",
        data={"connectionId": slot},
        files={"pemFile": ("key.pem", PEM_BYTES)},
        headers=headers,
    )
    assert response.status_code == 200
    response = client.post(
        "/api/ssh/connect",
        json={"connectionId": slot, "host": "example.com", "port": 22, "username": "alice"},
        headers=headers,
    )
    assert response.status_code == 200


class TestGeneralRoutes:
    """Test informational endpoints"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root_and_status(self, client):
        assert client.get("/").json()["server"] == "web-ssh-gateway"
        status = client.get("/status").json()
        assert status["ssh_connections"] == 0
        assert status["sessions"] == 0


class TestSSHRoutes:
    """Test key upload, connect, disconnect and status"""

    def test_status_before_and_after(self, client):
        response = client.get("/api/ssh/status", params={"connectionId": "left"})
        assert response.json() == {"connected": False, "hasPemKey": False}

        _connect(client)

        response = client.get("/api/ssh/status", params={"connectionId": "left"})
        assert response.json() == {"connected": True, "hasPemKey": True}
        response = client.get("/api/ssh/status", params={"connectionId": "right"})
        assert response.json() == {"connected": False, "hasPemKey": False}

    def test_upload_key_response(self, client):
        response = client.post(
            "/api/ssh/upload-key",
            data={"connectionId": "right"},
            files={"pemFile": ("prod.pem", PEM_BYTES)},
        )
        assert response.json() == {"success": True, "connectionId": "right", "fileName": "prod.pem"}

    def test_upload_key_too_large(self, client):
        response = client.post(
            "/api/ssh/upload-key",
            data={"connectionId": "left"},
            files={"pemFile": ("huge.pem", b"x" * (33 * 1024))},
        )
        assert response.status_code == 413

    def test_upload_key_requires_fields(self, client):
        response = client.post("/api/ssh/upload-key", data={"connectionId": "left"})
        assert response.status_code == 400
        assert "pemFile" in response.json()["error"]

    def test_connect_without_key(self, client):
        response = client.post(
            "/api/ssh/connect",
            json={"connectionId": "left", "host": "example.com", "username": "alice"},
        )
        assert response.status_code == 400
        assert "No PEM key uploaded" in response.json()["error"]

    def test_connect_validation(self, client):
        response = client.post("/api/ssh/connect", json={"connectionId": "left"})
        assert response.status_code == 400
        assert "host" in response.json()["error"]

        response = client.post(
            "/api/ssh/connect",
            json={"connectionId": "left", "host": "h", "username": "u", "port": 70000},
        )
        assert response.status_code == 400

    def test_invalid_json(self, client):
        response = client.post(
            "/api/ssh/connect", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Request body must be valid JSON"}

    def test_disconnect(self, client):
        _connect(client)
        response = client.post("/api/ssh/disconnect", json={"connectionId": "left"})
        assert response.json() == {"success": True}
        # second disconnect is a no-op
        assert client.post("/api/ssh/disconnect", json={"connectionId": "left"}).status_code == 200

        status = client.get("/api/ssh/status", params={"connectionId": "left"}).json()
        assert status == {"connected": False, "hasPemKey": True}

    def test_status_requires_slot(self, client):
        assert client.get("/api/ssh/status").status_code == 400


class TestLocalFileRoutes:
    """Test file routes against the local workspace"""

    def test_listing(self, client, workspace):
        (workspace / "docs").mkdir()
        (workspace / "readme.md").write_text("# hi")

        body = client.get("/api/files").json()

        assert body["path"] == "/"
        assert body["parent"] is None
        names = {e["name"]: e for e in body["entries"]}
        assert names["docs"]["isDirectory"] is True
        assert names["readme.md"]["size"] == 4

    def test_traversal_forbidden(self, client):
        response = client.get("/api/files", params={"path": "/../../etc"})
        assert response.status_code == 403
        assert response.json() == {"error": "Path traversal not allowed"}

    def test_missing_directory(self, client):
        response = client.get("/api/files", params={"path": "/nope"})
        assert response.status_code == 404

    def test_read(self, client, workspace):
        (workspace / "a.txt").write_text("content")

        body = client.get("/api/files/read", params={"path": "/a.txt"}).json()
        assert body["content"] == "content"
        assert body["size"] == 7

        response = client.get("/api/files/read", params={"path": "/"})
        assert response.status_code == 400
        assert response.json() == {"error": "Cannot read a directory"}

    def test_read_too_large(self, client, workspace):
        (workspace / "big.log").write_bytes(b"x" * (1024 * 1024 + 1))
        response = client.get("/api/files/read", params={"path": "/big.log"})
        assert response.status_code == 413
        assert response.json() == {"error": "File too large to preview (max 1MB)"}

    def test_mkdir_rename_delete(self, client, workspace):
        assert client.post("/api/files/mkdir", json={"path": "/new"}).json() == {"success": True}
        response = client.patch("/api/files/rename", json={"oldPath": "/new", "newPath": "/renamed"})
        assert response.json() == {"success": True}
        assert (workspace / "renamed").is_dir()

        response = client.delete("/api/files", params={"path": "/renamed"})
        assert response.json() == {"success": True}
        assert not (workspace / "renamed").exists()

    def test_delete_requires_path(self, client):
        response = client.delete("/api/files")
        assert response.status_code == 400
        assert response.json() == {"error": "Path is required"}

    def test_copy_and_move(self, client, workspace):
        (workspace / "a.txt").write_text("a")
        (workspace / "b.txt").write_text("b")
        (workspace / "dest").mkdir()

        body = client.post(
            "/api/files/copy", json={"sources": ["/a.txt", "/ghost"], "destination": "/dest"}
        ).json()
        assert body["success"] is True
        assert body["results"][0] == {
            "source": "/a.txt",
            "dest": "/dest/a.txt",
            "success": True,
            "error": None,
        }
        assert body["results"][1]["success"] is False

        body = client.post("/api/files/move", json={"sources": ["/b.txt"], "destination": "/dest"}).json()
        assert body["results"][0]["success"] is True
        assert not (workspace / "b.txt").exists()

    def test_batch_validation(self, client, workspace):
        response = client.post("/api/files/copy", json={"sources": [], "destination": "/"})
        assert response.json() == {"error": "Sources array is required"}

        response = client.post("/api/files/move", json={"sources": ["/a"]})
        assert response.json() == {"error": "Destination path is required"}

        (workspace / "file").write_text("f")
        response = client.post("/api/files/copy", json={"sources": ["/a"], "destination": "/file"})
        assert response.json() == {"error": "Destination must be a directory"}

    def test_upload_and_download(self, client, workspace):
        response = client.post(
            "/api/upload",
            data={"path": "/incoming"},
            files={"file": ("photo one.png", b"\x89PNG data")},
        )
        assert response.json() == {
            "success": True,
            "path": "/incoming/photo one.png",
            "filename": "photo one.png",
            "size": 9,
        }
        assert (workspace / "incoming" / "photo one.png").read_bytes() == b"\x89PNG data"

        response = client.get("/api/download", params={"path": "/incoming/photo one.png"})
        assert response.status_code == 200
        assert response.content == b"\x89PNG data"
        assert 'filename="photo one.png"' in response.headers["content-disposition"]

    def test_upload_requires_file(self, client):
        response = client.post("/api/upload", data={"path": "/"})
        assert response.json() == {"error": "No file uploaded"}

    def test_download_directory(self, client, workspace):
        (workspace / "proj").mkdir()
        (workspace / "proj" / "a.txt").write_text("a")

        response = client.get("/api/download", params={"path": "/proj"})

        assert response.headers["content-type"] == "application/zip"
        assert "proj.zip" in response.headers["content-disposition"]
        with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
            assert archive.read("proj/a.txt") == b"a"


class TestRemoteFileRoutes:
    """Test file routes against a connected slot"""

    def test_requires_connection(self, client):
        response = client.get("/api/files", params={"path": "/", "connectionId": "left"})
        assert response.status_code == 409
        assert "not established" in response.json()["error"]

    def test_listing_and_read(self, client, remote_home):
        _connect(client)
        (remote_home / "hello.txt").write_text("hi there")

        body = client.get("/api/files", params={"connectionId": "left"}).json()
        assert body["path"] == str(remote_home)
        assert [e["name"] for e in body["entries"]] == ["hello.txt"]

        body = client.get(
            "/api/files/read", params={"path": str(remote_home / "hello.txt"), "connectionId": "left"}
        ).json()
        assert body["content"] == "hi there"

    def test_remote_upload(self, client, remote_home):
        _connect(client)

        response = client.post(
            "/api/upload/remote",
            data={"path": str(remote_home), "connectionId": "left"},
            files={"file": ("data.bin", b"\x01\x02")},
        )

        assert response.json()["path"] == str(remote_home / "data.bin")
        assert (remote_home / "data.bin").read_bytes() == b"\x01\x02"

    def test_remote_upload_requires_slot(self, client):
        response = client.post("/api/upload/remote", files={"file": ("a", b"a")})
        assert response.json() == {"error": "connectionId is required"}

    def test_transfer(self, client, workspace, remote_home):
        _connect(client)
        (workspace / "report.csv").write_text("1,2")

        body = client.post(
            "/api/files/transfer",
            json={
                "sources": ["/report.csv"],
                "destination": str(remote_home),
                "destConnectionId": "left",
                "operation": "copy",
            },
        ).json()

        assert body["results"][0]["success"] is True
        assert (remote_home / "report.csv").read_text() == "1,2"

    def test_transfer_bad_operation(self, client):
        response = client.post(
            "/api/files/transfer",
            json={"sources": ["/a"], "destination": "/b", "operation": "symlink"},
        )
        assert response.status_code == 400


class TestAuthentication:
    """Test the optional API key / token layer"""

    @pytest.fixture
    def secure_client(self, app_config, client_factory):
        app_config.security.enable_auth = True
        app_config.security.jwt_secret = "test-secret"
        app_config.security.api_keys = {"browser": "s3cret"}
        gateway = Gateway(app_config, client_factory=client_factory, key_loader=lambda b: "pkey")
        with TestClient(create_app(gateway)) as client:
            yield client

    def test_public_paths(self, secure_client):
        assert secure_client.get("/health").status_code == 200

    def test_rejects_anonymous(self, secure_client):
        response = secure_client.get("/api/files")
        assert response.status_code == 401

    def test_api_key_headers(self, secure_client):
        response = secure_client.get(
            "/api/files", headers={"X-API-Key": "s3cret", "X-Client-ID": "browser"}
        )
        assert response.status_code == 200

        response = secure_client.get(
            "/api/files", headers={"X-API-Key": "wrong", "X-Client-ID": "browser"}
        )
        assert response.status_code == 401

    def test_token_flow(self, secure_client):
        response = secure_client.post(
            "/api/auth/token", json={"client_id": "browser", "api_key": "s3cret"}
        )
        token = response.json()["token"]

        response = secure_client.get("/api/files", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

        with secure_client.websocket_connect(f"/ws/terminal?session=s&token={token}") as ws:
            ws.send_text("ping\n")
            assert ws.receive_text() == "ping\n"

    def test_public_status_reveals_only_counts(self, secure_client):
        _connect(secure_client, headers=API_KEY_HEADERS)

        response = secure_client.get("/status")

        assert response.status_code == 200
        assert response.json()["ssh_connections"] == 1
        assert "example.com" not in response.text
        assert "alice" not in response.text

    def test_bad_credentials_for_token(self, secure_client):
        response = secure_client.post(
            "/api/auth/token", json={"client_id": "browser", "api_key": "nope"}
        )
        assert response.status_code == 401
