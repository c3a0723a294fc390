import os

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from starlette.requests import Request

from filedrop.config import ConfigStore
from filedrop.main import client_ip, create_app, parse_content_length

from conftest import write_config


@pytest.fixture
def client(store):
    """Test client running the full lifespan against isolated directories."""
    app = create_app(store)
    with TestClient(app) as test_client:
        yield test_client


def generate_random_content(size_bytes):
    """Generate random binary content of specified size."""
    return os.urandom(size_bytes)


def test_put_get_file(client, upload_dir):
    """Upload a file, then download it by its public name."""
    content = generate_random_content(4096)

    response = client.put("/holiday.png", content=content)
    assert response.status_code == 200
    public_name = response.text
    assert public_name.endswith(".holiday.png")
    assert (upload_dir / public_name).read_bytes() == content

    response = client.get(f"/file/{public_name}")
    assert response.status_code == 200
    assert response.content == content
    assert response.headers.get("content-type") == "image/png"


def test_stats(client):
    sizes = [100, 2000, 30000]
    for i, size in enumerate(sizes):
        assert client.put(f"/file{i}.bin", content=generate_random_content(size)).status_code == 200

    stats = client.get("/stats").json()
    assert stats["file_count"] == 3
    assert stats["storage_used"] == sum(sizes)
    assert stats["max_upload"] == 1024 * 1024
    assert stats["uptime"] >= 0


def test_put_too_large(client, upload_dir, temp_dir):
    response = client.put("/big.bin", content=generate_random_content(1024 * 1024 + 1))
    assert response.status_code == 413
    assert list(upload_dir.iterdir()) == []
    assert list(temp_dir.iterdir()) == []
    assert client.get("/stats").json()["file_count"] == 0


def test_put_name_too_long(client):
    response = client.put("/" + "a" * 300, content=b"data")
    assert response.status_code == 400


def test_put_name_conflict(store, config_file, upload_dir, temp_dir, client):
    write_config(config_file, upload_dir=upload_dir, temp_dir=temp_dir,
                 max_file_size=1024 * 1024, name_prefix_length=0)
    store.reload()

    assert client.put("/same.txt", content=b"one").text == "same.txt"
    response = client.put("/same.txt", content=b"two")
    assert response.status_code == 409
    assert (upload_dir / "same.txt").read_bytes() == b"one"


def test_multipart_upload(client, upload_dir):
    response = client.post("/up", files={"file": ("notes.txt", b"hello world", "text/plain")})
    assert response.status_code == 200
    assert response.text.endswith(".notes.txt")
    assert (upload_dir / response.text).read_bytes() == b"hello world"


def test_multipart_missing_file_part(client):
    response = client.post("/up", files={"attachment": ("notes.txt", b"hello")})
    assert response.status_code == 400
    assert "Missing file part" in response.text


def test_multipart_too_large(client, upload_dir):
    response = client.post("/up", files={"file": ("big.bin", generate_random_content(1024 * 1024 + 1))})
    assert response.status_code == 413
    assert list(upload_dir.iterdir()) == []


def test_download_missing_file(client):
    assert client.get("/file/nothing-here.txt").status_code == 404


def test_reload_changes_limit_without_restart(store, config_file, upload_dir, temp_dir, client):
    """A new config document changes the limit used by the next upload."""
    write_config(config_file, upload_dir=upload_dir, temp_dir=temp_dir, max_file_size=100)
    store.reload()

    assert client.put("/a.bin", content=generate_random_content(101)).status_code == 413
    assert client.get("/stats").json()["max_upload"] == 100

    # A malformed document keeps the 100 byte limit
    config_file.write_text("max_file_size = [")
    store.reload()
    assert client.put("/b.bin", content=generate_random_content(100)).status_code == 200
    assert client.put("/c.bin", content=generate_random_content(101)).status_code == 413


def test_parse_content_length():
    assert parse_content_length(None) is None
    assert parse_content_length("42") == 42
    for value in ("abc", "-1"):
        with pytest.raises(HTTPException) as exc_info:
            parse_content_length(value)
        assert exc_info.value.status_code == 400


def make_request(app, headers):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.encode(), v.encode()) for k, v in headers.items()],
        "client": ("10.0.0.9", 5555),
        "app": app,
    }
    return Request(scope)


def test_client_ip_ignores_forwarded_header_by_default(store):
    app = create_app(store)
    app.state.config_store = store
    request = make_request(app, {"x-forwarded-for": "203.0.113.7, 10.0.0.1"})
    assert client_ip(request) == "10.0.0.9"


def test_client_ip_trusts_forwarded_header_when_configured(tmp_path, upload_dir, temp_dir):
    path = write_config(tmp_path / "trusted.toml", upload_dir=upload_dir, temp_dir=temp_dir,
                        trust_forwarded_ip=True)
    store = ConfigStore(search_paths=[path])
    store.load()
    app = create_app(store)
    app.state.config_store = store

    request = make_request(app, {"x-forwarded-for": "203.0.113.7, 10.0.0.1"})
    assert client_ip(request) == "203.0.113.7"


def test_multipart_wrong_content_type(client):
    response = client.post("/up", content=b"hello", headers={"content-type": "text/plain"})
    assert response.status_code == 400


def test_multipart_without_boundary(client):
    response = client.post("/up", content=b"hello", headers={"content-type": "multipart/form-data"})
    assert response.status_code == 400
    assert "boundary" in response.text


def test_multipart_ignores_fields_around_file(client, upload_dir):
    response = client.post(
        "/up",
        data={"comment": "first"},
        files={"file": ("report.csv", b"a,b\n1,2\n", "text/csv")},
    )
    assert response.status_code == 200
    assert (upload_dir / response.text).read_bytes() == b"a,b\n1,2\n"


BOUNDARY = "filedropformboundary"


def form_messages(file_size, chunk_size=64 * 1024):
    """A multipart body carrying one ``file`` part, split into ASGI body chunks."""
    head = (
        f"--{BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="file"; filename="huge.bin"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode()
    tail = f"\r\n--{BOUNDARY}--\r\n".encode()
    data = [b"x" * chunk_size] * (file_size // chunk_size)
    return [head] + data + [tail]


async def post_form(app, messages, extra_headers=()):
    """Drive one POST /up through the ASGI app, noting how much body was read before the response started."""
    state = {"received": 0, "read_at_response": None, "status": None}

    async def receive():
        i = state["received"]
        if i < len(messages):
            state["received"] += 1
            return {"type": "http.request", "body": messages[i], "more_body": i + 1 < len(messages)}
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == "http.response.start":
            state["status"] = message["status"]
            state["read_at_response"] = state["received"]

    headers = [
        (b"host", b"filedrop.test"),
        (b"content-type", f"multipart/form-data; boundary={BOUNDARY}".encode()),
        *extra_headers,
    ]
    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/up",
        "raw_path": b"/up",
        "root_path": "",
        "query_string": b"",
        "headers": headers,
        "client": ("127.0.0.1", 5555),
        "server": ("filedrop.test", 80),
    }
    async with app.router.lifespan_context(app):
        await app(scope, receive, send)
    return state


@pytest.mark.asyncio
async def test_multipart_oversize_stops_reading_body(store, upload_dir, temp_dir):
    """A 10 MiB form against a 1 MiB limit is refused after reading about the limit."""
    messages = form_messages(10 * 1024 * 1024)

    state = await post_form(create_app(store), messages)

    assert state["status"] == 413
    assert state["read_at_response"] < len(messages) // 4
    assert list(upload_dir.iterdir()) == []
    assert list(temp_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_multipart_declared_oversize_is_refused_unread(store):
    messages = form_messages(10 * 1024 * 1024)
    length = sum(len(m) for m in messages)

    state = await post_form(create_app(store), messages, [(b"content-length", str(length).encode())])

    assert state["status"] == 413
    assert state["read_at_response"] == 0
