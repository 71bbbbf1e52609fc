from threely.settings import settings


async def test_health_reports_services(client):
    resp = await client.get("/api/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["services"]["meshy"] is True
    assert body["services"]["stripe"] is True


async def test_unknown_api_path(client):
    resp = await client.get("/api/does-not-exist")

    assert resp.status_code == 404
    assert resp.json() == {"error": "API endpoint not found"}


async def test_missing_static_file(client):
    resp = await client.get("/logo.png")
    assert resp.status_code == 404


async def test_root_without_frontend(client):
    resp = await client.get("/")

    assert resp.status_code == 200
    assert resp.json()["message"] == "Threely Backend"

    spa = await client.get("/gallery")
    assert spa.json() == resp.json()


async def test_validation_errors_use_error_envelope(client):
    resp = await client.post("/api/auth/login", content=b"not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert set(resp.json()) == {"error"}


async def test_html_pages_are_served_from_frontend_dir(client, tmp_path, monkeypatch):
    (tmp_path / "html").mkdir()
    (tmp_path / "html" / "generate.html").write_text("<h1>Generate</h1>")
    monkeypatch.setattr(settings, "FRONTEND_DIR", str(tmp_path))

    resp = await client.get("/generate.html")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/html")
    assert resp.text == "<h1>Generate</h1>"

    assert (await client.get("/missing.html")).status_code == 404
