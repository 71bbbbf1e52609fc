from datetime import datetime, timedelta, timezone
from io import BytesIO

import pytest
from PIL import Image
from sqlalchemy import update

from threely import meshy, storage
from threely.db import async_session_maker
from threely.generation import normalize_generation_params, prune_pending_generations
from threely.meshy import MeshyAPIError
from threely.models import Asset
from threely.server import app
from threely.settings import settings

TASK_ID = "task-1"


def _png_bytes():
    buf = BytesIO()
    Image.new("RGB", (8, 8), color=(200, 120, 40)).save(buf, format="PNG")
    return buf.getvalue()


def _task(status="SUCCEEDED", model_urls=None):
    return {
        "id": TASK_ID,
        "status": status,
        "progress": 100 if status == "SUCCEEDED" else 40,
        "model_urls": model_urls if model_urls is not None else {
            "glb": "https://assets.meshy.ai/task-1/model.glb",
            "fbx": "https://assets.meshy.ai/task-1/model.fbx",
        },
        "thumbnail_url": "https://assets.meshy.ai/task-1/preview.png",
    }


@pytest.fixture
def meshy_task(monkeypatch):
    """Serves a configurable task from the fake Meshy API."""
    state = {"task": _task()}

    async def fake_get_task(task_id):
        return state["task"]

    monkeypatch.setattr(meshy, "get_task", fake_get_task)
    return state


@pytest.fixture
def fake_files(monkeypatch):
    """Fake Meshy downloads and Cloudinary uploads; sizes per format are configurable."""
    sizes = {"glb": 4096, "fbx": 1024, "obj": 1024, "usdz": 1024}
    failing = set()

    async def fake_download(url, timeout=None):
        fmt = url.rsplit(".", 1)[-1]
        if fmt in failing:
            raise MeshyAPIError("timed out")
        return b"m" * sizes[fmt]

    async def fake_upload(data, filename, folder=storage.MODELS_FOLDER):
        return {
            "filename": filename,
            "url": f"https://res.cloudinary.com/demo/raw/upload/{folder}/{filename}",
            "publicId": f"{folder}/{filename}",
            "size": len(data),
        }

    monkeypatch.setattr(meshy, "download_file", fake_download)
    monkeypatch.setattr(storage, "upload_model_from_bytes", fake_upload)
    return {"sizes": sizes, "failing": failing}


# ===================================================================
# generateModel
# ===================================================================

def test_generation_params_are_normalized():
    assert normalize_generation_params(None, None, None, None, None) == {
        "topology": "triangle",
        "shouldTexture": False,
        "enablePBR": False,
        "symmetryMode": "auto",
        "targetPolycount": 30000,
    }
    params = normalize_generation_params("quad", "true", "true", "on", "5000")
    assert params == {
        "topology": "quad",
        "shouldTexture": True,
        "enablePBR": True,
        "symmetryMode": "on",
        "targetPolycount": 5000,
    }
    assert normalize_generation_params("hex", "yes", "1", "sideways", "50")["targetPolycount"] == 30000
    assert normalize_generation_params(None, None, None, "sideways", "300001")["symmetryMode"] == "auto"
    assert normalize_generation_params(None, None, None, None, "lots")["targetPolycount"] == 30000


async def test_generate_model_starts_task(client, monkeypatch):
    calls = []

    async def fake_create(image_data_uri, **kwargs):
        calls.append((image_data_uri, kwargs))
        return TASK_ID

    monkeypatch.setattr(meshy, "create_image_to_3d_task", fake_create)
    resp = await client.post(
        "/api/generateModel",
        files={"image": ("dog.png", _png_bytes(), "image/png")},
        data={"shouldTexture": "true", "symmetryMode": "sideways", "targetPolycount": "5"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"taskId": TASK_ID, "modelUrls": None}

    data_uri, kwargs = calls[0]
    assert data_uri.startswith("data:image/png;base64,")
    assert kwargs == {
        "topology": "triangle",
        "target_polycount": 30000,
        "symmetry_mode": "auto",
        "should_texture": True,
        "enable_pbr": False,
    }
    pending = app.state.pending_generations[TASK_ID]
    assert pending["originalImage"] == data_uri
    assert pending["parameters"]["targetPolycount"] == 30000


async def test_generate_model_rejects_non_images(client):
    resp = await client.post("/api/generateModel", files={"image": ("notes.txt", b"hello there", "text/plain")})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Uploaded file is not a valid image"}


async def test_generate_model_requires_image(client):
    resp = await client.post("/api/generateModel", data={"topology": "quad"})
    assert resp.status_code == 400


async def test_generate_model_surfaces_meshy_errors(client, monkeypatch):
    async def failing_create(image_data_uri, **kwargs):
        raise MeshyAPIError("Meshy API error 402", status_code=402)

    monkeypatch.setattr(meshy, "create_image_to_3d_task", failing_create)
    resp = await client.post("/api/generateModel", files={"image": ("dog.png", _png_bytes(), "image/png")})

    assert resp.status_code == 500
    assert resp.json()["error"].startswith("Failed to start model generation")


def test_stale_pending_generations_are_pruned():
    now = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)
    store = {
        "old": {"createdAt": (now - timedelta(hours=settings.PENDING_GENERATION_TTL_HOURS + 1)).isoformat()},
        "fresh": {"createdAt": (now - timedelta(hours=1)).isoformat()},
        "naive": {"createdAt": "2024-05-02T11:00:00"},
        "garbage": {"createdAt": "yesterday-ish"},
        "missing": {},
    }

    assert prune_pending_generations(store, now=now) == 3
    assert sorted(store) == ["fresh", "naive"]


async def test_generate_model_forgets_stale_generations(client, monkeypatch):
    async def fake_create(image_data_uri, **kwargs):
        return TASK_ID

    monkeypatch.setattr(meshy, "create_image_to_3d_task", fake_create)
    long_ago = datetime.now(timezone.utc) - timedelta(hours=settings.PENDING_GENERATION_TTL_HOURS * 2)
    app.state.pending_generations["abandoned"] = {"originalImage": "data:,", "createdAt": long_ago.isoformat()}

    resp = await client.post("/api/generateModel", files={"image": ("dog.png", _png_bytes(), "image/png")})

    assert resp.status_code == 200
    assert "abandoned" not in app.state.pending_generations
    assert TASK_ID in app.state.pending_generations


# ===================================================================
# status / proxyModel
# ===================================================================

async def test_status_relays_task(client, meshy_task):
    meshy_task["task"] = _task(status="IN_PROGRESS", model_urls={})

    for path in (f"/api/status/{TASK_ID}", f"/api/getModel/{TASK_ID}"):
        resp = await client.get(path)
        assert resp.status_code == 200
        assert resp.json()["status"] == "IN_PROGRESS"
        assert resp.json()["progress"] == 40


async def test_proxy_model_streams_file(client, meshy_task, fake_files):
    resp = await client.get(f"/api/proxyModel/{TASK_ID}", params={"format": "glb"})

    assert resp.status_code == 200
    assert resp.headers["content-type"] == "model/gltf-binary"
    assert resp.headers["content-disposition"] == 'attachment; filename="dalma-model.glb"'
    assert "no-cache" in resp.headers["cache-control"]
    assert len(resp.content) == 4096


async def test_proxy_model_errors(client, meshy_task, fake_files):
    missing = await client.get(f"/api/proxyModel/{TASK_ID}", params={"format": "usdz"})
    assert missing.status_code == 404

    meshy_task["task"] = _task(status="IN_PROGRESS")
    not_ready = await client.get(f"/api/proxyModel/{TASK_ID}")
    assert not_ready.status_code == 400

    meshy_task["task"] = _task(model_urls={})
    no_urls = await client.get(f"/api/proxyModel/{TASK_ID}")
    assert no_urls.status_code == 500


# ===================================================================
# saveAsset
# ===================================================================

async def test_save_asset_with_oversized_fbx_succeeds(client, make_user, headers_for, meshy_task, fake_files):
    user = await make_user("saver")
    fake_files["sizes"]["fbx"] = settings.MAX_DIRECT_UPLOAD_BYTES + 1

    resp = await client.post(f"/api/saveAsset/{TASK_ID}", json={"name": "Buddy"}, headers=headers_for(user))

    assert resp.status_code == 201
    body = resp.json()
    asset = body["asset"]
    assert asset["name"] == "Buddy"
    assert asset["modelFiles"]["fbx"]["isProxy"] is True
    assert asset["modelFiles"]["fbx"]["url"] == f"/api/proxyModel/{TASK_ID}?format=fbx"
    assert asset["modelFiles"]["glb"]["isProxy"] is False
    assert asset["modelFile"]["url"] == asset["modelFiles"]["glb"]["url"]
    assert asset["isPublic"] is False
    assert asset["category"] == "user_generated"
    assert asset["userId"] == str(user.id)
    assert asset["meshyTaskId"] == TASK_ID
    assert asset["tags"] == ["generated", "meshy", "ai"]
    assert asset["previewImage"]["url"] == "https://assets.meshy.ai/task-1/preview.png"
    assert body["isPrivate"] is True
    assert body["owner"] == "saver"
    assert body["availableFormats"] == ["glb", "fbx"]
    assert body["proxyFormats"] == ["fbx"]
    assert body["permanentStorage"] is False
    assert body["hasOriginalImage"] is False


async def test_save_asset_fails_when_glb_cannot_be_resolved(client, make_user, headers_for, meshy_task, fake_files):
    user = await make_user("saver")
    meshy_task["task"] = _task(model_urls={
        "glb": "s3-internal://expired/model.glb",
        "fbx": "https://assets.meshy.ai/task-1/model.fbx",
    })
    fake_files["failing"].add("glb")

    resp = await client.post(f"/api/saveAsset/{TASK_ID}", headers=headers_for(user))

    assert resp.status_code == 500
    assert resp.json()["error"].startswith("Failed to save asset to your collection")
    mine = await client.get("/api/assets/mine", headers=headers_for(user))
    assert mine.json()["count"] == 0


async def test_save_asset_requires_finished_task(client, make_user, headers_for, meshy_task):
    user = await make_user("saver")
    meshy_task["task"] = _task(status="IN_PROGRESS")
    resp = await client.post(f"/api/saveAsset/{TASK_ID}", headers=headers_for(user))
    assert resp.status_code == 400

    meshy_task["task"] = _task(model_urls={"fbx": "https://assets.meshy.ai/task-1/model.fbx"})
    resp = await client.post(f"/api/saveAsset/{TASK_ID}", headers=headers_for(user))
    assert resp.status_code == 400
    assert resp.json() == {"error": "GLB model URL not available"}


async def test_save_asset_requires_login(client, meshy_task):
    resp = await client.post(f"/api/saveAsset/{TASK_ID}")
    assert resp.status_code == 401


async def test_save_asset_uploads_original_image(client, make_user, headers_for, meshy_task, fake_files, monkeypatch):
    user = await make_user("saver")
    app.state.pending_generations[TASK_ID] = {
        "originalImage": "data:image/png;base64,aGVsbG8=",
        "parameters": {"topology": "quad", "targetPolycount": 5000, "symmetryMode": "on", "shouldTexture": True, "enablePBR": True},
        "createdAt": "2024-01-01T00:00:00+00:00",
    }

    async def fake_original(data_uri, task_id):
        return {
            "filename": f"original-{task_id}.png",
            "url": "https://res.cloudinary.com/demo/image/upload/dalma-ai/originals/original.png",
            "publicId": "dalma-ai/originals/original",
            "size": 5,
        }

    monkeypatch.setattr(storage, "upload_original_image_from_base64", fake_original)
    resp = await client.post(f"/api/saveAsset/{TASK_ID}", headers=headers_for(user))

    assert resp.status_code == 201
    body = resp.json()
    assert body["hasOriginalImage"] is True
    assert body["permanentStorage"] is True
    assert body["asset"]["originalImageUrl"].endswith("original.png")
    assert body["asset"]["topology"] == "quad"
    assert body["asset"]["polygons"] == 5000
    assert body["asset"]["pbr"] is True
    assert TASK_ID not in app.state.pending_generations


async def test_saving_twice_updates_the_same_asset(client, make_user, headers_for, meshy_task, fake_files):
    user = await make_user("saver")
    headers = headers_for(user)

    first = await client.post(f"/api/saveAsset/{TASK_ID}", json={"name": "First"}, headers=headers)
    second = await client.post(f"/api/saveAsset/{TASK_ID}", json={"name": "Second"}, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["asset"]["id"] == first.json()["asset"]["id"]
    assert second.json()["asset"]["name"] == "Second"


async def test_task_saved_by_someone_else_conflicts(client, make_user, headers_for, meshy_task, fake_files):
    alice = await make_user("alice")
    bob = await make_user("bob")

    await client.post(f"/api/saveAsset/{TASK_ID}", headers=headers_for(alice))
    resp = await client.post(f"/api/saveAsset/{TASK_ID}", headers=headers_for(bob))

    assert resp.status_code == 409


async def test_saving_again_restores_a_deleted_asset(client, make_user, headers_for, meshy_task, fake_files):
    user = await make_user("saver")
    headers = headers_for(user)

    first = await client.post(f"/api/saveAsset/{TASK_ID}", json={"name": "First"}, headers=headers)
    async with async_session_maker() as s:
        await s.execute(update(Asset).where(Asset.meshy_task_id == TASK_ID).values(is_active=False))
        await s.commit()
    assert (await client.get("/api/assets/mine", headers=headers)).json()["assets"] == []

    again = await client.post(f"/api/saveAsset/{TASK_ID}", json={"name": "Back Again"}, headers=headers)

    assert again.status_code == 200
    assert again.json()["asset"]["id"] == first.json()["asset"]["id"]
    assert again.json()["asset"]["isActive"] is True
    mine = await client.get("/api/assets/mine", headers=headers)
    assert [a["name"] for a in mine.json()["assets"]] == ["Back Again"]
