import base64

import cloudinary
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
import pytest

from threely import storage
from threely.storage import StorageError


@pytest.fixture
def uploads(monkeypatch):
    """Records calls to the Cloudinary uploader and answers with `state["result"]`."""
    state = {"calls": [], "result": None}

    def fake_upload(source, **options):
        state["calls"].append((source, options))
        if state["result"] is not None:
            return state["result"]
        folder, public_id = options["folder"], options["public_id"]
        return {
            "secure_url": f"https://res.cloudinary.com/demo/{options['resource_type']}/upload/{folder}/{public_id}",
            "public_id": f"{folder}/{public_id}",
            "bytes": 0,
        }

    monkeypatch.setattr(cloudinary.uploader, "upload", fake_upload)
    return state


async def test_model_upload_is_raw_and_keeps_extension(uploads):
    entry = await storage.upload_model_from_bytes(b"glb-bytes", "task-1.glb")

    source, options = uploads["calls"][0]
    assert source.read() == b"glb-bytes"
    assert options["resource_type"] == "raw"
    assert options["folder"] == storage.MODELS_FOLDER
    assert options["public_id"] == "task-1.glb"
    assert entry == {
        "filename": "task-1.glb",
        "url": "https://res.cloudinary.com/demo/raw/upload/dalma-ai/models/task-1.glb",
        "publicId": "dalma-ai/models/task-1.glb",
        "size": len(b"glb-bytes"),
    }


async def test_missing_secure_url_is_rebuilt(uploads, monkeypatch):
    monkeypatch.setattr(cloudinary.config(), "cloud_name", "demo")
    uploads["result"] = {"public_id": "dalma-ai/models/task-1.glb", "resource_type": "raw", "version": 123, "bytes": 10}

    entry = await storage.upload_model_from_bytes(b"x" * 10, "task-1.glb")

    assert entry["url"].startswith("https://res.cloudinary.com/demo/raw/upload/")
    assert entry["url"].endswith("dalma-ai/models/task-1.glb")
    assert entry["size"] == 10


async def test_upload_without_url_or_public_id(uploads):
    uploads["result"] = {"bytes": 10}

    with pytest.raises(StorageError):
        await storage.upload_model_from_bytes(b"x", "task-1.glb")


async def test_original_image_from_data_uri(uploads):
    data_uri = "data:image/jpeg;base64," + base64.b64encode(b"jpeg-bytes").decode()

    entry = await storage.upload_original_image_from_base64(data_uri, "task-1")

    source, options = uploads["calls"][0]
    assert source.read() == b"jpeg-bytes"
    assert options["resource_type"] == "image"
    assert options["folder"] == storage.ORIGINALS_FOLDER
    assert options["public_id"] == "original-task-1"
    assert entry["filename"] == "original-task-1.jpg"


@pytest.mark.parametrize("data_uri", ["", "https://example.com/dog.png", "data:image/png;base64,@@not-base64@@"])
async def test_original_image_rejects_bad_input(uploads, data_uri):
    with pytest.raises(StorageError):
        await storage.upload_original_image_from_base64(data_uri, "task-1")
    assert uploads["calls"] == []


async def test_copy_from_url_lets_cloudinary_fetch(uploads):
    entry = await storage.copy_from_url("https://res.cloudinary.com/demo/raw/upload/a.glb", "published-1.glb")

    source, options = uploads["calls"][0]
    assert source == "https://res.cloudinary.com/demo/raw/upload/a.glb"
    assert options["folder"] == storage.PUBLISHED_FOLDER
    assert entry["publicId"] == "dalma-ai/published/published-1.glb"


# ===================================================================
# delete / info
# ===================================================================

async def test_delete_file(monkeypatch):
    calls = []

    def fake_destroy(public_id, **options):
        calls.append((public_id, options))
        return {"result": "ok" if public_id.endswith("glb") else "error"}

    monkeypatch.setattr(cloudinary.uploader, "destroy", fake_destroy)

    assert await storage.delete_file("dalma-ai/models/a.glb") is True
    assert await storage.delete_file("dalma-ai/images/p", "image") is False
    assert calls[0] == ("dalma-ai/models/a.glb", {"resource_type": "raw", "invalidate": True})
    assert calls[1][1]["resource_type"] == "image"


async def test_get_file_info(monkeypatch):
    def fake_resource(public_id, **options):
        if public_id == "missing":
            raise cloudinary.exceptions.NotFound("Resource not found")
        return {
            "public_id": public_id,
            "secure_url": f"https://res.cloudinary.com/demo/raw/upload/{public_id}",
            "bytes": 2048,
            "format": "glb",
            "created_at": "2024-05-01T10:00:00Z",
        }

    monkeypatch.setattr(cloudinary.api, "resource", fake_resource)

    info = await storage.get_file_info("dalma-ai/models/a.glb")
    assert info["size"] == 2048
    assert info["url"].endswith("dalma-ai/models/a.glb")
    assert await storage.get_file_info("missing") is None
