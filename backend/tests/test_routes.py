"""HTTP boundary tests through FastAPI's TestClient."""
import logging

import pytest
import uvicorn
from fastapi.testclient import TestClient

from conftest import make_image_bytes, make_settings, open_image
from image_service import main as main_module
from image_service.main import create_app
from image_service.services.errors import PersistenceError


@pytest.fixture
def client(tmp_path):
    app = create_app(make_settings(tmp_path), run_sweeper=False)
    with TestClient(app) as c:
        yield c


def upload(client, data, name="photo.png", mime="image/png"):
    return client.post("/api/upload", files={"image": (name, data, mime)})


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "catalog": "writable", "records": 0}


def test_upload_and_download_raw(client, png_bytes):
    resp = upload(client, png_bytes)
    assert resp.status_code == 201
    body = resp.json()
    assert body["originalName"] == "photo.png"
    assert body["size"] == len(png_bytes)
    assert body["contentType"] == "image/png"
    assert body["previewUrl"] == f"/api/images/{body['fileId']}/raw"

    raw = client.get(body["previewUrl"])
    assert raw.status_code == 200
    assert raw.content == png_bytes
    assert raw.headers["content-type"] == "image/png"


def test_process_and_download(client, png_bytes):
    file_id = upload(client, png_bytes, name="my photo!.png").json()["fileId"]
    resp = client.post("/api/process", json={
        "fileId": file_id,
        "operations": [
            {"type": "sharpen", "params": {"sigma": 2}},
            {"type": "resize", "params": {"width": 32}},
            {"type": "convert", "params": {"format": "webp"}},
        ],
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["format"] == "webp"
    assert body["downloadUrl"] == f"/api/images/{file_id}/processed"

    out = client.get(body["downloadUrl"])
    assert out.status_code == 200
    assert out.headers["content-type"] == "image/webp"
    assert out.headers["content-disposition"] == 'attachment; filename="my_photo_.webp"'
    assert len(out.content) == body["processedSize"]
    assert open_image(out.content).size == (32, 24)

    meta = client.get(f"/api/images/{file_id}").json()
    assert [op["type"] for op in meta["appliedOperations"]] == ["resize", "convert"]


def test_list_images_uses_camel_case(client, png_bytes):
    file_id = upload(client, png_bytes).json()["fileId"]
    images = client.get("/api/images").json()
    assert [img["id"] for img in images] == [file_id]
    assert {"originalName", "byteSize", "contentType", "rawLocation", "createdAt"} <= set(images[0])


def test_invalid_upload_is_400(client):
    resp = upload(client, b"definitely not an image")
    assert resp.status_code == 400
    assert resp.json() == {"status": "error", "message": "Invalid file format or corrupted file"}


def test_process_unknown_id_is_404(client):
    resp = client.post("/api/process", json={"fileId": "missing", "operations": []})
    assert resp.status_code == 404


def test_invalid_operation_params_is_400(client, png_bytes):
    file_id = upload(client, png_bytes).json()["fileId"]
    resp = client.post("/api/process", json={
        "fileId": file_id,
        "operations": [{"type": "quality", "params": {"quality": 150}}],
    })
    assert resp.status_code == 400


def test_out_of_bounds_crop_is_422(client, png_bytes):
    file_id = upload(client, png_bytes).json()["fileId"]
    resp = client.post("/api/process", json={
        "fileId": file_id,
        "operations": [{"type": "crop", "params": {"x": 0, "y": 0, "width": 500, "height": 10}}],
    })
    assert resp.status_code == 422
    assert "outside" in resp.json()["message"]


def test_processed_before_processing_is_404(client, png_bytes):
    file_id = upload(client, png_bytes).json()["fileId"]
    assert client.get(f"/api/images/{file_id}/processed").status_code == 404


def test_delete(client, png_bytes):
    file_id = upload(client, png_bytes).json()["fileId"]
    assert client.delete(f"/api/images/{file_id}").status_code == 204
    assert client.get(f"/api/images/{file_id}/raw").status_code == 404
    assert client.delete(f"/api/images/{file_id}").status_code == 404


def test_gif_upload_is_accepted(client):
    gif = make_image_bytes("GIF", mode="P", color=1)
    resp = upload(client, gif, name="anim.gif", mime="image/gif")
    assert resp.status_code == 201
    assert resp.json()["contentType"] == "image/gif"


def test_corrupt_catalog_aborts_startup(tmp_path):
    settings = make_settings(tmp_path)
    settings.storage_root.mkdir(parents=True)
    settings.catalog_path.write_text("{not json")
    app = create_app(settings, run_sweeper=False)
    with pytest.raises(PersistenceError):
        with TestClient(app):
            pass
    assert settings.catalog_path.read_text() == "{not json"


@pytest.mark.parametrize("op_type", [["resize"], {"kind": "resize"}])
def test_non_string_operation_type_is_400(client, png_bytes, op_type):
    file_id = upload(client, png_bytes).json()["fileId"]
    resp = client.post("/api/process", json={
        "fileId": file_id,
        "operations": [{"type": op_type, "params": {}}],
    })
    assert resp.status_code == 400
    assert resp.json()["status"] == "error"


def test_process_without_operations_is_400(client, png_bytes):
    file_id = upload(client, png_bytes).json()["fileId"]
    resp = client.post("/api/process", json={"fileId": file_id})
    assert resp.status_code == 400
    body = resp.json()
    assert body["status"] == "error"
    assert "operations" in body["message"]
    assert client.get(f"/api/images/{file_id}/processed").status_code == 404


def test_upload_without_file_is_400(client):
    resp = client.post("/api/upload", data={"note": "no file here"})
    assert resp.status_code == 400
    assert resp.json()["status"] == "error"


def test_importing_main_builds_no_app():
    assert not hasattr(main_module, "app")


def test_run_configures_logging_and_serves_app_factory(monkeypatch):
    calls = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.setdefault("logging", kwargs))
    monkeypatch.setattr(
        uvicorn, "run", lambda target, **kwargs: calls.setdefault("uvicorn", (target, kwargs))
    )

    main_module.run()

    assert calls["logging"]["level"] == main_module.default_settings.LOG_LEVEL
    target, kwargs = calls["uvicorn"]
    assert target == "image_service.main:create_app"
    assert kwargs["factory"] is True
