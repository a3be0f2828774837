from __future__ import annotations

import io
import sqlite3

import pytest
from werkzeug.datastructures import FileStorage

from apnaparivar import families
from apnaparivar.storage import is_image


def _upload(client, headers, family_id, *files, **form):
    data = {"familyId": family_id, **form}
    data["photos"] = [(io.BytesIO(body), name, mime) for name, mime, body in files]
    return client.post("/api/photos/upload", data=data, headers=headers, content_type="multipart/form-data")


@pytest.mark.parametrize(
    "name,mime,ok",
    [
        ("a.jpg", "image/jpeg", True),
        ("a.PNG", "image/png", True),
        ("a.txt", "text/plain", False),
        ("a.jpg", "text/plain", False),
        ("noext", "image/png", False),
    ],
)
def test_is_image(name, mime, ok):
    assert is_image(FileStorage(stream=io.BytesIO(b"x"), filename=name, content_type=mime)) is ok


def test_upload_and_serve(client, app, owner, family):
    _, headers = owner
    resp = _upload(client, headers, family["id"], ("holi.jpg", "image/jpeg", b"fake-jpeg"), tags="holi, 2024")
    assert resp.status_code == 201
    photo = resp.get_json()["photos"][0]
    assert photo["url"].startswith("http://api.test/uploads/photos/photo-")
    assert photo["tags"] == ["holi", "2024"]
    assert photo["size"] == len(b"fake-jpeg")
    assert photo["title"] == "Family Photo"

    served = client.get(f"/uploads/photos/{photo['filename']}")
    assert served.status_code == 200
    assert served.data == b"fake-jpeg"
    served.close()


def test_upload_several(client, owner, family):
    _, headers = owner
    resp = _upload(
        client, headers, family["familyId"],
        ("a.jpg", "image/jpeg", b"a"), ("b.png", "image/png", b"b"),
    )
    assert resp.status_code == 201
    assert len(resp.get_json()["photos"]) == 2

    listed = client.get(f"/api/photos/family/{family['id']}", headers=headers).get_json()["photos"]
    assert len(listed) == 2
    assert listed[0]["uploadedBy"]["email"] == "owner@gmail.com"


def test_upload_rejects_non_images(client, owner, family):
    _, headers = owner
    resp = _upload(client, headers, family["id"], ("notes.txt", "text/plain", b"hello"))
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Only image files are allowed!"


def test_upload_needs_files(client, owner, family):
    _, headers = owner
    resp = client.post(
        "/api/photos/upload", data={"familyId": family["id"]}, headers=headers, content_type="multipart/form-data"
    )
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "No files uploaded"


def test_upload_size_limit(client, app, owner, family):
    _, headers = owner
    app.config["MAX_UPLOAD_BYTES"] = 4
    resp = _upload(client, headers, family["id"], ("big.jpg", "image/jpeg", b"0123456789"))
    assert resp.status_code == 413
    assert not list((app.config["UPLOAD_DIR"] / "photos").glob("*"))


def test_failed_insert_removes_stored_files(client, app, owner, family, monkeypatch):
    _, headers = owner

    def broken_touch(con, family_id, column):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(families, "touch_activity", broken_touch)
    resp = _upload(client, headers, family["id"], ("a.jpg", "image/jpeg", b"a"), ("b.png", "image/png", b"b"))
    assert resp.status_code == 500
    assert not list((app.config["UPLOAD_DIR"] / "photos").glob("*"))

    monkeypatch.undo()
    assert client.get(f"/api/photos/family/{family['id']}", headers=headers).get_json()["photos"] == []


def test_upload_to_another_family(client, family, make_user, headers_for):
    headers = headers_for(make_user("verma@gmail.com"))
    client.post("/api/families", json={"familyName": "Verma"}, headers=headers)
    resp = _upload(client, headers, family["id"], ("a.jpg", "image/jpeg", b"a"))
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "You can only upload photos to your own family"


def test_plain_member_cannot_upload(client, owner, family, make_user, headers_for):
    _, owner_headers = owner
    client.put(f"/api/families/{family['id']}", json={"requireApprovalForJoining": False}, headers=owner_headers)
    headers = headers_for(make_user("cousin@gmail.com"))
    client.post(f"/api/families/{family['id']}/join", headers=headers)

    resp = _upload(client, headers, family["id"], ("a.jpg", "image/jpeg", b"a"))
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Only family admins can upload photos"


def test_list_other_family_photos_forbidden(client, family, make_user, headers_for):
    headers = headers_for(make_user("peek@gmail.com"))
    assert client.get(f"/api/photos/family/{family['id']}", headers=headers).status_code == 403


def test_delete_photo_removes_file(client, app, owner, family, make_user, headers_for):
    _, headers = owner
    photo = _upload(client, headers, family["id"], ("a.jpg", "image/jpeg", b"a")).get_json()["photos"][0]
    path = app.config["UPLOAD_DIR"] / "photos" / photo["filename"]
    assert path.exists()

    stranger = headers_for(make_user("thief@gmail.com"))
    assert client.delete(f"/api/photos/{photo['id']}", headers=stranger).status_code == 403

    assert client.delete(f"/api/photos/{photo['id']}", headers=headers).status_code == 200
    assert not path.exists()
    assert client.delete(f"/api/photos/{photo['id']}", headers=headers).status_code == 404
