from conftest import auth, make_token


def convert_one(api, png):
    key = api.post("/api/upload", files={"file": ("photo.png", png, "image/png")}, headers=auth()).json()["filePath"]
    response = api.post("/api/convert", json={"filePath": key, "format": "jpg", "fileName": "photo.png"}, headers=auth())
    assert response.status_code == 200
    return response.json()


def test_get_user_creates_free_account(api):
    token = make_token("u1", email="ana@example.com")
    data = api.get("/api/user", headers={"Authorization": f"Bearer {token}"}).json()

    assert data["id"] == "u1"
    assert data["email"] == "ana@example.com"
    assert data["plan"] == "free"
    assert data["conversionCount"] == 0
    assert data["remaining"] == 10


def test_user_files_lists_converted_file(api, png):
    result = convert_one(api, png)

    data = api.get("/api/user-files", headers=auth()).json()

    assert len(data["files"]) == 1
    row = data["files"][0]
    assert row["filePath"] == result["outputPath"]
    assert row["originalFileName"] == "photo.png"
    assert row["convertedFormat"] == "jpg"
    assert row["status"] == "ready"
    assert api.get("/api/user-files", headers=auth("u2")).json() == {"files": []}


def test_mark_downloaded_and_delete(api, png):
    convert_one(api, png)
    file_id = api.get("/api/user-files", headers=auth()).json()["files"][0]["id"]

    marked = api.post(f"/api/user-files/{file_id}/mark-downloaded", headers=auth())
    assert marked.status_code == 200
    assert marked.json()["status"] == "downloaded"
    assert api.get("/api/user-files", headers=auth()).json()["files"] == []

    assert api.delete(f"/api/user-files/{file_id}", headers=auth("u2")).status_code == 404
    assert api.delete(f"/api/user-files/{file_id}", headers=auth()).json() == {"success": True}
    assert api.delete(f"/api/user-files/{file_id}", headers=auth()).status_code == 404


def test_cleanup_expired_files(api):
    response = api.post("/api/cleanup/expired-files", headers=auth())
    assert response.status_code == 200
    assert response.json() == {"expired": 0}
