from conftest import auth


def test_abort_unknown_upload_is_success(api):
    response = api.post("/api/abort/upload", json={"uploadId": "123-deadbeef"}, headers=auth())
    assert response.status_code == 200
    assert response.json() == {"success": True, "aborted": 0, "message": "Upload already finished"}


def test_abort_all_uploads(api):
    response = api.post("/api/abort/all-uploads", headers=auth())
    assert response.status_code == 200
    assert response.json()["aborted"] == 0


def test_abort_conversion_requires_reference(api):
    response = api.post("/api/abort/conversion", json={}, headers=auth())
    assert response.status_code == 400


def test_abort_conversion_deletes_original(api, pipeline, s3_client):
    key = "u1/uploads/photo.png"
    s3_client.put_object(Bucket=pipeline.store.bucket, Key=key, Body=b"png")

    response = api.post("/api/abort/conversion", json={"filePath": key}, headers=auth())

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "Contents" not in s3_client.list_objects_v2(Bucket=pipeline.store.bucket, Prefix=key)


def test_abort_conversion_rejects_foreign_path(api, pipeline, s3_client):
    key = "u2/uploads/photo.png"
    s3_client.put_object(Bucket=pipeline.store.bucket, Key=key, Body=b"png")

    response = api.post("/api/abort/conversion", json={"filePath": key}, headers=auth())

    assert response.status_code == 403
    assert "Contents" in s3_client.list_objects_v2(Bucket=pipeline.store.bucket, Prefix=key)


def test_delete_files(api, pipeline, s3_client):
    keys = ["u1/converted/a.webp", "u1/converted/b.webp"]
    for key in keys:
        s3_client.put_object(Bucket=pipeline.store.bucket, Key=key, Body=b"x")

    response = api.request("DELETE", "/api/files", json={"filePaths": keys}, headers=auth())

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["successCount"] == 2
    assert data["failedCount"] == 0
    assert [result["path"] for result in data["results"]] == keys


def test_delete_files_with_foreign_path_deletes_nothing(api, pipeline, s3_client):
    mine = "u1/converted/a.webp"
    s3_client.put_object(Bucket=pipeline.store.bucket, Key=mine, Body=b"x")

    response = api.request(
        "DELETE", "/api/files", json={"filePaths": [mine, "u2/converted/b.webp"]}, headers=auth()
    )

    assert response.status_code == 403
    body = response.json()
    assert body["detail"] == "Unauthorized: Cannot access files that don't belong to you"
    assert body["invalidPaths"] == ["u2/converted/b.webp"]
    assert "Contents" in s3_client.list_objects_v2(Bucket=pipeline.store.bucket, Prefix=mine)
