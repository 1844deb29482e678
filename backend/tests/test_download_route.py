import io
import zipfile

from conftest import auth


def seed(pipeline, s3_client, key, data):
    s3_client.put_object(Bucket=pipeline.store.bucket, Key=key, Body=data)
    return key


def test_download_redirects_to_signed_url(api, pipeline, s3_client):
    key = seed(pipeline, s3_client, "u1/converted/abc_photo.webp", b"webp")

    response = api.get(f"/api/download/{key}", headers=auth(), follow_redirects=False)

    assert response.status_code == 302
    assert "u1/converted/abc_photo.webp" in response.headers["location"]


def test_download_rejects_foreign_key(api, pipeline, s3_client):
    key = seed(pipeline, s3_client, "u2/converted/secret.webp", b"webp")

    response = api.get(f"/api/download/{key}", headers=auth(), follow_redirects=False)

    assert response.status_code == 403
    assert response.json()["invalidPaths"] == [key]


def test_download_missing_file(api):
    response = api.get("/api/download/u1/converted/gone.webp", headers=auth(), follow_redirects=False)
    assert response.status_code == 404


def test_zip_stream(api, pipeline, s3_client):
    keys = [
        seed(pipeline, s3_client, "u1/converted/a.webp", b"aaaa"),
        seed(pipeline, s3_client, "u1/converted/b.mp3", b"bbbb"),
    ]

    response = api.post("/api/download/zip", json={"filePaths": keys}, headers=auth())

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    assert response.headers["x-files-included"] == "2"
    assert response.headers["x-files-requested"] == "2"
    assert "converted-files.zip" in response.headers["content-disposition"]
    with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
        assert sorted(archive.namelist()) == ["a.webp", "b.mp3"]


def test_zip_reports_skipped_files(api, pipeline, s3_client):
    pipeline.store.read_attempts = 1
    key = seed(pipeline, s3_client, "u1/converted/a.webp", b"aaaa")

    response = api.post(
        "/api/download/zip", json={"filePaths": [key, "u1/converted/gone.webp"]}, headers=auth()
    )

    assert response.status_code == 200
    assert response.headers["x-files-included"] == "1"
    assert response.headers["x-files-requested"] == "2"


def test_zip_rejects_foreign_paths(api):
    response = api.post(
        "/api/download/zip",
        json={"filePaths": ["u1/converted/a.webp", "u2/converted/b.webp"]},
        headers=auth(),
    )
    assert response.status_code == 403
    assert response.json()["invalidPaths"] == ["u2/converted/b.webp"]


def test_zip_requires_paths(api):
    response = api.post("/api/download/zip", json={"filePaths": []}, headers=auth())
    assert response.status_code == 422


def test_zip_as_signed_url(api, pipeline, s3_client):
    key = seed(pipeline, s3_client, "u1/converted/a.webp", b"aaaa")

    response = api.post("/api/download/zip", json={"filePaths": [key], "deliver": "url"}, headers=auth())

    assert response.status_code == 200
    data = response.json()
    assert data["expiresIn"] == 600
    assert data["filesIncluded"] == 1
    assert "u1/archives/converted-files-" in data["downloadUrl"]
