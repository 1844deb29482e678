import io
import os

import boto3
import jwt
import pytest
from fastapi.testclient import TestClient
from moto import mock_aws
from PIL import Image
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

from app.config import settings  # noqa: E402
from app.db import create_db_and_tables, make_engine  # noqa: E402
from app.limiter import limiter  # noqa: E402
from app.main import create_app  # noqa: E402
from app.models.records import UserRecord  # noqa: E402
from app.services.pipeline import PipelineService  # noqa: E402
from app.services.storage import BlobStore  # noqa: E402

limiter.enabled = False


def make_token(sub: str = "u1", **claims) -> str:
    return jwt.encode({"sub": sub, **claims}, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def auth(sub: str = "u1") -> dict:
    return {"Authorization": f"Bearer {make_token(sub)}"}


def image_bytes(fmt: str = "PNG", size=(64, 64), mode: str = "RGBA") -> bytes:
    color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def set_user(engine, owner_id: str, **fields) -> None:
    with Session(engine) as session:
        user = session.get(UserRecord, owner_id) or UserRecord(id=owner_id)
        for name, value in fields.items():
            setattr(user, name, value)
        session.add(user)
        session.commit()


def get_user(engine, owner_id: str) -> UserRecord:
    with Session(engine) as session:
        return session.get(UserRecord, owner_id)


@pytest.fixture
def s3_client():
    """Provide a mocked S3 client with a test bucket."""
    with mock_aws():
        client = boto3.client("s3", region_name=settings.AWS_REGION)
        client.create_bucket(Bucket=settings.S3_BUCKET)
        yield client


@pytest.fixture
def store(s3_client):
    return BlobStore(client=s3_client, write_base_delay=0, read_base_delay=0)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def pipeline(engine, store, tmp_path):
    return PipelineService(
        engine,
        store=store,
        scratch_dir=str(tmp_path / "scratch"),
        poll_interval=0.01,
    )


@pytest.fixture
def api(pipeline):
    with TestClient(create_app(pipeline)) as client:
        yield client


@pytest.fixture
def png():
    return image_bytes("PNG")


@pytest.fixture
def jpeg():
    return image_bytes("JPEG", mode="RGB")
