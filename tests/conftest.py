"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import pytest
from botocore.exceptions import ClientError

from vcshub.config import DatabaseSettings, GCSettings, Settings
from vcshub.core import Dependencies, VCSCore
from vcshub.models import Project, Team
from vcshub.storage import BlobStore, MetadataDB


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 calls BlobStore makes.

    Attributes:
        objects: Key -> {"Size", "LastModified"}
        uploads: UploadId -> {"Key", "Initiated", "ContentType"}
        fail_delete_keys: Keys whose deletion reports a per-key error
        fail_presign_method: ClientMethod whose presigning raises
    """

    def __init__(self) -> None:
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.uploads: Dict[str, Dict[str, Any]] = {}
        self.completed: Dict[str, List[Dict[str, Any]]] = {}
        self.lifecycle: Optional[Dict[str, Any]] = None
        self.fail_delete_keys: Set[str] = set()
        self.fail_presign_method: Optional[str] = None
        self.delete_calls: List[List[str]] = []
        self.list_calls = 0
        self._next_upload = 0

    # Test helpers

    def put(self, key: str, size: int = 1, age_seconds: float = 7200) -> None:
        modified = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
        self.objects[key] = {"Size": size, "LastModified": modified}

    # boto3 surface

    def generate_presigned_url(
        self, ClientMethod: str, Params: Dict[str, Any], ExpiresIn: int = 3600
    ) -> str:
        if ClientMethod == self.fail_presign_method:
            raise client_error("InternalError", "GeneratePresignedUrl")
        url = f"https://fake-s3/{Params['Bucket']}/{Params['Key']}?op={ClientMethod}"
        if "PartNumber" in Params:
            url += f"&partNumber={Params['PartNumber']}&uploadId={Params['UploadId']}"
        return url

    def head_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        if Key not in self.objects:
            raise client_error("404", "HeadObject")
        return {"ContentLength": self.objects[Key]["Size"]}

    def create_multipart_upload(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        self._next_upload += 1
        upload_id = f"upload-{self._next_upload}"
        self.uploads[upload_id] = {
            "Key": Key,
            "UploadId": upload_id,
            "Initiated": datetime.now(timezone.utc),
            "ContentType": kwargs.get("ContentType"),
        }
        return {"UploadId": upload_id, "Key": Key}

    def complete_multipart_upload(
        self, Bucket: str, Key: str, UploadId: str, MultipartUpload: Dict[str, Any]
    ) -> Dict[str, Any]:
        upload = self.uploads.get(UploadId)
        if upload is None or upload["Key"] != Key:
            raise client_error("NoSuchUpload", "CompleteMultipartUpload")
        parts = MultipartUpload["Parts"]
        numbers = [part["PartNumber"] for part in parts]
        if numbers != sorted(numbers):
            raise client_error("InvalidPartOrder", "CompleteMultipartUpload")
        del self.uploads[UploadId]
        self.completed[Key] = parts
        self.put(Key, size=len(parts), age_seconds=0)
        return {"Key": Key}

    def abort_multipart_upload(self, Bucket: str, Key: str, UploadId: str) -> Dict[str, Any]:
        upload = self.uploads.get(UploadId)
        if upload is None or upload["Key"] != Key:
            raise client_error("NoSuchUpload", "AbortMultipartUpload")
        del self.uploads[UploadId]
        return {}

    def put_bucket_lifecycle_configuration(
        self, Bucket: str, LifecycleConfiguration: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.lifecycle = LifecycleConfiguration
        return {}

    def list_multipart_uploads(self, Bucket: str, Prefix: str = "", **kwargs: Any) -> Dict[str, Any]:
        uploads = [dict(u) for u in self.uploads.values() if u["Key"].startswith(Prefix)]
        return {"Uploads": uploads, "IsTruncated": False}

    def list_objects_v2(
        self,
        Bucket: str,
        Prefix: str = "",
        MaxKeys: int = 1000,
        ContinuationToken: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.list_calls += 1
        # The token is the last key of the previous page, so pages stay
        # stable while earlier keys are deleted.
        keys = sorted(key for key in self.objects if key.startswith(Prefix))
        if ContinuationToken:
            keys = [key for key in keys if key > ContinuationToken]
        page = keys[:MaxKeys]
        response: Dict[str, Any] = {
            "Contents": [{"Key": key, **self.objects[key]} for key in page],
            "KeyCount": len(page),
            "IsTruncated": len(keys) > MaxKeys,
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = page[-1]
        return response

    def delete_objects(self, Bucket: str, Delete: Dict[str, Any]) -> Dict[str, Any]:
        keys = [entry["Key"] for entry in Delete["Objects"]]
        self.delete_calls.append(keys)
        deleted, errors = [], []
        for key in keys:
            if key in self.fail_delete_keys:
                errors.append({"Key": key, "Code": "AccessDenied", "Message": "Access Denied"})
                continue
            self.objects.pop(key, None)
            deleted.append({"Key": key})
        return {"Deleted": deleted, "Errors": errors}


@pytest.fixture
def s3() -> FakeS3Client:
    """Create an empty fake S3 client."""
    return FakeS3Client()


@pytest.fixture
def blob_store(s3: FakeS3Client) -> BlobStore:
    """Create a BlobStore over the fake client."""
    return BlobStore(s3, "test-bucket")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "vcshub.db"


@pytest.fixture
def db(db_path: Path):
    """Create and initialize a MetadataDB instance."""
    metadata_db = MetadataDB(db_path)
    metadata_db.open()
    metadata_db.init_schema()
    yield metadata_db
    metadata_db.close()


@pytest.fixture
def settings(db_path: Path) -> Settings:
    return Settings(
        database=DatabaseSettings(path=str(db_path)),
        gc=GCSettings(grace_period_seconds=3600),
    )


@pytest.fixture
def core(db: MetadataDB, blob_store: BlobStore, settings: Settings) -> VCSCore:
    """Create a VCSCore wired to the test database and fake S3."""
    return VCSCore(Dependencies(db=db, blob_store=blob_store, settings=settings))


@pytest.fixture
def team(db: MetadataDB) -> Team:
    team = Team(id="team1", name="Team One", created_at="2026-01-01T00:00:00+00:00")
    db.insert_team(team)
    return team


@pytest.fixture
def project(core: VCSCore, team: Team) -> Project:
    """Create a project with its default branch."""
    return core.create_project(team.id, "demo")
