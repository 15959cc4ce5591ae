"""Object storage adapter for vcshub.

Wraps an S3-compatible bucket. Objects are content-addressed and namespaced by
project: ``{project_id}/{content_hash}``. Clients never receive credentials;
they get presigned URLs for single uploads, multipart part uploads and
downloads, and upload bytes directly to the bucket.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from vcshub.config import StorageSettings
from vcshub.constants import (
    DEFAULT_PART_SIZE,
    GC_DELETE_BATCH_SIZE,
    GC_LIST_PAGE_SIZE,
    MAX_PART_COUNT,
    MIB,
    MULTIPART_RETENTION_DAYS,
    PRESIGN_EXPIRES_SECONDS,
    PRESIGN_WORKERS,
)
from vcshub.errors import InvalidError, NotFoundError, UpstreamError, VCSHubError
from vcshub.models import CompletedPart, PresignMethod, PresignOptions, PresignResponse

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound", "NoSuchUpload", "NoSuchBucket"}
INVALID_CODES = {"InvalidPart", "InvalidPartOrder", "EntityTooSmall", "MalformedXML"}
UPLOAD_EXPIRY_RULE_ID = "abort-incomplete-multipart-uploads"

UsageCallback = Callable[[int], None]


class StorageError(UpstreamError):
    """Raised when the object store fails."""


def plan_parts(size: int, part_size: int) -> List[int]:
    """Split ``size`` bytes into part sizes of at most ``part_size``.

    Raises:
        InvalidError: If the size is not positive or needs too many parts
    """
    if size <= 0:
        raise InvalidError("Multipart uploads require a positive size")
    if part_size <= 0:
        raise InvalidError("Part size must be positive")

    parts: List[int] = []
    remaining = size
    while remaining > 0:
        current = min(remaining, part_size)
        parts.append(current)
        remaining -= current
        if len(parts) > MAX_PART_COUNT:
            raise InvalidError(
                f"Object of {size} bytes needs more than {MAX_PART_COUNT} parts"
            )
    return parts


def hash_from_key(project_id: str, key: str) -> Optional[str]:
    """Return the portion of ``key`` after the project prefix."""
    prefix = f"{project_id}/"
    if not key.startswith(prefix):
        return None
    return key[len(prefix):]


class BlobStore:
    """Adapter around a boto3 S3 client scoped to one bucket.

    Attributes:
        client: boto3 S3 client (any object with the same methods works)
        bucket: Bucket holding every project's objects
        part_size: Byte size of each multipart part except the last
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        part_size: int = DEFAULT_PART_SIZE,
        presign_expires: int = PRESIGN_EXPIRES_SECONDS,
        presign_workers: int = PRESIGN_WORKERS,
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.part_size = part_size
        self.presign_expires = presign_expires
        self.presign_workers = presign_workers

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "BlobStore":
        """Build a store with a real boto3 client from configuration."""
        session = boto3.session.Session(region_name=settings.region) if settings.region else boto3.session.Session()
        client = session.client(
            "s3",
            region_name=settings.region,
            endpoint_url=settings.endpoint_url,
            config=BotoConfig(
                signature_version="s3v4",
                connect_timeout=settings.connect_timeout_seconds,
                read_timeout=settings.read_timeout_seconds,
                retries={"max_attempts": settings.max_attempts, "mode": "standard"},
            ),
        )
        return cls(
            client,
            settings.bucket,
            part_size=settings.part_size,
            presign_expires=settings.presign_expires_seconds,
            presign_workers=settings.presign_workers,
        )

    # ------------------------------------------------------------------
    # Keys and errors
    # ------------------------------------------------------------------

    @staticmethod
    def project_prefix(project_id: str) -> str:
        if not project_id or "/" in project_id:
            raise InvalidError("Invalid project ID")
        return f"{project_id}/"

    def object_key(self, project_id: str, key: str) -> str:
        """Namespace ``key`` under the project's prefix.

        Raises:
            InvalidError: If the key is empty, absolute or climbs directories
        """
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise InvalidError(f'Invalid object key "{key}"')
        return self.project_prefix(project_id) + key

    def _translate(self, operation: str, exc: Exception, key: Optional[str] = None) -> VCSHubError:
        if isinstance(exc, ClientError):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                what = "Upload" if code == "NoSuchUpload" else "Object"
                return NotFoundError(f"{what} not found" + (f": {key}" if key else ""))
            if code in INVALID_CODES:
                return InvalidError(
                    "Failed to complete multipart upload, please make sure the "
                    "upload ID and parts are correct."
                )
        return StorageError.from_exception(operation, exc)

    def _presign(self, client_method: str, params: Dict[str, Any]) -> str:
        try:
            return self.client.generate_presigned_url(
                ClientMethod=client_method,
                Params={"Bucket": self.bucket, **params},
                ExpiresIn=self.presign_expires,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(f"presign {client_method}", e, params.get("Key")) from e

    # ------------------------------------------------------------------
    # Presign
    # ------------------------------------------------------------------

    def presign(
        self,
        method: Any,
        project_id: str,
        key: str,
        options: Optional[PresignOptions] = None,
        usage: Optional[UsageCallback] = None,
    ) -> PresignResponse:
        """Return presigned URL(s) for fetching or uploading one object.

        Args:
            method: PresignMethod or its name ("GET"/"PUT")
            project_id: Project the object belongs to
            key: Object key relative to the project (usually a content hash)
            options: Multipart flag, total size and content type (PUT only)
            usage: Called with the object's byte size after a GET is presigned;
                its failures are logged and never fail the request

        Raises:
            InvalidError: Unknown method or bad multipart parameters
            NotFoundError: GET of a missing object
            StorageError: Object store failure
        """
        presign_method = PresignMethod.parse(method)
        full_key = self.object_key(project_id, key)
        options = options or PresignOptions()

        if presign_method is PresignMethod.GET:
            return self._presign_get(full_key, usage)
        if presign_method is PresignMethod.PUT:
            if options.multipart:
                return self._presign_multipart(full_key, options)
            return self._presign_put(full_key, options)
        raise InvalidError("Invalid presign method. Must be PUT or GET")

    def presign_many(
        self,
        method: Any,
        project_id: str,
        keys: List[str],
        usage: Optional[UsageCallback] = None,
    ) -> Dict[str, str]:
        """Presign single-request GETs or PUTs for several objects at once.

        URLs are generated in parallel. For GET every object must exist;
        ``usage`` is then called once per object with its byte size, after
        all URLs are ready, and its failures are only logged.

        Args:
            method: PresignMethod or its name ("GET"/"PUT")
            project_id: Project the objects belong to
            keys: Object keys relative to the project; repeats are ignored
            usage: Bandwidth callback for downloads

        Returns:
            Mapping of each key to its presigned URL

        Raises:
            InvalidError: Unknown method, empty key list or malformed key
            NotFoundError: GET of a missing object
            StorageError: Object store failure
        """
        presign_method = PresignMethod.parse(method)
        if isinstance(keys, str):
            raise InvalidError("keys must be a list of object keys")
        unique = list(dict.fromkeys(keys))
        if not unique:
            raise InvalidError("No keys provided")
        full_keys = {key: self.object_key(project_id, key) for key in unique}

        def presign_one(key: str) -> Tuple[str, str, int]:
            full_key = full_keys[key]
            if presign_method is PresignMethod.GET:
                url = self._presign("get_object", {"Key": full_key})
                return key, url, self.head_size(full_key)
            return key, self._presign("put_object", {"Key": full_key}), 0

        workers = max(1, min(self.presign_workers, len(unique)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(presign_one, unique))

        if presign_method is PresignMethod.GET:
            for key, _, size in results:
                self._record_usage(full_keys[key], size, usage)

        logger.debug("Presigned {} {} URLs in project {}", len(results), presign_method.value, project_id)
        return {key: url for key, url, _ in results}

    def _presign_get(self, full_key: str, usage: Optional[UsageCallback]) -> PresignResponse:
        url = self._presign("get_object", {"Key": full_key})
        size = self.head_size(full_key)
        self._record_usage(full_key, size, usage)
        return PresignResponse(urls=[url])

    @staticmethod
    def _record_usage(full_key: str, size: int, usage: Optional[UsageCallback]) -> None:
        if usage is None:
            return
        try:
            usage(size)
        except Exception as e:  # accounting is best-effort
            logger.warning("Failed to record bandwidth for {}: {}", full_key, e)

    def _presign_put(self, full_key: str, options: PresignOptions) -> PresignResponse:
        params: Dict[str, Any] = {"Key": full_key}
        if options.content_type:
            params["ContentType"] = options.content_type
        return PresignResponse(urls=[self._presign("put_object", params)])

    def _presign_multipart(self, full_key: str, options: PresignOptions) -> PresignResponse:
        part_sizes = plan_parts(options.size, self.part_size)

        params: Dict[str, Any] = {"Bucket": self.bucket, "Key": full_key}
        if options.content_type:
            params["ContentType"] = options.content_type
        try:
            response = self.client.create_multipart_upload(**params)
        except (ClientError, BotoCoreError) as e:
            raise self._translate("create multipart upload", e, full_key) from e
        upload_id = response["UploadId"]

        def presign_part(numbered: Tuple[int, int]) -> str:
            part_number, part_size = numbered
            return self._presign(
                "upload_part",
                {
                    "Key": full_key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                    "ContentLength": part_size,
                },
            )

        workers = max(1, min(self.presign_workers, len(part_sizes)))
        try:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                urls = list(executor.map(presign_part, enumerate(part_sizes, start=1)))
        except VCSHubError:
            self._abort_quietly(full_key, upload_id)
            raise

        logger.debug(
            "Started multipart upload {} for {} ({} parts, {:.1f} MB)",
            upload_id,
            full_key,
            len(part_sizes),
            options.size / MIB,
        )
        return PresignResponse(urls=urls, upload_id=upload_id, part_sizes=part_sizes)

    def _abort_quietly(self, full_key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=full_key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Failed to abort multipart upload {} for {}; it expires with the "
                "bucket's retention rule: {}",
                upload_id,
                full_key,
                e,
            )

    # ------------------------------------------------------------------
    # Multipart completion
    # ------------------------------------------------------------------

    def complete_multipart_upload(
        self, project_id: str, key: str, upload_id: str, parts: List[CompletedPart]
    ) -> None:
        """Combine uploaded parts into the final object.

        Parts may be given in any order; they are sent sorted by part number.

        Raises:
            InvalidError: Empty or malformed part list
            NotFoundError: Unknown upload ID
        """
        if not upload_id:
            raise InvalidError("Upload ID is required")
        if not parts:
            raise InvalidError("At least one part is required")

        seen = set()
        for part in parts:
            if part.part_number < 1 or part.part_number > MAX_PART_COUNT:
                raise InvalidError(f"Invalid part number {part.part_number}")
            if part.part_number in seen:
                raise InvalidError(f"Duplicate part number {part.part_number}")
            if not part.etag:
                raise InvalidError(f"Missing ETag for part {part.part_number}")
            seen.add(part.part_number)

        full_key = self.object_key(project_id, key)
        ordered = sorted(parts, key=lambda part: part.part_number)
        try:
            self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=full_key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"ETag": part.etag, "PartNumber": part.part_number} for part in ordered
                    ]
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate("complete multipart upload", e, full_key) from e

        logger.info("Completed multipart upload {} for {}", upload_id, full_key)

    def abort_multipart_upload(self, project_id: str, key: str, upload_id: str) -> None:
        """Cancel a multipart upload and discard its parts."""
        if not upload_id:
            raise InvalidError("Upload ID is required")
        full_key = self.object_key(project_id, key)
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=full_key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as e:
            raise self._translate("abort multipart upload", e, full_key) from e

        logger.info("Aborted multipart upload {} for {}", upload_id, full_key)

    def ensure_upload_expiry(self, days: int = MULTIPART_RETENTION_DAYS) -> None:
        """Install a bucket rule that aborts incomplete multipart uploads.

        Note: this replaces the bucket's lifecycle configuration.
        """
        try:
            self.client.put_bucket_lifecycle_configuration(
                Bucket=self.bucket,
                LifecycleConfiguration={
                    "Rules": [
                        {
                            "ID": UPLOAD_EXPIRY_RULE_ID,
                            "Filter": {"Prefix": ""},
                            "Status": "Enabled",
                            "AbortIncompleteMultipartUpload": {"DaysAfterInitiation": days},
                        }
                    ]
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate("put bucket lifecycle", e) from e

    def list_multipart_uploads(self, project_id: str) -> List[Dict[str, Any]]:
        """List in-progress multipart uploads under the project's prefix."""
        uploads: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": self.project_prefix(project_id)}
        while True:
            try:
                response = self.client.list_multipart_uploads(**params)
            except (ClientError, BotoCoreError) as e:
                raise self._translate("list multipart uploads", e) from e
            uploads.extend(response.get("Uploads", []))
            if not response.get("IsTruncated"):
                return uploads
            params["KeyMarker"] = response.get("NextKeyMarker")
            params["UploadIdMarker"] = response.get("NextUploadIdMarker")

    def list_stale_uploads(self, project_id: str, older_than: datetime) -> List[Dict[str, Any]]:
        """List the project's multipart uploads initiated before ``older_than``."""
        stale = []
        for upload in self.list_multipart_uploads(project_id):
            initiated = upload.get("Initiated")
            if not isinstance(initiated, datetime):
                continue
            if initiated.tzinfo is None:
                initiated = initiated.replace(tzinfo=older_than.tzinfo)
            if initiated < older_than:
                stale.append(upload)
        return stale

    def abort_upload_by_key(self, full_key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=full_key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as e:
            raise self._translate("abort multipart upload", e, full_key) from e

    # ------------------------------------------------------------------
    # Raw objects
    # ------------------------------------------------------------------

    def head_size(self, full_key: str) -> int:
        """Get an object's size in bytes.

        Raises:
            NotFoundError: If the object does not exist
        """
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=full_key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate("head object", e, full_key) from e
        return int(response.get("ContentLength", 0))

    def iter_object_pages(
        self,
        project_id: str,
        start_token: Optional[str] = None,
        page_size: int = GC_LIST_PAGE_SIZE,
    ) -> Iterator[Tuple[List[Dict[str, Any]], Optional[str]]]:
        """Yield ``(objects, next_token)`` for each listing page of a project.

        ``next_token`` is None on the last page; passing a yielded token back
        as ``start_token`` resumes the listing after that page.
        """
        prefix = self.project_prefix(project_id)
        token = start_token
        while True:
            params: Dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": page_size}
            if token:
                params["ContinuationToken"] = token
            try:
                response = self.client.list_objects_v2(**params)
            except (ClientError, BotoCoreError) as e:
                raise self._translate("list objects", e) from e

            token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
            yield response.get("Contents", []), token
            if token is None:
                return

    def delete_objects(self, keys: List[str], batch_size: int = GC_DELETE_BATCH_SIZE) -> List[str]:
        """Delete objects by full key.

        A failing batch or key is logged and reported; it never stops the
        remaining batches.

        Returns:
            Keys that could not be deleted
        """
        failed: List[str] = []
        for start in range(0, len(keys), batch_size):
            batch = keys[start:start + batch_size]
            try:
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as e:
                logger.error("Failed to delete batch of {} objects: {}", len(batch), e)
                failed.extend(batch)
                continue

            for error in response.get("Errors", []):
                key = error.get("Key")
                logger.error(
                    "Failed to delete {}: {} {}",
                    key or "<unknown key>",
                    error.get("Code"),
                    error.get("Message", ""),
                )
                if key:
                    failed.append(key)
        return failed


def object_age_seconds(obj: Dict[str, Any], now: datetime) -> Optional[float]:
    """Seconds since an object listing entry was last modified, if known."""
    modified = obj.get("LastModified")
    if not isinstance(modified, datetime):
        return None
    if modified.tzinfo is None:
        return (now.replace(tzinfo=None) - modified).total_seconds()
    return (now - modified).total_seconds()
