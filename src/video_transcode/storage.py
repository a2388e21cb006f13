"""Blob store uploads and source downloads.

Uploads go to either a local directory tree (development) or S3. Sources
can be fetched from http(s), s3:// or the local filesystem.
"""

import logging
import mimetypes
import shutil
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import boto3
import requests
from botocore.config import Config

from .errors import DownloadError, UploadError
from .models import StorageConfig

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


@dataclass
class UploadResult:
    """Where an artifact landed."""
    url: str
    size: int
    id: str


def guess_content_type(path: Path) -> str:
    content_type, _ = mimetypes.guess_type(str(path))
    return content_type or "application/octet-stream"


def get_s3_client(region: str = "us-east-1"):
    """Create a boto3 S3 client.

    Credentials come from the standard AWS chain (env, profile, instance role).
    """
    config = Config(signature_version="s3v4", retries={"max_attempts": 3})
    return boto3.session.Session(region_name=region).client("s3", config=config)


class BlobStore(ABC):
    """Destination for encoded artifacts."""

    @abstractmethod
    def upload(self, local_path: Path, destination: str) -> UploadResult:
        """Upload a local file.

        Args:
            local_path: File to upload
            destination: Relative key hint, e.g. "videos/<key>/720p.mp4"

        Returns:
            UploadResult with public url, stored size, and storage id
        """


class LocalBlobStore(BlobStore):
    """Copies artifacts into a directory tree (served by some static host)."""

    def __init__(self, root: str, public_base_url: Optional[str] = None):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def upload(self, local_path: Path, destination: str) -> UploadResult:
        target = self.root / destination
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, target)

        if self.public_base_url:
            url = f"{self.public_base_url}/{destination}"
        else:
            url = target.resolve().as_uri()

        logger.debug("Stored %s -> %s", local_path, target)
        return UploadResult(url=url, size=target.stat().st_size, id=destination)


class S3BlobStore(BlobStore):
    """Uploads artifacts to S3 with ServerSideEncryption on every PutObject."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: str = "us-east-1",
        public_base_url: Optional[str] = None,
        sse: Optional[str] = "AES256",
        client=None,
    ):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region = region
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.sse = sse
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client(self.region)
        return self._client

    def key_for(self, destination: str) -> str:
        destination = destination.lstrip("/")
        return f"{self.prefix}/{destination}" if self.prefix else destination

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def upload(self, local_path: Path, destination: str) -> UploadResult:
        key = self.key_for(destination)
        extra_args = {"ContentType": guess_content_type(Path(local_path))}
        if self.sse:
            extra_args["ServerSideEncryption"] = self.sse

        logger.info("Uploading %s -> s3://%s/%s", local_path, self.bucket, key)
        # upload_file handles multipart for large renditions
        self.client.upload_file(str(local_path), self.bucket, key, ExtraArgs=extra_args)
        return UploadResult(url=self.url_for(key), size=Path(local_path).stat().st_size, id=key)


def build_blob_store(config: StorageConfig) -> BlobStore:
    """Create the configured blob store."""
    if config.backend == "s3":
        return S3BlobStore(
            bucket=config.s3_bucket,
            prefix=config.s3_prefix,
            region=config.s3_region,
            public_base_url=config.public_base_url,
            sse=config.s3_sse,
        )
    return LocalBlobStore(config.local_root, config.public_base_url)


def upload_artifact(blob_store: BlobStore, local_path: Path, destination: str) -> UploadResult:
    """Upload and validate the result.

    Raises:
        UploadError: If the upload fails or returns an empty url / zero size
    """
    try:
        result = blob_store.upload(local_path, destination)
    except Exception as e:
        raise UploadError(f"Upload of {destination} failed: {e}") from e

    if not result.url or result.size <= 0:
        raise UploadError(f"Upload of {destination} returned an unusable result: {result}")
    return result


class SourceDownloader:
    """Fetches source media into a scratch directory.

    Downloads run on worker threads, so unless a session is injected each
    thread gets its own requests.Session.
    """

    def __init__(
        self,
        timeout_s: int = 60,
        s3_attempts: int = 3,
        s3_retry_delay_s: float = 2.0,
        region: str = "us-east-1",
        session: Optional[requests.Session] = None,
        s3_client=None,
    ):
        self.timeout_s = timeout_s
        self.s3_attempts = s3_attempts
        self.s3_retry_delay_s = s3_retry_delay_s
        self.region = region
        self._session = session
        self._local = threading.local()
        self._s3_client = s3_client

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    @classmethod
    def from_config(cls, config: StorageConfig) -> "SourceDownloader":
        return cls(
            timeout_s=config.download_timeout_s,
            s3_attempts=config.download_attempts,
            region=config.s3_region,
        )

    def download(self, source_url: str, dest_dir: Path) -> Path:
        """Download source_url into dest_dir.

        Returns:
            Path of the local copy

        Raises:
            DownloadError: On any fetch failure or an empty result
        """
        parsed = urlparse(source_url)
        suffix = Path(unquote(parsed.path)).suffix or ".mp4"
        target = Path(dest_dir) / f"source_{uuid.uuid4().hex[:8]}{suffix}"

        try:
            if parsed.scheme in ("http", "https"):
                self._download_http(source_url, target)
            elif parsed.scheme == "s3":
                self._download_s3(parsed.netloc, parsed.path.lstrip("/"), target)
            elif parsed.scheme == "file":
                shutil.copyfile(unquote(parsed.path), target)
            elif not parsed.scheme or Path(source_url).exists():
                shutil.copyfile(source_url, target)
            else:
                raise DownloadError(f"Unsupported source scheme: {parsed.scheme}")
        except DownloadError:
            raise
        except Exception as e:
            raise DownloadError(f"Failed to download {source_url}: {e}") from e

        if not target.exists() or target.stat().st_size == 0:
            raise DownloadError(f"Downloaded source is empty: {source_url}")

        logger.info("Downloaded %s (%.2f MB)", source_url, target.stat().st_size / 1024 / 1024)
        return target

    def _download_http(self, url: str, target: Path) -> None:
        with self.session.get(url, stream=True, timeout=self.timeout_s) as response:
            response.raise_for_status()
            with open(target, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)

    def _download_s3(self, bucket: str, key: str, target: Path) -> None:
        if self._s3_client is None:
            self._s3_client = get_s3_client(self.region)

        last_exc = None
        for attempt in range(1, self.s3_attempts + 1):
            try:
                logger.info("Downloading s3://%s/%s (attempt %d)", bucket, key, attempt)
                self._s3_client.download_file(bucket, key, str(target))
                return
            except Exception as exc:
                last_exc = exc
                logger.warning("Download attempt %d failed: %s", attempt, exc)
                if attempt < self.s3_attempts:
                    time.sleep(self.s3_retry_delay_s)
        raise DownloadError(f"s3://{bucket}/{key} failed after {self.s3_attempts} attempts: {last_exc}")
