import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Tuple

from minio.error import S3Error

from job_runner.config.base_config import settings
from job_runner.exceptions.exceptions import StagingError
from job_runner.storage.minio_client import MinioClient


logger = logging.getLogger(__name__)

S3_SCHEME = "s3://"
FILE_SCHEME = "file://"


def join_uri(base: str, name: str) -> str:
    return f"{base.rstrip('/')}/{name}"


def is_object_uri(uri: str) -> bool:
    return uri.startswith(S3_SCHEME)


def split_object_uri(uri: str) -> Tuple[str, str]:
    """s3://bucket/some/key -> ("bucket", "some/key")"""
    bucket, _, key = uri[len(S3_SCHEME):].partition("/")
    if not bucket:
        raise StagingError(f"Object URI has no bucket: {uri}")
    return bucket, key


def local_path(uri: str) -> Path:
    return Path(uri[len(FILE_SCHEME):] if uri.startswith(FILE_SCHEME) else uri)


@contextmanager
def storage_errors(action: str, uri: str):
    try:
        yield
    except StagingError:
        raise
    except (S3Error, OSError) as e:
        logger.error(f"Storage error while trying to {action} {uri}: {e}")
        raise StagingError(f"Failed to {action} {uri}: {e}") from e


class StagingService:
    """
    Copy, stat, list and delete over two kinds of locators: ``s3://bucket/key``
    objects in MinIO, and local paths (optionally ``file://`` prefixed).
    """

    def __init__(self, minio_client: Optional[MinioClient] = None, config=settings):
        self._minio = minio_client
        self.config = config

    @property
    def minio(self) -> MinioClient:
        if self._minio is None:
            self._minio = MinioClient(self.config)
        return self._minio

    def exists(self, uri: str) -> bool:
        with storage_errors("stat", uri):
            if is_object_uri(uri):
                bucket, key = split_object_uri(uri)
                if self.minio.file_exists(key, bucket):
                    return True
                # Segment outputs are prefixes, not single objects.
                return bool(self.minio.list_objects(key.rstrip("/") + "/", bucket))
            return local_path(uri).exists()

    def size(self, uri: str) -> int:
        with storage_errors("stat", uri):
            if is_object_uri(uri):
                bucket, key = split_object_uri(uri)
                return self.minio.object_size(key, bucket)
            return local_path(uri).stat().st_size

    def copy(self, source: str, destination: str, overwrite: bool = False) -> None:
        if not overwrite and self.exists(destination):
            raise StagingError(f"Destination {destination} exists and overwrite is disabled")

        logger.info(f"Copying {source} -> {destination}")
        with storage_errors("copy", f"{source} -> {destination}"):
            if not is_object_uri(source) and not is_object_uri(destination):
                target = local_path(destination)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(local_path(source), target)
            elif not is_object_uri(source):
                bucket, key = split_object_uri(destination)
                self.minio.upload_file(str(local_path(source)), key, bucket)
            elif not is_object_uri(destination):
                bucket, key = split_object_uri(source)
                target = local_path(destination)
                target.parent.mkdir(parents=True, exist_ok=True)
                self.minio.download_file(key, str(target), bucket)
            else:
                with tempfile.TemporaryDirectory(dir=self._temp_root()) as tmp:
                    relay = Path(tmp) / "relay"
                    src_bucket, src_key = split_object_uri(source)
                    dst_bucket, dst_key = split_object_uri(destination)
                    self.minio.download_file(src_key, str(relay), src_bucket)
                    self.minio.upload_file(str(relay), dst_key, dst_bucket)

    def upload_file(self, path: str, destination: str) -> None:
        self.copy(path, destination, overwrite=True)

    def write_text(self, uri: str, text: str) -> None:
        with storage_errors("write", uri):
            if is_object_uri(uri):
                bucket, key = split_object_uri(uri)
                self.minio.put_text(key, text, bucket)
            else:
                path = local_path(uri)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(text, encoding="utf-8")

    def read_text(self, uri: str) -> str:
        with storage_errors("read", uri):
            if is_object_uri(uri):
                bucket, key = split_object_uri(uri)
                return self.minio.get_text(key, bucket)
            return local_path(uri).read_text(encoding="utf-8")

    def list(self, uri: str) -> List[str]:
        """Every file under a directory or object prefix, as locators."""
        with storage_errors("list", uri):
            if is_object_uri(uri):
                bucket, key = split_object_uri(uri)
                prefix = key.rstrip("/") + "/"
                return [f"{S3_SCHEME}{bucket}/{name}" for name in self.minio.list_objects(prefix, bucket)]
            root = local_path(uri)
            if not root.is_dir():
                return []
            return sorted(str(p) for p in root.rglob("*") if p.is_file())

    def delete(self, uri: str, recursive: bool = False) -> None:
        with storage_errors("delete", uri):
            if is_object_uri(uri):
                bucket, key = split_object_uri(uri)
                if recursive:
                    self.minio.remove_prefix(key.rstrip("/") + "/", bucket)
                if self.minio.file_exists(key, bucket):
                    self.minio.remove_object(key, bucket)
                return
            path = local_path(uri)
            if path.is_dir():
                if not recursive:
                    raise StagingError(f"{uri} is a directory, delete it recursively")
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()

    def set_permissions(self, uri: str, mode: int) -> None:
        if is_object_uri(uri):
            logger.debug(f"Skipping permissions on {uri}, object storage has no file modes")
            return
        with storage_errors("chmod", uri):
            path = local_path(uri)
            os.chmod(path, mode)
            if path.is_dir():
                for child in path.rglob("*"):
                    if child.is_file():
                        os.chmod(child, mode)

    def demux_source(self, uri: str) -> str:
        """Something FFmpeg can open: a local path, or a presigned GET URL for objects."""
        if is_object_uri(uri):
            bucket, key = split_object_uri(uri)
            with storage_errors("presign", uri):
                return self.minio.generate_internal_presigned_get_url(key, expires=6 * 3600, bucket_name=bucket)
        return str(local_path(uri))

    def make_temp_file(self, suffix: str) -> str:
        fd, path = tempfile.mkstemp(suffix=suffix, dir=self._temp_root())
        os.close(fd)
        return path

    def _temp_root(self) -> str:
        root = Path(self.config.STAGING_DIR) / "tmp"
        root.mkdir(parents=True, exist_ok=True)
        return str(root)
