import io
from datetime import timedelta
from logging import getLogger
from typing import List, Optional

from minio import Minio
from minio.error import S3Error

from job_runner.config.base_config import settings

logger = getLogger(__name__)

MISSING_OBJECT_CODES = ("NoSuchKey", "NoSuchObject", "NotFound")


class MinioClient:
    def __init__(self, config=settings):
        internal_host = config.MINIO_ENDPOINT.replace("http://", "").replace("https://", "")
        self.internal_client = Minio(
            internal_host,
            access_key=config.MINIO_ACCESS_KEY,
            secret_key=config.MINIO_SECRET_KEY,
            secure=config.MINIO_ENDPOINT.startswith("https")
        )

        self.bucket_name = config.MINIO_BUCKET

    def check_bucket_exists(self, bucket_name: str) -> bool:
        return self.internal_client.bucket_exists(bucket_name)

    def ensure_bucket(self, bucket_name: str):
        if not self.check_bucket_exists(bucket_name):
            self.internal_client.make_bucket(bucket_name)

    def upload_file(self, file_path: str, object_name: str, bucket_name: Optional[str] = None):
        bucket = bucket_name or self.bucket_name
        self.ensure_bucket(bucket)
        return self.internal_client.fput_object(bucket, object_name, file_path)

    def download_file(self, object_name: str, file_path: str, bucket_name: Optional[str] = None):
        return self.internal_client.fget_object(bucket_name or self.bucket_name, object_name, file_path)

    def put_text(self, object_name: str, text: str, bucket_name: Optional[str] = None):
        bucket = bucket_name or self.bucket_name
        self.ensure_bucket(bucket)
        data = text.encode("utf-8")
        return self.internal_client.put_object(
            bucket, object_name, io.BytesIO(data), length=len(data), content_type="application/json"
        )

    def get_text(self, object_name: str, bucket_name: Optional[str] = None) -> str:
        response = self.internal_client.get_object(bucket_name or self.bucket_name, object_name)
        try:
            return response.read().decode("utf-8")
        finally:
            response.close()
            response.release_conn()

    def object_size(self, object_name: str, bucket_name: Optional[str] = None) -> int:
        return self.internal_client.stat_object(bucket_name or self.bucket_name, object_name).size

    def file_exists(self, object_name: str, bucket_name: Optional[str] = None) -> bool:
        try:
            self.internal_client.stat_object(bucket_name or self.bucket_name, object_name)
            return True
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                return False
            raise

    def list_objects(self, prefix: str, bucket_name: Optional[str] = None) -> List[str]:
        objects = self.internal_client.list_objects(bucket_name or self.bucket_name, prefix=prefix, recursive=True)
        return [obj.object_name for obj in objects]

    def remove_object(self, object_name: str, bucket_name: Optional[str] = None):
        self.internal_client.remove_object(bucket_name or self.bucket_name, object_name)

    def remove_prefix(self, prefix: str, bucket_name: Optional[str] = None) -> int:
        bucket = bucket_name or self.bucket_name
        names = self.list_objects(prefix, bucket)
        for name in names:
            self.internal_client.remove_object(bucket, name)
        logger.info(f"Removed {len(names)} objects under {bucket}/{prefix}")
        return len(names)

    def generate_internal_presigned_get_url(self, object_name: str, expires: int = 3600,
                                            bucket_name: Optional[str] = None) -> str:
        """
        GET URL signed for the internal endpoint, for demuxers running inside the cluster.
        """
        return self.internal_client.presigned_get_object(
            bucket_name or self.bucket_name,
            object_name,
            expires=timedelta(seconds=expires),
        )

