"""
MinIO Provider
"""

import io
import asyncio
from functools import partial
from typing import Any

from minio import Minio
from minio.commonconfig import REPLACE, CopySource
from minio.datatypes import Part
from minio.deleteobjects import DeleteObject
from minio.error import S3Error
from loguru import logger

from ext.file_system.base import BaseFileSystemProvider, FileInfo, MultipartPart, MultipartUploadInfo
from ext.file_system.exceptions import (
    FileSystemConfigError,
    ObjectNotFoundError,
    PartNotFoundError,
    UploadNotFoundError,
)
from ext.file_system.stream import DataStream, read_all
from ext.file_system.types import MinIOExtraConfig

NOT_FOUND_CODES = {"NoSuchKey", "NoSuchObject", "ResourceNotFound"}


class MinIOFileSystemProvider(BaseFileSystemProvider[MinIOExtraConfig]):
    """MinIO Provider（S3 兼容）

    minio SDK 为同步实现，所有调用通过 executor 执行；
    分片上传使用 SDK 的底层接口（_create_multipart_upload 等）
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:  # type: ignore[misc]
        super().__init__(*args, **kwargs)
        self._client = None

    @property
    def client(self) -> Minio:
        """懒加载 MinIO client"""
        if self._client is None:
            secure = self.use_ssl
            if self.extra_config.cert_check is not None:
                secure = self.extra_config.cert_check

            self._client = Minio(  # type: ignore[arg-type,assignment]
                endpoint=self.endpoint or "",
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=secure,
                region=self.extra_config.region or self.region,
                cert_check=self.verify_ssl,
            )
        return self._client  # type: ignore[return-value]

    @property
    def bucket(self) -> str:
        return self.storage_location or ""

    def _validate_config(self) -> None:
        if not self.access_key or not self.secret_key:
            raise FileSystemConfigError("access_key and secret_key are required for MinIO")
        if not self.endpoint:
            raise FileSystemConfigError("endpoint is required for MinIO")
        if not self.storage_location:
            raise FileSystemConfigError("storage_location (bucket_name) is required for MinIO")

    async def _run(self, func, *args: Any, **kwargs: Any) -> Any:  # type: ignore[no-untyped-def]
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _uri(self, key: str) -> str:
        return f"minio://{self.bucket}/{key}"

    def _extract_key(self, uri: str) -> str:
        """从 URI 提取 object key"""
        if uri.startswith(f"minio://{self.bucket}/"):
            return uri[len(f"minio://{self.bucket}/") :]
        return uri.lstrip("/")

    def _dir_key(self, uri: str) -> str:
        key = self._extract_key(uri).rstrip("/")
        return f"{key}/" if key else ""

    async def validate_connection(self) -> bool:
        """验证连接"""
        try:
            exists = await self._run(self.client.bucket_exists, bucket_name=self.bucket)
            if not exists:
                logger.error(f"MinIO bucket not found: {self.bucket}")
            return bool(exists)
        except S3Error as e:
            logger.error(f"MinIO connection failed: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to validate MinIO connection: {e}")
            return False

    async def list_files(
        self,
        prefix: str = "",
        recursive: bool = False,
        limit: int | None = None,
    ) -> list[FileInfo]:
        """列出文件（非递归时包含子目录）"""
        key_prefix = self._extract_key(prefix) if prefix else ""

        def collect() -> list[FileInfo]:
            files = []
            for obj in self.client.list_objects(bucket_name=self.bucket, prefix=key_prefix, recursive=recursive):
                if limit is not None and len(files) >= limit:
                    break
                name = obj.object_name or ""
                if obj.is_dir:
                    files.append(FileInfo(uri=self._uri(name), name=name.rstrip("/").split("/")[-1], is_dir=True))  # type: ignore[call-arg]
                    continue
                if name.endswith("/"):
                    continue
                files.append(
                    FileInfo(  # type: ignore[call-arg]
                        uri=self._uri(name),
                        name=name.split("/")[-1],
                        size=obj.size or 0,
                        last_modified=obj.last_modified,
                        etag=obj.etag,
                    ),
                )
            return files

        return await self._run(collect)  # type: ignore[no-any-return]

    async def make_dir(self, path: str) -> None:
        """创建目录占位对象"""
        await self._run(
            self.client.put_object,
            bucket_name=self.bucket,
            object_name=self._dir_key(path),
            data=io.BytesIO(b""),
            length=0,
        )

    async def remove_dir(self, path: str) -> None:
        """删除前缀下的所有对象"""
        dir_key = self._dir_key(path)

        def remove() -> None:
            objects = self.client.list_objects(bucket_name=self.bucket, prefix=dir_key, recursive=True)
            delete_list = [DeleteObject(obj.object_name) for obj in objects if obj.object_name]
            # remove_objects 是惰性的，必须迭代才会执行
            for error in self.client.remove_objects(bucket_name=self.bucket, delete_object_list=delete_list):
                logger.warning(f"Failed to remove MinIO object {error.name}: {error.message}")

        await self._run(remove)

    async def _get_object(self, uri: str) -> Any:
        try:
            return await self._run(self.client.get_object, bucket_name=self.bucket, object_name=self._extract_key(uri))
        except S3Error as e:
            if e.code in NOT_FOUND_CODES:
                raise ObjectNotFoundError(uri) from e
            raise

    async def get_file(self, uri: str) -> bytes:
        """获取文件内容"""
        response = await self._get_object(uri)
        try:
            return await self._run(response.read)  # type: ignore[no-any-return]
        finally:
            response.close()
            response.release_conn()

    async def get_file_stream(self, uri: str, chunk_size: int = 8192):  # type: ignore[misc]
        """获取文件流"""
        response = await self._get_object(uri)
        try:
            while True:
                chunk = await self._run(response.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            response.close()
            response.release_conn()

    async def _stat(self, uri: str) -> Any:
        try:
            return await self._run(self.client.stat_object, bucket_name=self.bucket, object_name=self._extract_key(uri))
        except S3Error as e:
            if e.code in NOT_FOUND_CODES:
                raise ObjectNotFoundError(uri) from e
            raise

    async def get_file_metadata(self, uri: str) -> FileInfo:
        """获取文件信息"""
        key = self._extract_key(uri)
        stat = await self._stat(uri)

        return FileInfo(
            uri=self._uri(key),
            name=key.rstrip("/").split("/")[-1],
            size=stat.size or 0,
            last_modified=stat.last_modified,
            etag=stat.etag,
            content_type=stat.content_type,
            is_dir=key.endswith("/"),
            extra=dict(stat.metadata or {}),
        )

    async def file_exists(self, uri: str) -> bool:
        """检查文件或目录是否存在"""
        try:
            await self._stat(uri)
            return True
        except ObjectNotFoundError:
            return await self.is_dir(uri)

    async def is_dir(self, uri: str) -> bool:
        """前缀下存在任意对象即视为目录"""
        dir_key = self._dir_key(uri)
        if not dir_key:
            return True

        def has_children() -> bool:
            for _ in self.client.list_objects(bucket_name=self.bucket, prefix=dir_key):
                return True
            return False

        return await self._run(has_children)  # type: ignore[no-any-return]

    async def upload_file(
        self,
        uri: str,
        content: DataStream,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> FileInfo:
        """上传文件"""
        body = await read_all(content)
        await self._run(
            self.client.put_object,
            bucket_name=self.bucket,
            object_name=self._extract_key(uri),
            data=io.BytesIO(body),
            length=len(body),
            content_type=content_type or "application/octet-stream",
            metadata=metadata,
            part_size=self.extra_config.part_size,
        )
        return await self.get_file_metadata(uri)

    async def delete_file(self, uri: str) -> bool:
        """删除文件"""
        if not await self.file_exists(uri):
            return False
        await self._run(self.client.remove_object, bucket_name=self.bucket, object_name=self._extract_key(uri))
        return True

    async def copy_file(self, src: str, dst: str) -> FileInfo:
        """复制对象（服务端复制）"""
        try:
            await self._run(
                self.client.copy_object,
                bucket_name=self.bucket,
                object_name=self._extract_key(dst),
                source=CopySource(self.bucket, self._extract_key(src)),
            )
        except S3Error as e:
            if e.code in NOT_FOUND_CODES:
                raise ObjectNotFoundError(src) from e
            raise
        return await self.get_file_metadata(dst)

    async def get_metadata(self, uri: str) -> dict[str, Any]:
        """获取元数据"""
        key = self._extract_key(uri)
        stat = await self._stat(uri)
        return {
            "name": key.split("/")[-1],
            "size": stat.size or 0,
            "content_type": stat.content_type,
            "etag": stat.etag,
            "modify_time": stat.last_modified,
            "metadata": dict(stat.metadata or {}),
        }

    async def set_metadata(self, uri: str, metadata: dict[str, Any]) -> None:
        """覆盖用户元数据（原地复制 + REPLACE）"""
        key = self._extract_key(uri)
        await self._stat(uri)
        await self._run(
            self.client.copy_object,
            bucket_name=self.bucket,
            object_name=key,
            source=CopySource(self.bucket, key),
            metadata={k: str(v) for k, v in metadata.items()},
            metadata_directive=REPLACE,
        )

    # 分片上传

    async def init_multipart_upload(self, uri: str, content_type: str | None = None) -> str:
        """初始化分片上传"""
        headers = {"Content-Type": content_type or "application/octet-stream"}
        return await self._run(  # type: ignore[no-any-return]
            self.client._create_multipart_upload,
            bucket_name=self.bucket,
            object_name=self._extract_key(uri),
            headers=headers,
        )

    async def upload_part(self, uri: str, upload_id: str, part_number: int, data: DataStream) -> str:
        """上传分片"""
        body = await read_all(data)
        try:
            return await self._run(  # type: ignore[no-any-return]
                self.client._upload_part,
                bucket_name=self.bucket,
                object_name=self._extract_key(uri),
                data=body,
                headers=None,
                upload_id=upload_id,
                part_number=part_number,
            )
        except S3Error as e:
            if e.code == "NoSuchUpload":
                raise UploadNotFoundError(upload_id) from e
            raise

    async def complete_multipart_upload(self, uri: str, upload_id: str, parts: list[MultipartPart]) -> None:
        """完成分片上传"""
        try:
            await self._run(
                self.client._complete_multipart_upload,
                bucket_name=self.bucket,
                object_name=self._extract_key(uri),
                upload_id=upload_id,
                parts=[Part(p.part_number, p.etag) for p in parts],
            )
        except S3Error as e:
            if e.code == "NoSuchUpload":
                raise UploadNotFoundError(upload_id) from e
            if e.code == "InvalidPart":
                raise PartNotFoundError(None) from e
            raise

    async def abort_multipart_upload(self, uri: str, upload_id: str) -> None:
        """取消分片上传，upload_id 不存在时忽略"""
        try:
            await self._run(
                self.client._abort_multipart_upload,
                bucket_name=self.bucket,
                object_name=self._extract_key(uri),
                upload_id=upload_id,
            )
        except S3Error as e:
            if e.code != "NoSuchUpload":
                raise
            logger.debug(f"Abort unknown multipart upload {upload_id}, ignored")

    async def list_multipart_uploads(self, prefix: str = "") -> list[MultipartUploadInfo]:
        """列出未完成的分片上传"""
        result = await self._run(
            self.client._list_multipart_uploads,
            bucket_name=self.bucket,
            prefix=self._extract_key(prefix) if prefix else None,
        )
        return [
            MultipartUploadInfo(upload_id=u.upload_id, path=u.object_name, create_time=u.initiated_time)
            for u in result.uploads
        ]

    async def list_uploaded_parts(self, uri: str, upload_id: str) -> list[MultipartPart]:
        """列出已上传的分片"""
        try:
            result = await self._run(
                self.client._list_parts,
                bucket_name=self.bucket,
                object_name=self._extract_key(uri),
                upload_id=upload_id,
            )
        except S3Error as e:
            if e.code == "NoSuchUpload":
                raise UploadNotFoundError(upload_id) from e
            raise
        return [MultipartPart(part_number=p.part_number, etag=p.etag, size=p.size) for p in result.parts]
