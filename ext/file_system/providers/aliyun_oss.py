"""
Aliyun OSS Provider

支持 CryptoBucket 和普通 Bucket，支持 RSA 密钥对认证
"""

import asyncio
from datetime import datetime
from functools import partial
from typing import Any

import oss2
from oss2.crypto import RsaProvider
from oss2.exceptions import NoSuchKey, NoSuchUpload, NotFound, OssError
from oss2.headers import OSS_SERVER_SIDE_ENCRYPTION, OSS_SERVER_SIDE_ENCRYPTION_KEY_ID
from oss2.models import PartInfo
from loguru import logger

from ext.file_system.base import BaseFileSystemProvider, FileInfo, MultipartPart, MultipartUploadInfo
from ext.file_system.exceptions import (
    FileSystemConfigError,
    FileSystemError,
    ObjectNotFoundError,
    PartNotFoundError,
    UploadNotFoundError,
)
from ext.file_system.stream import DataStream, read_all
from ext.file_system.types import AliyunOSSExtraConfig

USER_META_PREFIX = "x-oss-meta-"


def to_datetime(value: Any) -> datetime | None:
    """OSS 返回的时间为 unix 时间戳"""
    if isinstance(value, int):
        return datetime.fromtimestamp(value).astimezone()
    return value  # type: ignore[no-any-return]


class AliyunOSSFileSystemProvider(BaseFileSystemProvider[AliyunOSSExtraConfig]):
    """阿里云 OSS Provider（支持 CryptoBucket）"""

    def __init__(self, *args: Any, **kwargs: Any) -> None:  # type: ignore[misc]
        super().__init__(*args, **kwargs)
        self._bucket = None
        self._auth = None

    @property
    def auth(self):  # type: ignore[no-untyped-def]
        """懒加载认证对象"""
        if self._auth is None:
            self._auth = oss2.AuthV4(self.access_key, self.secret_key)
        return self._auth

    @property
    def is_crypto(self) -> bool:
        return bool(self.extra_config.private_key_content and self.extra_config.public_key_content)

    @property
    def bucket(self):  # type: ignore[no-untyped-def]
        """懒加载 Bucket 对象（支持加密）"""
        if self._bucket is None:
            bucket_name = self.storage_location

            if self.is_crypto:
                logger.info("Using CryptoBucket with RSA key pair for Aliyun OSS")

                key_pair = {
                    "private_key": self.extra_config.private_key_content,
                    "public_key": self.extra_config.public_key_content,
                }
                vendor = self.extra_config.mat_desc_vendor or "multifs"
                crypto_provider = RsaProvider(key_pair, mat_desc={vendor: vendor})

                self._bucket = oss2.CryptoBucket(
                    auth=self.auth,
                    endpoint=self.endpoint,
                    bucket_name=bucket_name,
                    crypto_provider=crypto_provider,
                    region=self.region,
                    app_name=self.extra_config.app_name or "",
                    enable_crc=self.extra_config.enable_crc,
                )
            else:
                logger.info("Using regular Bucket for Aliyun OSS")

                self._bucket = oss2.Bucket(
                    auth=self.auth,
                    endpoint=self.endpoint,
                    bucket_name=bucket_name,
                    region=self.region,
                    app_name=self.extra_config.app_name or "",
                    enable_crc=self.extra_config.enable_crc,
                )

        return self._bucket  # type: ignore[return-value]

    def _validate_config(self) -> None:
        if not self.storage_location:
            raise FileSystemConfigError("storage_location (bucket name) is required for Aliyun OSS")
        if not self.endpoint:
            raise FileSystemConfigError("endpoint is required for Aliyun OSS")
        if not self.region:
            raise FileSystemConfigError("region is required for Aliyun OSS (V4 signature)")
        if not self.access_key or not self.secret_key:
            raise FileSystemConfigError("access_key and secret_key are required for Aliyun OSS")
        if bool(self.extra_config.private_key_content) != bool(self.extra_config.public_key_content):
            raise FileSystemConfigError("private_key_content and public_key_content must be set together")

    def _encryption_headers(self) -> dict[str, str]:
        """服务端加密请求头"""
        if not self.extra_config.is_encrypted_bucket or self.is_crypto:
            return {}
        if self.extra_config.kms_key_id:
            return {
                OSS_SERVER_SIDE_ENCRYPTION: "KMS",
                OSS_SERVER_SIDE_ENCRYPTION_KEY_ID: self.extra_config.kms_key_id,
            }
        return {OSS_SERVER_SIDE_ENCRYPTION: "AES256"}

    async def _run(self, func, *args: Any, **kwargs: Any) -> Any:  # type: ignore[no-untyped-def]
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _uri(self, key: str) -> str:
        return f"oss://{self.storage_location}/{key}"

    def _extract_key(self, uri: str) -> str:
        """从 URI 提取 object key"""
        if uri.startswith(f"oss://{self.storage_location}/"):
            return uri[len(f"oss://{self.storage_location}/") :]
        return uri.lstrip("/")

    def _dir_key(self, uri: str) -> str:
        key = self._extract_key(uri).rstrip("/")
        return f"{key}/" if key else ""

    def _check_multipart(self) -> None:
        if self.is_crypto:
            raise FileSystemError("multipart upload through this interface is not supported on CryptoBucket")

    async def validate_connection(self) -> bool:
        """验证连接"""
        try:
            await self._run(self.bucket.get_bucket_info)
            return True
        except OssError as e:
            logger.error(f"Aliyun OSS connection failed: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to validate Aliyun OSS connection: {e}")
            return False

    async def list_files(
        self,
        prefix: str = "",
        recursive: bool = False,
        limit: int | None = None,
    ) -> list[FileInfo]:
        """列出文件（非递归时包含子目录）"""
        key_prefix = self._extract_key(prefix) if prefix else ""

        def list_files_sync() -> list[FileInfo]:
            files = []
            max_keys = min(limit, 1000) if limit else 1000
            for obj in oss2.ObjectIterator(
                self.bucket, prefix=key_prefix, delimiter="" if recursive else "/", max_keys=max_keys,
            ):
                if limit is not None and len(files) >= limit:
                    break

                if obj.is_prefix():
                    files.append(FileInfo(uri=self._uri(obj.key), name=obj.key.rstrip("/").split("/")[-1], is_dir=True))  # type: ignore[call-arg]
                    continue
                if obj.key.endswith("/"):
                    continue

                files.append(
                    FileInfo(  # type: ignore[call-arg]
                        uri=self._uri(obj.key),
                        name=obj.key.split("/")[-1],
                        size=obj.size,
                        last_modified=to_datetime(obj.last_modified),
                        etag=obj.etag,
                    ),
                )
            return files

        return await self._run(list_files_sync)  # type: ignore[no-any-return]

    async def make_dir(self, path: str) -> None:
        """创建目录占位对象"""
        await self._run(self.bucket.put_object, self._dir_key(path), b"")

    async def remove_dir(self, path: str) -> None:
        """删除前缀下的所有对象"""
        dir_key = self._dir_key(path)

        def remove() -> None:
            batch: list[str] = []
            for obj in oss2.ObjectIterator(self.bucket, prefix=dir_key):
                batch.append(obj.key)
                if len(batch) == 1000:
                    self.bucket.batch_delete_objects(batch)
                    batch = []
            if batch:
                self.bucket.batch_delete_objects(batch)

        await self._run(remove)

    async def get_file(self, uri: str) -> bytes:
        """获取文件内容"""
        try:
            result = await self._run(self.bucket.get_object, self._extract_key(uri))
        except NoSuchKey as e:
            raise ObjectNotFoundError(uri) from e
        return await self._run(result.read)  # type: ignore[no-any-return]

    async def get_file_stream(self, uri: str, chunk_size: int = 8192):  # type: ignore[misc]
        """获取文件流"""
        try:
            result = await self._run(self.bucket.get_object, self._extract_key(uri))
        except NoSuchKey as e:
            raise ObjectNotFoundError(uri) from e

        try:
            while True:
                chunk = await self._run(result.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            result.close()

    async def _head(self, uri: str) -> Any:
        try:
            return await self._run(self.bucket.head_object, self._extract_key(uri))
        except (NoSuchKey, NotFound) as e:
            raise ObjectNotFoundError(uri) from e

    @staticmethod
    def _user_meta(headers: Any) -> dict[str, str]:
        return {
            k[len(USER_META_PREFIX) :]: v for k, v in dict(headers or {}).items() if k.lower().startswith(USER_META_PREFIX)
        }

    async def get_file_metadata(self, uri: str) -> FileInfo:
        """获取文件信息"""
        key = self._extract_key(uri)
        meta = await self._head(uri)

        return FileInfo(
            uri=self._uri(key),
            name=key.rstrip("/").split("/")[-1],
            size=int(meta.content_length or 0),
            last_modified=to_datetime(meta.last_modified),
            etag=meta.etag,
            content_type=meta.content_type,
            is_dir=key.endswith("/"),
            extra=self._user_meta(meta.headers),
        )

    async def file_exists(self, uri: str) -> bool:
        """检查文件或目录是否存在"""
        if await self._run(self.bucket.object_exists, self._extract_key(uri)):
            return True
        return await self.is_dir(uri)

    async def is_dir(self, uri: str) -> bool:
        """前缀下存在任意对象即视为目录"""
        dir_key = self._dir_key(uri)
        if not dir_key:
            return True
        result = await self._run(self.bucket.list_objects, prefix=dir_key, max_keys=1)
        return bool(result.object_list or result.prefix_list)

    async def upload_file(
        self,
        uri: str,
        content: DataStream,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> FileInfo:
        """上传文件"""
        headers = self._encryption_headers()
        if content_type:
            headers["Content-Type"] = content_type
        for k, v in (metadata or {}).items():
            headers[f"{USER_META_PREFIX}{k}"] = str(v)

        body = await read_all(content)
        await self._run(self.bucket.put_object, self._extract_key(uri), body, headers=headers)

        return await self.get_file_metadata(uri)

    async def delete_file(self, uri: str) -> bool:
        """删除文件"""
        key = self._extract_key(uri)
        if not await self._run(self.bucket.object_exists, key):
            return False
        await self._run(self.bucket.delete_object, key)
        return True

    async def copy_file(self, src: str, dst: str) -> FileInfo:
        """复制对象（服务端复制）"""
        try:
            await self._run(
                self.bucket.copy_object, self.storage_location, self._extract_key(src), self._extract_key(dst),
            )
        except (NoSuchKey, NotFound) as e:
            raise ObjectNotFoundError(src) from e
        return await self.get_file_metadata(dst)

    async def get_metadata(self, uri: str) -> dict[str, Any]:
        """获取元数据"""
        key = self._extract_key(uri)
        meta = await self._head(uri)
        return {
            "name": key.split("/")[-1],
            "size": int(meta.content_length or 0),
            "content_type": meta.content_type,
            "etag": meta.etag,
            "modify_time": to_datetime(meta.last_modified),
            "metadata": self._user_meta(meta.headers),
        }

    async def set_metadata(self, uri: str, metadata: dict[str, Any]) -> None:
        """覆盖用户元数据"""
        headers = {f"{USER_META_PREFIX}{k}": str(v) for k, v in metadata.items() if k != "content_type"}
        if metadata.get("content_type"):
            headers["Content-Type"] = metadata["content_type"]
        try:
            await self._run(self.bucket.update_object_meta, self._extract_key(uri), headers)
        except (NoSuchKey, NotFound) as e:
            raise ObjectNotFoundError(uri) from e

    # 分片上传

    async def init_multipart_upload(self, uri: str, content_type: str | None = None) -> str:
        """初始化分片上传"""
        self._check_multipart()
        headers = self._encryption_headers()
        if content_type:
            headers["Content-Type"] = content_type
        result = await self._run(self.bucket.init_multipart_upload, self._extract_key(uri), headers=headers)
        return result.upload_id  # type: ignore[no-any-return]

    async def upload_part(self, uri: str, upload_id: str, part_number: int, data: DataStream) -> str:
        """上传分片"""
        self._check_multipart()
        body = await read_all(data)
        try:
            result = await self._run(self.bucket.upload_part, self._extract_key(uri), upload_id, part_number, body)
        except NoSuchUpload as e:
            raise UploadNotFoundError(upload_id) from e
        return result.etag  # type: ignore[no-any-return]

    async def complete_multipart_upload(self, uri: str, upload_id: str, parts: list[MultipartPart]) -> None:
        """完成分片上传"""
        self._check_multipart()
        part_infos = [PartInfo(p.part_number, p.etag) for p in parts]
        try:
            await self._run(self.bucket.complete_multipart_upload, self._extract_key(uri), upload_id, part_infos)
        except NoSuchUpload as e:
            raise UploadNotFoundError(upload_id) from e
        except OssError as e:
            if e.code == "InvalidPart":
                raise PartNotFoundError(None) from e
            raise

    async def abort_multipart_upload(self, uri: str, upload_id: str) -> None:
        """取消分片上传，upload_id 不存在时忽略"""
        try:
            await self._run(self.bucket.abort_multipart_upload, self._extract_key(uri), upload_id)
        except NoSuchUpload:
            logger.debug(f"Abort unknown multipart upload {upload_id}, ignored")

    async def list_multipart_uploads(self, prefix: str = "") -> list[MultipartUploadInfo]:
        """列出未完成的分片上传"""
        key_prefix = self._extract_key(prefix) if prefix else ""

        def collect() -> list[MultipartUploadInfo]:
            return [
                MultipartUploadInfo(upload_id=u.upload_id, path=u.key, create_time=to_datetime(u.initiation_date))
                for u in oss2.MultipartUploadIterator(self.bucket, prefix=key_prefix)
            ]

        return await self._run(collect)  # type: ignore[no-any-return]

    async def list_uploaded_parts(self, uri: str, upload_id: str) -> list[MultipartPart]:
        """列出已上传的分片"""
        key = self._extract_key(uri)

        def collect() -> list[MultipartPart]:
            return [
                MultipartPart(part_number=p.part_number, etag=p.etag, size=p.size)
                for p in oss2.PartIterator(self.bucket, key, upload_id)
            ]

        try:
            return await self._run(collect)  # type: ignore[no-any-return]
        except NoSuchUpload as e:
            raise UploadNotFoundError(upload_id) from e
