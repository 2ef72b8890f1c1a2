"""
AWS S3 Provider (async with aiobotocore)

同时作为 S3 兼容存储（华为云 OBS、腾讯云 COS）的基类
"""

from typing import Any, TypeVar

from aiobotocore.config import AioConfig
from aiobotocore.session import AioSession
from botocore.exceptions import ClientError

from ext.file_system.base import BaseFileSystemProvider, FileInfo, MultipartPart, MultipartUploadInfo
from ext.file_system.exceptions import (
    FileSystemConfigError,
    ObjectNotFoundError,
    PartNotFoundError,
    UploadNotFoundError,
)
from ext.file_system.stream import DataStream, read_all
from ext.file_system.types import S3CompatibleExtraConfig, S3ExtraConfig
from loguru import logger

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

S3ConfigT = TypeVar("S3ConfigT", bound=S3CompatibleExtraConfig)


def error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class S3CompatibleFileSystemProvider(BaseFileSystemProvider[S3ConfigT]):
    """S3 协议 Provider 基类（aiobotocore），子类通过泛型参数指定 extra_config 类型"""

    uri_scheme = "s3"
    default_region = "us-east-1"

    def __init__(self, *args: Any, **kwargs: Any) -> None:  # type: ignore[misc]
        super().__init__(*args, **kwargs)
        self._session = None
        self._client = None

    @property
    async def client(self) -> Any:
        """懒加载 aiobotocore client"""
        if self._client is None:
            s3_config = {}
            if self.extra_config.addressing_style:
                s3_config["addressing_style"] = self.extra_config.addressing_style
            if self.extra_config.payload_transfer_threshold is not None:
                s3_config["payload_transfer_threshold"] = self.extra_config.payload_transfer_threshold
            if self.extra_config.signature_version:
                signature_version_map = {"s3v4": "v4", "s3v2": "v2"}
                s3_config["signature_version"] = signature_version_map.get(
                    self.extra_config.signature_version.lower(), "v4",
                )

            config = AioConfig(
                connect_timeout=self.timeout,
                read_timeout=self.timeout,
                max_pool_connections=self.max_connections,
                retries={"max_attempts": self.max_retries},
                s3=s3_config if s3_config else None,
                **(self.extra_config.config or {}),
            )

            session = AioSession()
            self._session = session

            client_creator = session.create_client(  # type: ignore[misc]
                "s3",
                region_name=self.region or self.default_region,
                aws_secret_access_key=self.secret_key,
                aws_access_key_id=self.access_key,
                aws_session_token=getattr(self.extra_config, "session_token", None),
                endpoint_url=self.endpoint,
                config=config,
                use_ssl=self.use_ssl,
                verify=self.verify_ssl,
            )
            self._client = await client_creator.__aenter__()
        return self._client

    @property
    def bucket(self) -> str:
        return self.storage_location or ""

    def _validate_config(self) -> None:
        if not self.access_key or not self.secret_key:
            raise FileSystemConfigError(f"access_key and secret_key are required for {self.uri_scheme}")
        if not self.storage_location:
            raise FileSystemConfigError(f"storage_location (bucket_name) is required for {self.uri_scheme}")

    async def validate_connection(self) -> bool:
        """验证连接"""
        try:
            client = await self.client
            # 尝试列出 bucket 中的对象作为连接验证
            await client.list_objects_v2(Bucket=self.bucket, MaxKeys=1)
            return True
        except ClientError as e:
            code = error_code(e)
            if code in ("404", "NoSuchBucket"):
                logger.error(f"Bucket not found: {self.bucket}")
            elif code in ("403", "AccessDenied"):
                logger.error(f"Access denied to bucket: {self.bucket}")
            else:
                logger.error(f"Failed to validate {self.uri_scheme} connection: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to validate {self.uri_scheme} connection: {e}")
            return False

    def _uri(self, key: str) -> str:
        return f"{self.uri_scheme}://{self.bucket}/{key}"

    def _extract_key(self, uri: str) -> str:
        """从 URI 提取 object key"""
        prefix = f"{self.uri_scheme}://{self.bucket}/"
        if uri.startswith(prefix):
            return uri[len(prefix) :]
        return uri.lstrip("/")

    def _dir_key(self, uri: str) -> str:
        key = self._extract_key(uri).rstrip("/")
        return f"{key}/" if key else ""

    async def list_files(
        self, prefix: str = "", recursive: bool = False, limit: int | None = None,
    ) -> list[FileInfo]:
        """列出文件（非递归时公共前缀作为目录返回）"""
        client = await self.client
        paginator = client.get_paginator("list_objects_v2")
        key_prefix = self._extract_key(prefix) if prefix else ""

        paginate_kwargs = {
            "Bucket": self.bucket,
            "Prefix": key_prefix,
        }
        if not recursive:
            paginate_kwargs["Delimiter"] = "/"

        files: list[FileInfo] = []
        async for page in paginator.paginate(**paginate_kwargs):
            for common_prefix in page.get("CommonPrefixes", []):
                dir_key = common_prefix["Prefix"]
                files.append(
                    FileInfo(uri=self._uri(dir_key), name=dir_key.rstrip("/").split("/")[-1], is_dir=True),  # type: ignore[call-arg]
                )
            for obj in page.get("Contents", []):
                if obj["Key"].endswith("/"):
                    # 目录占位对象
                    continue
                files.append(
                    FileInfo(  # type: ignore[call-arg]
                        uri=self._uri(obj["Key"]),
                        name=obj["Key"].split("/")[-1],
                        size=obj["Size"],
                        last_modified=obj["LastModified"],
                        etag=obj["ETag"].strip('"'),
                    ),
                )
            if limit is not None and len(files) >= limit:
                break

        return files[:limit] if limit is not None else files

    async def make_dir(self, path: str) -> None:
        """创建目录占位对象"""
        client = await self.client
        await client.put_object(Bucket=self.bucket, Key=self._dir_key(path), Body=b"")

    async def remove_dir(self, path: str) -> None:
        """删除前缀下的所有对象"""
        client = await self.client
        paginator = client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=self.bucket, Prefix=self._dir_key(path)):
            objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
            if objects:
                await client.delete_objects(Bucket=self.bucket, Delete={"Objects": objects, "Quiet": True})

    async def get_file(self, uri: str) -> bytes:
        """获取文件内容"""
        key = self._extract_key(uri)
        client = await self.client
        try:
            response = await client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if error_code(e) in NOT_FOUND_CODES:
                raise ObjectNotFoundError(uri) from e
            raise
        async with response["Body"] as stream:
            return await stream.read()  # type: ignore[no-any-return]

    async def get_file_stream(self, uri: str, chunk_size: int = 8192):  # type: ignore[misc]
        """获取文件流"""
        key = self._extract_key(uri)
        client = await self.client
        try:
            response = await client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if error_code(e) in NOT_FOUND_CODES:
                raise ObjectNotFoundError(uri) from e
            raise

        async with response["Body"] as stream:
            while True:
                chunk = await stream.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    async def _head(self, uri: str) -> dict:
        client = await self.client
        try:
            return await client.head_object(Bucket=self.bucket, Key=self._extract_key(uri))  # type: ignore[no-any-return]
        except ClientError as e:
            if error_code(e) in NOT_FOUND_CODES:
                raise ObjectNotFoundError(uri) from e
            raise

    async def get_file_metadata(self, uri: str) -> FileInfo:
        """获取文件信息"""
        key = self._extract_key(uri)
        response = await self._head(uri)

        return FileInfo(
            uri=self._uri(key),
            name=key.rstrip("/").split("/")[-1],
            size=response["ContentLength"],
            last_modified=response["LastModified"],
            etag=response["ETag"].strip('"'),
            content_type=response.get("ContentType"),
            is_dir=key.endswith("/"),
            extra=response.get("Metadata") or {},
        )

    async def file_exists(self, uri: str) -> bool:
        """检查文件或目录是否存在"""
        try:
            await self._head(uri)
            return True
        except ObjectNotFoundError:
            return await self.is_dir(uri)

    async def is_dir(self, uri: str) -> bool:
        """前缀下存在任意对象即视为目录"""
        dir_key = self._dir_key(uri)
        if not dir_key:
            return True
        client = await self.client
        response = await client.list_objects_v2(Bucket=self.bucket, Prefix=dir_key, MaxKeys=1)
        return response.get("KeyCount", 0) > 0

    async def upload_file(
        self,
        uri: str,
        content: DataStream,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> FileInfo:
        """上传文件（超过阈值时使用分片上传）"""
        key = self._extract_key(uri)
        client = await self.client
        body = await read_all(content)

        threshold = self.extra_config.multipart_threshold or 8388608
        chunk_size = self.extra_config.multipart_chunksize or 8388608

        if len(body) > threshold:
            logger.info(f"Using multipart upload for {key} (size: {len(body)})")
            upload_id = await self.init_multipart_upload(uri, content_type, metadata)
            try:
                parts = []
                for part_number, start in enumerate(range(0, len(body), chunk_size), 1):
                    etag = await self.upload_part(uri, upload_id, part_number, body[start : start + chunk_size])
                    parts.append(MultipartPart(part_number=part_number, etag=etag))
                await self.complete_multipart_upload(uri, upload_id, parts)
            except BaseException:
                await self.abort_multipart_upload(uri, upload_id)
                raise
        else:
            extra_args: dict[str, Any] = {}
            if content_type:
                extra_args["ContentType"] = content_type
            if metadata:
                extra_args["Metadata"] = {k: str(v) for k, v in metadata.items()}
            await client.put_object(Bucket=self.bucket, Key=key, Body=body, **extra_args)

        return await self.get_file_metadata(uri)

    async def delete_file(self, uri: str) -> bool:
        """删除文件"""
        if not await self.file_exists(uri):
            return False
        client = await self.client
        await client.delete_object(Bucket=self.bucket, Key=self._extract_key(uri))
        return True

    async def copy_file(self, src: str, dst: str) -> FileInfo:
        """复制对象（服务端复制）"""
        client = await self.client
        try:
            await client.copy_object(
                Bucket=self.bucket,
                Key=self._extract_key(dst),
                CopySource={"Bucket": self.bucket, "Key": self._extract_key(src)},
            )
        except ClientError as e:
            if error_code(e) in NOT_FOUND_CODES:
                raise ObjectNotFoundError(src) from e
            raise
        return await self.get_file_metadata(dst)

    async def get_metadata(self, uri: str) -> dict[str, Any]:
        """获取元数据"""
        key = self._extract_key(uri)
        response = await self._head(uri)
        return {
            "name": key.split("/")[-1],
            "size": response["ContentLength"],
            "content_type": response.get("ContentType"),
            "etag": response["ETag"].strip('"'),
            "modify_time": response["LastModified"],
            "metadata": response.get("Metadata") or {},
        }

    async def set_metadata(self, uri: str, metadata: dict[str, Any]) -> None:
        """覆盖用户元数据（原地复制 + REPLACE）"""
        key = self._extract_key(uri)
        head = await self._head(uri)
        client = await self.client

        extra_args: dict[str, Any] = {}
        content_type = metadata.get("content_type") or head.get("ContentType")
        if content_type:
            extra_args["ContentType"] = content_type

        await client.copy_object(
            Bucket=self.bucket,
            Key=key,
            CopySource={"Bucket": self.bucket, "Key": key},
            Metadata={k: str(v) for k, v in metadata.items() if k != "content_type"},
            MetadataDirective="REPLACE",
            **extra_args,
        )

    # 分片上传

    async def init_multipart_upload(
        self, uri: str, content_type: str | None = None, metadata: dict[str, str] | None = None,
    ) -> str:
        """初始化分片上传"""
        client = await self.client
        extra_args: dict[str, Any] = {}
        if content_type:
            extra_args["ContentType"] = content_type
        if metadata:
            extra_args["Metadata"] = {k: str(v) for k, v in metadata.items()}
        response = await client.create_multipart_upload(Bucket=self.bucket, Key=self._extract_key(uri), **extra_args)
        return response["UploadId"]  # type: ignore[no-any-return]

    async def upload_part(self, uri: str, upload_id: str, part_number: int, data: DataStream) -> str:
        """上传分片"""
        client = await self.client
        try:
            response = await client.upload_part(
                Bucket=self.bucket,
                Key=self._extract_key(uri),
                UploadId=upload_id,
                PartNumber=part_number,
                Body=await read_all(data),
            )
        except ClientError as e:
            if error_code(e) == "NoSuchUpload":
                raise UploadNotFoundError(upload_id) from e
            raise
        return response["ETag"]  # type: ignore[no-any-return]

    async def complete_multipart_upload(self, uri: str, upload_id: str, parts: list[MultipartPart]) -> None:
        """完成分片上传"""
        client = await self.client
        try:
            await client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=self._extract_key(uri),
                UploadId=upload_id,
                MultipartUpload={"Parts": [{"PartNumber": p.part_number, "ETag": p.etag} for p in parts]},
            )
        except ClientError as e:
            code = error_code(e)
            if code == "NoSuchUpload":
                raise UploadNotFoundError(upload_id) from e
            if code == "InvalidPart":
                raise PartNotFoundError(None) from e
            raise

    async def abort_multipart_upload(self, uri: str, upload_id: str) -> None:
        """取消分片上传，upload_id 不存在时忽略"""
        client = await self.client
        try:
            await client.abort_multipart_upload(Bucket=self.bucket, Key=self._extract_key(uri), UploadId=upload_id)
        except ClientError as e:
            if error_code(e) != "NoSuchUpload":
                raise
            logger.debug(f"Abort unknown multipart upload {upload_id}, ignored")

    async def list_multipart_uploads(self, prefix: str = "") -> list[MultipartUploadInfo]:
        """列出未完成的分片上传"""
        client = await self.client
        paginator = client.get_paginator("list_multipart_uploads")

        uploads = []
        async for page in paginator.paginate(Bucket=self.bucket, Prefix=self._extract_key(prefix) if prefix else ""):
            for upload in page.get("Uploads", []):
                uploads.append(
                    MultipartUploadInfo(
                        upload_id=upload["UploadId"],
                        path=upload["Key"],
                        create_time=upload.get("Initiated"),
                    ),
                )
        return uploads

    async def list_uploaded_parts(self, uri: str, upload_id: str) -> list[MultipartPart]:
        """列出已上传的分片"""
        client = await self.client
        paginator = client.get_paginator("list_parts")

        parts = []
        try:
            async for page in paginator.paginate(Bucket=self.bucket, Key=self._extract_key(uri), UploadId=upload_id):
                for part in page.get("Parts", []):
                    parts.append(
                        MultipartPart(part_number=part["PartNumber"], etag=part["ETag"], size=part["Size"]),
                    )
        except ClientError as e:
            if error_code(e) == "NoSuchUpload":
                raise UploadNotFoundError(upload_id) from e
            raise
        return parts

    async def close(self) -> None:
        """关闭连接"""
        if self._client:
            await self._client.__aexit__(None, None, None)
            self._client = None
            self._session = None


class S3FileSystemProvider(S3CompatibleFileSystemProvider[S3ExtraConfig]):
    """AWS S3 Provider (async with aiobotocore)"""
