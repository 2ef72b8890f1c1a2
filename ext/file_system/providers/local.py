"""
Local File System Provider
"""

import os
import shutil
import hashlib
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from loguru import logger

from ext.ext_redis.keys import FileSystemKey
from ext.file_system.base import BaseFileSystemProvider, FileInfo, MultipartPart, MultipartUploadInfo
from ext.file_system.exceptions import (
    FileSystemConfigError,
    FileSystemError,
    ObjectNotFoundError,
    StorageIOError,
    UploadNotFoundError,
)
from ext.file_system.multipart import (
    FileMultipartStateStore,
    MultipartStateStore,
    MultipartUploader,
    RedisMultipartStateStore,
)
from ext.file_system.stream import DataStream, iter_chunks
from ext.file_system.types import LocalFileSystemExtraConfig

MULTIPART_DIR_NAME = ".multipart"
PARTIAL_SUFFIX = ".partial"


class LocalFileSystemProvider(BaseFileSystemProvider[LocalFileSystemExtraConfig]):
    """本地文件系统 Provider

    uri 为相对 <storage_location>/<sub_path> 的路径；位于该目录内的绝对路径同样接受。
    分片上传由 MultipartUploader 在本地磁盘上模拟，状态默认保存在 <root>/.multipart
    """

    def __init__(self, *args: Any, state_store: MultipartStateStore | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._state_store = state_store
        self._uploader: MultipartUploader | None = None

    def _validate_config(self) -> None:
        if not self.storage_location:
            raise FileSystemConfigError("storage_location (root_path) is required for local file system")

        path = Path(self.storage_location)
        if not path.exists():
            if not self.extra_config.create_if_missing:
                raise FileSystemConfigError(f"Root path does not exist: {self.storage_location}")
            path.mkdir(parents=True, exist_ok=True)
        if not path.is_dir():
            raise FileSystemConfigError(f"Root path is not a directory: {self.storage_location}")

        self.root_path = path.resolve()
        self.base_path = self.root_path
        if self.extra_config.sub_path:
            self.base_path = (self.root_path / self.extra_config.sub_path.strip("/")).resolve()
            if not self.base_path.is_relative_to(self.root_path):
                raise FileSystemConfigError(f"sub_path escapes root: {self.extra_config.sub_path}")
            self.base_path.mkdir(parents=True, exist_ok=True)

    @property
    def uploader(self) -> MultipartUploader:
        """懒加载分片上传模拟器"""
        if self._uploader is None:
            if self.extra_config.multipart_dir:
                multipart_dir = Path(self.extra_config.multipart_dir)
            else:
                multipart_dir = self.root_path / MULTIPART_DIR_NAME
            part_dir = Path(self.extra_config.part_dir) if self.extra_config.part_dir else multipart_dir / "parts"

            self._uploader = MultipartUploader(
                state_store=self._state_store or self._build_state_store(multipart_dir),
                part_dir=part_dir,
                resolve_path=self._full_path,
                reclaim_superseded_parts=self.extra_config.reclaim_superseded_parts,
                atomic_complete=self.extra_config.atomic_complete,
                chunk_size=self.extra_config.chunk_size,
            )
        return self._uploader

    def _build_state_store(self, multipart_dir: Path) -> MultipartStateStore:
        if self.extra_config.state_store == "redis":
            from config.main import local_configs

            redis = local_configs.extensions.redis
            if redis is None:
                raise FileSystemConfigError("state_store=redis requires extensions.redis to be configured")
            key = self.extra_config.redis_key
            if not key:
                key = FileSystemKey.MultipartSessions.value.format(root=self.root_path.as_posix())
            return RedisMultipartStateStore(redis, key=key)
        return FileMultipartStateStore(multipart_dir)

    def _full_path(self, uri: str) -> Path:
        """将 uri 解析为 base_path（<root>/<sub_path>）内的磁盘路径"""
        path = Path(uri)
        if not (path.is_absolute() and path.resolve().is_relative_to(self.base_path)):
            path = self.base_path / uri.lstrip("/")
        resolved = path.resolve()
        # 与 _relative_uri 使用同一个基准目录，返回的 uri 才能再次解析到同一文件
        if not resolved.is_relative_to(self.base_path):
            raise FileSystemError(f"path escapes base path: {uri}")
        return resolved

    def _relative_uri(self, path: Path) -> str:
        return path.relative_to(self.base_path).as_posix()

    def _is_reserved(self, path: Path) -> bool:
        """分片状态目录和合并中的临时文件不对外展示"""
        if MULTIPART_DIR_NAME in path.relative_to(self.root_path).parts:
            return True
        return path.name.startswith(".") and path.name.endswith(PARTIAL_SUFFIX)

    def _to_file_info(self, path: Path, with_etag: bool = True) -> FileInfo:
        stat = path.stat()
        is_dir = path.is_dir()
        return FileInfo(  # type: ignore[call-arg]
            uri=self._relative_uri(path),
            name=path.name,
            size=0 if is_dir else stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime).astimezone(),
            etag=None if is_dir or not with_etag else self._compute_etag(path),
            is_dir=is_dir,
        )

    async def validate_connection(self) -> bool:
        """验证根路径是否存在且可访问"""
        try:
            return self.root_path.exists() and self.root_path.is_dir() and os.access(self.root_path, os.R_OK | os.W_OK)
        except Exception as e:
            logger.error(f"Failed to validate local connection: {e}")
            return False

    async def list_files(
        self,
        prefix: str = "",
        recursive: bool = False,
        limit: int | None = None,
    ) -> list[FileInfo]:
        """列出文件（非递归时包含子目录）"""
        search_path = self._full_path(prefix) if prefix else self.base_path
        if not search_path.is_dir():
            return []

        entries = search_path.rglob("*") if recursive else search_path.iterdir()

        files = []
        for file_path in sorted(entries):
            if limit is not None and len(files) >= limit:
                break

            if self._is_reserved(file_path):
                continue

            if file_path.is_symlink():
                if not self.extra_config.follow_symlinks:
                    continue
                file_path = file_path.resolve()
                if not file_path.is_relative_to(self.base_path):
                    continue

            if file_path.is_dir():
                if recursive:
                    continue
            elif not file_path.is_file():
                continue
            else:
                if self.extra_config.allowed_extensions:
                    if file_path.suffix not in self.extra_config.allowed_extensions:
                        continue

                if self.extra_config.excluded_extensions:
                    if file_path.suffix in self.extra_config.excluded_extensions:
                        continue

            files.append(self._to_file_info(file_path))

        return files

    async def make_dir(self, path: str) -> None:
        """创建目录"""
        try:
            self._full_path(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"failed to create directory {path}: {e}") from e

    async def remove_dir(self, path: str) -> None:
        """递归删除目录"""
        full_path = self._full_path(path)
        if full_path == self.base_path:
            raise FileSystemError(f"refuse to remove root directory: {path}")
        try:
            shutil.rmtree(full_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageIOError(f"failed to remove directory {path}: {e}") from e

    async def get_file(self, uri: str) -> bytes:
        """获取文件内容"""
        try:
            async with aiofiles.open(self._full_path(uri), "rb") as f:
                return await f.read()
        except (FileNotFoundError, IsADirectoryError):
            raise ObjectNotFoundError(uri) from None
        except OSError as e:
            raise StorageIOError(f"failed to read {uri}: {e}") from e

    async def get_file_stream(self, uri: str, chunk_size: int = 8192):  # type: ignore[misc]
        """获取文件流"""
        try:
            f = await aiofiles.open(self._full_path(uri), "rb")
        except (FileNotFoundError, IsADirectoryError):
            raise ObjectNotFoundError(uri) from None
        except OSError as e:
            raise StorageIOError(f"failed to open {uri}: {e}") from e

        try:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await f.close()

    async def get_file_metadata(self, uri: str) -> FileInfo:
        """获取文件信息"""
        try:
            return self._to_file_info(self._full_path(uri))
        except FileNotFoundError:
            raise ObjectNotFoundError(uri) from None

    async def file_exists(self, uri: str) -> bool:
        """检查文件或目录是否存在"""
        return self._full_path(uri).exists()

    async def is_dir(self, uri: str) -> bool:
        """是否为目录"""
        return self._full_path(uri).is_dir()

    async def is_file(self, uri: str) -> bool:
        """是否为文件"""
        return self._full_path(uri).is_file()

    async def upload_file(
        self,
        uri: str,
        content: DataStream,
        content_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> FileInfo:
        """上传（写入）文件；本地文件系统不处理 content_type，只处理 metadata"""
        full_path = self._full_path(uri)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(full_path, "wb") as f:
                async for chunk in iter_chunks(content, self.extra_config.chunk_size):
                    await f.write(chunk)
        except OSError as e:
            raise StorageIOError(f"failed to write {uri}: {e}") from e

        if metadata:
            await self.set_metadata(uri, metadata)

        return await self.get_file_metadata(uri)

    async def delete_file(self, uri: str) -> bool:
        """删除文件"""
        try:
            await aiofiles.os.remove(self._full_path(uri))
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageIOError(f"failed to delete {uri}: {e}") from e

    async def copy_file(self, src: str, dst: str) -> FileInfo:
        """复制文件"""
        if not self._full_path(src).is_file():
            raise ObjectNotFoundError(src)

        dst_path = self._full_path(dst)
        try:
            dst_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(dst_path, "wb") as out:
                async for chunk in self.get_file_stream(src, self.extra_config.chunk_size):
                    await out.write(chunk)
        except OSError as e:
            raise StorageIOError(f"failed to copy {src} to {dst}: {e}") from e
        return await self.get_file_metadata(dst)

    async def move_file(self, src: str, dst: str) -> FileInfo:
        """移动文件（同一文件系统内 rename）"""
        src_path = self._full_path(src)
        dst_path = self._full_path(dst)
        try:
            dst_path.parent.mkdir(parents=True, exist_ok=True)
            await aiofiles.os.replace(src_path, dst_path)
        except FileNotFoundError:
            raise ObjectNotFoundError(src) from None
        except OSError as e:
            raise StorageIOError(f"failed to move {src} to {dst}: {e}") from e
        return await self.get_file_metadata(dst)

    async def get_metadata(self, uri: str) -> dict[str, Any]:
        """获取元数据"""
        full_path = self._full_path(uri)
        try:
            stat = full_path.stat()
        except FileNotFoundError:
            raise ObjectNotFoundError(uri) from None
        return {
            "name": full_path.name,
            "size": stat.st_size,
            "mode": stat.st_mode & 0o777,
            "modify_time": datetime.fromtimestamp(stat.st_mtime).astimezone(),
            "is_dir": full_path.is_dir(),
        }

    async def set_metadata(self, uri: str, metadata: dict[str, Any]) -> None:
        """设置元数据，本地文件系统只支持 mode（权限）和 modify_time（修改时间）"""
        full_path = self._full_path(uri)
        try:
            if "mode" in metadata:
                os.chmod(full_path, int(metadata["mode"]))
            if "modify_time" in metadata:
                modify_time = metadata["modify_time"]
                if isinstance(modify_time, datetime):
                    modify_time = modify_time.timestamp()
                os.utime(full_path, (full_path.stat().st_atime, float(modify_time)))
        except FileNotFoundError:
            raise ObjectNotFoundError(uri) from None
        except OSError as e:
            raise StorageIOError(f"failed to set metadata of {uri}: {e}") from e

        ignored = set(metadata) - {"mode", "modify_time"}
        if ignored:
            logger.debug(f"Local file system ignores metadata keys: {sorted(ignored)}")

    # 分片上传

    async def _check_upload(self, uri: str, upload_id: str) -> None:
        """upload_id 必须属于 uri，否则按未知会话处理（与对象存储 NoSuchUpload 一致）"""
        session = await self.uploader.get_session(upload_id)
        if session.path != self._relative_uri(self._full_path(uri)):
            raise UploadNotFoundError(upload_id)

    async def init_multipart_upload(self, uri: str, content_type: str | None = None) -> str:
        """初始化分片上传"""
        return await self.uploader.init_multipart_upload(self._relative_uri(self._full_path(uri)))

    async def upload_part(self, uri: str, upload_id: str, part_number: int, data: DataStream) -> str:
        """上传分片，返回分片 MD5 作为 ETag"""
        await self._check_upload(uri, upload_id)
        part = await self.uploader.upload_part(upload_id, part_number, data)
        return part.etag  # type: ignore[return-value]

    async def complete_multipart_upload(self, uri: str, upload_id: str, parts: list[MultipartPart]) -> None:
        """按 parts 顺序合并分片"""
        await self._check_upload(uri, upload_id)
        await self.uploader.complete_multipart_upload(upload_id, parts)

    async def abort_multipart_upload(self, uri: str, upload_id: str) -> None:
        """取消分片上传"""
        try:
            await self._check_upload(uri, upload_id)
        except UploadNotFoundError:
            return
        await self.uploader.abort_multipart_upload(upload_id)

    async def list_multipart_uploads(self, prefix: str = "") -> list[MultipartUploadInfo]:
        """列出所有未完成的分片上传"""
        uploads = await self.uploader.list_multipart_uploads()
        return [u for u in uploads if u.path.startswith(prefix.lstrip("/"))]

    async def list_uploaded_parts(self, uri: str, upload_id: str) -> list[MultipartPart]:
        """列出已上传的分片"""
        await self._check_upload(uri, upload_id)
        return await self.uploader.list_uploaded_parts(upload_id)

    async def abort_stale_multipart_uploads(self, max_age: timedelta) -> list[str]:
        """取消超过 max_age 未更新的分片上传"""
        return await self.uploader.abort_stale_multipart_uploads(max_age)

    def _compute_etag(self, path: Path) -> str:
        """计算文件 ETag（MD5 hash）"""
        md5 = hashlib.md5()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                md5.update(chunk)
        return md5.hexdigest()
