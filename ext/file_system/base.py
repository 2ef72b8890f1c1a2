"""
File System Provider 基类

定义统一的文件系统能力集接口（列表、元数据、读写、复制移动、分片上传）和基类实现
"""

import aiofiles
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Generic, TypeVar

from datetime import datetime
from loguru import logger
from pydantic import BaseModel, Field

from ext.file_system.exceptions import NotFoundError
from ext.file_system.stream import DataStream
from ext.file_system.types import BaseFileSystemExtraConfig

ExtraConfigT = TypeVar("ExtraConfigT")


class FileInfo(BaseModel):
    """统一的文件信息"""

    uri: str = Field(..., description="文件URI")
    name: str = Field(..., description="文件名")
    size: int = Field(default=0, description="文件大小(bytes)")
    last_modified: datetime | None = Field(None, description="最后修改时间")
    etag: str | None = Field(None, description="ETag标识")
    content_type: str | None = Field(None, description="MIME类型")
    is_dir: bool = Field(default=False, description="是否目录")
    extra: dict = Field(default_factory=dict, description="额外元数据")


class MultipartPart(BaseModel):
    """分片信息

    完成分片上传时作为有序列表传入（列表顺序决定合并顺序）；
    列出已上传分片时返回 part_number 和 size
    """

    part_number: int = Field(..., gt=0, description="分片编号")
    etag: str | None = Field(None, description="分片ETag")
    size: int | None = Field(None, description="分片大小(bytes)")


class MultipartUploadInfo(BaseModel):
    """未完成的分片上传"""

    upload_id: str = Field(..., description="上传ID")
    path: str = Field(..., description="目标路径")
    create_time: datetime | None = Field(None, description="创建时间")


class BaseFileSystemProvider(ABC, Generic[ExtraConfigT]):
    """
    文件系统 Provider 基类（泛型）

    类型参数:
        ExtraConfigT: extra_config 的具体类型（必须继承 BaseFileSystemExtraConfig）

    设计原则:
        1. 所有后端实现同一能力集，调用方可以透明切换本地模拟与云存储
        2. 后端原生异常在边界处转换为 ext.file_system.exceptions 中的异常
        3. 异步接口，同步 SDK 通过 executor 执行
        4. SDK 客户端由 provider 实例持有（懒加载），无全局单例
    """

    extra_config: ExtraConfigT

    def __init__(
        self,
        access_key: str | None = None,
        secret_key: str | None = None,
        endpoint: str | None = None,
        region: str | None = None,
        storage_location: str | None = None,
        use_ssl: bool = True,
        verify_ssl: bool = True,
        timeout: int = 30,
        max_retries: int = 3,
        concurrent_limit: int = 10,
        max_connections: int = 10,
        extra_config: dict | None = None,
    ) -> None:
        """
        初始化 Provider

        参数说明：
            - storage_location: 统一的存储位置字段
              * type=local_file: 本地根目录
              * 其它: bucket 名称
        """
        self.access_key = access_key
        self.secret_key = secret_key
        self.endpoint = endpoint
        self.region = region
        self.storage_location = storage_location
        self.use_ssl = use_ssl
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.max_retries = max_retries
        self.concurrent_limit = concurrent_limit
        self.max_connections = max_connections

        extra_config = extra_config or {}
        self.extra_config: ExtraConfigT = self._convert_extra_config(extra_config)

        self._validate_config()

    def _convert_extra_config(self, extra_config_dict: dict) -> ExtraConfigT:
        """将 dict 转换成具体的 Pydantic model 类型"""
        extra_config_cls: type[BaseFileSystemExtraConfig] = self._get_extra_config_cls()  # type: ignore[assignment]
        return extra_config_cls.from_dict(extra_config_dict)  # type: ignore[return-value]

    def _get_extra_config_cls(self) -> type:
        """从泛型参数提取 extra_config 类型（沿 MRO 查找，支持子类继承）"""
        for klass in type(self).__mro__:
            for base in getattr(klass, "__orig_bases__", ()):
                if hasattr(base, "__args__") and base.__args__:
                    extra_config_type = base.__args__[0]
                    if isinstance(extra_config_type, type):
                        return extra_config_type

        logger.warning("无法从泛型参数提取 extra_config 类型，使用默认类型 BaseFileSystemExtraConfig")
        return BaseFileSystemExtraConfig

    def _validate_config(self) -> None:
        """验证配置（子类可覆盖）"""

    @abstractmethod
    async def validate_connection(self) -> bool:
        """验证连接是否有效"""

    @abstractmethod
    async def list_files(
        self,
        prefix: str = "",
        recursive: bool = False,
        limit: int | None = None,
    ) -> list[FileInfo]:
        """列出文件

        Args:
            prefix: 路径前缀
            recursive: 是否递归列出
            limit: 最大返回数量

        Returns:
            文件信息列表（非递归时包含子目录）
        """

    @abstractmethod
    async def make_dir(self, path: str) -> None:
        """创建目录（对象存储中为以 / 结尾的空对象）"""

    @abstractmethod
    async def remove_dir(self, path: str) -> None:
        """递归删除目录"""

    @abstractmethod
    async def get_file(self, uri: str) -> bytes:
        """获取文件内容"""

    @abstractmethod
    def get_file_stream(self, uri: str, chunk_size: int = 8192) -> AsyncIterator[bytes]:
        """获取文件流（用于大文件）"""

    @abstractmethod
    async def get_file_metadata(self, uri: str) -> FileInfo:
        """获取文件信息"""

    @abstractmethod
    async def file_exists(self, uri: str) -> bool:
        """检查文件或目录是否存在"""

    @abstractmethod
    async def is_dir(self, uri: str) -> bool:
        """是否为目录"""

    async def is_file(self, uri: str) -> bool:
        """是否为文件"""
        try:
            info = await self.get_file_metadata(uri)
        except NotFoundError:
            return False
        return not info.is_dir

    @abstractmethod
    async def upload_file(
        self,
        uri: str,
        content: DataStream,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> FileInfo:
        """单次上传文件（整体写入）"""

    @abstractmethod
    async def delete_file(self, uri: str) -> bool:
        """删除文件，文件不存在时返回 False"""

    @abstractmethod
    async def copy_file(self, src: str, dst: str) -> FileInfo:
        """复制文件"""

    async def move_file(self, src: str, dst: str) -> FileInfo:
        """移动文件（默认实现：复制后删除源文件）"""
        info = await self.copy_file(src, dst)
        await self.delete_file(src)
        return info

    async def rename(self, old_uri: str, new_uri: str) -> FileInfo:
        """重命名"""
        return await self.move_file(old_uri, new_uri)

    @abstractmethod
    async def get_metadata(self, uri: str) -> dict[str, Any]:
        """获取元数据"""

    @abstractmethod
    async def set_metadata(self, uri: str, metadata: dict[str, Any]) -> None:
        """设置元数据"""

    # 分片上传

    @abstractmethod
    async def init_multipart_upload(self, uri: str, content_type: str | None = None) -> str:
        """初始化分片上传，返回 upload_id"""

    @abstractmethod
    async def upload_part(self, uri: str, upload_id: str, part_number: int, data: DataStream) -> str:
        """上传分片，返回分片 ETag"""

    @abstractmethod
    async def complete_multipart_upload(self, uri: str, upload_id: str, parts: list[MultipartPart]) -> None:
        """按 parts 的顺序合并分片"""

    @abstractmethod
    async def abort_multipart_upload(self, uri: str, upload_id: str) -> None:
        """取消分片上传，upload_id 不存在时视为成功"""

    @abstractmethod
    async def list_multipart_uploads(self, prefix: str = "") -> list[MultipartUploadInfo]:
        """列出所有未完成的分片上传"""

    @abstractmethod
    async def list_uploaded_parts(self, uri: str, upload_id: str) -> list[MultipartPart]:
        """列出已上传的分片"""

    async def upload_from_local(self, local_path: str, uri: str, content_type: str | None = None) -> FileInfo:
        """从本地文件上传

        Args:
            local_path: 本地文件路径
            uri: 目标URI
            content_type: MIME类型

        Returns:
            上传后的文件信息
        """

        async with aiofiles.open(local_path, "rb") as f:
            return await self.upload_file(uri, f, content_type)

    async def download_to_local(self, uri: str, local_path: str) -> None:
        """下载文件到本地

        Args:
            uri: 源文件URI
            local_path: 本地文件路径
        """
        local_path_obj = Path(local_path)
        local_path_obj.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(local_path, "wb") as f:
            async for chunk in self.get_file_stream(uri):
                await f.write(chunk)

    async def health_check(self) -> dict[str, str | bool]:
        """健康检查，返回连接状态"""
        try:
            is_connected: bool = await self.validate_connection()
            return {
                "status": "healthy" if is_connected else "unhealthy",
                "connected": is_connected,
                "timestamp": datetime.now().isoformat(),
            }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "error",
                "error": str(e),
                "timestamp": datetime.now().isoformat(),
            }

    async def close(self) -> None:
        """释放连接（子类按需覆盖）"""
