"""
File System 模块

提供统一的文件系统抽象（本地磁盘与对象存储），本地磁盘上模拟对象存储的分片上传
"""

from ext.file_system.base import BaseFileSystemProvider, FileInfo, MultipartPart, MultipartUploadInfo
from ext.file_system.exceptions import (
    FileSystemError,
    FileSystemConfigError,
    FileSystemTypeError,
    NotFoundError,
    UploadNotFoundError,
    ObjectNotFoundError,
    PartNotFoundError,
    StorageIOError,
)
from ext.file_system.types import (
    FileSystemTypeEnum,
    FileSystemConfig,
    BaseFileSystemExtraConfig,
    LocalFileSystemExtraConfig,
    S3CompatibleExtraConfig,
    S3ExtraConfig,
    HuaweiOBSExtraConfig,
    TencentCOSExtraConfig,
    MinIOExtraConfig,
    AliyunOSSExtraConfig,
)
from ext.file_system.factory import FileSystemFactory

# 注册内置 providers（导入时自动注册）
import ext.file_system.providers  # noqa: E402,F401

__all__ = [
    # Core
    "BaseFileSystemProvider",
    "FileInfo",
    "MultipartPart",
    "MultipartUploadInfo",
    # Exceptions
    "FileSystemError",
    "FileSystemConfigError",
    "FileSystemTypeError",
    "NotFoundError",
    "UploadNotFoundError",
    "ObjectNotFoundError",
    "PartNotFoundError",
    "StorageIOError",
    # Config types
    "FileSystemTypeEnum",
    "FileSystemConfig",
    "BaseFileSystemExtraConfig",
    "LocalFileSystemExtraConfig",
    "S3CompatibleExtraConfig",
    "S3ExtraConfig",
    "HuaweiOBSExtraConfig",
    "TencentCOSExtraConfig",
    "MinIOExtraConfig",
    "AliyunOSSExtraConfig",
    # Factory
    "FileSystemFactory",
]
