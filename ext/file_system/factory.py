"""
FileSystem Factory - 文件系统 Provider 工厂类
"""

from typing import Dict, Type, Optional
import asyncio

from loguru import logger

from ext.file_system.base import BaseFileSystemProvider
from ext.file_system.exceptions import (
    FileSystemConfigError,
    FileSystemTypeError,
)
from ext.file_system.types import FileSystemConfig, FileSystemTypeEnum


class FileSystemFactory:
    """文件系统 Provider 工厂类

    管理不同文件系统类型（Local、S3、OSS、MinIO 等）的 Provider 实例创建和缓存。
    """

    # 文件系统类型到 Provider 类的映射
    _providers: Dict[FileSystemTypeEnum, Type[BaseFileSystemProvider]] = {}

    # Provider 实例缓存（config.name -> Provider 实例）
    _instances: Dict[str, BaseFileSystemProvider] = {}

    # 锁，用于防止并发创建同一实例
    _locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def register(cls, fs_type: FileSystemTypeEnum, provider_class: Type[BaseFileSystemProvider]) -> None:
        """注册新的文件系统 Provider 类型

        Args:
            fs_type: 文件系统类型标识（如 local_file, s3, aliyun_oss）
            provider_class: 实现 BaseFileSystemProvider 的类
        """
        cls._providers[fs_type] = provider_class

    @classmethod
    async def create(cls, config: FileSystemConfig, use_cache: bool = True) -> BaseFileSystemProvider:
        """创建 Provider 实例

        Args:
            config: 文件系统配置
            use_cache: 是否使用缓存（以 config.name 为键）

        Returns:
            BaseFileSystemProvider 实例

        Raises:
            FileSystemConfigError: 配置无效或未启用
            FileSystemTypeError: 不支持的文件系统类型
        """
        # 验证配置是否启用
        if not config.is_enabled:
            raise FileSystemConfigError(f"File system config is disabled. Config: {config.name}")

        # 获取 Provider 类
        provider_cls = cls._providers.get(config.type)
        if not provider_cls:
            available_types = ", ".join([t.value for t in cls._providers.keys()])
            raise FileSystemTypeError(f"不支持的文件系统类型: {config.type.value}, 可用类型: {available_types}")

        if not use_cache:
            return provider_cls(**config.provider_kwargs())

        # 检查缓存
        if config.name in cls._instances:
            return cls._instances[config.name]

        # 使用锁防止并发创建
        async with cls._locks.setdefault(config.name, asyncio.Lock()):
            # 再次检查缓存（可能在等待锁时已被其他协程创建）
            if config.name in cls._instances:
                return cls._instances[config.name]

            provider = provider_cls(**config.provider_kwargs())
            cls._instances[config.name] = provider
            logger.info(f"Created {config.type.value} file system: {config.name}")
            return provider

    @classmethod
    async def get(cls, name: str) -> BaseFileSystemProvider:
        """按配置名称获取 Provider 实例

        Raises:
            FileSystemConfigError: 配置不存在
        """
        from config.main import local_configs

        for config in local_configs.file_systems:
            if config.name == name:
                return await cls.create(config)
        raise FileSystemConfigError(f"File system config not found: {name}")

    @classmethod
    async def get_default(cls) -> Optional[BaseFileSystemProvider]:
        """获取默认的 Provider 实例

        Returns:
            默认的 Provider 实例，如果没有默认配置则返回 None
        """
        from config.main import local_configs

        for config in local_configs.file_systems:
            if config.is_enabled and config.is_default:
                return await cls.create(config)
        return None

    @classmethod
    def clear_cache(cls, name: Optional[str] = None) -> None:
        """清除 Provider 实例缓存（不关闭连接，需要关闭时使用 close_all）

        Args:
            name: 要清除的配置名称，如果为 None 则清除所有缓存
        """
        if name is None:
            cls._instances.clear()
            cls._locks.clear()
        else:
            cls._instances.pop(name, None)
            cls._locks.pop(name, None)

    @classmethod
    async def close_all(cls) -> None:
        """关闭并清除所有缓存的 Provider 实例"""
        for name, provider in list(cls._instances.items()):
            try:
                await provider.close()
            except Exception as e:
                logger.warning(f"Failed to close file system {name}: {e}")
        cls.clear_cache()

    @classmethod
    def has_provider(cls, fs_type: FileSystemTypeEnum) -> bool:
        """检查文件系统类型是否已注册"""
        return fs_type in cls._providers

    @classmethod
    def get_registered_types(cls) -> list[FileSystemTypeEnum]:
        """获取所有已注册的文件系统类型"""
        return list(cls._providers.keys())
