"""
File System Providers 初始化

自动注册所有 file system providers
"""

from loguru import logger

from ext.file_system.factory import FileSystemFactory
from ext.file_system.types import FileSystemTypeEnum

try:
    from ext.file_system.providers.local import LocalFileSystemProvider

    FileSystemFactory.register(FileSystemTypeEnum.local_file, LocalFileSystemProvider)
    logger.info("Registered Local File System provider")
except Exception as e:
    logger.warning(f"Failed to register Local provider: {e}")

try:
    from ext.file_system.providers.s3 import S3FileSystemProvider

    FileSystemFactory.register(FileSystemTypeEnum.s3, S3FileSystemProvider)
    logger.info("Registered S3 File System provider")
except Exception as e:
    logger.warning(f"Failed to register S3 provider: {e}")

try:
    from ext.file_system.providers.obs import HuaweiOBSFileSystemProvider

    FileSystemFactory.register(FileSystemTypeEnum.huawei_obs, HuaweiOBSFileSystemProvider)
    logger.info("Registered Huawei OBS File System provider")
except Exception as e:
    logger.warning(f"Failed to register Huawei OBS provider: {e}")

try:
    from ext.file_system.providers.cos import TencentCOSFileSystemProvider

    FileSystemFactory.register(FileSystemTypeEnum.tencent_cos, TencentCOSFileSystemProvider)
    logger.info("Registered Tencent COS File System provider")
except Exception as e:
    logger.warning(f"Failed to register Tencent COS provider: {e}")

try:
    from ext.file_system.providers.minio import MinIOFileSystemProvider

    FileSystemFactory.register(FileSystemTypeEnum.minio, MinIOFileSystemProvider)
    logger.info("Registered MinIO File System provider")
except Exception as e:
    logger.warning(f"Failed to register MinIO provider: {e}")

try:
    from ext.file_system.providers.aliyun_oss import AliyunOSSFileSystemProvider

    FileSystemFactory.register(FileSystemTypeEnum.aliyun_oss, AliyunOSSFileSystemProvider)
    logger.info("Registered Aliyun OSS File System provider")
except Exception as e:
    logger.warning(f"Failed to register Aliyun OSS provider: {e}")

__all__ = [
    "LocalFileSystemProvider",
    "S3FileSystemProvider",
    "HuaweiOBSFileSystemProvider",
    "TencentCOSFileSystemProvider",
    "MinIOFileSystemProvider",
    "AliyunOSSFileSystemProvider",
]
