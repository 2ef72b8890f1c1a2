"""
File System 模块的 conftest.py

定义测试所需的 fixtures
"""

import os
import tempfile
from pathlib import Path

import pytest

from ext.file_system.multipart import FileMultipartStateStore, MultipartUploader


# Local File System 配置
@pytest.fixture
def local_temp_dir():
    """创建临时目录用于 Local File System 测试"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def local_provider_config(local_temp_dir):
    """Local Provider 配置"""
    return {
        "access_key": None,
        "secret_key": None,
        "endpoint": None,
        "region": None,
        "storage_location": str(local_temp_dir),
        "use_ssl": False,
        "verify_ssl": False,
        "timeout": 30,
        "max_retries": 3,
        "concurrent_limit": 10,
        "max_connections": 10,
        "extra_config": {},
    }


@pytest.fixture
def state_dir(local_temp_dir):
    """分片状态目录"""
    return local_temp_dir / ".multipart"


@pytest.fixture
def state_store(state_dir):
    return FileMultipartStateStore(state_dir)


@pytest.fixture
def uploader(state_store, state_dir, local_temp_dir):
    """分片上传模拟器（目标路径相对 local_temp_dir）"""
    return MultipartUploader(
        state_store=state_store,
        part_dir=state_dir / "parts",
        resolve_path=lambda path: local_temp_dir / path,
    )


# Aliyun OSS 配置（从环境变量获取）
ALIYUN_ACCESS_KEY_ID = os.getenv("ALIYUN_ACCESS_KEY_ID")
ALIYUN_ACCESS_KEY_SECRET = os.getenv("ALIYUN_ACCESS_KEY_SECRET")
ALIYUN_ENDPOINT = os.getenv("ALIYUN_ENDPOINT")
ALIYUN_REGION = os.getenv("ALIYUN_REGION")
ALIYUN_BUCKET_NAME = os.getenv("ALIYUN_BUCKET_NAME")

# 跳过 Aliyun OSS 测试的条件
skip_if_no_aliyun_config = pytest.mark.skipif(
    not all([ALIYUN_ACCESS_KEY_ID, ALIYUN_ACCESS_KEY_SECRET, ALIYUN_ENDPOINT, ALIYUN_REGION, ALIYUN_BUCKET_NAME]),
    reason="Aliyun OSS environment variables not set",
)


@pytest.fixture
def aliyun_oss_provider_config():
    """Aliyun OSS Provider 配置"""
    return {
        "access_key": ALIYUN_ACCESS_KEY_ID,
        "secret_key": ALIYUN_ACCESS_KEY_SECRET,
        "endpoint": ALIYUN_ENDPOINT,
        "region": ALIYUN_REGION,
        "storage_location": ALIYUN_BUCKET_NAME,
        "use_ssl": True,
        "verify_ssl": False,
        "timeout": 30,
        "max_retries": 3,
        "concurrent_limit": 10,
        "max_connections": 10,
        "extra_config": {"enable_crc": True},
    }


# S3 配置（从环境变量获取，可指向任意 S3 兼容服务）
S3_ACCESS_KEY_ID = os.getenv("S3_ACCESS_KEY_ID")
S3_SECRET_ACCESS_KEY = os.getenv("S3_SECRET_ACCESS_KEY")
S3_ENDPOINT = os.getenv("S3_ENDPOINT")
S3_REGION = os.getenv("S3_REGION")
S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME")

skip_if_no_s3_config = pytest.mark.skipif(
    not all([S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY, S3_BUCKET_NAME]),
    reason="S3 environment variables not set",
)


@pytest.fixture
def s3_provider_config():
    """S3 Provider 配置"""
    return {
        "access_key": S3_ACCESS_KEY_ID,
        "secret_key": S3_SECRET_ACCESS_KEY,
        "endpoint": S3_ENDPOINT,
        "region": S3_REGION,
        "storage_location": S3_BUCKET_NAME,
        "use_ssl": True,
        "verify_ssl": False,
        "timeout": 30,
        "max_retries": 3,
        "concurrent_limit": 10,
        "max_connections": 10,
        "extra_config": {
            "payload_transfer_threshold": 0,
            "config": {"request_checksum_calculation": "when_required"},
        },
    }


# MinIO 配置（从环境变量获取）
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT")
MINIO_BUCKET_NAME = os.getenv("MINIO_BUCKET_NAME")

skip_if_no_minio_config = pytest.mark.skipif(
    not all([MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_ENDPOINT, MINIO_BUCKET_NAME]),
    reason="MinIO environment variables not set",
)


@pytest.fixture
def minio_provider_config():
    """MinIO Provider 配置"""
    return {
        "access_key": MINIO_ACCESS_KEY,
        "secret_key": MINIO_SECRET_KEY,
        "endpoint": MINIO_ENDPOINT,
        "storage_location": MINIO_BUCKET_NAME,
        "use_ssl": os.getenv("MINIO_USE_SSL", "false").lower() == "true",
        "extra_config": {},
    }


# Redis 配置（分片状态存储）
REDIS_URL = os.getenv("REDIS_URL")

skip_if_no_redis = pytest.mark.skipif(not REDIS_URL, reason="REDIS_URL not set")


@pytest.fixture
def sample_file_content():
    """示例文件内容"""
    return b"Hello, World! This is a test file for file system providers."


@pytest.fixture
def sample_file_name():
    """示例文件名"""
    return "test_file.txt"


@pytest.fixture
def sample_file_content_type():
    """示例文件 MIME 类型"""
    return "text/plain"
