"""
本地分片上传模拟
"""

from ext.file_system.multipart.state import (
    FileMultipartStateStore,
    MultipartStateStore,
    RedisMultipartStateStore,
    UploadSession,
)
from ext.file_system.multipart.uploader import MultipartUploader

__all__ = [
    "MultipartStateStore",
    "FileMultipartStateStore",
    "RedisMultipartStateStore",
    "UploadSession",
    "MultipartUploader",
]
