"""
华为云 OBS Provider

OBS 提供 S3 兼容接口，复用 aiobotocore 实现
"""

from ext.file_system.exceptions import FileSystemConfigError
from ext.file_system.providers.s3 import S3CompatibleFileSystemProvider
from ext.file_system.types import HuaweiOBSExtraConfig


class HuaweiOBSFileSystemProvider(S3CompatibleFileSystemProvider[HuaweiOBSExtraConfig]):
    """华为云 OBS Provider（S3 兼容接口）

    endpoint 形如 https://obs.cn-north-4.myhuaweicloud.com
    """

    uri_scheme = "obs"
    default_region = "cn-north-4"

    def _validate_config(self) -> None:
        super()._validate_config()
        if not self.endpoint:
            raise FileSystemConfigError("endpoint is required for Huawei OBS")
