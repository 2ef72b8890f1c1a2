"""
腾讯云 COS Provider

COS 提供 S3 兼容接口，复用 aiobotocore 实现
"""

from ext.file_system.exceptions import FileSystemConfigError
from ext.file_system.providers.s3 import S3CompatibleFileSystemProvider
from ext.file_system.types import TencentCOSExtraConfig


class TencentCOSFileSystemProvider(S3CompatibleFileSystemProvider[TencentCOSExtraConfig]):
    """腾讯云 COS Provider（S3 兼容接口）

    COS 的 bucket 名称格式为 <name>-<APPID>；配置了 app_id 时自动补全后缀。
    未配置 endpoint 时按 region 拼接 https://cos.<region>.myqcloud.com
    """

    uri_scheme = "cos"
    default_region = "ap-guangzhou"

    def _validate_config(self) -> None:
        super()._validate_config()

        app_id = self.extra_config.app_id
        if app_id and not (self.storage_location or "").endswith(f"-{app_id}"):
            self.storage_location = f"{self.storage_location}-{app_id}"

        if not self.endpoint:
            if not self.region:
                raise FileSystemConfigError("endpoint or region is required for Tencent COS")
            self.endpoint = f"https://cos.{self.region}.myqcloud.com"
