"""
File System 配置类型定义

定义各种 provider 的 extra_config 类型以及统一的文件系统配置
"""

from typing import Any, Literal
from enum import unique

from pydantic import BaseModel, Field

from core.types import StrEnum


@unique
class FileSystemTypeEnum(StrEnum):
    """文件系统类型"""

    local_file = ("local_file", "本地文件")
    s3 = ("s3", "AWS S3")
    minio = ("minio", "MinIO")
    aliyun_oss = ("aliyun_oss", "阿里云 OSS")
    huawei_obs = ("huawei_obs", "华为云 OBS")
    tencent_cos = ("tencent_cos", "腾讯云 COS")


class FileSystemConfig(BaseModel):
    """单个文件系统的配置（来自 etc/<environment>.yaml）

    参数说明：
        - storage_location: 统一的存储位置字段
          * type=local_file: 本地根目录
          * 其它: bucket 名称
    """

    name: str = Field(..., description="配置名称，同时作为实例缓存键")
    type: FileSystemTypeEnum = Field(..., description="文件系统类型")
    is_enabled: bool = Field(default=True, description="是否启用")
    is_default: bool = Field(default=False, description="是否默认文件系统")
    access_key: str | None = Field(default=None, description="访问密钥ID")
    secret_key: str | None = Field(default=None, description="访问密钥")
    endpoint: str | None = Field(default=None, description="端点")
    region: str | None = Field(default=None, description="区域")
    storage_location: str | None = Field(default=None, description="本地根目录或 bucket 名称")
    use_ssl: bool = Field(default=True, description="是否使用 SSL")
    verify_ssl: bool = Field(default=True, description="是否校验证书")
    timeout: int = Field(default=30, description="超时时间(秒)")
    max_retries: int = Field(default=3, description="SDK 重试次数（透传给 SDK）")
    concurrent_limit: int = Field(default=10, description="并发限制")
    max_connections: int = Field(default=10, description="最大连接数")
    extra_config: dict[str, Any] = Field(default_factory=dict, description="provider 特有配置")

    def provider_kwargs(self) -> dict[str, Any]:
        """构造 provider 的初始化参数"""
        return self.model_dump(exclude={"name", "type", "is_enabled", "is_default"})


class BaseFileSystemExtraConfig(BaseModel):
    """
    File System Extra Config 基础类型

    所有 provider 的 extra_config 都应继承此类
    提供通用的字段转换方法

    注意：通用字段（timeout, use_ssl, verify_ssl, region 等）已在 FileSystemConfig 中定义
    此处只定义真正 provider 特有的配置
    """

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return self.model_dump(exclude_none=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BaseFileSystemExtraConfig":
        """从字典创建实例"""
        valid_data = {k: v for k, v in data.items() if k in cls.model_fields}
        return cls.model_validate(valid_data)


class LocalFileSystemExtraConfig(BaseFileSystemExtraConfig):
    """本地文件系统特定配置"""

    sub_path: str | None = Field(default=None, description="根目录下的子目录")
    create_if_missing: bool = Field(default=False, description="根目录不存在时自动创建")
    allowed_extensions: list[str] | None = Field(
        default=None, description="列出文件时允许的扩展名列表（如 ['.txt', '.pdf']）",
    )
    excluded_extensions: list[str] | None = Field(default=None, description="列出文件时排除的扩展名列表")
    follow_symlinks: bool = Field(default=False, description="是否跟随符号链接")

    # 分片上传模拟
    multipart_dir: str | None = Field(default=None, description="分片状态目录，默认 <root>/.multipart")
    part_dir: str | None = Field(default=None, description="分片临时文件目录，默认 <multipart_dir>/parts")
    state_store: Literal["file", "redis"] = Field(default="file", description="分片状态存储")
    redis_key: str | None = Field(
        default=None, description="redis 状态存储的 hash key，默认 FileSystemKey.MultipartSessions（按根目录区分）",
    )
    reclaim_superseded_parts: bool = Field(default=True, description="重传分片时立即删除被替换的临时文件")
    atomic_complete: bool = Field(default=True, description="合并时先写临时文件再 rename 到目标路径")
    chunk_size: int = Field(default=1024 * 1024, description="流式复制的块大小(bytes)")


class S3CompatibleExtraConfig(BaseFileSystemExtraConfig):
    """S3兼容存储通用配置"""

    signature_version: str | None = Field(default="s3v4", description="签名版本（s3v4/s3v2）")
    multipart_threshold: int | None = Field(default=8388608, description="启用分片上传的阈值(bytes)")
    multipart_chunksize: int | None = Field(default=8388608, description="分片大小(bytes)")
    addressing_style: str | None = Field(default="path", description="地址模式（path/virtual）")
    payload_transfer_threshold: int | None = Field(
        default=0, description="禁用 aws-chunked encoding 的阈值(bytes), 0 表示禁用",
    )
    config: dict[str, Any] | None = Field(
        default_factory=dict, description="AioConfig 额外参数（如 request_checksum_calculation 等）",
    )


class S3ExtraConfig(S3CompatibleExtraConfig):
    """AWS S3 特定配置"""

    session_token: str | None = Field(default=None, description="STS临时会话令牌")


class HuaweiOBSExtraConfig(S3CompatibleExtraConfig):
    """华为云 OBS 特定配置（S3 兼容接口）"""

    addressing_style: str | None = Field(default="virtual", description="OBS 仅支持虚拟主机模式")


class TencentCOSExtraConfig(S3CompatibleExtraConfig):
    """腾讯云 COS 特定配置（S3 兼容接口）"""

    addressing_style: str | None = Field(default="virtual", description="COS 仅支持虚拟主机模式")
    app_id: str | None = Field(default=None, description="APPID，bucket 名称不含 -APPID 后缀时自动补全")


class MinIOExtraConfig(BaseFileSystemExtraConfig):
    """MinIO 特定配置"""

    region: str | None = Field(default=None, description="MinIO region字符串（覆盖公共region字段）")
    cert_check: bool | None = Field(default=None, description="是否检查证书（覆盖公共verify_ssl字段）")
    part_size: int = Field(default=10 * 1024 * 1024, description="put_object 未知长度时的分片大小(bytes)")


class AliyunOSSExtraConfig(BaseFileSystemExtraConfig):
    """阿里云 OSS 特定配置"""

    is_encrypted_bucket: bool = Field(default=False, description="是否使用服务端加密")
    kms_key_id: str | None = Field(default=None, description="KMS密钥ID（用于SSE-KMS）")
    private_key_content: str | None = Field(default=None, description="RSA私钥内容（用于客户端加密）")
    public_key_content: str | None = Field(default=None, description="RSA公钥内容（用于客户端加密）")
    mat_desc_vendor: str | None = Field(default="multifs", description="材质描述的vendor字段")
    enable_crc: bool = Field(default=True, description="启用CRC数据校验（推荐）")
    app_name: str | None = Field(default=None, description="自定义应用名称（用于User-Agent）")
