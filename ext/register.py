from pydantic import BaseModel

from ext.ext_redis.main import RedisConfig


class ExtensionRegistry(BaseModel):
    """
    define here
    """

    # 分片上传状态使用 redis 存储时必须配置
    redis: RedisConfig | None = None
