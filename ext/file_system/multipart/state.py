"""
分片上传状态存储

每个上传会话一条记录，以 upload_id 为键；记录在进程重启后仍然有效
"""

import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

import aiofiles
import aiofiles.os
from loguru import logger
from pydantic import BaseModel, Field, ValidationError
from redis.exceptions import RedisError

from ext.ext_redis.main import RedisConfig
from ext.file_system.exceptions import StorageIOError, UploadNotFoundError


def now() -> datetime:
    return datetime.now().astimezone()


class UploadSession(BaseModel):
    """一次进行中的分片上传"""

    upload_id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="上传ID")
    path: str = Field(..., description="目标路径")
    parts: dict[int, str] = Field(default_factory=dict, description="分片编号 -> 临时文件路径")
    create_time: datetime = Field(default_factory=now, description="创建时间")
    update_time: datetime = Field(default_factory=now, description="最后修改时间")


class MultipartStateStore(ABC):
    """分片上传状态存储接口"""

    @abstractmethod
    async def save(self, session: UploadSession) -> None:
        """保存或覆盖会话记录（单个会话原子写入）

        Raises:
            StorageIOError: 底层 I/O 失败
        """

    @abstractmethod
    async def get(self, upload_id: str) -> UploadSession:
        """获取会话记录

        Raises:
            UploadNotFoundError: 会话不存在（未创建或已完成/取消）
        """

    @abstractmethod
    async def delete(self, upload_id: str) -> None:
        """删除会话记录（幂等）"""

    @abstractmethod
    async def list(self) -> list[UploadSession]:
        """列出所有未完成的会话（顺序不保证）"""


class FileMultipartStateStore(MultipartStateStore):
    """文件系统实现的状态存储

    每个会话一个 JSON 文件 <storage_dir>/<upload_id>.json，
    写入时先写同目录临时文件再 os.replace，读方永远看不到半写入的记录
    """

    suffix = ".json"

    def __init__(self, storage_dir: str | Path) -> None:
        self.storage_dir = Path(storage_dir)
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"failed to create multipart state dir {self.storage_dir}: {e}") from e

    def _record_path(self, upload_id: str) -> Path:
        # upload_id 由调用方传入，只允许作为单个文件名
        if not upload_id or Path(upload_id).name != upload_id or upload_id.startswith("."):
            raise UploadNotFoundError(upload_id)
        return self.storage_dir / f"{upload_id}{self.suffix}"

    async def save(self, session: UploadSession) -> None:
        record_path = self._record_path(session.upload_id)
        tmp_path = record_path.with_name(f".{record_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(session.model_dump_json())
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(tmp_path, record_path)
        except OSError as e:
            try:
                await aiofiles.os.remove(tmp_path)
            except FileNotFoundError:
                pass
            raise StorageIOError(f"failed to save multipart upload {session.upload_id}: {e}") from e

    async def get(self, upload_id: str) -> UploadSession:
        record_path = self._record_path(upload_id)
        try:
            async with aiofiles.open(record_path, "r", encoding="utf-8") as f:
                data = await f.read()
        except FileNotFoundError:
            raise UploadNotFoundError(upload_id) from None
        except OSError as e:
            raise StorageIOError(f"failed to read multipart upload {upload_id}: {e}") from e

        try:
            return UploadSession.model_validate_json(data)
        except ValidationError as e:
            raise StorageIOError(f"corrupt multipart upload record {upload_id}: {e}") from e

    async def delete(self, upload_id: str) -> None:
        try:
            await aiofiles.os.remove(self._record_path(upload_id))
        except FileNotFoundError:
            pass
        except UploadNotFoundError:
            pass
        except OSError as e:
            raise StorageIOError(f"failed to delete multipart upload {upload_id}: {e}") from e

    async def list(self) -> list[UploadSession]:
        try:
            names = await aiofiles.os.listdir(self.storage_dir)
        except OSError as e:
            raise StorageIOError(f"failed to list multipart uploads: {e}") from e

        sessions = []
        for name in names:
            if name.startswith(".") or not name.endswith(self.suffix):
                continue
            upload_id = name[: -len(self.suffix)]
            try:
                sessions.append(await self.get(upload_id))
            except (UploadNotFoundError, StorageIOError) as e:
                # 列出期间被完成/取消，或记录不可读
                logger.warning(f"Skip multipart upload record {name}: {e}")
        return sessions


class RedisMultipartStateStore(MultipartStateStore):
    """Redis 实现的状态存储

    所有会话存放在同一个 hash 中（field=upload_id），HSET 单字段写入是原子的；
    hash key 会加上 RedisConfig.key_prefix
    """

    def __init__(self, redis: RedisConfig, key: str) -> None:
        self.redis = redis
        self.key = redis.key(key)

    async def save(self, session: UploadSession) -> None:
        try:
            async with self.redis.instance as r:
                await r.hset(self.key, session.upload_id, session.model_dump_json())
        except RedisError as e:
            raise StorageIOError(f"failed to save multipart upload {session.upload_id}: {e}") from e

    async def get(self, upload_id: str) -> UploadSession:
        try:
            async with self.redis.instance as r:
                data = await r.hget(self.key, upload_id)
        except RedisError as e:
            raise StorageIOError(f"failed to read multipart upload {upload_id}: {e}") from e

        if data is None:
            raise UploadNotFoundError(upload_id)
        try:
            return UploadSession.model_validate_json(data)
        except ValidationError as e:
            raise StorageIOError(f"corrupt multipart upload record {upload_id}: {e}") from e

    async def delete(self, upload_id: str) -> None:
        try:
            async with self.redis.instance as r:
                await r.hdel(self.key, upload_id)
        except RedisError as e:
            raise StorageIOError(f"failed to delete multipart upload {upload_id}: {e}") from e

    async def list(self) -> list[UploadSession]:
        try:
            async with self.redis.instance as r:
                records = await r.hgetall(self.key)
        except RedisError as e:
            raise StorageIOError(f"failed to list multipart uploads: {e}") from e

        sessions = []
        for upload_id, data in records.items():
            try:
                sessions.append(UploadSession.model_validate_json(data))
            except ValidationError as e:
                logger.warning(f"Skip corrupt multipart upload record {upload_id}: {e}")
        return sessions
