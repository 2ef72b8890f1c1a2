"""
测试分片上传状态存储
"""

import uuid

import pytest

from ext.ext_redis.main import RedisConfig
from ext.file_system.exceptions import StorageIOError, UploadNotFoundError
from ext.file_system.multipart import FileMultipartStateStore, RedisMultipartStateStore, UploadSession
from tests.ext.file_system.conftest import REDIS_URL, skip_if_no_redis


class TestFileMultipartStateStore:
    """测试文件系统状态存储"""

    async def test_save_and_get(self, state_store):
        """测试保存和读取会话"""
        session = UploadSession(path="a/b.bin", parts={1: "/tmp/p1", 3: "/tmp/p3"})
        await state_store.save(session)

        loaded = await state_store.get(session.upload_id)
        assert loaded.path == "a/b.bin"
        assert loaded.parts == {1: "/tmp/p1", 3: "/tmp/p3"}
        assert loaded.create_time == session.create_time

    async def test_save_overwrites(self, state_store):
        """测试覆盖保存"""
        session = UploadSession(path="x.bin")
        await state_store.save(session)

        session.parts[2] = "/tmp/p2"
        await state_store.save(session)

        loaded = await state_store.get(session.upload_id)
        assert loaded.parts == {2: "/tmp/p2"}

    async def test_save_leaves_no_temp_file(self, state_store, state_dir):
        """测试保存后目录中只有记录文件"""
        session = UploadSession(path="x.bin")
        await state_store.save(session)

        assert [p.name for p in state_dir.iterdir() if p.is_file()] == [f"{session.upload_id}.json"]

    async def test_get_unknown(self, state_store):
        """测试读取不存在的会话"""
        with pytest.raises(UploadNotFoundError) as exc_info:
            await state_store.get("no-such-upload")
        assert exc_info.value.upload_id == "no-such-upload"

    async def test_get_rejects_path_like_id(self, state_store):
        """测试 upload_id 不能逃出状态目录"""
        with pytest.raises(UploadNotFoundError):
            await state_store.get("../etc/passwd")

    async def test_get_corrupt_record(self, state_store, state_dir):
        """测试记录损坏"""
        (state_dir / "broken.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StorageIOError):
            await state_store.get("broken")

    async def test_delete_is_idempotent(self, state_store):
        """测试删除幂等"""
        session = UploadSession(path="x.bin")
        await state_store.save(session)

        await state_store.delete(session.upload_id)
        await state_store.delete(session.upload_id)

        with pytest.raises(UploadNotFoundError):
            await state_store.get(session.upload_id)

    async def test_list(self, state_store, state_dir):
        """测试列出会话，跳过损坏的记录和临时文件"""
        first = UploadSession(path="1.bin")
        second = UploadSession(path="2.bin")
        await state_store.save(first)
        await state_store.save(second)
        (state_dir / "broken.json").write_text("{not json", encoding="utf-8")
        (state_dir / ".half-written.json.tmp").write_text("{}", encoding="utf-8")

        sessions = await state_store.list()
        assert sorted(s.upload_id for s in sessions) == sorted([first.upload_id, second.upload_id])

    async def test_list_empty(self, state_store):
        """测试没有会话"""
        assert await state_store.list() == []

    async def test_records_survive_new_instance(self, state_store, state_dir):
        """测试重新创建存储后记录仍然存在"""
        session = UploadSession(path="persist.bin", parts={1: "/tmp/p1"})
        await state_store.save(session)

        reopened = FileMultipartStateStore(state_dir)
        loaded = await reopened.get(session.upload_id)
        assert loaded.path == "persist.bin"
        assert loaded.parts == {1: "/tmp/p1"}


@skip_if_no_redis
class TestRedisMultipartStateStore:
    """测试 Redis 状态存储"""

    @pytest.fixture
    async def redis_store(self):
        redis = RedisConfig(url=REDIS_URL)  # type: ignore[arg-type]
        await redis.register()
        store = RedisMultipartStateStore(redis, key=f"multifs:test:{uuid.uuid4().hex}")
        yield store
        async with redis.instance as r:
            await r.delete(store.key)
        await redis.unregister()

    async def test_save_get_delete(self, redis_store):
        """测试保存、读取和删除"""
        session = UploadSession(path="a/b.bin", parts={1: "/tmp/p1"})
        await redis_store.save(session)

        loaded = await redis_store.get(session.upload_id)
        assert loaded.parts == {1: "/tmp/p1"}

        await redis_store.delete(session.upload_id)
        await redis_store.delete(session.upload_id)
        with pytest.raises(UploadNotFoundError):
            await redis_store.get(session.upload_id)

    async def test_list(self, redis_store):
        """测试列出会话"""
        first = UploadSession(path="1.bin")
        second = UploadSession(path="2.bin")
        await redis_store.save(first)
        await redis_store.save(second)

        sessions = await redis_store.list()
        assert sorted(s.upload_id for s in sessions) == sorted([first.upload_id, second.upload_id])


class TestRedisStateStoreKey:
    """测试 Redis 状态存储的 hash key（不需要连接 redis）"""

    def test_key_prefix(self):
        redis = RedisConfig(url="redis://localhost:6379/0", key_prefix="tenant-a")  # type: ignore[arg-type]
        store = RedisMultipartStateStore(redis, key="FS:Multipart:/data")
        assert store.key == "tenant-a:FS:Multipart:/data"

    def test_without_prefix(self):
        redis = RedisConfig(url="redis://localhost:6379/0")  # type: ignore[arg-type]
        assert RedisMultipartStateStore(redis, key="sessions").key == "sessions"
