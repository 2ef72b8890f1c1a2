"""
测试本地分片上传模拟器
"""

import asyncio
import hashlib
import io
import random
from datetime import timedelta
from pathlib import Path

import pytest

from ext.file_system.base import MultipartPart
from ext.file_system.exceptions import PartNotFoundError, StorageIOError, UploadNotFoundError
from ext.file_system.multipart import MultipartUploader
from ext.file_system.multipart.state import FileMultipartStateStore, now


def part_files(state_dir):
    parts = state_dir / "parts"
    return sorted(p for p in parts.iterdir() if p.is_file()) if parts.exists() else []


class CommitThenBlockStateStore(FileMultipartStateStore):
    """分片登记的记录写入后阻塞，模拟保存尚未返回时调用方被取消"""

    def __init__(self, storage_dir):
        super().__init__(storage_dir)
        self.committed = asyncio.Event()
        self.release = asyncio.Event()

    async def save(self, session):
        await super().save(session)
        if session.parts:
            self.committed.set()
            await self.release.wait()


class FailingSaveStateStore(FileMultipartStateStore):
    """分片登记时保存失败"""

    async def save(self, session):
        if session.parts:
            raise StorageIOError("disk full")
        await super().save(session)


class BlockAfterListStateStore(FileMultipartStateStore):
    """列出会话后阻塞，模拟列出与取消之间会话被更新"""

    def __init__(self, storage_dir):
        super().__init__(storage_dir)
        self.listed = asyncio.Event()
        self.release = asyncio.Event()

    async def list(self):
        sessions = await super().list()
        self.listed.set()
        await self.release.wait()
        return sessions


def make_uploader(state_store, state_dir, local_temp_dir):
    return MultipartUploader(
        state_store=state_store,
        part_dir=state_dir / "parts",
        resolve_path=lambda path: local_temp_dir / path,
    )


class TestMultipartUploader:
    """测试分片上传的完整流程"""

    async def test_out_of_order_parts(self, uploader, local_temp_dir):
        """测试乱序上传后按声明顺序合并"""
        upload_id = await uploader.init_multipart_upload("greeting.txt")

        part2 = await uploader.upload_part(upload_id, 2, b"World")
        part1 = await uploader.upload_part(upload_id, 1, b"Hello, ")

        target = await uploader.complete_multipart_upload(upload_id, [part1, part2])

        assert target == local_temp_dir / "greeting.txt"
        assert target.read_bytes() == b"Hello, World"

    async def test_random_upload_order(self, uploader, local_temp_dir):
        """测试任意上传顺序，合并结果只取决于 parts 的顺序"""
        chunks = [bytes([i]) * (100 + i) for i in range(1, 9)]
        upload_id = await uploader.init_multipart_upload("random.bin")

        order = list(range(1, len(chunks) + 1))
        random.shuffle(order)
        for part_number in order:
            await uploader.upload_part(upload_id, part_number, chunks[part_number - 1])

        parts = [MultipartPart(part_number=n) for n in range(1, len(chunks) + 1)]
        target = await uploader.complete_multipart_upload(upload_id, parts)

        assert target.read_bytes() == b"".join(chunks)

    async def test_declared_order_wins(self, uploader):
        """测试合并顺序以 parts 列表为准，而不是分片编号"""
        upload_id = await uploader.init_multipart_upload("reversed.txt")
        await uploader.upload_part(upload_id, 1, b"first")
        await uploader.upload_part(upload_id, 2, b"second")

        target = await uploader.complete_multipart_upload(
            upload_id, [MultipartPart(part_number=2), MultipartPart(part_number=1)],
        )
        assert target.read_bytes() == b"secondfirst"

    async def test_complete_subset_of_parts(self, uploader, state_dir):
        """测试只合并部分分片，未引用的分片同样被清理"""
        upload_id = await uploader.init_multipart_upload("subset.txt")
        await uploader.upload_part(upload_id, 1, b"a")
        await uploader.upload_part(upload_id, 2, b"b")
        await uploader.upload_part(upload_id, 3, b"c")

        target = await uploader.complete_multipart_upload(
            upload_id, [MultipartPart(part_number=1), MultipartPart(part_number=3)],
        )
        assert target.read_bytes() == b"ac"
        assert part_files(state_dir) == []

    async def test_complete_into_subdirectory(self, uploader, local_temp_dir):
        """测试目标目录不存在时自动创建"""
        upload_id = await uploader.init_multipart_upload("a/b/c.txt")
        part = await uploader.upload_part(upload_id, 1, b"nested")

        await uploader.complete_multipart_upload(upload_id, [part])
        assert (local_temp_dir / "a" / "b" / "c.txt").read_bytes() == b"nested"

    async def test_complete_overwrites_existing_file(self, uploader, local_temp_dir):
        """测试覆盖已存在的目标文件"""
        (local_temp_dir / "existing.txt").write_bytes(b"old content that is longer")
        upload_id = await uploader.init_multipart_upload("existing.txt")
        part = await uploader.upload_part(upload_id, 1, b"new")

        await uploader.complete_multipart_upload(upload_id, [part])
        assert (local_temp_dir / "existing.txt").read_bytes() == b"new"

    async def test_complete_cleans_up(self, uploader, state_store, state_dir):
        """测试完成后临时文件和会话记录都被删除"""
        upload_id = await uploader.init_multipart_upload("done.txt")
        parts = [await uploader.upload_part(upload_id, n, f"part-{n}".encode()) for n in (1, 2, 3)]
        assert len(part_files(state_dir)) == 3

        await uploader.complete_multipart_upload(upload_id, parts)

        assert part_files(state_dir) == []
        with pytest.raises(UploadNotFoundError):
            await state_store.get(upload_id)
        assert upload_id not in uploader._locks

    async def test_double_complete(self, uploader):
        """测试重复完成"""
        upload_id = await uploader.init_multipart_upload("twice.txt")
        part = await uploader.upload_part(upload_id, 1, b"once")

        await uploader.complete_multipart_upload(upload_id, [part])
        with pytest.raises(UploadNotFoundError):
            await uploader.complete_multipart_upload(upload_id, [part])

    async def test_complete_missing_part_keeps_session(self, uploader, local_temp_dir):
        """测试引用未上传的分片时不写入目标文件，会话保持打开，补传后可以重试"""
        upload_id = await uploader.init_multipart_upload("retry.txt")
        part1 = await uploader.upload_part(upload_id, 1, b"Hello, ")

        with pytest.raises(PartNotFoundError) as exc_info:
            await uploader.complete_multipart_upload(upload_id, [part1, MultipartPart(part_number=2)])
        assert exc_info.value.part_number == 2
        assert not (local_temp_dir / "retry.txt").exists()

        session = await uploader.get_session(upload_id)
        assert list(session.parts) == [1]

        part2 = await uploader.upload_part(upload_id, 2, b"World")
        target = await uploader.complete_multipart_upload(upload_id, [part1, part2])
        assert target.read_bytes() == b"Hello, World"

    async def test_complete_missing_part_then_abort(self, uploader, state_dir):
        """测试合并失败后可以取消"""
        upload_id = await uploader.init_multipart_upload("give-up.txt")
        await uploader.upload_part(upload_id, 1, b"data")

        with pytest.raises(PartNotFoundError):
            await uploader.complete_multipart_upload(upload_id, [MultipartPart(part_number=5)])

        await uploader.abort_multipart_upload(upload_id)
        assert part_files(state_dir) == []

    async def test_complete_requires_parts(self, uploader):
        """测试 parts 不能为空"""
        upload_id = await uploader.init_multipart_upload("empty.txt")
        with pytest.raises(ValueError):
            await uploader.complete_multipart_upload(upload_id, [])

    async def test_complete_unknown_upload(self, uploader):
        """测试完成不存在的会话"""
        with pytest.raises(UploadNotFoundError):
            await uploader.complete_multipart_upload("no-such-upload", [MultipartPart(part_number=1)])

    async def test_assemble_failure_leaves_no_partial_file(self, uploader, local_temp_dir):
        """测试合并失败时目标文件和隐藏临时文件都不存在，会话保持打开"""
        upload_id = await uploader.init_multipart_upload("broken.txt")
        part1 = await uploader.upload_part(upload_id, 1, b"first")
        part2 = await uploader.upload_part(upload_id, 2, b"second")

        # 分片临时文件被外部删除
        session = await uploader.get_session(upload_id)
        Path(session.parts[2]).unlink()

        with pytest.raises(StorageIOError):
            await uploader.complete_multipart_upload(upload_id, [part1, part2])

        assert not (local_temp_dir / "broken.txt").exists()
        assert [p.name for p in local_temp_dir.iterdir() if p.name.endswith(".partial")] == []
        assert (await uploader.get_session(upload_id)).upload_id == upload_id

    async def test_atomic_complete_disabled(self, state_store, state_dir, local_temp_dir):
        """测试关闭原子合并时直接写入目标文件"""
        uploader = MultipartUploader(
            state_store=state_store,
            part_dir=state_dir / "parts",
            resolve_path=lambda path: local_temp_dir / path,
            atomic_complete=False,
        )
        upload_id = await uploader.init_multipart_upload("direct.txt")
        part = await uploader.upload_part(upload_id, 1, b"direct")

        target = await uploader.complete_multipart_upload(upload_id, [part])
        assert target.read_bytes() == b"direct"


class TestUploadPart:
    """测试分片接收"""

    async def test_etag_is_md5(self, uploader):
        """测试分片 ETag 为内容 MD5"""
        upload_id = await uploader.init_multipart_upload("etag.txt")
        part = await uploader.upload_part(upload_id, 1, b"checksum me")

        assert part.etag == hashlib.md5(b"checksum me").hexdigest()
        assert part.size == len(b"checksum me")

    async def test_upload_from_file_object(self, uploader, local_temp_dir):
        """测试从文件对象和异步迭代器读取分片"""

        async def chunks():
            yield b"async "
            yield b"iterator"

        upload_id = await uploader.init_multipart_upload("streams.txt")
        part1 = await uploader.upload_part(upload_id, 1, io.BytesIO(b"file object, "))
        part2 = await uploader.upload_part(upload_id, 2, chunks())

        target = await uploader.complete_multipart_upload(upload_id, [part1, part2])
        assert target.read_bytes() == b"file object, async iterator"

    async def test_empty_part(self, uploader):
        """测试空分片"""
        upload_id = await uploader.init_multipart_upload("empty-part.txt")
        part = await uploader.upload_part(upload_id, 1, b"")
        assert part.size == 0

        target = await uploader.complete_multipart_upload(upload_id, [part])
        assert target.read_bytes() == b""

    async def test_invalid_part_number(self, uploader):
        """测试分片编号必须为正整数"""
        upload_id = await uploader.init_multipart_upload("bad-number.txt")
        with pytest.raises(ValueError):
            await uploader.upload_part(upload_id, 0, b"data")

    async def test_unknown_upload(self, uploader, state_dir):
        """测试向不存在的会话上传分片，不留下临时文件"""
        with pytest.raises(UploadNotFoundError):
            await uploader.upload_part("no-such-upload", 1, b"data")
        assert part_files(state_dir) == []

    async def test_unsupported_data_removes_blob(self, uploader, state_dir):
        """测试数据读取失败时删除临时文件，会话不变"""
        upload_id = await uploader.init_multipart_upload("bad-data.txt")
        with pytest.raises(TypeError):
            await uploader.upload_part(upload_id, 1, 12345)

        assert part_files(state_dir) == []
        assert (await uploader.get_session(upload_id)).parts == {}

    async def test_cancelled_upload_removes_blob(self, uploader, state_dir):
        """测试取消上传时删除临时文件，会话不变"""
        started = asyncio.Event()

        async def slow_stream():
            yield b"partial data"
            started.set()
            await asyncio.Event().wait()

        upload_id = await uploader.init_multipart_upload("cancelled.txt")
        task = asyncio.create_task(uploader.upload_part(upload_id, 1, slow_stream()))
        await started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert part_files(state_dir) == []
        assert (await uploader.get_session(upload_id)).parts == {}

    async def test_cancelled_after_commit_keeps_blob(self, state_dir, local_temp_dir):
        """测试记录已提交后被取消，临时文件保留，分片仍可合并"""
        state_store = CommitThenBlockStateStore(state_dir)
        uploader = make_uploader(state_store, state_dir, local_temp_dir)
        upload_id = await uploader.init_multipart_upload("committed.txt")

        task = asyncio.create_task(uploader.upload_part(upload_id, 1, b"kept"))
        await state_store.committed.wait()

        task.cancel()
        state_store.release.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        session = await state_store.get(upload_id)
        assert Path(session.parts[1]).is_file()
        assert part_files(state_dir) == [Path(session.parts[1])]

        target = await uploader.complete_multipart_upload(upload_id, [MultipartPart(part_number=1)])
        assert target.read_bytes() == b"kept"

    async def test_failed_registration_removes_blob(self, state_dir, local_temp_dir):
        """测试登记失败时删除临时文件"""
        state_store = FailingSaveStateStore(state_dir)
        uploader = make_uploader(state_store, state_dir, local_temp_dir)
        upload_id = await uploader.init_multipart_upload("unregistered.txt")

        with pytest.raises(StorageIOError):
            await uploader.upload_part(upload_id, 1, b"lost")

        assert part_files(state_dir) == []
        assert (await state_store.get(upload_id)).parts == {}

    async def test_reupload_replaces_part(self, uploader, state_dir):
        """测试重传同一分片编号，后上传的生效，旧临时文件被删除"""
        upload_id = await uploader.init_multipart_upload("reupload.txt")
        await uploader.upload_part(upload_id, 1, b"old")
        part = await uploader.upload_part(upload_id, 1, b"new")

        assert len(part_files(state_dir)) == 1
        target = await uploader.complete_multipart_upload(upload_id, [part])
        assert target.read_bytes() == b"new"

    async def test_reupload_without_reclaim(self, state_store, state_dir, local_temp_dir):
        """测试关闭回收时被替换的临时文件保留"""
        uploader = MultipartUploader(
            state_store=state_store,
            part_dir=state_dir / "parts",
            resolve_path=lambda path: local_temp_dir / path,
            reclaim_superseded_parts=False,
        )
        upload_id = await uploader.init_multipart_upload("keep-old.txt")
        await uploader.upload_part(upload_id, 1, b"old")
        part = await uploader.upload_part(upload_id, 1, b"new")
        assert len(part_files(state_dir)) == 2

        target = await uploader.complete_multipart_upload(upload_id, [part])
        assert target.read_bytes() == b"new"
        # 只清理会话记录引用的临时文件
        assert len(part_files(state_dir)) == 1

    async def test_concurrent_parts(self, uploader):
        """测试同一会话并发上传多个分片"""
        chunks = {n: f"chunk-{n:02d};".encode() * 1000 for n in range(1, 11)}
        upload_id = await uploader.init_multipart_upload("concurrent.bin")

        await asyncio.gather(*(uploader.upload_part(upload_id, n, data) for n, data in chunks.items()))

        uploaded = await uploader.list_uploaded_parts(upload_id)
        assert [p.part_number for p in uploaded] == list(range(1, 11))

        target = await uploader.complete_multipart_upload(upload_id, uploaded)
        assert target.read_bytes() == b"".join(chunks[n] for n in range(1, 11))


class TestAbortAndList:
    """测试取消和列出"""

    async def test_abort_cleans_up(self, uploader, state_store, state_dir, local_temp_dir):
        """测试取消后临时文件和会话记录都被删除"""
        upload_id = await uploader.init_multipart_upload("aborted.txt")
        await uploader.upload_part(upload_id, 1, b"a")
        await uploader.upload_part(upload_id, 2, b"b")

        await uploader.abort_multipart_upload(upload_id)

        assert part_files(state_dir) == []
        with pytest.raises(UploadNotFoundError):
            await state_store.get(upload_id)
        assert not (local_temp_dir / "aborted.txt").exists()

    async def test_abort_unknown_upload(self, uploader):
        """测试取消不存在的会话视为成功"""
        await uploader.abort_multipart_upload("no-such-upload")

    async def test_abort_twice(self, uploader):
        """测试重复取消"""
        upload_id = await uploader.init_multipart_upload("twice.txt")
        await uploader.abort_multipart_upload(upload_id)
        await uploader.abort_multipart_upload(upload_id)

    async def test_upload_after_abort(self, uploader):
        """测试取消后不能继续上传"""
        upload_id = await uploader.init_multipart_upload("closed.txt")
        await uploader.abort_multipart_upload(upload_id)

        with pytest.raises(UploadNotFoundError):
            await uploader.upload_part(upload_id, 1, b"late")

    @pytest.mark.parametrize("complete_first", [True, False])
    async def test_complete_abort_race(self, uploader, state_store, state_dir, local_temp_dir, complete_first):
        """测试完成与取消并发，只有一个生效，另一个视会话为已关闭"""
        upload_id = await uploader.init_multipart_upload("race.txt")
        part1 = await uploader.upload_part(upload_id, 1, b"Hello, ")
        part2 = await uploader.upload_part(upload_id, 2, b"World")

        complete = uploader.complete_multipart_upload(upload_id, [part1, part2])
        abort = uploader.abort_multipart_upload(upload_id)
        calls = [complete, abort] if complete_first else [abort, complete]
        results = await asyncio.gather(*calls, return_exceptions=True)
        complete_result = results[0] if complete_first else results[1]
        abort_result = results[1] if complete_first else results[0]

        target = local_temp_dir / "race.txt"
        assert abort_result is None
        if isinstance(complete_result, Path):
            assert target.read_bytes() == b"Hello, World"
        else:
            assert isinstance(complete_result, UploadNotFoundError)
            assert not target.exists()

        assert part_files(state_dir) == []
        assert await state_store.list() == []
        with pytest.raises(UploadNotFoundError):
            await state_store.get(upload_id)

    async def test_list_multipart_uploads(self, uploader):
        """测试列出未完成的会话"""
        first = await uploader.init_multipart_upload("one.txt")
        second = await uploader.init_multipart_upload("two.txt")
        done = await uploader.init_multipart_upload("three.txt")
        part = await uploader.upload_part(done, 1, b"3")
        await uploader.complete_multipart_upload(done, [part])

        uploads = await uploader.list_multipart_uploads()
        assert {u.upload_id: u.path for u in uploads} == {first: "one.txt", second: "two.txt"}

    async def test_list_uploaded_parts(self, uploader):
        """测试列出已上传分片，按编号排序"""
        upload_id = await uploader.init_multipart_upload("parts.txt")
        await uploader.upload_part(upload_id, 3, b"ccc")
        await uploader.upload_part(upload_id, 1, b"a")

        parts = await uploader.list_uploaded_parts(upload_id)
        assert [(p.part_number, p.size) for p in parts] == [(1, 1), (3, 3)]

    async def test_list_uploaded_parts_skips_missing_blob(self, uploader, local_temp_dir):
        """测试临时文件被外部删除的分片不出现在列表中"""
        upload_id = await uploader.init_multipart_upload("missing.txt")
        await uploader.upload_part(upload_id, 1, b"a")
        await uploader.upload_part(upload_id, 2, b"bb")

        session = await uploader.get_session(upload_id)
        Path(session.parts[1]).unlink()

        parts = await uploader.list_uploaded_parts(upload_id)
        assert [p.part_number for p in parts] == [2]

    async def test_list_uploaded_parts_unknown_upload(self, uploader):
        """测试列出不存在会话的分片"""
        with pytest.raises(UploadNotFoundError):
            await uploader.list_uploaded_parts("no-such-upload")

    async def test_abort_stale_uploads(self, uploader, state_store):
        """测试取消长时间未更新的会话"""
        stale = await uploader.init_multipart_upload("stale.txt")
        fresh = await uploader.init_multipart_upload("fresh.txt")

        session = await state_store.get(stale)
        session.update_time = now() - timedelta(days=2)
        await state_store.save(session)

        aborted = await uploader.abort_stale_multipart_uploads(timedelta(days=1))

        assert aborted == [stale]
        assert [u.upload_id for u in await uploader.list_multipart_uploads()] == [fresh]

    async def test_abort_stale_skips_session_updated_after_listing(self, state_dir, local_temp_dir):
        """测试列出之后又上传了分片的会话不会被取消"""
        state_store = BlockAfterListStateStore(state_dir)
        uploader = make_uploader(state_store, state_dir, local_temp_dir)
        upload_id = await uploader.init_multipart_upload("revived.txt")

        session = await state_store.get(upload_id)
        session.update_time = now() - timedelta(days=2)
        await state_store.save(session)

        task = asyncio.create_task(uploader.abort_stale_multipart_uploads(timedelta(days=1)))
        await state_store.listed.wait()
        await uploader.upload_part(upload_id, 1, b"still alive")
        state_store.release.set()

        assert await task == []
        session = await state_store.get(upload_id)
        assert Path(session.parts[1]).read_bytes() == b"still alive"


class TestRestart:
    """测试进程重启后继续上传"""

    async def test_resume_with_new_uploader(self, uploader, state_store, state_dir, local_temp_dir):
        """测试新的模拟器实例可以继续之前的会话"""
        upload_id = await uploader.init_multipart_upload("resumed.txt")
        part1 = await uploader.upload_part(upload_id, 1, b"before ")

        restarted = MultipartUploader(
            state_store=state_store,
            part_dir=state_dir / "parts",
            resolve_path=lambda path: local_temp_dir / path,
        )
        part2 = await restarted.upload_part(upload_id, 2, b"restart")
        target = await restarted.complete_multipart_upload(upload_id, [part1, part2])

        assert target.read_bytes() == b"before restart"
