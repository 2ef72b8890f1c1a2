"""
本地磁盘分片上传模拟

在普通文件系统上实现对象存储的分片上传协议：
    init -> 乱序上传分片 -> 按调用方给定顺序合并 -> 取消并清理

每个分片落地为一个独立的临时文件，归属于其会话记录（parts 映射）；
完成或取消时按会话记录一次性清理。同一会话的所有修改由会话锁串行化，
分片数据的写入在锁外进行，同一会话的多个分片可以并行上传。
"""

import os
import asyncio
import hashlib
import tempfile
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

import aiofiles
import aiofiles.os
from loguru import logger

from ext.file_system.base import MultipartPart, MultipartUploadInfo
from ext.file_system.exceptions import PartNotFoundError, StorageIOError, UploadNotFoundError
from ext.file_system.multipart.state import MultipartStateStore, UploadSession, now
from ext.file_system.stream import DEFAULT_CHUNK_SIZE, DataStream, iter_chunks


class MultipartUploader:
    """本地分片上传模拟器

    Args:
        state_store: 会话状态存储
        part_dir: 分片临时文件目录（不在最终文件命名空间内）
        resolve_path: 将会话的目标路径解析为磁盘路径
        reclaim_superseded_parts: 重传同一分片编号时，记录更新后立即删除旧的临时文件；
            为 False 时旧文件留给外部清理
        atomic_complete: 合并时先写入目标旁的隐藏临时文件，成功后 rename 到目标路径；
            为 False 时直接写目标文件，失败时目标文件可能残缺
        chunk_size: 流式复制的块大小
    """

    def __init__(
        self,
        state_store: MultipartStateStore,
        part_dir: str | Path,
        resolve_path: Callable[[str], Path] = Path,
        reclaim_superseded_parts: bool = True,
        atomic_complete: bool = True,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.state_store = state_store
        self.part_dir = Path(part_dir)
        self.resolve_path = resolve_path
        self.reclaim_superseded_parts = reclaim_superseded_parts
        self.atomic_complete = atomic_complete
        self.chunk_size = chunk_size

        # upload_id -> 会话锁
        self._locks: dict[str, asyncio.Lock] = {}

        try:
            self.part_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"failed to create part dir {self.part_dir}: {e}") from e

    def _lock(self, upload_id: str) -> asyncio.Lock:
        return self._locks.setdefault(upload_id, asyncio.Lock())

    def _forget(self, upload_id: str) -> None:
        """会话关闭后释放会话锁"""
        self._locks.pop(upload_id, None)

    async def get_session(self, upload_id: str) -> UploadSession:
        return await self.state_store.get(upload_id)

    async def init_multipart_upload(self, path: str) -> str:
        """创建会话并持久化，返回 upload_id"""
        session = UploadSession(path=path)
        await self.state_store.save(session)
        logger.info(f"Init multipart upload {session.upload_id} for {path}")
        return session.upload_id

    async def upload_part(self, upload_id: str, part_number: int, data: DataStream) -> MultipartPart:
        """接收一个分片

        数据完整写入新的临时文件后才登记到会话；记录提交前的任何失败都会删除新临时文件，会话保持不变；
        记录提交后被取消时保留临时文件，分片视为已上传

        Raises:
            UploadNotFoundError: 会话不存在
            StorageIOError: 临时文件创建或写入失败
        """
        if part_number < 1:
            raise ValueError(f"part number must be a positive integer, got {part_number}")

        # 先确认会话存在，避免为未知会话写入数据
        await self.state_store.get(upload_id)

        blob, etag, size = await self._receive(upload_id, part_number, data)

        registered = False
        superseded = None
        try:
            async with self._lock(upload_id):
                try:
                    session = await self.state_store.get(upload_id)
                except UploadNotFoundError:
                    self._forget(upload_id)
                    raise
                superseded = session.parts.get(part_number)
                session.parts[part_number] = str(blob)
                session.update_time = now()
                save = asyncio.ensure_future(self.state_store.save(session))
                try:
                    await asyncio.shield(save)
                finally:
                    # 文件存储的 rename 在线程池中执行，取消无法中断已开始的保存
                    # 等待保存结束再判断记录是否已提交
                    if not save.done():
                        await asyncio.wait({save})
                    registered = not save.cancelled() and save.exception() is None
        except BaseException:
            # 记录已提交时临时文件归会话所有，不能删除
            if not registered:
                await self._remove_quietly(blob)
            raise
        finally:
            if registered and superseded and superseded != str(blob):
                if self.reclaim_superseded_parts:
                    await self._remove_quietly(superseded)
                else:
                    logger.debug(f"Part {part_number} of {upload_id} superseded, keep {superseded}")

        logger.debug(f"Uploaded part {part_number} of {upload_id} ({size} bytes)")
        return MultipartPart(part_number=part_number, etag=etag, size=size)

    async def _receive(self, upload_id: str, part_number: int, data: DataStream) -> tuple[Path, str, int]:
        """将数据流写入新的临时文件，返回 (路径, md5, 大小)"""
        try:
            fd, name = tempfile.mkstemp(prefix=f"{upload_id}-part-{part_number}-", dir=self.part_dir)
            os.close(fd)
        except OSError as e:
            raise StorageIOError(f"failed to create temp file for part {part_number} of {upload_id}: {e}") from e

        blob = Path(name)
        md5 = hashlib.md5()
        size = 0
        try:
            async with aiofiles.open(blob, "wb") as f:
                async for chunk in iter_chunks(data, self.chunk_size):
                    await f.write(chunk)
                    md5.update(chunk)
                    size += len(chunk)
        except OSError as e:
            await self._remove_quietly(blob)
            raise StorageIOError(f"failed to write part {part_number} of {upload_id}: {e}") from e
        except BaseException:
            await self._remove_quietly(blob)
            raise

        return blob, md5.hexdigest(), size

    async def complete_multipart_upload(self, upload_id: str, parts: list[MultipartPart]) -> Path:
        """按 parts 的列表顺序合并分片到目标文件

        所有分片编号先校验一遍，缺失时不写入任何内容，会话保持打开，调用方可补传后重试

        Returns:
            目标文件路径

        Raises:
            UploadNotFoundError: 会话不存在（包括重复完成）
            PartNotFoundError: parts 引用了未上传的分片
            StorageIOError: 读写失败
        """
        if not parts:
            raise ValueError("at least one part is required to complete a multipart upload")

        async with self._lock(upload_id):
            try:
                session = await self.state_store.get(upload_id)
            except UploadNotFoundError:
                self._forget(upload_id)
                raise

            for part in parts:
                if part.part_number not in session.parts:
                    raise PartNotFoundError(part.part_number)

            target = self.resolve_path(session.path)
            await self._assemble(session, parts, target)

            # 目标文件已就位，先删除记录；之后临时文件清理失败只会造成泄漏
            await self.state_store.delete(upload_id)
            for location in session.parts.values():
                await self._remove_quietly(location)

        self._forget(upload_id)
        logger.info(f"Completed multipart upload {upload_id} -> {session.path} ({len(parts)} parts)")
        return target

    async def _assemble(self, session: UploadSession, parts: list[MultipartPart], target: Path) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"failed to create directory {target.parent}: {e}") from e

        if self.atomic_complete:
            dest = target.with_name(f".{target.name}.{session.upload_id}.partial")
        else:
            dest = target

        try:
            async with aiofiles.open(dest, "wb") as out:
                for part in parts:
                    async with aiofiles.open(session.parts[part.part_number], "rb") as blob:
                        while True:
                            chunk = await blob.read(self.chunk_size)
                            if not chunk:
                                break
                            await out.write(chunk)
            if self.atomic_complete:
                await aiofiles.os.replace(dest, target)
        except OSError as e:
            if self.atomic_complete:
                await self._remove_quietly(dest)
            raise StorageIOError(f"failed to assemble multipart upload {session.upload_id}: {e}") from e
        except BaseException:
            if self.atomic_complete:
                await self._remove_quietly(dest)
            raise

    async def abort_multipart_upload(self, upload_id: str) -> None:
        """取消分片上传

        会话不存在时视为成功；临时文件删除失败只记录日志，不影响其余文件的删除
        """
        await self._abort(upload_id)

    async def _abort(self, upload_id: str, deadline: datetime | None = None) -> bool:
        """取消会话，deadline 不为空时只取消在其之前未更新的会话；返回是否已取消"""
        async with self._lock(upload_id):
            try:
                session = await self.state_store.get(upload_id)
            except UploadNotFoundError:
                logger.debug(f"Abort unknown multipart upload {upload_id}, ignored")
                self._forget(upload_id)
                return False

            if deadline is not None and session.update_time >= deadline:
                logger.debug(f"Multipart upload {upload_id} updated since listed, keep it")
                return False

            for location in session.parts.values():
                await self._remove_quietly(location)
            await self.state_store.delete(upload_id)

        self._forget(upload_id)
        logger.info(f"Aborted multipart upload {upload_id} for {session.path}")
        return True

    async def list_multipart_uploads(self) -> list[MultipartUploadInfo]:
        """列出所有未完成的分片上传"""
        sessions = await self.state_store.list()
        return [
            MultipartUploadInfo(upload_id=s.upload_id, path=s.path, create_time=s.create_time)
            for s in sessions
        ]

    async def list_uploaded_parts(self, upload_id: str) -> list[MultipartPart]:
        """列出已上传的分片（按分片编号排序），临时文件已被外部删除的分片会被跳过"""
        session = await self.state_store.get(upload_id)

        parts = []
        for part_number, location in sorted(session.parts.items()):
            try:
                stat = await aiofiles.os.stat(location)
            except FileNotFoundError:
                logger.warning(f"Part {part_number} of {upload_id} is missing on disk: {location}")
                continue
            except OSError as e:
                raise StorageIOError(f"failed to stat part {part_number} of {upload_id}: {e}") from e
            parts.append(MultipartPart(part_number=part_number, size=stat.st_size))
        return parts

    async def abort_stale_multipart_uploads(self, max_age: timedelta) -> list[str]:
        """取消超过 max_age 未更新的分片上传，返回被取消的 upload_id"""
        deadline = now() - max_age
        aborted = []
        for session in await self.state_store.list():
            # 列出后会话可能又上传了分片，在会话锁内重新判断
            if session.update_time < deadline and await self._abort(session.upload_id, deadline):
                aborted.append(session.upload_id)
        if aborted:
            logger.info(f"Aborted {len(aborted)} stale multipart uploads")
        return aborted

    async def _remove_quietly(self, location: str | Path) -> bool:
        """删除临时文件，失败只记录日志"""
        try:
            await aiofiles.os.remove(location)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temp file {location}: {e}")
            return False
        return True
