"""
数据流工具

上传接口接受 bytes、同步/异步文件对象（带 read 方法）或 bytes 异步迭代器，
这里统一转换为按块产出的异步迭代器
"""

import inspect
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any, BinaryIO, Union

DataStream = Union[bytes, bytearray, memoryview, BinaryIO, AsyncIterable[bytes], Any]

DEFAULT_CHUNK_SIZE = 1024 * 1024


async def iter_chunks(data: DataStream, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """按块读取数据流，长度无需预先知道"""
    if isinstance(data, (bytes, bytearray, memoryview)):
        view = memoryview(data)
        for start in range(0, len(view), chunk_size):
            yield bytes(view[start : start + chunk_size])
        return

    # 文件对象（包括 aiofiles）按块读取，而不是按行迭代
    if hasattr(data, "read"):
        while True:
            chunk = data.read(chunk_size)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                break
            yield bytes(chunk)
        return

    if hasattr(data, "__aiter__"):
        async for chunk in data:
            if chunk:
                yield bytes(chunk)
        return

    raise TypeError(f"unsupported data stream type: {type(data).__name__}")


async def read_all(data: DataStream, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    """读取完整数据流（用于只接受完整 body 的 SDK 调用）"""
    if isinstance(data, bytes):
        return data
    return b"".join([chunk async for chunk in iter_chunks(data, chunk_size)])
