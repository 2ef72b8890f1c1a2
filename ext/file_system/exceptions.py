"""
FileSystem Exceptions - 文件系统异常类定义

各后端的原生错误在 provider 边界处转换为这里的异常，原始错误通过 __cause__ 访问。
"""


class FileSystemError(Exception):
    """文件系统基础异常类"""

    pass


class FileSystemConfigError(FileSystemError):
    """文件系统配置错误

    当配置无效、未启用或缺少必要参数时抛出
    """

    pass


class FileSystemTypeError(FileSystemError):
    """文件系统类型错误

    当尝试创建不支持的文件系统类型时抛出
    """

    pass


class NotFoundError(FileSystemError):
    """资源不存在"""

    pass


class UploadNotFoundError(NotFoundError):
    """分片上传会话不存在

    会话从未创建，或已经完成/取消
    """

    def __init__(self, upload_id: str) -> None:
        self.upload_id = upload_id
        super().__init__(f"multipart upload not found: {upload_id}")


class ObjectNotFoundError(NotFoundError):
    """文件/对象不存在"""

    def __init__(self, uri: str) -> None:
        self.uri = uri
        super().__init__(f"object not found: {uri}")


class PartNotFoundError(FileSystemError):
    """完成分片上传时引用了不存在的分片"""

    def __init__(self, part_number: int | None) -> None:
        self.part_number = part_number
        super().__init__(f"part {part_number} not found")


class StorageIOError(FileSystemError):
    """底层存储 I/O 错误

    权限不足、磁盘已满、路径过长等，不做内部重试
    """

    pass
