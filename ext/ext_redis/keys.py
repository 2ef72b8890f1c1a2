from enum import Enum, unique


@unique
class FileSystemKey(str, Enum):
    MultipartSessions = "FS:Multipart:{root}"  # hash, field=upload_id, value=会话记录 JSON；root 为本地文件系统根目录
